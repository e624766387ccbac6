"""
CredentialVault — Encrypted credential store plus saved connection list.

Provides the public API for the vault:
- ``save(id, credential)`` — encrypt secret fields and persist
- ``get(id)`` — decrypt a credential (fail-closed)
- ``has(id)`` / ``delete(id)`` / ``list()`` — credential bookkeeping
- ``save_connection`` / ``update_connection`` / ``delete_connection`` /
  ``get_connections`` / ``get_connection`` — non-secret connection info
- ``load(config)`` — factory: resolve key, load both collections, reconcile

Both collections are keyed by the same id and persisted independently as a
list of ``[id, record]`` pairs. Every mutation rewrites the whole collection.

Security Note:
    Never log plaintext or ciphertext values. Only log ids, hosts and
    operation names.
"""
import os
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Union
from collections.abc import Callable, Mapping

import orjson
from pydantic import ValidationError

from ..exceptions import DecryptionError, PersistError
from .config import VaultConfig
from .crypto import encrypt_field, decrypt_field
from .models import (
    SECRET_FIELDS,
    Credential,
    CredentialSummary,
    SavedConnectionInfo,
    StoredCredential,
    utcnow,
)

logger = logging.getLogger("navigator.vault")

# fields a caller may never change through update_connection
_IMMUTABLE_CONNECTION_FIELDS = frozenset({"id", "created_at", "createdAt"})


def _read_collection(path: Path, model: type) -> dict[str, Any]:
    """Load ``[[id, record], ...]`` from path; missing file is empty."""
    if not path.exists():
        return {}
    entries = orjson.loads(path.read_bytes())
    items: dict[str, Any] = {}
    for entry_id, record in entries:
        try:
            items[entry_id] = model.model_validate(record)
        except ValidationError as err:
            logger.error(
                "Skipping invalid record id=%s in %s: %d error(s)",
                entry_id, path, err.error_count(),
            )
    return items


def _write_collection(path: Path, data: bytes) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        with open(tmp, "wb") as fp:
            fp.write(data)
        os.replace(tmp, path)
    except OSError as err:
        raise PersistError(f"Unable to write {path}: {err}") from err


class _Collection:
    """One keyed, independently persisted set of records."""

    def __init__(self, name: str, path: Path, model: type):
        self.name = name
        self.path = path
        self.model = model
        self.items: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    def load(self) -> None:
        try:
            self.items = _read_collection(self.path, self.model)
        except (OSError, orjson.JSONDecodeError, ValueError, TypeError) as err:
            logger.error("Failed to load %s from %s: %s", self.name, self.path, err)
            self.items = {}

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def snapshot(self, items: Optional[Mapping[str, Any]] = None) -> bytes:
        if items is None:
            items = self.items
        return orjson.dumps(
            [[key, record.to_dict()] for key, record in items.items()],
            option=orjson.OPT_INDENT_2,
        )

    async def write(self, items: Optional[Mapping[str, Any]] = None) -> None:
        """Rewrite the file with ``items`` (default: the in-memory records).

        Raises:
            PersistError: If the file could not be written.
        """
        data = self.snapshot(items)
        await asyncio.to_thread(_write_collection, self.path, data)

    async def persist(self) -> bool:
        """Rewrite the collection; False (logged) when the write fails."""
        async with self._lock:
            try:
                await self.write()
            except PersistError as err:
                logger.error("Failed to persist %s: %s", self.name, err)
                return False
        return True

    async def flush(self) -> None:
        async with self._lock:
            pass


class CredentialVault:
    """Encrypted credential store and its companion connection list.

    All in-memory mutations happen synchronously before the first await of
    an operation, so observers never see a half-applied change.
    """

    def __init__(self, config: VaultConfig, key: bytes):
        self._config = config
        self._key = key
        # held by every writer of credential records, and by key rotation
        self._key_lock = asyncio.Lock()
        self._credentials = _Collection(
            "credentials", config.store_path, StoredCredential,
        )
        self._connections = _Collection(
            "connections", config.connections_path, SavedConnectionInfo,
        )

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def key_lock(self) -> asyncio.Lock:
        """Lock serializing credential writes with key rotation."""
        return self._key_lock

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        config: Optional[VaultConfig] = None,
        key: Optional[bytes] = None,
    ) -> "CredentialVault":
        """Resolve the key, load both collections and reconcile them.

        Args:
            config: Vault configuration, read from environment when omitted.
            key: Raw key, bypassing key provisioning (tests, rotation).

        Returns:
            Ready CredentialVault instance.
        """
        config = config or VaultConfig.from_env()
        if key is None:
            key = await asyncio.to_thread(config.load_encryption_key)
        vault = cls(config, key)
        await asyncio.to_thread(vault._credentials.load)
        await asyncio.to_thread(vault._connections.load)
        await vault._reconcile()
        logger.info(
            "Vault loaded: %d credential(s), %d connection(s)",
            len(vault._credentials.items), len(vault._connections.items),
        )
        return vault

    async def _reconcile(self) -> None:
        """Give every orphan credential a synthesized connection entry."""
        migrated = 0
        for cred_id, stored in self._credentials.items.items():
            if cred_id not in self._connections.items:
                info = SavedConnectionInfo.from_credential(stored)
                self._connections.items[cred_id] = info
                migrated += 1
                logger.info("Migrated connection: %s", info.name)
        if migrated:
            await self._connections.persist()

    async def close(self) -> None:
        """Wait for in-flight writes of both collections."""
        await self._credentials.flush()
        await self._connections.flush()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def save(
        self,
        cred_id: str,
        credential: Union[Credential, Mapping[str, Any]],
    ) -> StoredCredential:
        """Encrypt and persist a credential.

        Each present secret field gets its own iv and tag; absent or empty
        fields are omitted.

        Args:
            cred_id: Credential id (shared with the connection info).
            credential: Plaintext credential or its dict form.

        Returns:
            The stored (encrypted) record.
        """
        if not isinstance(credential, Credential):
            credential = Credential.model_validate(credential)
        async with self._key_lock:
            now = utcnow()
            encrypted = {}
            for field in SECRET_FIELDS:
                value = getattr(credential, field)
                if value:
                    encrypted[f"encrypted_{field}"] = encrypt_field(value, self._key)
            stored = StoredCredential(
                id=cred_id,
                host=credential.host,
                port=credential.port,
                username=credential.username,
                auth_type=credential.auth_type,
                created_at=now,
                last_used_at=now,
                **encrypted,
            )
            self._credentials.items[cred_id] = stored
            await self._credentials.persist()
        logger.debug("Vault save: id=%s host=%s", cred_id, credential.host)
        return stored

    async def get(self, cred_id: str) -> Optional[Credential]:
        """Decrypt a credential.

        Args:
            cred_id: Credential id.

        Returns:
            Decrypted credential, or None if absent.

        Raises:
            DecryptionError: If any present field fails to decrypt; no
                partial credential is ever returned.
        """
        stored = self._credentials.items.get(cred_id)
        if stored is None:
            return None
        try:
            secrets = self.decrypt_stored(stored)
        except DecryptionError:
            logger.error("Failed to decrypt credential id=%s", cred_id)
            raise
        stored.last_used_at = utcnow()
        await self._credentials.persist()
        return Credential(
            host=stored.host,
            port=stored.port,
            username=stored.username,
            auth_type=stored.auth_type,
            **secrets,
        )

    def has(self, cred_id: str) -> bool:
        return cred_id in self._credentials.items

    async def delete(self, cred_id: str) -> bool:
        """Delete a credential; False if it did not exist."""
        async with self._key_lock:
            if self._credentials.items.pop(cred_id, None) is None:
                return False
            await self._credentials.persist()
        logger.debug("Vault delete: id=%s", cred_id)
        return True

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def save_connection(
        self,
        connection: Union[SavedConnectionInfo, Mapping[str, Any]],
    ) -> SavedConnectionInfo:
        if not isinstance(connection, SavedConnectionInfo):
            connection = SavedConnectionInfo.model_validate(connection)
        self._connections.items[connection.id] = connection
        await self._connections.persist()
        return connection

    def get_connections(self) -> list[SavedConnectionInfo]:
        return list(self._connections.items.values())

    def get_connection(self, conn_id: str) -> Optional[SavedConnectionInfo]:
        return self._connections.items.get(conn_id)

    async def update_connection(self, conn_id: str, **updates: Any) -> bool:
        """Apply partial updates to a saved connection.

        Accepts snake_case or camelCase field names; ``id`` and
        ``created_at`` cannot be changed.

        Returns:
            False if the connection does not exist.

        Raises:
            pydantic.ValidationError: If the updated record is invalid.
        """
        current = self._connections.items.get(conn_id)
        if current is None:
            return False
        data = current.model_dump()
        for name, value in updates.items():
            if name in _IMMUTABLE_CONNECTION_FIELDS:
                continue
            field = self._field_name(name)
            if field is not None:
                data[field] = value
        self._connections.items[conn_id] = SavedConnectionInfo.model_validate(data)
        await self._connections.persist()
        return True

    @staticmethod
    def _field_name(name: str) -> Optional[str]:
        fields = SavedConnectionInfo.model_fields
        if name in fields:
            return name
        for field, info in fields.items():
            if info.alias == name:
                return field
        return None

    async def delete_connection(self, conn_id: str) -> bool:
        """Delete a connection and its stored credential, if any.

        Both records leave memory before any write starts.
        """
        async with self._key_lock:
            if self._connections.items.pop(conn_id, None) is None:
                return False
            had_credential = self._credentials.items.pop(conn_id, None) is not None
            if had_credential:
                await self._credentials.persist()
            await self._connections.persist()
        logger.debug("Vault delete connection: id=%s", conn_id)
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def replace_key(
        self,
        new_key: bytes,
        records: Mapping[str, StoredCredential],
        store_key: Optional[Callable[[], None]] = None,
    ) -> None:
        """Swap in a new key together with records re-encrypted under it.

        The re-encrypted collection is written first, then ``store_key``
        (if given) saves the new key. Memory switches to the new key only
        after both succeed. The caller must hold ``key_lock``.

        Args:
            new_key: Raw 32-byte replacement key.
            records: Every credential, re-encrypted under ``new_key``.
            store_key: Blocking callable persisting the new key.

        Raises:
            PersistError: A write failed; memory, the collection file and
                the key file all stay on the old key.
        """
        rotated = {**self._credentials.items, **records}
        async with self._credentials.lock:
            await self._credentials.write(rotated)
            if store_key is not None:
                try:
                    await asyncio.to_thread(store_key)
                except OSError as err:
                    logger.error("Failed to store rotated key: %s", err)
                    try:
                        await self._credentials.write()
                    except PersistError as restore_err:
                        logger.critical(
                            "Could not restore credentials after a failed key "
                            "rotation, stored secrets need the new key: %s",
                            restore_err,
                        )
                    raise PersistError(f"Unable to store encryption key: {err}") from err
            self._key = new_key
            self._credentials.items = rotated

    def decrypt_stored(self, stored: StoredCredential) -> dict[str, str]:
        """Decrypt every present secret field of a record.

        Raises:
            DecryptionError: On the first field that fails.
        """
        secrets = {}
        for field in SECRET_FIELDS:
            blob = getattr(stored, f"encrypted_{field}")
            if blob:
                secrets[field] = decrypt_field(blob, self._key, stored.iv)
        return secrets

    def stored_items(self) -> list[StoredCredential]:
        """Raw encrypted records, for maintenance tasks."""
        return list(self._credentials.items.values())

    def list(self) -> list[CredentialSummary]:
        """Credential listing without secret material."""
        return [
            CredentialSummary(
                id=c.id,
                host=c.host,
                username=c.username,
                auth_type=c.auth_type,
                last_used_at=c.last_used_at,
            )
            for c in self._credentials.items.values()
        ]
