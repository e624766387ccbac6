"""
Vault Key Rotation — Re-encryption of every stored credential under a new key.

Each record is decrypted with the current key and every secret field is
re-encrypted with a fresh iv under the new key. Legacy records (shared
record iv, ``ciphertext:tag`` fields) come out in the current per-field
format, so rotation doubles as a format migration.

The swap is all-or-nothing: if any record fails to decrypt, or the new
collection or key file cannot be written, the vault stays on the old key
and the stats report the failures.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging
from functools import partial
from pathlib import Path

from ..exceptions import DecryptionError, PersistError
from .config import KEY_LENGTH, write_key_file
from .crypto import encrypt_field
from .store import CredentialVault

logger = logging.getLogger("navigator.vault")


def _store_key(path: Path, new_key: bytes) -> None:
    tmp = path.with_name(f".{path.name}.new")
    tmp.unlink(missing_ok=True)
    write_key_file(tmp, new_key)
    tmp.replace(path)


async def rotate_encryption_key(
    vault: CredentialVault,
    new_key: bytes,
    persist_key: bool = True,
) -> dict:
    """Re-encrypt all credentials from the vault's key to ``new_key``.

    Args:
        vault: Loaded credential vault.
        new_key: Raw 32-byte replacement key.
        persist_key: Write the new key to the configured key file. Ignored
            when the key comes from CREDENTIAL_KEY; the operator has to
            update that variable.

    Returns:
        Stats dict with keys: total, rotated, errors. A failed write counts
        every record as an error.

    Raises:
        ValueError: If new_key is not 32 bytes.
    """
    if len(new_key) != KEY_LENGTH:
        raise ValueError(f"new_key must be {KEY_LENGTH} bytes, got {len(new_key)}")

    stats = {"total": 0, "rotated": 0, "errors": 0}
    logger.info("Starting encryption key rotation")

    async with vault.key_lock:
        records = {}
        for stored in vault.stored_items():
            stats["total"] += 1
            try:
                secrets = vault.decrypt_stored(stored)
            except DecryptionError as err:
                logger.error("Error rotating credential id=%s: %s", stored.id, err)
                stats["errors"] += 1
                continue
            update = {"iv": ""}
            for field, value in secrets.items():
                update[f"encrypted_{field}"] = encrypt_field(value, new_key)
            records[stored.id] = stored.model_copy(update=update)

        if stats["errors"]:
            logger.error(
                "Key rotation aborted, %d credential(s) could not be decrypted",
                stats["errors"],
            )
            return stats

        store_key = None
        if persist_key and not vault.config.key:
            store_key = partial(_store_key, vault.config.key_path, new_key)
        try:
            await vault.replace_key(new_key, records, store_key=store_key)
        except PersistError as err:
            logger.error("Key rotation aborted, old key kept: %s", err)
            stats["errors"] = len(records)
            return stats

    stats["rotated"] = len(records)
    logger.info("Key rotation complete: %s", stats)
    return stats
