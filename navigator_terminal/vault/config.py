"""
Vault Configuration — Encryption key provisioning and storage locations.

Reads settings from environment variables:
    CREDENTIAL_KEY = <hex-encoded 32-byte key>
    CREDENTIAL_KEY_PATH = <path to key file>      (default ./data/.encryption_key)
    CREDENTIAL_STORE_PATH = <credentials file>    (default ./data/credentials.json)
    CONNECTIONS_STORE_PATH = <connections file>   (default ./data/connections.json)
    CREDENTIAL_REQUIRE_PERSISTENT_KEY = true|false

Security Note:
    Never log key material. Only log where a key came from.
"""
import os
import secrets
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("navigator.vault")

KEY_LENGTH = 32  # AES-256

_DATA_DIR = Path.cwd() / "data"


def _decode_key(value: str, source: str) -> bytes:
    try:
        key = bytes.fromhex(value.strip())
    except ValueError as err:
        raise ValueError(f"{source} is not valid hex") from err
    if len(key) != KEY_LENGTH:
        raise ValueError(
            f"{source} must decode to exactly {KEY_LENGTH} bytes, "
            f"got {len(key)}"
        )
    return key


def generate_encryption_key() -> str:
    """Generate a random 32-byte key and return it hex-encoded.

    This is a utility for operators to provision CREDENTIAL_KEY.
    """
    return secrets.token_bytes(KEY_LENGTH).hex()


def write_key_file(path: Path, key: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fp:
        fp.write(key.hex())
    os.chmod(path, 0o600)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    key: Optional[str] = Field(default=None, repr=False)
    key_path: Path = Field(default=_DATA_DIR / ".encryption_key")
    store_path: Path = Field(default=_DATA_DIR / "credentials.json")
    connections_path: Path = Field(default=_DATA_DIR / "connections.json")
    require_persistent_key: bool = Field(default=False)

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: Optional[str]) -> Optional[str]:
        """Operator-provided key must be 32 bytes of hex."""
        if v:
            _decode_key(v, "CREDENTIAL_KEY")
        return v or None

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig from environment variables.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        env_map = {
            "key": "CREDENTIAL_KEY",
            "key_path": "CREDENTIAL_KEY_PATH",
            "store_path": "CREDENTIAL_STORE_PATH",
            "connections_path": "CONNECTIONS_STORE_PATH",
            "require_persistent_key": "CREDENTIAL_REQUIRE_PERSISTENT_KEY",
        }
        for field, env in env_map.items():
            raw = os.environ.get(env)
            if raw is not None:
                values[field] = raw
        return cls(**values)

    def load_encryption_key(self) -> bytes:
        """Resolve the vault encryption key.

        Priority: operator key, then the key file, then a freshly
        generated key persisted to the key file.

        If the fresh key cannot be written, the vault falls back to an
        in-memory key. Secrets saved under it cannot be decrypted after
        a restart, so this is logged as a warning, or raised when
        ``require_persistent_key`` is set.

        Returns:
            Raw 32-byte key.

        Raises:
            ValueError: If a provided or stored key is malformed.
            RuntimeError: If a fresh key cannot be persisted and
                ``require_persistent_key`` is set.
        """
        if self.key:
            logger.info("Using encryption key from environment")
            return _decode_key(self.key, "CREDENTIAL_KEY")
        path = self.key_path
        if path.exists():
            key = _decode_key(path.read_text(encoding="ascii"), str(path))
            logger.info("Loaded encryption key from %s", path)
            return key
        key = secrets.token_bytes(KEY_LENGTH)
        try:
            write_key_file(path, key)
        except OSError as err:
            if self.require_persistent_key:
                raise RuntimeError(
                    f"Unable to persist encryption key to {path}: {err}"
                ) from err
            logger.warning(
                "Unable to persist encryption key to %s (%s); using an "
                "in-memory key. Credentials saved by this process will NOT "
                "be readable after restart.",
                path, err,
            )
            return key
        logger.info("Generated and saved new encryption key to %s", path)
        return key
