"""
Vault records.

Field names on disk and across the request boundary are camelCase, which
keeps collections written by earlier releases loadable as-is.
"""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AuthType = Literal["password", "key"]

SECRET_FIELDS = ("password", "private_key", "passphrase")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VaultModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_dict(self) -> dict:
        """JSON-ready dict with camelCase keys, unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Credential(VaultModel):
    """Plaintext connection credential, in and out of the vault."""

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    auth_type: AuthType = "password"
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False)
    passphrase: Optional[str] = Field(default=None, repr=False)


class StoredCredential(VaultModel):
    """Credential at rest: secret fields hold ``iv:ciphertext:tag`` strings.

    ``iv`` is only set on legacy records whose fields are ``ciphertext:tag``.
    """

    id: str
    host: str
    port: int
    username: str
    auth_type: AuthType
    encrypted_password: Optional[str] = None
    encrypted_private_key: Optional[str] = None
    encrypted_passphrase: Optional[str] = None
    iv: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime = Field(default_factory=utcnow)


class CredentialSummary(VaultModel):
    """Listing view of a stored credential, no secret material."""

    id: str
    host: str
    username: str
    auth_type: AuthType
    last_used_at: datetime


class SavedConnectionInfo(VaultModel):
    """Non-secret saved connection, correlated to a credential by id."""

    id: str
    name: str
    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    auth_type: AuthType = "password"
    has_stored_credentials: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_credential(cls, stored: StoredCredential) -> "SavedConnectionInfo":
        """Synthesize connection info for a credential saved without one."""
        return cls(
            id=stored.id,
            name=f"{stored.username}@{stored.host}",
            host=stored.host,
            port=stored.port,
            username=stored.username,
            auth_type=stored.auth_type,
            has_stored_credentials=True,
            created_at=stored.created_at,
            last_used_at=stored.last_used_at,
        )
