"""Credential Vault — Encrypted storage of saved connection secrets.

Security Note (Threat Model):
    Secrets are decrypted in process memory only for the duration of a
    ``get()`` call and handed to the caller in plaintext. The key file is
    owner-only; anyone able to read it and the credential collection can
    recover every secret. This is an accepted limitation.
"""

from .store import CredentialVault
from .key_rotation import rotate_encryption_key
from .config import VaultConfig, generate_encryption_key
from .models import (
    Credential,
    CredentialSummary,
    SavedConnectionInfo,
    StoredCredential,
)

__all__ = [
    "CredentialVault",
    "rotate_encryption_key",
    "VaultConfig",
    "generate_encryption_key",
    "Credential",
    "CredentialSummary",
    "SavedConnectionInfo",
    "StoredCredential",
]
