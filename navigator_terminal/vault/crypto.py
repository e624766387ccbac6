"""
Vault Crypto Core — Field-level authenticated encryption.

Every secret field is encrypted on its own with AES-256-GCM and stored as
three hex strings joined by ':':

    iv:ciphertext:tag

Records written by older releases used one shared iv per record and stored
only ``ciphertext:tag`` per field; those are still readable.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; a fresh one is drawn for every field on every save.
"""
import os
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionError

logger = logging.getLogger("navigator.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM tag
SEPARATOR = ":"


def encrypt_field(plaintext: str, key: bytes) -> str:
    """Encrypt one secret field.

    Args:
        plaintext: Secret value.
        key: Raw 32-byte key.

    Returns:
        ``iv:ciphertext:tag`` hex string.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ct, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return SEPARATOR.join((nonce.hex(), ct.hex(), tag.hex()))


def _open(key: bytes, iv_hex: str, ct_hex: str, tag_hex: str) -> str:
    try:
        nonce = bytes.fromhex(iv_hex)
        ct = bytes.fromhex(ct_hex)
        tag = bytes.fromhex(tag_hex)
    except ValueError as err:
        raise DecryptionError("Malformed encrypted field") from err
    if len(tag) != TAG_SIZE:
        raise DecryptionError("Malformed encrypted field")
    try:
        plaintext = AESGCM(key).decrypt(nonce, ct + tag, None)
    except InvalidTag as err:
        raise DecryptionError("Authentication tag mismatch") from err
    except ValueError as err:
        # nonce outside the 8..128 byte range AESGCM accepts
        raise DecryptionError("Malformed encrypted field") from err
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionError("Decrypted field is not valid UTF-8") from err


def decrypt_field(blob: str, key: bytes, legacy_iv: Optional[str] = None) -> str:
    """Decrypt one secret field in either on-disk encoding.

    Args:
        blob: ``iv:ciphertext:tag`` or legacy ``ciphertext:tag``.
        key: Raw 32-byte key.
        legacy_iv: The record-level hex iv used by legacy two-part fields.

    Returns:
        The plaintext value.

    Raises:
        DecryptionError: On tag mismatch or any malformed input.
    """
    parts = blob.split(SEPARATOR)
    if len(parts) == 3:
        return _open(key, *parts)
    if len(parts) == 2:
        if not legacy_iv:
            raise DecryptionError("Legacy field without a record iv")
        return _open(key, legacy_iv, *parts)
    raise DecryptionError("Malformed encrypted field")


def is_legacy_field(blob: str) -> bool:
    """Return True for the two-part ``ciphertext:tag`` encoding."""
    return len(blob.split(SEPARATOR)) == 2
