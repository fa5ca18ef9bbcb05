"""
EventSwap Platform - Application-Level PII Encryption
Payer tax ids (CPF) are stored Fernet-encrypted and only decrypted when a
charge is created with the payment processor.
"""
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from eventswap.config import get_settings

logger = logging.getLogger("eventswap.encryption")


@lru_cache()
def _get_fernet() -> Fernet:
    """
    Cached Fernet cipher built from FERNET_KEY.

    Raises RuntimeError if the key is not configured.
    """
    key = get_settings().FERNET_KEY
    if not key:
        raise RuntimeError(
            "FERNET_KEY environment variable is not set. "
            "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(key.encode("utf-8"))


def normalize_tax_id(raw: str) -> str:
    """Keep digits only: 123.456.789-09 → 12345678909."""
    return "".join(ch for ch in raw if ch.isdigit())


def encrypt_pii(plaintext: str) -> str:
    """Encrypt a PII string; returns URL-safe base64 ciphertext for DB storage."""
    if not plaintext:
        return plaintext
    encrypted = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return encrypted.decode("utf-8")


def decrypt_pii(ciphertext: str) -> str:
    """
    Decrypt a Fernet-encrypted PII string.

    Raises:
        ValueError: If decryption fails (tampered data or rotated key)
    """
    if not ciphertext:
        return ciphertext
    try:
        decrypted = _get_fernet().decrypt(ciphertext.encode("utf-8"))
        return decrypted.decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt PII, possible key mismatch or data tampering")
        raise ValueError("Decryption failed, data may be corrupted or key has changed")
