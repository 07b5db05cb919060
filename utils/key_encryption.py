"""
Encrypted copy of deposit private keys.

AES-256-GCM with a key stretched from the deployment secret by PBKDF2-SHA256.
Stored format: base64(iv[12] || ciphertext+tag).
"""

import base64
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from utils.offramp_errors import ConfigurationError

logger = logging.getLogger(__name__)

KDF_SALT = b"offramp-deposit-wallet-salt"
KDF_ITERATIONS = 100000
IV_LENGTH = 12


@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    if not secret:
        raise ConfigurationError("Deposit key encryption secret is not configured")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt_private_key(private_key: str, secret: str) -> str:
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(_derive_key(secret)).encrypt(iv, private_key.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_private_key(encrypted: str, secret: str) -> str:
    """Raises ValueError when the blob is malformed or the secret is wrong"""
    try:
        blob = base64.b64decode(encrypted)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Encrypted key is not valid base64: {e}") from e
    if len(blob) <= IV_LENGTH:
        raise ValueError("Encrypted key is truncated")

    iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        logger.error("❌ KEY_DECRYPT: authentication tag mismatch - wrong secret or tampered key")
        raise ValueError("Encrypted key failed authentication") from e
    return plaintext.decode("utf-8")
