"""Secret codec: encryption and keyed-hash primitives over the master key."""

import hashlib
import hmac
import logging
import secrets
from base64 import b64decode, b64encode

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core import settings

logger = logging.getLogger(__name__)

# Minimum length for encrypted data: 12 bytes IV + 16 bytes auth tag
MIN_ENCRYPTED_LENGTH = 28
IV_LENGTH = 12


class CryptoError(Exception):
    """Base exception for cryptographic operations."""


class InvalidKeyError(CryptoError):
    """Raised when the master key is missing, the wrong length, or not hex."""


class DecryptionError(CryptoError):
    """Raised when decryption fails (corrupted data, wrong key, wrong AAD)."""


def _parse_key(key_hex: str, name: str) -> bytes:
    if len(key_hex) != 64:
        raise InvalidKeyError(
            f"{name} must be exactly 64 hex characters (32 bytes). "
            f"Got {len(key_hex)} characters. "
            f'Generate a secure key with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    try:
        return bytes.fromhex(key_hex)
    except ValueError as e:
        raise InvalidKeyError(f"{name} must be valid hexadecimal: {e}") from e


def get_encryption_key() -> bytes:
    """Get the 32-byte master key from settings.

    Raises:
        InvalidKeyError: If key is missing, wrong length, or invalid hex.
    """
    return _parse_key(settings.insight_encryption_key, "INSIGHT_ENCRYPTION_KEY")


def encrypt(plaintext: str, aad: str | None = None) -> bytes:
    """Encrypt a plaintext string using AES-256-GCM.

    Args:
        plaintext: The string to encrypt.
        aad: Optional Associated Authenticated Data. Binds the ciphertext to
             a context such as "user:42:provider_access_token" so it cannot be
             swapped into another column or row.

    Returns: IV (12 bytes) || ciphertext || tag (16 bytes)
    """
    if aad is None:
        logger.warning("encrypt() called without AAD; ciphertext is not bound to a context")

    aesgcm = AESGCM(get_encryption_key())
    iv = secrets.token_bytes(IV_LENGTH)
    aad_bytes = aad.encode("utf-8") if aad else None
    ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), aad_bytes)

    # AESGCM appends the tag
    return iv + ciphertext


def decrypt(encrypted: bytes, aad: str | None = None) -> str:
    """Decrypt an AES-256-GCM encrypted value.

    Expects: IV (12 bytes) || ciphertext || tag (16 bytes)

    Tries the current key first, then INSIGHT_ENCRYPTION_KEY_OLD when it is
    configured (key rotation window).

    Raises:
        DecryptionError: If decryption fails or data is malformed.
    """
    if len(encrypted) < MIN_ENCRYPTED_LENGTH:
        raise DecryptionError(
            f"Encrypted data too short: {len(encrypted)} bytes, "
            f"minimum {MIN_ENCRYPTED_LENGTH} bytes required"
        )

    iv = encrypted[:IV_LENGTH]
    ciphertext = encrypted[IV_LENGTH:]
    aad_bytes = aad.encode("utf-8") if aad else None

    try:
        plaintext = AESGCM(get_encryption_key()).decrypt(iv, ciphertext, aad_bytes)
        return plaintext.decode("utf-8")
    except InvalidTag as primary_error:
        old_key_hex = settings.insight_encryption_key_old
        if old_key_hex:
            old_key = _parse_key(old_key_hex, "INSIGHT_ENCRYPTION_KEY_OLD")
            try:
                plaintext = AESGCM(old_key).decrypt(iv, ciphertext, aad_bytes)
            except InvalidTag:
                pass
            else:
                logger.info("Decrypted with old key; re-encrypt to finish key rotation")
                return plaintext.decode("utf-8")
        raise DecryptionError("Decryption failed: authentication tag mismatch") from primary_error


def encrypt_to_base64(plaintext: str, aad: str | None = None) -> str:
    """Encrypt and return as base64 string (for JSON serialization)."""
    return b64encode(encrypt(plaintext, aad=aad)).decode("ascii")


def decrypt_from_base64(encrypted_b64: str, aad: str | None = None) -> str:
    """Decrypt from base64 string."""
    try:
        encrypted = b64decode(encrypted_b64, validate=True)
    except ValueError as e:
        raise DecryptionError("Encrypted value is not valid base64") from e
    return decrypt(encrypted, aad=aad)


def create_hmac(data: str, secret: str | bytes | None = None) -> str:
    """HMAC-SHA256 of ``data`` as lowercase hex; keyed by the master key by default."""
    if secret is None:
        key = get_encryption_key()
    elif isinstance(secret, str):
        key = secret.encode("utf-8")
    else:
        key = secret
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac(data: str, signature: str, secret: str | bytes | None = None) -> bool:
    """Constant-time check of an HMAC-SHA256 hex signature."""
    expected = create_hmac(data, secret)
    return hmac.compare_digest(expected, signature.lower())


def hash_string(value: str) -> str:
    """SHA-256 of ``value`` as lowercase hex. Not for password storage."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_random_string(length: int = 32) -> str:
    """Hex string carrying ``length`` bytes of CSPRNG output."""
    return secrets.token_hex(length)
