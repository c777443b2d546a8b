"""
Fernet sealing for delegated access tokens, both at rest in the token store
and in flight on the consent channel.
"""

from cryptography.fernet import Fernet, InvalidToken

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    pass


def _cipher() -> Fernet:
    """
    Raises:
        EncryptionError: ENCRYPTION_KEY is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured")
    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (TypeError, ValueError) as e:
        logger.error("ENCRYPTION_KEY rejected by Fernet", error=str(e))
        raise EncryptionError(f"Malformed ENCRYPTION_KEY: {e}") from e


def encrypt_token(token: str) -> str:
    """
    Seal a plaintext token.

    Returns:
        str: URL-safe Fernet ciphertext
    """
    if not isinstance(token, str) or not token:
        raise EncryptionError("Cannot encrypt an empty token")
    return _cipher().encrypt(token.encode("utf-8")).decode("ascii")


def decrypt_token(sealed: str) -> str:
    """
    Open a value produced by encrypt_token.

    Raises:
        EncryptionError: Missing key, or ciphertext that is tampered or sealed with another key
    """
    if not isinstance(sealed, str) or not sealed:
        raise EncryptionError("Cannot decrypt an empty value")
    try:
        return _cipher().decrypt(sealed.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        logger.warning("Sealed token failed verification")
        raise EncryptionError("Token ciphertext is invalid or was sealed with another key") from e
    except UnicodeError as e:
        raise EncryptionError(f"Token ciphertext is not ASCII: {e}") from e


def validate_encryption_config() -> bool:
    """True when ENCRYPTION_KEY can seal and reopen a value."""
    sample = "encryption-config-check"
    try:
        return decrypt_token(encrypt_token(sample)) == sample
    except EncryptionError as e:
        logger.warning("Encryption config unusable", error=str(e))
        return False


def generate_encryption_key() -> str:
    return Fernet.generate_key().decode("utf-8")
