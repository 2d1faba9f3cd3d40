"""Encryption for sensitive database fields.

The cached BookScouter token is a bearer credential, so it is stored with
Fernet symmetric encryption.
"""

import base64
import logging
import os
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_encryption_key() -> bytes:
    """
    Get encryption key from the ENCRYPTION_KEY environment variable.

    Returns:
        Fernet key as bytes. Without ENCRYPTION_KEY a temporary key is
        generated once per process, so encrypted values do not survive a
        restart.
    """
    key_str = os.getenv("ENCRYPTION_KEY")
    if not key_str:
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
        return Fernet.generate_key()

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except (ValueError, TypeError):
        pass
    # Not a Fernet key; derive one from the raw string
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        token: Mapped[Optional[str]] = mapped_column(EncryptedString(2048), nullable=True)
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 256, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        encrypted = self._get_fernet().encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None

        try:
            encrypted = base64.urlsafe_b64decode(value.encode())
            return self._get_fernet().decrypt(encrypted).decode()
        except (InvalidToken, ValueError) as e:
            # Unreadable value (key rotation or corruption). Callers see a
            # missing value and re-authenticate.
            logger.warning(
                f"Decryption failed: {type(e).__name__} (value_length={len(value)})"
            )
            return None
