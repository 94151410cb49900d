"""Encryption utilities for refresh tokens at rest."""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from mailsync.core.config import settings


_fernet: MultiFernet | None = None


def get_fernet() -> MultiFernet:
    """Get or create the Fernet instance (current key first, previous key for rotation)."""
    global _fernet
    if _fernet is None:
        if not settings.TOKEN_ENCRYPTION_KEY:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        keys = [Fernet(settings.TOKEN_ENCRYPTION_KEY.encode())]
        if settings.TOKEN_ENCRYPTION_KEY_PREVIOUS:
            keys.append(Fernet(settings.TOKEN_ENCRYPTION_KEY_PREVIOUS.encode()))
        _fernet = MultiFernet(keys)
    return _fernet


def reset_fernet() -> None:
    """Drop the cached instance so the next call re-reads settings."""
    global _fernet
    _fernet = None


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")
