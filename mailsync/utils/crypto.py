"""Fernet helpers for stored mailbox secrets.

IMAP passwords and serialized OAuth tokens are stored encrypted in account
settings; the key comes from ``EMAIL_ENCRYPTION_KEY`` so it can be managed
outside of version control.
"""

import os
from cryptography.fernet import Fernet, InvalidToken

_KEY_ENV_VAR = "EMAIL_ENCRYPTION_KEY"


def _get_fernet() -> Fernet:
    """Return a :class:`Fernet` instance from the configured key."""
    key = os.environ.get(_KEY_ENV_VAR)
    if not key:
        raise RuntimeError(f"{_KEY_ENV_VAR} is not set")
    return Fernet(key.encode())


def encrypt(data: str) -> str:
    """Encrypt a secret for storage."""
    return _get_fernet().encrypt(data.encode()).decode()


def decrypt(data: str) -> str:
    """Decrypt a stored secret.

    Raises ``ValueError`` when the value was not produced with the configured key.
    """
    try:
        return _get_fernet().decrypt(data.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("stored secret cannot be decrypted with the configured key") from exc
