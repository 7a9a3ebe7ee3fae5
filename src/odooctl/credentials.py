"""Random secrets for database roles and the Odoo master password."""
from __future__ import annotations

import secrets
import string

PUNCTUATION = "!@#$%^&*()-_=+"
ALPHABET = string.ascii_letters + string.digits + PUNCTUATION
DEFAULT_LENGTH = 16


def generate(length: int = DEFAULT_LENGTH, *, alphabet: str = ALPHABET) -> str:
    """Return a secret of exactly *length* characters drawn from *alphabet*.

    Uses :mod:`secrets`, so the result is suitable for credentials.
    """
    if length < 1:
        raise ValueError("Secret length must be a positive integer.")
    if not alphabet:
        raise ValueError("Secret alphabet must not be empty.")
    return "".join(secrets.choice(alphabet) for _ in range(length))


__all__ = ["ALPHABET", "DEFAULT_LENGTH", "PUNCTUATION", "generate"]
