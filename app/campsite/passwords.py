from __future__ import annotations

from werkzeug.security import check_password_hash, generate_password_hash


def hash_secret(secret: str) -> str:
    """Salted, slow hash. Salt and method are embedded in the returned string."""
    return generate_password_hash(secret)


def verify_secret(stored: str | None, secret: str | None) -> bool:
    """
    True only when `secret` matches `stored`.

    A malformed or empty stored hash reads the same as a wrong password.
    """
    if not stored or secret is None:
        return False
    try:
        return check_password_hash(stored, secret)
    except (ValueError, TypeError):
        return False
