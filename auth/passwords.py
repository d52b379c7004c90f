"""
auth/passwords.py -- Password hashing primitive (bcrypt, direct usage).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

bcrypt only reads the first 72 bytes of its input, and bcrypt 5 raises
ValueError for anything longer. The limit is in UTF-8 bytes, not
characters: 60 accented letters are already 120 bytes.

verify_password() is the constant-time compare: bcrypt.checkpw re-derives
the hash with the stored salt and compares digests without early exit.
"""

from __future__ import annotations

import bcrypt

from auth.errors import PasswordTooLong

MAX_PASSWORD_BYTES = 72


def password_fits(plain: str) -> bool:
    """Return True if the password is within bcrypt's byte limit."""
    return len(plain.encode("utf-8")) <= MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises PasswordTooLong for input over MAX_PASSWORD_BYTES instead of
    letting bcrypt truncate or fail.
    """
    if not password_fits(plain):
        raise PasswordTooLong()
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not password_fits(plain):
        # Nothing over the limit can ever have been hashed. Still pay for one compare.
        bcrypt.checkpw(plain.encode("utf-8")[:MAX_PASSWORD_BYTES], DUMMY_HASH.encode("utf-8"))
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash. Treat as a mismatch rather than a 500.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login compares against it when the email is
# unknown so response time does not reveal whether an account exists.
DUMMY_HASH: str = hash_password("authcore_timing_dummy")
