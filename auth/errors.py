"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure the core reports is an AuthError subclass carrying an ErrorKind.
Callers branch on the kind (login skips the password compare on
AccountLocked, clients retry a refresh on ExpiredToken but not on
InvalidToken). All kinds are recoverable by the caller re-prompting or
re-authenticating; none of them signals a programming fault.

Messages are fixed strings. Nothing secret (passwords, token values, keys,
hashes) is ever formatted into an error.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    invalid_credentials = "invalid_credentials"
    account_locked = "account_locked"
    account_inactive = "account_inactive"
    invalid_token = "invalid_token"
    expired_token = "expired_token"
    token_not_found = "token_not_found"
    token_revoked = "token_revoked"
    token_expired = "token_expired"
    token_already_used = "token_already_used"
    password_too_long = "password_too_long"


class AuthError(Exception):
    """Base class for all recoverable authentication failures."""

    kind: ErrorKind
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(AuthError):
    kind = ErrorKind.invalid_credentials
    message = "Invalid email or password."


class AccountLocked(AuthError):
    kind = ErrorKind.account_locked
    message = "Too many failed login attempts."


class AccountInactive(AuthError):
    kind = ErrorKind.account_inactive
    message = "Account is inactive."


class InvalidToken(AuthError):
    kind = ErrorKind.invalid_token
    message = "Access token is invalid."


class ExpiredToken(AuthError):
    kind = ErrorKind.expired_token
    message = "Access token has expired."


class TokenNotFound(AuthError):
    kind = ErrorKind.token_not_found
    message = "Token not found."


class TokenRevoked(AuthError):
    kind = ErrorKind.token_revoked
    message = "Token has been revoked."


class TokenExpired(AuthError):
    kind = ErrorKind.token_expired
    message = "Token has expired."


class TokenAlreadyUsed(AuthError):
    kind = ErrorKind.token_already_used
    message = "Token has already been used."


class PasswordTooLong(AuthError):
    """A new password exceeds bcrypt's 72-byte input limit."""

    kind = ErrorKind.password_too_long
    message = "Password must be at most 72 bytes."


class DuplicateAccount(ValueError):
    """Raised by credential stores when an email is already registered."""
