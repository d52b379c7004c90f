"""
auth/tokens.py -- Token Codec: signed access tokens and opaque token helpers.

Security design decisions:
  JWT: python-jose with HS256 by default. Access tokens carry the account id
       (sub), email, role, issued-at and expiry. They are never persisted and
       there is no server-side revocation list -- their short lifetime is the
       only defense. The refresh ledger covers forced session termination.

  Verification: signature and expiry are checked in the same jwt.decode()
       call. A bad signature always wins over expiry, so a forged token that
       also happens to be expired reports InvalidToken, never ExpiredToken.
       ExpiredToken is the only kind a client may answer with a refresh.

  Opaque tokens: refresh and reset tokens are secrets.token_urlsafe(32)
       values (256 bits of entropy). Stores only ever see
       HMAC-SHA256(secret_key, raw) so a leaked DB cannot be replayed without
       also knowing the key, and lookup stays O(1).

  The signing key lives in a frozen TokenConfig injected at construction.
       It is excluded from repr() so it cannot end up in a log line.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ExpiredToken, InvalidToken
from auth.models import AccessClaims, Account, Role

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authcore.auth.tokens")

_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenConfig:
    """Immutable signing configuration for the Token Codec."""

    secret_key: str = field(repr=False)
    algorithm: str = "HS256"
    access_token_expire_seconds: int = 900

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenConfig:
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.jwt_algorithm,
            access_token_expire_seconds=settings.access_token_expire_seconds,
        )


def generate_opaque_token() -> str:
    """Return a URL-safe random token value with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


class TokenCodec:
    """Creates and verifies access tokens. Stateless apart from its config.

    Usage:
        codec = TokenCodec(TokenConfig(secret_key=settings.secret_key))
        token = codec.issue_access_token(account)
        claims = codec.verify_access_token(token)   # raises InvalidToken / ExpiredToken
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config

    @property
    def access_token_expire_seconds(self) -> int:
        return self._config.access_token_expire_seconds

    def issue_access_token(self, account: Account, now: datetime | None = None) -> str:
        """Encode a signed access token for the given account."""
        issued = now or datetime.now(timezone.utc)
        expires = issued + timedelta(seconds=self._config.access_token_expire_seconds)
        payload = {
            "sub": account.id,
            "email": account.email,
            "role": Role(account.role).value,
            "typ": _TOKEN_TYPE,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return jwt.encode(payload, self._config.secret_key, algorithm=self._config.algorithm)

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify signature and expiry and return the embedded claims.

        Raises ExpiredToken when the signature is valid but the token is past
        its expiry, InvalidToken for every other failure (bad signature,
        malformed token, wrong token type, missing or unknown claims).
        """
        try:
            payload = jwt.decode(token, self._config.secret_key, algorithms=[self._config.algorithm])
        except ExpiredSignatureError:
            raise ExpiredToken() from None
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            raise InvalidToken() from None
        return _claims_from_payload(payload)

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """Return the token's claims WITHOUT verifying signature or expiry.

        For diagnostics only (e.g. logging which account an expired token
        belonged to). Never make an authorization decision on the result.
        """
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            raise InvalidToken() from None

    def fingerprint(self, raw_token: str) -> str:
        """Return HMAC-SHA256(secret_key, raw_token) as a hex string.

        Deterministic, so stores can look tokens up by fingerprint without
        ever holding the raw value.
        """
        return hmac.new(
            self._config.secret_key.encode(),
            raw_token.encode(),
            hashlib.sha256,
        ).hexdigest()


def _claims_from_payload(payload: dict[str, Any]) -> AccessClaims:
    if payload.get("typ") != _TOKEN_TYPE:
        logger.debug("Access token rejected: typ=%r", payload.get("typ"))
        raise InvalidToken()
    try:
        return AccessClaims(
            account_id=str(payload["sub"]),
            email=payload["email"],
            role=Role(payload["role"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Access token rejected: bad claims (%s)", type(exc).__name__)
        raise InvalidToken() from None
