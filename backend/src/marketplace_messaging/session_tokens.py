from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

TOKEN_PREFIX = "mm1"


class SessionTokenError(ValueError):
    """Raised when a caller session token is invalid or expired."""


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    expires_at: datetime


def _pack(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unpack(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class SessionTokenSigner:
    """Issues and verifies ``mm1.<claims>.<mac>`` bearer tokens for marketplace users."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise SessionTokenError("session token secret is empty")
        self._key = secret.encode("utf-8")

    def _mac(self, body: str) -> str:
        return _pack(hmac.digest(self._key, body.encode("ascii"), hashlib.sha256))

    def issue(self, user_id: str, *, ttl: timedelta, now: datetime | None = None) -> str:
        subject = user_id.strip()
        if not subject:
            raise SessionTokenError("token user_id missing")
        expires_at = (now or datetime.now(timezone.utc)) + ttl
        claims = json.dumps({"sub": subject, "exp": int(expires_at.timestamp())}, separators=(",", ":"))
        body = f"{TOKEN_PREFIX}.{_pack(claims.encode('utf-8'))}"
        return f"{body}.{self._mac(body)}"

    def verify(self, token: str, *, now: datetime | None = None) -> SessionClaims:
        prefix, _, rest = token.partition(".")
        encoded_claims, _, mac = rest.partition(".")
        if prefix != TOKEN_PREFIX or not encoded_claims or not mac:
            raise SessionTokenError("invalid token format")
        if not hmac.compare_digest(mac, self._mac(f"{prefix}.{encoded_claims}")):
            raise SessionTokenError("token signature mismatch")

        try:
            claims = json.loads(_unpack(encoded_claims))
            subject = str(claims["sub"]).strip()
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (ValueError, TypeError, KeyError) as exc:
            raise SessionTokenError("token claims are malformed") from exc
        if not subject:
            raise SessionTokenError("token user_id missing")
        if expires_at <= (now or datetime.now(timezone.utc)):
            raise SessionTokenError("token expired")
        return SessionClaims(user_id=subject, expires_at=expires_at)
