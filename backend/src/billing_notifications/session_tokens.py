"""Bearer session tokens naming the calling user and their company.

A token reads ``zb1.<claims>.<mac>``.  ``claims`` is base64url JSON with the
keys ``sub`` (user id), ``cid`` (company id, absent for users without a
company), ``iat`` and ``exp`` (epoch seconds).  ``mac`` is the base64url
HMAC-SHA256 of ``zb1.<claims>`` under the session secret.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

TOKEN_VERSION = "zb1"


class SessionTokenError(ValueError):
    """Raised when a bearer token cannot identify a caller."""


@dataclass(frozen=True)
class SessionTokenPayload:
    user_id: str
    expires_at: datetime
    company_id: str | None = None
    issued_at: datetime | None = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError) as exc:
        raise SessionTokenError("token segment is not base64url") from exc


class SessionTokenCodec:
    def __init__(self, secret: str, *, ttl_minutes: int = 120) -> None:
        if not secret:
            raise SessionTokenError("session token secret is empty")
        self._key = secret.encode("utf-8")
        self._ttl = timedelta(minutes=ttl_minutes)

    def _mac(self, signed_part: str) -> str:
        digest = hmac.new(self._key, signed_part.encode("ascii"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, user_id: str, company_id: str | None = None, *, now: datetime | None = None) -> str:
        subject = user_id.strip()
        if not subject:
            raise SessionTokenError("token subject is empty")
        issued_at = now or datetime.now(timezone.utc)
        claims: dict[str, Any] = {
            "sub": subject,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._ttl).timestamp()),
        }
        if company_id:
            claims["cid"] = company_id
        signed_part = f"{TOKEN_VERSION}.{_encode_segment(json.dumps(claims, separators=(',', ':')).encode('utf-8'))}"
        return f"{signed_part}.{self._mac(signed_part)}"

    def resolve(self, token: str, *, now: datetime | None = None) -> SessionTokenPayload:
        parts = token.split(".")
        if len(parts) != 3:
            raise SessionTokenError("invalid token format")
        version, claims_segment, mac = parts
        if version != TOKEN_VERSION:
            raise SessionTokenError(f"unsupported token version {version!r}")
        if not hmac.compare_digest(mac, self._mac(f"{version}.{claims_segment}")):
            raise SessionTokenError("token signature mismatch")

        try:
            claims = json.loads(_decode_segment(claims_segment))
        except ValueError as exc:
            raise SessionTokenError("token claims are not JSON") from exc
        if not isinstance(claims, dict):
            raise SessionTokenError("token claims are not an object")

        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise SessionTokenError("token subject missing")
        if not isinstance(claims.get("exp"), int):
            raise SessionTokenError("token expiration missing")

        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        if expires_at <= (now or datetime.now(timezone.utc)):
            raise SessionTokenError("token expired")
        issued_at = claims.get("iat")
        return SessionTokenPayload(
            user_id=subject,
            company_id=str(claims.get("cid") or "").strip() or None,
            expires_at=expires_at,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc) if isinstance(issued_at, int) else None,
        )
