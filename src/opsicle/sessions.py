"""Signed session tokens coupled to a cache entry.

A session is valid only while both halves agree: the HS256 token must carry a
good signature and unexpired claims, and the cache must still map
``<prefix>:<user_id>:<session_id>`` to the same session id.  Logging out
deletes the cache entry and leaves the token to fail on its next use.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import hashlib
import hmac
import logging
from collections.abc import Callable, Mapping
from typing import Any

import msgspec
from msgspec import Struct

from .cache import Cache
from .config import SessionConfig
from .exceptions import ErrorKind, OpsicleError
from .orm import new_id, utcnow

__all__ = [
    "IssuedSession",
    "Session",
    "SessionClaims",
    "SessionTokenizer",
    "session_cache_key",
]

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_HEADER = {"alg": _ALGORITHM, "typ": "JWT"}


class SessionClaims(Struct, frozen=True, kw_only=True):
    """Registered and application claims carried by a session token."""

    sub: str
    aud: list[str]
    iss: str
    jti: str
    iat: int
    exp: int
    user_id: str = msgspec.field(name="userId")
    username: str
    user_type: str | None = msgspec.field(default=None, name="userType")
    org_id: str | None = msgspec.field(default=None, name="orgId")
    org_code: str | None = msgspec.field(default=None, name="orgCode")
    ext: dict[str, str] = msgspec.field(default_factory=dict)

    @property
    def issued_at(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.iat, tz=dt.UTC)

    @property
    def expires_at(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.exp, tz=dt.UTC)


class IssuedSession(Struct, frozen=True):
    """Token handed to the caller once a session has been minted."""

    session_id: str
    token: str
    expires_at: dt.datetime


class Session(Struct, frozen=True, kw_only=True):
    """Read view of a validated session."""

    id: str
    started_at: dt.datetime
    expires_at: dt.datetime
    time_left: dt.timedelta
    user_id: str
    username: str
    user_type: str | None = None
    org_id: str | None = None
    org_code: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    hostname: str | None = None


def session_cache_key(prefix: str, user_id: str, session_id: str) -> str:
    return f"{prefix}:{user_id}:{session_id}"


class SessionTokenizer:
    """Mint, validate and revoke HS256 session tokens."""

    def __init__(
        self,
        config: SessionConfig,
        cache: Cache,
        *,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        if len(config.signing_secret.encode()) < 32:
            raise OpsicleError(
                ErrorKind.INVALID_INPUT,
                "session signing secret must be at least 32 bytes",
                reasons={"session_signing_secret_too_short"},
            )
        self.config = config
        self._secret = config.signing_secret.encode()
        self._cache = cache
        self._clock = clock or utcnow

    async def mint(
        self,
        *,
        user_id: str,
        username: str,
        user_type: str | None = None,
        org_id: str | None = None,
        org_code: str | None = None,
        source: str = "api",
        ip_address: str | None = None,
        user_agent: str | None = None,
        hostname: str | None = None,
        ttl: dt.timedelta | None = None,
    ) -> IssuedSession:
        lifetime = ttl or self.config.ttl
        if lifetime <= dt.timedelta(0):
            raise OpsicleError(ErrorKind.INVALID_INPUT, "session ttl must be positive", reasons={"session_ttl_invalid"})
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(lifetime.total_seconds())
        session_id = new_id()
        ext = {
            key: value
            for key, value in (("ip", ip_address), ("ua", user_agent), ("hn", hostname))
            if value is not None
        }
        claims = SessionClaims(
            sub=self.config.subject,
            aud=[source],
            iss=self.config.issuer,
            jti=session_id,
            iat=issued_at,
            exp=expires_at,
            user_id=user_id,
            username=username,
            user_type=user_type,
            org_id=org_id,
            org_code=org_code,
            ext=ext,
        )
        token = self._sign(claims)
        await self._cache.set(
            session_cache_key(self.config.cache_prefix, user_id, session_id),
            session_id,
            dt.timedelta(seconds=expires_at - issued_at),
        )
        logger.debug("minted session[%s] for user[%s]", session_id, user_id)
        return IssuedSession(
            session_id=session_id,
            token=token,
            expires_at=dt.datetime.fromtimestamp(expires_at, tz=dt.UTC),
        )

    def decode(self, token: str) -> SessionClaims:
        """Verify signature and standard claims without consulting the cache."""

        raw = self._verified_payload(token)
        claims = self._parse_claims(raw)
        now = int(self._clock().timestamp())
        if now >= claims.exp:
            raise OpsicleError(ErrorKind.TOKEN_EXPIRED, "session token has expired")
        if claims.iss != self.config.issuer:
            raise OpsicleError(ErrorKind.TOKEN_CLAIMS_INVALID, "unexpected issuer")
        if not claims.sub or not claims.jti or not claims.user_id:
            raise OpsicleError(ErrorKind.TOKEN_CLAIMS_INVALID, "missing subject claims")
        if claims.iat > now + 60:
            raise OpsicleError(ErrorKind.TOKEN_CLAIMS_INVALID, "token issued in the future")
        return claims

    async def validate(self, token: str) -> Session:
        """Return the session behind ``token`` or raise one of the session error kinds."""

        claims = self.decode(token)
        key = session_cache_key(self.config.cache_prefix, claims.user_id, claims.jti)
        cached = await self._cache.get(key)
        if cached is None or not hmac.compare_digest(cached, claims.jti):
            raise OpsicleError(ErrorKind.SESSION_REVOKED, "session is no longer active")
        return self._to_session(claims)

    async def describe(self, token: str) -> Session:
        """Alias of :meth:`validate` for callers that only display the session."""

        return await self.validate(token)

    async def revoke(self, token: str) -> str | None:
        """Log a token out; returns the session id, or ``None`` when the token is unusable.

        Expired tokens and tokens with invalid claims still have their cache
        entry removed as long as the signature verifies.
        """

        try:
            raw = self._verified_payload(token)
        except OpsicleError as exc:
            logger.warning("failed to delete session: %s", exc)
            return None
        user_id = raw.get("userId")
        session_id = raw.get("jti")
        if not isinstance(user_id, str) or not isinstance(session_id, str) or not user_id or not session_id:
            logger.warning("failed to delete session: token lacks session identifiers")
            return None
        await self._cache.delete(session_cache_key(self.config.cache_prefix, user_id, session_id))
        logger.debug("session[%s] has been deleted", session_id)
        return session_id

    async def list_sessions(self, user_id: str) -> list[str]:
        prefix = session_cache_key(self.config.cache_prefix, user_id, "")
        keys = await self._cache.scan(prefix)
        return [key[len(prefix) :] for key in keys]

    async def revoke_all(self, user_id: str) -> int:
        """Remove every cached session of ``user_id``; returns how many were removed."""

        prefix = session_cache_key(self.config.cache_prefix, user_id, "")
        keys = await self._cache.scan(prefix)
        for key in keys:
            await self._cache.delete(key)
        return len(keys)

    def _sign(self, claims: SessionClaims) -> str:
        header_segment = _b64url_encode(msgspec.json.encode(_HEADER))
        payload_segment = _b64url_encode(msgspec.json.encode(claims))
        signing_input = f"{header_segment}.{payload_segment}".encode()
        signature = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        return f"{header_segment}.{payload_segment}.{_b64url_encode(signature)}"

    def _verified_payload(self, token: str) -> Mapping[str, Any]:
        parts = token.strip().split(".")
        if len(parts) != 3:
            raise OpsicleError(ErrorKind.TOKEN_SIGNATURE, "malformed token")
        header_segment, payload_segment, signature_segment = parts
        header = _decode_segment(header_segment, ErrorKind.TOKEN_SIGNATURE)
        if header.get("alg") != _ALGORITHM:
            raise OpsicleError(ErrorKind.TOKEN_SIGNATURE, "unexpected signing method")
        try:
            signature = _b64url_decode(signature_segment)
        except (binascii.Error, ValueError) as exc:
            raise OpsicleError(ErrorKind.TOKEN_SIGNATURE, "malformed signature") from exc
        signing_input = f"{header_segment}.{payload_segment}".encode()
        expected = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(signature, expected):
            raise OpsicleError(ErrorKind.TOKEN_SIGNATURE, "signature mismatch")
        return _decode_segment(payload_segment, ErrorKind.TOKEN_CLAIMS_INVALID)

    @staticmethod
    def _parse_claims(raw: Mapping[str, Any]) -> SessionClaims:
        try:
            return msgspec.convert(dict(raw), type=SessionClaims)
        except msgspec.ValidationError as exc:
            raise OpsicleError(ErrorKind.TOKEN_CLAIMS_INVALID, str(exc)) from exc

    def _to_session(self, claims: SessionClaims) -> Session:
        now = self._clock()
        return Session(
            id=claims.jti,
            started_at=claims.issued_at,
            expires_at=claims.expires_at,
            time_left=max(claims.expires_at - now, dt.timedelta(0)),
            user_id=claims.user_id,
            username=claims.username,
            user_type=claims.user_type,
            org_id=claims.org_id,
            org_code=claims.org_code,
            source_ip=claims.ext.get("ip"),
            user_agent=claims.ext.get("ua"),
            hostname=claims.ext.get("hn"),
        )


def _decode_segment(segment: str, kind: ErrorKind) -> Mapping[str, Any]:
    try:
        decoded = msgspec.json.decode(_b64url_decode(segment))
    except (binascii.Error, ValueError, msgspec.DecodeError) as exc:
        raise OpsicleError(kind, "malformed token segment") from exc
    if not isinstance(decoded, dict):
        raise OpsicleError(kind, "malformed token segment")
    return decoded


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * ((4 - len(data) % 4) % 4)
    return base64.urlsafe_b64decode(data + padding)
