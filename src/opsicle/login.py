"""Interactive login: password, optional TOTP step, then a session token.

Every attempt leaves a ``user_login`` row whose status only moves forward:
``pending -> mfa_success -> success``, ``pending -> success`` when no MFA is
configured, or ``pending -> failure``.  Transitions are compare-and-set
updates that must touch exactly one row.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from collections.abc import Callable
from enum import Enum

from msgspec import Struct

from .config import LoginConfig
from .exceptions import ErrorKind, OpsicleError
from .models import LoginStatus, MfaType, Org, OrgUser, User, UserLogin, UserMfa
from .observability import AuditLog
from .orm import ORM, utcnow
from .passwords import PasswordHasher
from .sessions import IssuedSession, SessionTokenizer
from .totp import TotpEngine
from .users import find_by_email
from .validation import canonical_email

__all__ = ["LoginFlow", "LoginRequest", "LoginResult", "LoginStep"]

logger = logging.getLogger(__name__)


class LoginStep(str, Enum):
    PENDING_MFA = "pending_mfa"
    SUCCESS = "success"


class LoginRequest(Struct, frozen=True, kw_only=True):
    """Credentials and client metadata of one login attempt."""

    email: str
    password: str
    org_code: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    hostname: str | None = None
    source: str = "api"


class LoginResult(Struct, frozen=True, kw_only=True):
    step: LoginStep
    login_id: str
    mfa_type: MfaType | None = None
    session: IssuedSession | None = None


class LoginFlow:
    """Drive a login attempt through its password and MFA steps."""

    def __init__(
        self,
        orm: ORM,
        hasher: PasswordHasher,
        totp: TotpEngine,
        sessions: SessionTokenizer,
        config: LoginConfig | None = None,
        *,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self._hasher = hasher
        self._totp = totp
        self._sessions = sessions
        self.config = config or LoginConfig()
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def start(self, request: LoginRequest) -> LoginResult:
        """Check the password and either finish the login or ask for a TOTP code.

        Unknown emails, wrong passwords and disabled or deleted accounts all
        fail with ``invalid_credentials``.
        """

        email = canonical_email(request.email)
        user = await find_by_email(self._orm, email)
        if user is None:
            await self._hasher.verify_dummy(request.password)
            self._emit("login.failure", request, entity_id=None, status="failure", data={"reason": "unknown_user"})
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        password_ok = await self._hasher.verify(user.password_hash, request.password)
        if not password_ok or not user.is_live:
            reason = "password_mismatch" if not password_ok else "user_unavailable"
            await self._record_failure(user.id, request, reason)
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        if not user.is_email_verified:
            await self._record_failure(user.id, request, "email_not_verified")
            raise OpsicleError(ErrorKind.FORBIDDEN, "email address is not verified", reasons={"email_not_verified"})
        org = await self._resolve_org(user.id, request.org_code)
        if request.org_code is not None and org is None:
            await self._record_failure(user.id, request, "org_membership")
            raise OpsicleError(ErrorKind.FORBIDDEN, "user is not a member of this org")

        mfa_types = sorted({mfa.type for mfa in await self._orm(UserMfa).list(user_id=user.id, is_verified=True)})
        now = self._clock()
        attempt = await self._orm(UserLogin).create(
            UserLogin(
                user_id=user.id,
                expires_at=now + self.config.row_ttl,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                org_code=org.code if org is not None else None,
                is_pending_mfa=bool(mfa_types),
                status=LoginStatus.PENDING,
                created_at=now,
                last_updated_at=now,
            )
        )
        if mfa_types:
            self._emit("login.start", request, entity_id=user.id, status="pending", resource_id=attempt.id)
            return LoginResult(step=LoginStep.PENDING_MFA, login_id=attempt.id, mfa_type=secrets.choice(mfa_types))
        session = await self._issue(
            attempt,
            user,
            org,
            LoginStatus.PENDING,
            source=request.source,
            hostname=request.hostname,
        )
        return LoginResult(step=LoginStep.SUCCESS, login_id=attempt.id, session=session)

    async def submit_mfa(
        self,
        login_id: str,
        code: str,
        *,
        hostname: str | None = None,
        source: str = "api",
    ) -> LoginResult:
        """Complete a pending login with a TOTP code checked against every verified device."""

        attempt = await self._orm(UserLogin).find(id=login_id)
        if attempt is None:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        if attempt.status is not LoginStatus.PENDING or not attempt.is_pending_mfa:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        now = self._clock()
        if now >= attempt.expires_at:
            await self._orm(UserLogin).update(
                {"status": LoginStatus.FAILURE, "last_updated_at": now},
                id=login_id,
                status=LoginStatus.PENDING,
            )
            raise OpsicleError(ErrorKind.LOGIN_EXPIRED, "login attempt has expired")

        mfas = await self._orm(UserMfa).list(user_id=attempt.user_id, type=MfaType.TOTP, is_verified=True)
        matched = False
        for mfa in mfas:
            if mfa.secret:
                matched |= self._totp.validate(mfa.secret, code, at=now)
        if not matched:
            self._audit.emit(
                "login.mfa",
                verb="update",
                status="failure",
                entity_id=attempt.user_id,
                resource_id=login_id,
                resource_type="user_login",
                src_ip=attempt.ip_address,
                src_ua=attempt.user_agent,
            )
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")

        await self._transition(
            login_id,
            LoginStatus.PENDING,
            {"status": LoginStatus.MFA_SUCCESS, "is_pending_mfa": False, "last_updated_at": now},
            extra={"is_pending_mfa": True},
        )
        self._audit.emit(
            "login.mfa",
            verb="update",
            entity_id=attempt.user_id,
            resource_id=login_id,
            resource_type="user_login",
            src_ip=attempt.ip_address,
            src_ua=attempt.user_agent,
        )
        user = await self._orm(User).get(id=attempt.user_id)
        if not user.is_live:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        org = await self._resolve_org(user.id, attempt.org_code)
        session = await self._issue(attempt, user, org, LoginStatus.MFA_SUCCESS, source=source, hostname=hostname)
        return LoginResult(step=LoginStep.SUCCESS, login_id=login_id, session=session)

    async def logout(self, token: str) -> str | None:
        session_id = await self._sessions.revoke(token)
        if session_id is not None:
            self._audit.emit("session.revoked", verb="delete", resource_id=session_id, resource_type="session")
        return session_id

    async def _issue(
        self,
        attempt: UserLogin,
        user: User,
        org: Org | None,
        expected: LoginStatus,
        *,
        source: str,
        hostname: str | None,
    ) -> IssuedSession:
        now = self._clock()
        if now >= attempt.expires_at:
            raise OpsicleError(ErrorKind.LOGIN_EXPIRED, "login attempt has expired")
        await self._transition(attempt.id, expected, {"status": LoginStatus.SUCCESS, "last_updated_at": now})
        session = await self._sessions.mint(
            user_id=user.id,
            username=user.email,
            user_type=user.type.value,
            org_id=org.id if org is not None else None,
            org_code=org.code if org is not None else None,
            source=source,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            hostname=hostname,
        )
        logger.info("user[%s] logged in with session[%s]", user.id, session.session_id)
        self._audit.emit(
            "login.success",
            verb="create",
            entity_id=user.id,
            resource_id=session.session_id,
            resource_type="session",
            src_ip=attempt.ip_address,
            src_ua=attempt.user_agent,
        )
        return session

    async def _transition(
        self,
        login_id: str,
        expected: LoginStatus,
        values: dict[str, object],
        *,
        extra: dict[str, object] | None = None,
    ) -> None:
        affected = await self._orm(UserLogin).update(values, id=login_id, status=expected, **(extra or {}))
        if affected != 1:
            logger.warning("login[%s] was not in status %s", login_id, expected.value)
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")

    async def _resolve_org(self, user_id: str, org_code: str | None) -> Org | None:
        if org_code is None:
            return None
        org = await self._orm(Org).find(code=org_code, is_deleted=False)
        if org is None:
            return None
        if await self._orm(OrgUser).find(org_id=org.id, user_id=user_id) is None:
            return None
        return org

    async def _record_failure(self, user_id: str, request: LoginRequest, reason: str) -> None:
        now = self._clock()
        attempt = await self._orm(UserLogin).create(
            UserLogin(
                user_id=user_id,
                expires_at=now + self.config.row_ttl,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                org_code=request.org_code,
                status=LoginStatus.FAILURE,
                created_at=now,
                last_updated_at=now,
            )
        )
        self._emit(
            "login.failure",
            request,
            entity_id=user_id,
            status="failure",
            resource_id=attempt.id,
            data={"reason": reason},
        )

    def _emit(
        self,
        event: str,
        request: LoginRequest,
        *,
        entity_id: str | None,
        status: str,
        resource_id: str | None = None,
        data: dict[str, object] | None = None,
    ) -> None:
        self._audit.emit(
            event,
            verb="create",
            status=status,
            entity_id=entity_id,
            resource_id=resource_id,
            resource_type="user_login",
            src_ip=request.ip_address,
            src_ua=request.user_agent,
            data=data,
        )
