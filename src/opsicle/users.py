"""User accounts, email verification and MFA enrolment."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import string
from collections.abc import Callable

from msgspec import Struct

from .email import EmailSender, LoggingEmailSender, deliver, verification_message
from .exceptions import ErrorKind, InvalidInputError, OpsicleError
from .models import MfaType, User, UserMfa, UserType
from .observability import AuditLog
from .orm import ORM, redact, utcnow
from .passwords import PasswordHasher
from .sessions import SessionTokenizer
from .store import expect_rows
from .totp import TotpEngine, render_qr
from .validation import validate_email, validate_password

__all__ = ["TotpEnrolment", "UserService", "find_by_email", "random_code"]

logger = logging.getLogger(__name__)

VERIFICATION_CODE_LENGTH = 32
_CODE_ALPHABET = string.ascii_letters + string.digits


def random_code(length: int = VERIFICATION_CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


async def find_by_email(orm: ORM, email: str) -> User | None:
    """The live user owning ``email``, else the most recently deleted one."""

    live = await orm(User).find(email=email, is_deleted=False)
    if live is not None:
        return live
    deleted = await orm(User).list(email=email, is_deleted=True, order_by=["-deleted_at"])
    return deleted[0] if deleted else None


class TotpEnrolment(Struct, frozen=True, kw_only=True):
    """Everything a user needs to add a new TOTP secret to an authenticator."""

    mfa_id: str
    secret: str
    provisioning_uri: str
    qr: str


class UserService:
    """Account lifecycle: creation, verification, disablement, deletion and MFA."""

    def __init__(
        self,
        orm: ORM,
        hasher: PasswordHasher,
        totp: TotpEngine,
        sessions: SessionTokenizer,
        *,
        email: EmailSender | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self._hasher = hasher
        self._totp = totp
        self._sessions = sessions
        self._email = email or LoggingEmailSender()
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def create(
        self,
        email: str,
        password: str,
        *,
        type: UserType = UserType.USER,
        send_verification: bool = True,
    ) -> User:
        """Register a user with an unverified email; the verification code is emailed, never returned."""

        problems: set[str] = set()
        try:
            email = validate_email(email)
        except InvalidInputError as exc:
            problems |= exc.reasons
        try:
            validate_password(password)
        except InvalidInputError as exc:
            problems |= exc.reasons
        if problems:
            raise InvalidInputError(problems, "invalid user")
        code = random_code()
        user = User(
            email=email,
            password_hash=await self._hasher.hash(password),
            type=type,
            email_verification_code=code,
            created_at=self._clock(),
        )
        await self._orm(User).create(user)
        logger.info("created user[%s]", user.id)
        self._audit.emit("user.created", verb="create", entity_id=user.id, resource_id=user.id)
        if send_verification:
            await deliver(self._email, verification_message(email, code))
        return redact(user)

    async def get(self, user_id: str) -> User:
        return redact(await self._orm(User).get(id=user_id))

    async def get_by_email(self, email: str) -> User:
        user = await find_by_email(self._orm, email.strip().lower())
        if user is None:
            raise OpsicleError(ErrorKind.NOT_FOUND, "user not found")
        return redact(user)

    async def verify_email(self, code: str) -> User:
        """Mark the user owning ``code`` as verified; the code is cleared so it works once."""

        if not code:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid verification code")
        user = await self._orm(User).find(email_verification_code=code, is_email_verified=False)
        if user is None:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid verification code")
        affected = await self._orm(User).update(
            {"is_email_verified": True, "email_verification_code": None},
            id=user.id,
            email_verification_code=code,
        )
        expect_rows(affected, action="verify email")
        self._audit.emit("user.email_verified", verb="update", entity_id=user.id, resource_id=user.id)
        return await self.get(user.id)

    async def admin_verify(self, user_id: str, *, actor_id: str | None = None) -> None:
        affected = await self._orm(User).update(
            {"is_email_verified": True, "email_verification_code": None}, id=user_id
        )
        expect_rows(affected, action="verify user")
        self._audit.emit("user.email_verified", verb="update", entity_id=actor_id, resource_id=user_id)

    async def disable(self, user_id: str, *, actor_id: str | None = None) -> None:
        affected = await self._orm(User).update({"is_disabled": True, "disabled_at": self._clock()}, id=user_id)
        expect_rows(affected, action="disable user")
        await self._sessions.revoke_all(user_id)
        self._audit.emit("user.disabled", verb="update", entity_id=actor_id, resource_id=user_id)

    async def enable(self, user_id: str, *, actor_id: str | None = None) -> None:
        affected = await self._orm(User).update({"is_disabled": False, "disabled_at": None}, id=user_id)
        expect_rows(affected, action="enable user")
        self._audit.emit("user.enabled", verb="update", entity_id=actor_id, resource_id=user_id)

    async def delete(self, user_id: str, *, actor_id: str | None = None) -> None:
        """Soft delete; the row stays and its address can be registered again."""

        affected = await self._orm(User).update(
            {"is_deleted": True, "deleted_at": self._clock()}, id=user_id, is_deleted=False
        )
        expect_rows(affected, action="delete user")
        await self._sessions.revoke_all(user_id)
        self._audit.emit("user.deleted", verb="delete", entity_id=actor_id, resource_id=user_id)

    async def set_password(self, user_id: str, new_password: str) -> None:
        """Replace the password hash and end every session of the user."""

        validate_password(new_password)
        password_hash = await self._hasher.hash(new_password)
        affected = await self._orm(User).update({"password_hash": password_hash}, id=user_id)
        expect_rows(affected, action="update password")
        revoked = await self._sessions.revoke_all(user_id)
        logger.debug("revoked %d session(s) of user[%s] after password update", revoked, user_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        user = await self._orm(User).get(id=user_id)
        if not user.is_live or not await self._hasher.verify(user.password_hash, current_password):
            self._audit.emit(
                "user.password_changed",
                verb="update",
                status="failure",
                entity_id=user_id,
                resource_id=user_id,
                src_ip=ip_address,
                src_ua=user_agent,
            )
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        await self.set_password(user_id, new_password)
        self._audit.emit(
            "user.password_changed",
            verb="update",
            entity_id=user_id,
            resource_id=user_id,
            src_ip=ip_address,
            src_ua=user_agent,
        )

    async def create_totp(self, user_id: str, password: str, *, secret: str | None = None) -> TotpEnrolment:
        """Start TOTP enrolment after re-checking the password; the MFA stays unusable until verified."""

        user = await self._orm(User).get(id=user_id)
        if not user.is_live or not await self._hasher.verify(user.password_hash, password):
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid credentials")
        secret = (secret or self._totp.generate_secret()).upper()
        now = self._clock()
        mfa = await self._orm(UserMfa).create(
            UserMfa(user_id=user_id, type=MfaType.TOTP, secret=secret, created_at=now, last_updated_at=now)
        )
        uri = self._totp.provisioning_uri(secret, user.email)
        self._audit.emit("mfa.created", verb="create", entity_id=user_id, resource_id=mfa.id, resource_type="user_mfa")
        return TotpEnrolment(mfa_id=mfa.id, secret=secret, provisioning_uri=uri, qr=render_qr(uri))

    async def verify_totp(self, user_id: str, mfa_id: str, code: str) -> UserMfa:
        mfa = await self._orm(UserMfa).get(id=mfa_id, user_id=user_id)
        if mfa.is_verified:
            raise OpsicleError(ErrorKind.INVALID_INPUT, "mfa already verified", reasons={"mfa_already_verified"})
        if mfa.secret is None or not self._totp.validate(mfa.secret, code):
            self._audit.emit(
                "mfa.verified", verb="update", status="failure", entity_id=user_id, resource_id=mfa_id
            )
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid mfa code")
        now = self._clock()
        affected = await self._orm(UserMfa).update(
            {"is_verified": True, "verified_at": now, "last_updated_at": now},
            id=mfa_id,
            is_verified=False,
        )
        expect_rows(affected, action="verify mfa")
        self._audit.emit("mfa.verified", verb="update", entity_id=user_id, resource_id=mfa_id, resource_type="user_mfa")
        return redact(await self._orm(UserMfa).get(id=mfa_id))

    async def list_mfas(self, user_id: str, *, verified_only: bool = True) -> list[UserMfa]:
        filters: dict[str, object] = {"user_id": user_id}
        if verified_only:
            filters["is_verified"] = True
        return [redact(mfa) for mfa in await self._orm(UserMfa).list(order_by=["created_at"], **filters)]

    async def totp_secrets(self, user_id: str) -> list[str]:
        """Secrets of every verified TOTP device; used by the login MFA step only."""

        mfas = await self._orm(UserMfa).list(user_id=user_id, type=MfaType.TOTP, is_verified=True)
        return [mfa.secret for mfa in mfas if mfa.secret]
