"""Password reset by emailed code, and password change for signed-in users."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable

from .config import PasswordResetConfig
from .email import EmailSender, LoggingEmailSender, deliver, password_reset_message
from .exceptions import ErrorKind, OpsicleError
from .models import PasswordResetStatus, User, UserPasswordReset
from .observability import AuditLog
from .orm import ORM, utcnow
from .passwords import PasswordHasher
from .sessions import SessionTokenizer
from .store import expect_rows
from .users import UserService, find_by_email, random_code
from .validation import validate_email, validate_password

__all__ = ["PasswordResetFlow"]

logger = logging.getLogger(__name__)


class PasswordResetFlow:
    """Request, complete and authenticated-change flows for passwords."""

    def __init__(
        self,
        orm: ORM,
        hasher: PasswordHasher,
        users: UserService,
        sessions: SessionTokenizer,
        config: PasswordResetConfig | None = None,
        *,
        email: EmailSender | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self._hasher = hasher
        self._users = users
        self._sessions = sessions
        self.config = config or PasswordResetConfig()
        self._email = email or LoggingEmailSender()
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def request(
        self,
        email: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Email a reset code when ``email`` belongs to a live user.

        The outcome is the same whether or not the address is known.
        """

        email = validate_email(email)
        user = await find_by_email(self._orm, email)
        # both branches pay for one argon2 pass
        await self._hasher.verify_dummy(email)
        if user is None or not user.is_live:
            logger.debug("password reset requested for an unknown address")
            return
        now = self._clock()
        code = random_code(self.config.code_length)
        reset = await self._orm(UserPasswordReset).create(
            UserPasswordReset(
                user_id=user.id,
                expires_at=now + self.config.ttl,
                verification_code=code,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
                last_updated_at=now,
            )
        )
        minutes = max(int(self.config.ttl.total_seconds() // 60), 1)
        await deliver(self._email, password_reset_message(user.email, code, ip_address=ip_address, minutes=minutes))
        self._audit.emit(
            "password.reset_requested",
            verb="create",
            entity_id=user.id,
            resource_id=reset.id,
            resource_type="user_password_reset",
            src_ip=ip_address,
            src_ua=user_agent,
        )

    async def complete(
        self,
        verification_code: str,
        new_password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Set a new password with a reset code; the code works once and ends every session."""

        reset = None
        if verification_code:
            reset = await self._orm(UserPasswordReset).find(verification_code=verification_code)
        if reset is None or reset.status is not PasswordResetStatus.PENDING:
            raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid verification code")
        now = self._clock()
        if now >= reset.expires_at:
            await self._orm(UserPasswordReset).update(
                {"status": PasswordResetStatus.EXPIRED, "last_updated_at": now},
                id=reset.id,
                status=PasswordResetStatus.PENDING,
            )
            raise OpsicleError(ErrorKind.LOGIN_EXPIRED, "password reset has expired")
        validate_password(new_password)
        password_hash = await self._hasher.hash(new_password)
        async with self._orm.transaction() as tx:
            affected = await tx(UserPasswordReset).update(
                {"status": PasswordResetStatus.SUCCESS, "last_updated_at": now},
                id=reset.id,
                status=PasswordResetStatus.PENDING,
            )
            if affected != 1:
                raise OpsicleError(ErrorKind.INVALID_CREDENTIALS, "invalid verification code")
            updated = await tx(User).update({"password_hash": password_hash}, id=reset.user_id)
            expect_rows(updated, action="reset password")
        revoked = await self._sessions.revoke_all(reset.user_id)
        logger.info("user[%s] reset their password, %d session(s) revoked", reset.user_id, revoked)
        self._audit.emit(
            "password.reset",
            verb="update",
            entity_id=reset.user_id,
            resource_id=reset.id,
            resource_type="user_password_reset",
            src_ip=ip_address,
            src_ua=user_agent,
        )

    async def change(self, token: str, current_password: str, new_password: str) -> None:
        """Change the password of the session's user after re-checking the current one."""

        session = await self._sessions.validate(token)
        await self._users.change_password(
            session.user_id,
            current_password,
            new_password,
            ip_address=session.source_ip,
            user_agent=session.user_agent,
        )
