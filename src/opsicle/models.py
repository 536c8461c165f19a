"""Persisted records of the Opsicle core with UUID identifiers."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

import msgspec

from .orm import DatabaseModel, model
from .permissions import MemberTier, Resource


class UserType(str, Enum):
    USER = "user"
    SUPPORT_USER = "support_user"
    SYSTEM_ADMIN = "system_admin"


@model(
    table="users",
    unique=(("email",),),
    unique_where={"is_deleted": False},
    redacted_fields=("password_hash", "email_verification_code"),
)
class User(DatabaseModel):
    email: str
    password_hash: str | None = None
    type: UserType = UserType.USER
    is_email_verified: bool = False
    email_verification_code: str | None = None
    is_disabled: bool = False
    disabled_at: dt.datetime | None = None
    is_deleted: bool = False
    deleted_at: dt.datetime | None = None

    @property
    def is_live(self) -> bool:
        return not self.is_disabled and not self.is_deleted


class MfaType(str, Enum):
    TOTP = "totp"


@model(table="user_mfa", references={"user_id": "users"}, redacted_fields=("secret",))
class UserMfa(DatabaseModel):
    user_id: str
    type: MfaType
    secret: str | None = None
    config: dict[str, Any] = msgspec.field(default_factory=dict)
    is_verified: bool = False
    verified_at: dt.datetime | None = None
    last_updated_at: dt.datetime | None = None


class LoginStatus(str, Enum):
    PENDING = "pending"
    MFA_SUCCESS = "mfa_success"
    SUCCESS = "success"
    FAILURE = "failure"


@model(table="user_login", references={"user_id": "users"})
class UserLogin(DatabaseModel):
    user_id: str
    expires_at: dt.datetime
    ip_address: str | None = None
    user_agent: str | None = None
    org_code: str | None = None
    is_pending_mfa: bool = False
    status: LoginStatus = LoginStatus.PENDING
    last_updated_at: dt.datetime | None = None


class PasswordResetStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    EXPIRED = "expired"


@model(
    table="user_password_reset",
    unique=(("verification_code",),),
    references={"user_id": "users"},
    redacted_fields=("verification_code",),
)
class UserPasswordReset(DatabaseModel):
    user_id: str
    expires_at: dt.datetime
    verification_code: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    status: PasswordResetStatus = PasswordResetStatus.PENDING
    last_updated_at: dt.datetime | None = None


class OrgType(str, Enum):
    ADMIN = "admin"
    DEDICATED = "dedicated"
    TENANT = "tenant"


@model(table="orgs", unique=(("code",),))
class Org(DatabaseModel):
    name: str
    code: str
    type: OrgType = OrgType.TENANT
    icon: str | None = None
    logo: str | None = None
    motd: str | None = None
    is_disabled: bool = False
    is_deleted: bool = False
    created_by: str | None = None


@model(
    table="org_users",
    unique=(("org_id", "user_id"),),
    references={"org_id": "orgs", "user_id": "users"},
)
class OrgUser(DatabaseModel):
    org_id: str
    user_id: str
    member_type: MemberTier = MemberTier.MEMBER


@model(table="org_roles", unique=(("org_id", "name"),), references={"org_id": "orgs"})
class OrgRole(DatabaseModel):
    org_id: str
    name: str
    created_by: str | None = None
    last_updated_at: dt.datetime | None = None


@model(
    table="org_role_permissions",
    unique=(("org_role_id", "resource"),),
    references={"org_role_id": "org_roles"},
)
class OrgRolePermission(DatabaseModel):
    org_role_id: str
    resource: Resource
    allows: int = 0
    denys: int = 0


@model(
    table="org_user_roles",
    unique=(("org_id", "user_id", "org_role_id"),),
    references={"org_id": "orgs", "user_id": "users", "org_role_id": "org_roles"},
)
class OrgUserRole(DatabaseModel):
    org_id: str
    user_id: str
    org_role_id: str
    assigned_by: str | None = None


@model(table="org_ca", references={"org_id": "orgs"}, redacted_fields=("private_key_b64",))
class OrgCertificateAuthority(DatabaseModel):
    org_id: str
    cert_b64: str
    expires_at: dt.datetime
    private_key_b64: str | None = None
    is_deactivated: bool = False


@model(
    table="org_tokens",
    references={"org_id": "orgs"},
    redacted_fields=("certificate_b64", "private_key_b64", "api_key_hash"),
)
class OrgToken(DatabaseModel):
    org_id: str
    name: str
    description: str | None = None
    certificate_b64: str | None = None
    private_key_b64: str | None = None
    api_key_hash: str | None = None
    created_by: str | None = None
    last_updated_by: str | None = None
    last_updated_at: dt.datetime | None = None


@model(
    table="org_token_roles",
    unique=(("org_token_id",),),
    references={"org_token_id": "org_tokens", "org_role_id": "org_roles"},
)
class OrgTokenRole(DatabaseModel):
    org_token_id: str
    org_role_id: str


__all__ = [
    "LoginStatus",
    "MfaType",
    "Org",
    "OrgCertificateAuthority",
    "OrgRole",
    "OrgRolePermission",
    "OrgToken",
    "OrgTokenRole",
    "OrgType",
    "OrgUser",
    "OrgUserRole",
    "PasswordResetStatus",
    "User",
    "UserLogin",
    "UserMfa",
    "UserPasswordReset",
    "UserType",
]
