"""Opsicle control-plane core: identity, sessions, authorization and org certificate issuance."""

from .bootstrap import OpsicleCore, build_core
from .cache import Cache, MemoryCache
from .certificates import (
    CertificateAuthorityService,
    CertificateBundle,
    describe_key_usage,
    generate_ca,
    issue_leaf,
    verify_leaf,
)
from .config import (
    CertificateConfig,
    LoginConfig,
    OpsicleConfig,
    PasswordHashConfig,
    PasswordResetConfig,
    SessionConfig,
    TotpConfig,
    load_config,
    load_config_from_env,
)
from .email import EmailMessage, EmailSender, LoggingEmailSender
from .exceptions import ErrorKind, InvalidInputError, OpsicleError
from .login import LoginFlow, LoginRequest, LoginResult, LoginStep
from .models import (
    LoginStatus,
    MfaType,
    Org,
    OrgCertificateAuthority,
    OrgRole,
    OrgRolePermission,
    OrgToken,
    OrgTokenRole,
    OrgType,
    OrgUser,
    OrgUserRole,
    PasswordResetStatus,
    User,
    UserLogin,
    UserMfa,
    UserPasswordReset,
    UserType,
)
from .observability import AuditEvent, AuditLog, configure_logging
from .orgs import OrgService
from .orm import ORM, DatabaseModel, Model, ModelManager, ModelRegistry, default_registry, model
from .password_reset import PasswordResetFlow
from .passwords import PasswordHasher
from .permissions import (
    Action,
    MemberSubject,
    MemberTier,
    PermissionEvaluator,
    Resource,
    RolePermissions,
    TokenSubject,
)
from .sessions import IssuedSession, Session, SessionTokenizer
from .store import MemoryStore, Store
from .tokens import IssuedOrgToken, OrgTokenIssuer
from .totp import TotpEngine
from .users import TotpEnrolment, UserService

__all__ = [
    "Action",
    "AuditEvent",
    "AuditLog",
    "Cache",
    "CertificateAuthorityService",
    "CertificateBundle",
    "CertificateConfig",
    "DatabaseModel",
    "EmailMessage",
    "EmailSender",
    "ErrorKind",
    "InvalidInputError",
    "IssuedOrgToken",
    "IssuedSession",
    "LoggingEmailSender",
    "LoginConfig",
    "LoginFlow",
    "LoginRequest",
    "LoginResult",
    "LoginStatus",
    "LoginStep",
    "MemberSubject",
    "MemberTier",
    "MemoryCache",
    "MemoryStore",
    "MfaType",
    "Model",
    "ModelManager",
    "ModelRegistry",
    "ORM",
    "OpsicleConfig",
    "OpsicleCore",
    "OpsicleError",
    "Org",
    "OrgCertificateAuthority",
    "OrgRole",
    "OrgRolePermission",
    "OrgService",
    "OrgToken",
    "OrgTokenIssuer",
    "OrgTokenRole",
    "OrgType",
    "OrgUser",
    "OrgUserRole",
    "PasswordHashConfig",
    "PasswordHasher",
    "PasswordResetConfig",
    "PasswordResetFlow",
    "PasswordResetStatus",
    "PermissionEvaluator",
    "Resource",
    "RolePermissions",
    "Session",
    "SessionConfig",
    "SessionTokenizer",
    "Store",
    "TokenSubject",
    "TotpConfig",
    "TotpEngine",
    "TotpEnrolment",
    "User",
    "UserLogin",
    "UserMfa",
    "UserPasswordReset",
    "UserService",
    "UserType",
    "build_core",
    "configure_logging",
    "default_registry",
    "describe_key_usage",
    "generate_ca",
    "issue_leaf",
    "load_config",
    "model",
    "verify_leaf",
]
