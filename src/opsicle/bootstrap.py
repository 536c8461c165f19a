"""Wire the core services onto one set of collaborators."""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass

from .cache import Cache, MemoryCache
from .certificates import CertificateAuthorityService
from .config import OpsicleConfig
from .email import EmailSender, LoggingEmailSender
from .login import LoginFlow
from .observability import AuditLog
from .orgs import OrgService
from .orm import ORM, ModelRegistry, memory_store, utcnow
from .password_reset import PasswordResetFlow
from .passwords import PasswordHasher
from .permissions import PermissionEvaluator
from .sessions import SessionTokenizer
from .store import Store
from .tokens import OrgTokenIssuer
from .totp import TotpEngine
from .users import UserService

__all__ = ["OpsicleCore", "build_core"]


@dataclass(slots=True)
class OpsicleCore:
    """Every service of the core sharing one store, cache, email sender and clock."""

    config: OpsicleConfig
    orm: ORM
    cache: Cache
    email: EmailSender
    audit: AuditLog
    clock: Callable[[], dt.datetime]
    hasher: PasswordHasher
    totp: TotpEngine
    sessions: SessionTokenizer
    permissions: PermissionEvaluator
    users: UserService
    orgs: OrgService
    authorities: CertificateAuthorityService
    tokens: OrgTokenIssuer
    login: LoginFlow
    password_reset: PasswordResetFlow


def build_core(
    config: OpsicleConfig,
    *,
    store: Store | None = None,
    cache: Cache | None = None,
    email: EmailSender | None = None,
    clock: Callable[[], dt.datetime] | None = None,
    audit: AuditLog | None = None,
    registry: ModelRegistry | None = None,
) -> OpsicleCore:
    """Validate ``config`` and build the core; omitted collaborators fall back to in-memory ones."""

    config.validate()
    clock = clock or utcnow
    orm = ORM(store or memory_store(registry), registry)
    cache = cache or MemoryCache(clock=clock)
    email = email or LoggingEmailSender()
    audit = audit or AuditLog()
    hasher = PasswordHasher(config.password_hash)
    totp = TotpEngine(config.totp, clock=clock)
    sessions = SessionTokenizer(config.session, cache, clock=clock)
    users = UserService(orm, hasher, totp, sessions, email=email, audit=audit, clock=clock)
    authorities = CertificateAuthorityService(orm, config.certificates, audit=audit, clock=clock)
    return OpsicleCore(
        config=config,
        orm=orm,
        cache=cache,
        email=email,
        audit=audit,
        clock=clock,
        hasher=hasher,
        totp=totp,
        sessions=sessions,
        permissions=PermissionEvaluator(),
        users=users,
        orgs=OrgService(orm, audit=audit, clock=clock),
        authorities=authorities,
        tokens=OrgTokenIssuer(orm, authorities, hasher, config.certificates, audit=audit, clock=clock),
        login=LoginFlow(orm, hasher, totp, sessions, config.login, audit=audit, clock=clock),
        password_reset=PasswordResetFlow(
            orm, hasher, users, sessions, config.password_reset, email=email, audit=audit, clock=clock
        ),
    )
