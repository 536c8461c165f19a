"""Organisation API tokens: a client certificate, a hashed api key and one bound role."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import secrets
from collections.abc import Callable, Sequence

from msgspec import Struct, structs

from .certificates import (
    CertificateAuthorityService,
    decode_b64_pem,
    describe_key_usage,
    encode_b64_pem,
    issue_leaf,
)
from .config import CertificateConfig
from .exceptions import ErrorKind, InvalidInputError, OpsicleError
from .models import Org, OrgRole, OrgToken, OrgTokenRole
from .observability import AuditLog
from .orgs import load_role_permissions
from .orm import ORM, new_id, redact, utcnow
from .passwords import PasswordHasher
from .permissions import TokenSubject
from .store import expect_rows
from .validation import validate_uuid

__all__ = ["API_KEY_PREFIX", "IssuedOrgToken", "OrgTokenIssuer", "generate_api_key"]

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "opsk_"
API_KEY_BYTES = 32


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(API_KEY_BYTES)


class IssuedOrgToken(Struct, frozen=True, kw_only=True):
    """Result of token creation; the only time the api key is visible."""

    token_id: str
    org_id: str
    name: str
    role_id: str
    api_key: str
    certificate_pem: str
    private_key_pem: str

    @property
    def certificate_b64(self) -> str:
        return encode_b64_pem(self.certificate_pem.encode())

    @property
    def private_key_b64(self) -> str:
        return encode_b64_pem(self.private_key_pem.encode())


class OrgTokenIssuer:
    """Create, validate, list and delete organisation API tokens."""

    def __init__(
        self,
        orm: ORM,
        authorities: CertificateAuthorityService,
        hasher: PasswordHasher,
        config: CertificateConfig | None = None,
        *,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self._authorities = authorities
        self._hasher = hasher
        self.config = config or CertificateConfig()
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def create(
        self,
        *,
        org_id: str,
        name: str,
        role_id: str,
        description: str | None = None,
        created_by: str | None = None,
        token_id: str | None = None,
        api_key: str | None = None,
        dns_names: Sequence[str] = (),
        ip_addresses: Sequence[str] = (),
    ) -> IssuedOrgToken:
        """Issue a token bound to ``role_id``.

        The certificate never outlives the organisation's CA. The token and its
        role link are written in one transaction.
        """

        token_id = validate_uuid(token_id or new_id(), field="token_id")
        if not name.strip():
            raise InvalidInputError({"token_name_missing"}, "token name is required")
        api_key = api_key or generate_api_key()
        org = await self._orm(Org).get(id=org_id)
        role = await self._orm(OrgRole).get(id=role_id, org_id=org_id)
        ca = await self._authorities.load_active(org_id)
        leaf = await asyncio.to_thread(
            issue_leaf,
            ca,
            common_name=org.code,
            organization=[org.id],
            organizational_units=[token_id],
            dns_names=dns_names,
            ip_addresses=ip_addresses,
            is_client=True,
            key_bits=self.config.leaf_key_bits,
            validity=self.config.leaf_validity,
            not_after=ca.not_after,
            now=self._clock(),
        )
        api_key_hash = await self._hasher.hash(api_key)
        now = self._clock()
        async with self._orm.transaction() as tx:
            await tx(OrgToken).create(
                OrgToken(
                    id=token_id,
                    org_id=org_id,
                    name=name,
                    description=description,
                    certificate_b64=encode_b64_pem(leaf.cert_pem),
                    private_key_b64=encode_b64_pem(leaf.key_pem),
                    api_key_hash=api_key_hash,
                    created_by=created_by,
                    last_updated_by=created_by,
                    created_at=now,
                    last_updated_at=now,
                )
            )
            await tx(OrgTokenRole).create(OrgTokenRole(org_token_id=token_id, org_role_id=role.id))
        self._audit.emit(
            "org_token.created",
            verb="create",
            entity_id=created_by,
            resource_id=token_id,
            resource_type="org_token",
            data={"org_id": org_id, "role_id": role.id},
        )
        return IssuedOrgToken(
            token_id=token_id,
            org_id=org_id,
            name=name,
            role_id=role.id,
            api_key=api_key,
            certificate_pem=leaf.cert_pem.decode(),
            private_key_pem=leaf.key_pem.decode(),
        )

    async def validate(self, token_id: str, api_key: str) -> TokenSubject:
        """Authenticate a machine caller.

        Raises ``token_id_unknown`` or ``token_key_invalid``; both report as
        ``invalid_credentials`` through :attr:`OpsicleError.public_kind`.
        """

        token = await self._orm(OrgToken).find(id=token_id)
        if token is None or token.api_key_hash is None:
            await self._hasher.verify_dummy(api_key)
            logger.info("org token[%s] rejected: unknown id", token_id)
            raise OpsicleError(ErrorKind.TOKEN_ID_UNKNOWN, "invalid credentials")
        if not await self._hasher.verify(token.api_key_hash, api_key):
            logger.info("org token[%s] rejected: api key mismatch", token_id)
            raise OpsicleError(ErrorKind.TOKEN_KEY_INVALID, "invalid credentials")
        link = await self._orm(OrgTokenRole).get(org_token_id=token_id)
        role = await load_role_permissions(self._orm, link.org_role_id)
        return TokenSubject(token_id=token_id, org_id=token.org_id, role=role)

    async def list(self, org_id: str) -> list[OrgToken]:
        tokens = await self._orm(OrgToken).list(org_id=org_id, order_by=["created_at"])
        return [redact(token) for token in tokens]

    async def get(self, org_id: str, token_id: str) -> OrgToken:
        return redact(await self._orm(OrgToken).get(id=token_id, org_id=org_id))

    async def get_owned(self, org_id: str, token_id: str, api_key: str) -> OrgToken:
        """Return the token with its certificate and key to a caller holding its api key.

        The api key hash is never returned.
        """

        subject = await self.validate(token_id, api_key)
        if subject.org_id != org_id:
            raise OpsicleError(ErrorKind.TOKEN_ID_UNKNOWN, "invalid credentials")
        token = await self._orm(OrgToken).get(id=token_id, org_id=org_id)
        return structs.replace(token, api_key_hash=None)

    async def role_of(self, token_id: str) -> OrgRole:
        link = await self._orm(OrgTokenRole).get(org_token_id=token_id)
        return await self._orm(OrgRole).get(id=link.org_role_id)

    async def key_usage(self, org_id: str, token_id: str) -> list[str]:
        token = await self._orm(OrgToken).get(id=token_id, org_id=org_id)
        if token.certificate_b64 is None:
            raise OpsicleError(ErrorKind.NOT_FOUND, f"token[{token_id}] has no certificate")
        return describe_key_usage(decode_b64_pem(token.certificate_b64))

    async def delete(self, org_id: str, token_id: str, *, actor_id: str | None = None) -> None:
        affected = await self._orm(OrgToken).delete(id=token_id, org_id=org_id)
        expect_rows(affected, action="delete org token")
        self._audit.emit(
            "org_token.deleted",
            verb="delete",
            entity_id=actor_id,
            resource_id=token_id,
            resource_type="org_token",
        )
