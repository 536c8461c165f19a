"""Per-organisation certificate authorities and leaf certificates.

Certificates and keys travel as PEM; the store keeps them as base64 over PEM.
RSA key generation is slow, so every function that creates a key has an
async counterpart on :class:`CertificateAuthorityService` that runs it in a
worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import datetime as dt
import ipaddress
import logging
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import CertificateConfig
from .exceptions import ErrorKind, OpsicleError
from .models import Org, OrgCertificateAuthority
from .observability import AuditLog
from .orm import ORM, utcnow
from .store import expect_rows

__all__ = [
    "CertificateAuthorityService",
    "CertificateBundle",
    "decode_b64_pem",
    "describe_key_usage",
    "encode_b64_pem",
    "generate_ca",
    "issue_leaf",
    "key_matches_certificate",
    "load_certificate",
    "load_private_key",
    "verify_leaf",
]

logger = logging.getLogger(__name__)

_BACKDATE = dt.timedelta(minutes=1)
_KEY_USAGE_FLAGS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
)

IPLike = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(slots=True, frozen=True)
class CertificateBundle:
    """PEM certificate with its PKCS#8 PEM private key."""

    cert_pem: bytes
    key_pem: bytes

    @property
    def certificate(self) -> x509.Certificate:
        return load_certificate(self.cert_pem)

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return load_private_key(self.key_pem)

    @property
    def not_after(self) -> dt.datetime:
        return self.certificate.not_valid_after_utc


def encode_b64_pem(pem: bytes) -> str:
    return base64.b64encode(pem).decode("ascii")


def decode_b64_pem(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise OpsicleError(ErrorKind.INTERNAL, "stored certificate material is not base64") from exc


def load_certificate(pem: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as exc:
        raise OpsicleError(ErrorKind.INVALID_INPUT, "certificate is not valid PEM", reasons={"certificate_malformed"}) from exc


def load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (TypeError, ValueError) as exc:
        raise OpsicleError(ErrorKind.INVALID_INPUT, "private key is not valid PEM", reasons={"private_key_malformed"}) from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise OpsicleError(ErrorKind.INVALID_INPUT, "private key is not RSA", reasons={"private_key_not_rsa"})
    return key


def key_matches_certificate(certificate: x509.Certificate, key: rsa.RSAPrivateKey) -> bool:
    public = certificate.public_key()
    if not isinstance(public, rsa.RSAPublicKey):
        return False
    return public.public_numbers() == key.public_key().public_numbers()


def _name(common_name: str, organization: Sequence[str], units: Sequence[str] = ()) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    attributes.extend(x509.NameAttribute(NameOID.ORGANIZATION_NAME, value) for value in organization)
    attributes.extend(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, value) for value in units)
    return x509.Name(attributes)


def _serial() -> int:
    # x509 serials must be positive
    return secrets.randbits(128) or 1


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def generate_ca(
    *,
    common_name: str,
    organization: Sequence[str],
    key_bits: int = 4096,
    validity: dt.timedelta = dt.timedelta(days=365),
    now: dt.datetime | None = None,
) -> CertificateBundle:
    """Create a self-signed CA able to sign leaves but not further CAs."""

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_bits)
    not_before = (now or utcnow()) - _BACKDATE
    subject = _name(common_name, organization)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(_serial())
        .not_valid_before(not_before)
        .not_valid_after(not_before + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return CertificateBundle(cert_pem=certificate.public_bytes(serialization.Encoding.PEM), key_pem=_key_pem(key))


def issue_leaf(
    ca: CertificateBundle,
    *,
    common_name: str | None = None,
    organization: Sequence[str] = (),
    organizational_units: Sequence[str] = (),
    dns_names: Sequence[str] = (),
    ip_addresses: Sequence[str | IPLike] = (),
    is_client: bool = False,
    key_bits: int = 2048,
    validity: dt.timedelta = dt.timedelta(days=180),
    not_after: dt.datetime | None = None,
    now: dt.datetime | None = None,
) -> CertificateBundle:
    """Issue a server (default) or client certificate signed by ``ca``.

    Server certificates need at least one DNS or IP subject alternative name.
    ``not_after`` caps the validity window, typically at the CA's own expiry.
    """

    try:
        addresses = [ipaddress.ip_address(value) if isinstance(value, str) else value for value in ip_addresses]
    except ValueError as exc:
        raise OpsicleError(ErrorKind.INVALID_INPUT, str(exc), reasons={"ip_address_invalid"}) from exc
    if not is_client and not dns_names and not addresses:
        raise OpsicleError(ErrorKind.LEAF_NO_SAN, "server certificate needs at least one SAN")
    ca_certificate = ca.certificate
    ca_key = ca.private_key
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_bits)
    not_before = (now or utcnow()) - _BACKDATE
    expires = not_before + validity
    if not_after is not None and not_after < expires:
        expires = not_after
    usage = ExtendedKeyUsageOID.CLIENT_AUTH if is_client else ExtendedKeyUsageOID.SERVER_AUTH
    builder = (
        x509.CertificateBuilder()
        .subject_name(
            _name(common_name or ("client" if is_client else "server"), organization or ("opsicle",), organizational_units)
        )
        .issuer_name(ca_certificate.subject)
        .public_key(key.public_key())
        .serial_number(_serial())
        .not_valid_before(not_before)
        .not_valid_after(expires)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
    )
    names: list[x509.GeneralName] = [x509.DNSName(name) for name in dns_names]
    names.extend(x509.IPAddress(address) for address in addresses)
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    certificate = builder.sign(ca_key, hashes.SHA256())
    return CertificateBundle(cert_pem=certificate.public_bytes(serialization.Encoding.PEM), key_pem=_key_pem(key))


def verify_leaf(leaf_pem: bytes, ca_pem: bytes, *, at: dt.datetime | None = None) -> bool:
    """Return whether ``leaf_pem`` chains to ``ca_pem`` and both are valid at ``at``."""

    leaf = load_certificate(leaf_pem)
    ca = load_certificate(ca_pem)
    moment = at or utcnow()
    try:
        constraints = ca.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    if not constraints.ca:
        return False
    try:
        leaf.verify_directly_issued_by(ca)
    except (ValueError, TypeError, InvalidSignature):
        return False
    for certificate in (leaf, ca):
        if not certificate.not_valid_before_utc <= moment <= certificate.not_valid_after_utc:
            return False
    return True


def describe_key_usage(cert_pem: bytes) -> list[str]:
    """Names of the key usages and extended key usages a certificate carries."""

    certificate = load_certificate(cert_pem)
    usages: list[str] = []
    try:
        key_usage = certificate.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        key_usage = None
    if key_usage is not None:
        for flag in _KEY_USAGE_FLAGS:
            if getattr(key_usage, flag):
                usages.append(flag)
    try:
        extended = certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        extended = None
    if extended is not None:
        for oid in extended:
            if oid == ExtendedKeyUsageOID.SERVER_AUTH:
                usages.append("server_auth")
            elif oid == ExtendedKeyUsageOID.CLIENT_AUTH:
                usages.append("client_auth")
            else:
                usages.append(oid.dotted_string)
    return usages


class CertificateAuthorityService:
    """Persist and load the single active CA of each organisation."""

    def __init__(
        self,
        orm: ORM,
        config: CertificateConfig | None = None,
        *,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self.config = config or CertificateConfig()
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def create(self, org_id: str, *, actor_id: str | None = None) -> OrgCertificateAuthority:
        org = await self._orm(Org).get(id=org_id)
        bundle = await self._generate(org)
        async with self._orm.transaction() as tx:
            existing = await tx(OrgCertificateAuthority).find(org_id=org_id, is_deactivated=False)
            if existing is not None:
                raise OpsicleError(ErrorKind.DUPLICATE_ENTRY, f"org[{org_id}] already has an active certificate authority")
            record = await tx(OrgCertificateAuthority).create(self._record(org_id, bundle))
        logger.debug("created certificate authority for org[%s]", org_id)
        self._audit.emit("ca.created", verb="create", entity_id=actor_id, resource_id=record.id, resource_type="org_ca")
        return record

    async def regenerate(self, org_id: str, *, actor_id: str | None = None) -> OrgCertificateAuthority:
        """Replace the active CA; the old one is deactivated in the same transaction."""

        org = await self._orm(Org).get(id=org_id)
        bundle = await self._generate(org)
        async with self._orm.transaction() as tx:
            await tx(OrgCertificateAuthority).update({"is_deactivated": True}, org_id=org_id, is_deactivated=False)
            record = await tx(OrgCertificateAuthority).create(self._record(org_id, bundle))
        logger.info("regenerated certificate authority for org[%s]", org_id)
        self._audit.emit("ca.regenerated", verb="update", entity_id=actor_id, resource_id=record.id, resource_type="org_ca")
        return record

    async def load_active(self, org_id: str) -> CertificateBundle:
        """Return the usable CA of ``org_id``, checking expiry and that key and certificate pair up."""

        record = await self._orm(OrgCertificateAuthority).find(org_id=org_id, is_deactivated=False)
        if record is None or record.private_key_b64 is None:
            raise OpsicleError(ErrorKind.CA_NOT_FOUND, f"org[{org_id}] has no active certificate authority")
        bundle = CertificateBundle(
            cert_pem=decode_b64_pem(record.cert_b64),
            key_pem=decode_b64_pem(record.private_key_b64),
        )
        certificate = bundle.certificate
        if certificate.not_valid_after_utc <= self._clock():
            raise OpsicleError(ErrorKind.CA_EXPIRED, f"certificate authority of org[{org_id}] has expired")
        if not key_matches_certificate(certificate, bundle.private_key):
            raise OpsicleError(ErrorKind.CERT_KEY_MISMATCH, f"certificate authority of org[{org_id}] has a mismatched key")
        return bundle

    async def deactivate(self, org_id: str) -> None:
        affected = await self._orm(OrgCertificateAuthority).update(
            {"is_deactivated": True}, org_id=org_id, is_deactivated=False
        )
        expect_rows(affected, action="deactivate certificate authority")

    async def _generate(self, org: Org) -> CertificateBundle:
        return await asyncio.to_thread(
            generate_ca,
            common_name=f"{org.code}-ca",
            organization=[org.name],
            key_bits=self.config.ca_key_bits,
            validity=self.config.ca_validity,
            now=self._clock(),
        )

    @staticmethod
    def _record(org_id: str, bundle: CertificateBundle) -> OrgCertificateAuthority:
        return OrgCertificateAuthority(
            org_id=org_id,
            cert_b64=encode_b64_pem(bundle.cert_pem),
            private_key_b64=encode_b64_pem(bundle.key_pem),
            expires_at=bundle.not_after,
        )
