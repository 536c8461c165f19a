"""Configuration objects for the Opsicle core."""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from typing import Any

import msgspec
from msgspec import Struct

from .exceptions import InvalidInputError

MIN_SIGNING_SECRET_BYTES = 32
MIN_RSA_KEY_BITS = 2048
MAX_CA_VALIDITY = dt.timedelta(days=365)


class SessionConfig(Struct, frozen=True):
    """Session token signing and cache coupling settings."""

    signing_secret: str = ""
    cache_prefix: str = "opsicle:session"
    ttl: dt.timedelta = dt.timedelta(hours=1)
    issuer: str = "opsicle/controller"
    subject: str = "cli"


class LoginConfig(Struct, frozen=True):
    row_ttl: dt.timedelta = dt.timedelta(minutes=5)


class PasswordResetConfig(Struct, frozen=True):
    ttl: dt.timedelta = dt.timedelta(minutes=5)
    code_length: int = 32


class TotpConfig(Struct, frozen=True):
    issuer: str = "opsicle"
    digits: int = 6
    period: int = 30
    skew: int = 1


class PasswordHashConfig(Struct, frozen=True):
    """Argon2id parameters; stored alongside every hash."""

    memory_cost: int = 65_536
    time_cost: int = 3
    parallelism: int = 4
    hash_len: int = 32
    salt_len: int = 16


class CertificateConfig(Struct, frozen=True):
    ca_key_bits: int = 4096
    leaf_key_bits: int = 2048
    ca_validity: dt.timedelta = dt.timedelta(days=365)
    leaf_validity: dt.timedelta = dt.timedelta(days=180)


class OpsicleConfig(Struct, frozen=True):
    """Typed configuration for :class:`~opsicle.bootstrap.OpsicleCore`."""

    session: SessionConfig = SessionConfig()
    login: LoginConfig = LoginConfig()
    password_reset: PasswordResetConfig = PasswordResetConfig()
    totp: TotpConfig = TotpConfig()
    password_hash: PasswordHashConfig = PasswordHashConfig()
    certificates: CertificateConfig = CertificateConfig()

    def validate(self) -> OpsicleConfig:
        """Check cross-field constraints, raising ``invalid_input`` on violation."""

        reasons: set[str] = set()
        if len(self.session.signing_secret.encode()) < MIN_SIGNING_SECRET_BYTES:
            reasons.add("session_signing_secret_too_short")
        if self.session.ttl <= dt.timedelta(0):
            reasons.add("session_ttl_invalid")
        if self.certificates.ca_key_bits < MIN_RSA_KEY_BITS:
            reasons.add("ca_key_bits_too_small")
        if self.certificates.leaf_key_bits < MIN_RSA_KEY_BITS:
            reasons.add("leaf_key_bits_too_small")
        if self.certificates.ca_validity > MAX_CA_VALIDITY:
            reasons.add("ca_validity_too_long")
        if reasons:
            raise InvalidInputError(reasons, "invalid configuration")
        return self


def load_config(data: Mapping[str, Any] | bytes | str) -> OpsicleConfig:
    """Build and validate an :class:`OpsicleConfig` from a mapping or JSON document."""

    try:
        if isinstance(data, (bytes, str)):
            config = msgspec.json.decode(data, type=OpsicleConfig)
        else:
            config = msgspec.convert(dict(data), type=OpsicleConfig)
    except msgspec.ValidationError as exc:
        raise InvalidInputError({"config_malformed"}, str(exc)) from exc
    return config.validate()


_ENV_KEYS: dict[str, tuple[str, str]] = {
    "OPSICLE_SESSION_SIGNING_SECRET": ("session", "signing_secret"),
    "OPSICLE_SESSION_CACHE_PREFIX": ("session", "cache_prefix"),
    "OPSICLE_SESSION_TTL": ("session", "ttl"),
    "OPSICLE_LOGIN_ROW_TTL": ("login", "row_ttl"),
    "OPSICLE_PASSWORD_RESET_TTL": ("password_reset", "ttl"),
    "OPSICLE_TOTP_ISSUER": ("totp", "issuer"),
    "OPSICLE_CA_KEY_BITS": ("certificates", "ca_key_bits"),
    "OPSICLE_LEAF_KEY_BITS": ("certificates", "leaf_key_bits"),
    "OPSICLE_CA_VALIDITY": ("certificates", "ca_validity"),
    "OPSICLE_LEAF_VALIDITY": ("certificates", "leaf_validity"),
}


def load_config_from_env(environ: Mapping[str, str]) -> OpsicleConfig:
    """Read ``OPSICLE_*`` variables; durations are seconds, key sizes integers."""

    data: dict[str, dict[str, Any]] = {}
    for name, (section, key) in _ENV_KEYS.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        value: Any = raw
        if key.endswith("key_bits"):
            value = _parse_int(name, raw)
        elif key in {"ttl", "row_ttl", "ca_validity", "leaf_validity"}:
            value = dt.timedelta(seconds=_parse_int(name, raw))
        data.setdefault(section, {})[key] = value
    return load_config(data)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidInputError({"config_malformed"}, f"{name} must be an integer") from exc


__all__ = [
    "CertificateConfig",
    "LoginConfig",
    "OpsicleConfig",
    "PasswordHashConfig",
    "PasswordResetConfig",
    "SessionConfig",
    "TotpConfig",
    "load_config",
    "load_config_from_env",
]
