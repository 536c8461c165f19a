"""Error types shared by the Opsicle core."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

import msgspec


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the core."""

    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    DUPLICATE_ENTRY = "duplicate_entry"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_SIGNATURE = "token_signature"
    TOKEN_CLAIMS_INVALID = "token_claims_invalid"
    SESSION_REVOKED = "session_revoked"
    LOGIN_EXPIRED = "login_expired"
    FORBIDDEN = "forbidden"
    INTERNAL = "internal"
    # operator-facing certificate authority failures
    CERT_KEY_MISMATCH = "cert_key_mismatch"
    CA_NOT_FOUND = "ca_not_found"
    CA_EXPIRED = "ca_expired"
    LEAF_NO_SAN = "leaf_no_san"
    # org-token failures, reported to callers as invalid_credentials
    TOKEN_ID_UNKNOWN = "token_id_unknown"
    TOKEN_KEY_INVALID = "token_key_invalid"


SESSION_ERRORS = frozenset(
    {
        ErrorKind.TOKEN_EXPIRED,
        ErrorKind.TOKEN_SIGNATURE,
        ErrorKind.TOKEN_CLAIMS_INVALID,
        ErrorKind.SESSION_REVOKED,
    }
)

OPERATOR_ERRORS = frozenset(
    {
        ErrorKind.CERT_KEY_MISMATCH,
        ErrorKind.CA_NOT_FOUND,
        ErrorKind.CA_EXPIRED,
        ErrorKind.LEAF_NO_SAN,
    }
)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DUPLICATE_ENTRY: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_SIGNATURE: 401,
    ErrorKind.TOKEN_CLAIMS_INVALID: 401,
    ErrorKind.SESSION_REVOKED: 401,
    ErrorKind.LOGIN_EXPIRED: 410,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INTERNAL: 500,
}


class OpsicleError(Exception):
    """Base error carrying a closed :class:`ErrorKind`."""

    def __init__(self, kind: ErrorKind, detail: Any = None, *, reasons: Iterable[str] = ()) -> None:
        super().__init__(kind.value, detail)
        self.kind = kind
        self.detail = detail
        self.reasons = frozenset(reasons)

    def __str__(self) -> str:
        if self.detail is None:
            return self.kind.value
        return f"{self.kind.value}: {self.detail}"

    @property
    def public_kind(self) -> ErrorKind:
        """Kind safe to report to an end user."""

        if self.kind in {ErrorKind.TOKEN_ID_UNKNOWN, ErrorKind.TOKEN_KEY_INVALID}:
            return ErrorKind.INVALID_CREDENTIALS
        if self.kind in OPERATOR_ERRORS:
            return ErrorKind.INTERNAL
        return self.kind

    @property
    def status(self) -> int:
        return _STATUS_BY_KIND.get(self.public_kind, 500)

    def to_response_body(self) -> bytes:
        # sub-reasons are telemetry only and never rendered
        kind = self.public_kind
        if kind is ErrorKind.INTERNAL:
            return msgspec.json.encode({"error": {"status": self.status, "kind": kind.value}})
        return msgspec.json.encode({"error": {"status": self.status, "kind": kind.value, "detail": self.detail}})


class InvalidInputError(OpsicleError):
    """Raised when input violates a declared contract.

    ``reasons`` always holds at least one sub-reason code such as
    ``email_invalid_at`` or ``password_too_short``.
    """

    def __init__(self, reasons: Iterable[str], detail: Any = None) -> None:
        collected = frozenset(reasons)
        if not collected:
            raise ValueError("InvalidInputError requires at least one reason")
        super().__init__(ErrorKind.INVALID_INPUT, detail, reasons=collected)


__all__ = [
    "ErrorKind",
    "InvalidInputError",
    "OPERATOR_ERRORS",
    "OpsicleError",
    "SESSION_ERRORS",
]
