"""Time-based one-time passwords (RFC 6238 / 4226) for MFA enrolment and login."""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import hashlib
import hmac
import logging
import secrets
import struct
from collections.abc import Callable
from urllib.parse import quote, urlencode

import qrcode
from msgspec import Struct
from qrcode.constants import ERROR_CORRECT_L

from .config import TotpConfig
from .orm import utcnow

logger = logging.getLogger(__name__)

SECRET_BYTES = 20

_FULL_BLOCK = "█"
_UPPER_HALF_BLOCK = "▀"
_LOWER_HALF_BLOCK = "▄"


class TotpCode(Struct, frozen=True):
    """A code together with the instant it was generated for."""

    at: dt.datetime
    code: str


def generate_secret() -> str:
    """Return a random 160-bit secret encoded as upper-case base32."""

    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    candidate = secret.strip().replace(" ", "").upper()
    padding = "=" * ((8 - len(candidate) % 8) % 8)
    return base64.b32decode(candidate + padding)


def hotp(key: bytes, counter: int, *, digits: int = 6) -> str:
    message = struct.pack(">Q", counter)
    digest = hmac.new(key, message, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(value % (10**digits)).zfill(digits)


class TotpEngine:
    """Generate, validate and provision TOTP codes with configurable skew."""

    def __init__(self, config: TotpConfig | None = None, *, clock: Callable[[], dt.datetime] | None = None) -> None:
        self.config = config or TotpConfig()
        self._clock = clock or utcnow

    def generate_secret(self) -> str:
        return generate_secret()

    def code_at(self, secret: str, moment: dt.datetime) -> str:
        counter = int(moment.timestamp()) // self.config.period
        return hotp(_decode_secret(secret), counter, digits=self.config.digits)

    def now(self, secret: str) -> str:
        return self.code_at(secret, self._clock())

    def validate(self, secret: str, code: str, *, at: dt.datetime | None = None) -> bool:
        """Accept ``code`` for the current window or one step either side.

        Every window is compared; the loop does not stop at the first match.
        """

        candidate = code.strip()
        if len(candidate) != self.config.digits or not candidate.isdigit():
            return False
        try:
            key = _decode_secret(secret)
        except (binascii.Error, ValueError):
            logger.warning("totp secret could not be decoded")
            return False
        moment = at or self._clock()
        counter = int(moment.timestamp()) // self.config.period
        matched = False
        for delta in range(-self.config.skew, self.config.skew + 1):
            expected = hotp(key, counter + delta, digits=self.config.digits)
            matched |= hmac.compare_digest(expected, candidate)
        return matched

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.config.issuer
        label = quote(f"{issuer}:{account}", safe=":@")
        query = urlencode(
            {
                "secret": secret.upper(),
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": str(self.config.digits),
                "period": str(self.config.period),
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def token_sequence(self, secret: str, validity: dt.timedelta) -> list[TotpCode]:
        """Codes for the 30 second buckets at now, now + 1 min, ... up to ``validity``."""

        count = int(validity / dt.timedelta(minutes=1))
        start = self._clock()
        results: list[TotpCode] = []
        for index in range(count):
            instant = _truncate(start + dt.timedelta(minutes=index), self.config.period)
            logger.info("generating code for time: %s", instant.strftime("%H:%M:%S"))
            results.append(TotpCode(at=instant, code=self.code_at(secret, instant)))
        return results


def _truncate(moment: dt.datetime, period: int) -> dt.datetime:
    seconds = int(moment.timestamp())
    return dt.datetime.fromtimestamp(seconds - seconds % period, tz=dt.UTC)


def qr_matrix(data: str) -> list[list[bool]]:
    """Return the module bitmap (``True`` is dark) of a low error-correction QR code."""

    code = qrcode.QRCode(error_correction=ERROR_CORRECT_L)
    code.add_data(data)
    code.make(fit=True)
    return [[bool(cell) for cell in row] for row in code.get_matrix()]


def render_bitmap(bitmap: list[list[bool]]) -> str:
    """Render two bitmap rows per text line using half-block glyphs."""

    lines: list[str] = []
    for y in range(0, len(bitmap), 2):
        upper = bitmap[y]
        lower = bitmap[y + 1] if y + 1 < len(bitmap) else [False] * len(upper)
        chars: list[str] = []
        for top, bottom in zip(upper, lower):
            if top and bottom:
                chars.append(_FULL_BLOCK)
            elif top:
                chars.append(_UPPER_HALF_BLOCK)
            elif bottom:
                chars.append(_LOWER_HALF_BLOCK)
            else:
                chars.append(" ")
        lines.append("".join(chars))
    return "\n".join(lines) + "\n"


def render_qr(data: str) -> str:
    return render_bitmap(qr_matrix(data))


__all__ = [
    "TotpCode",
    "TotpEngine",
    "generate_secret",
    "hotp",
    "qr_matrix",
    "render_bitmap",
    "render_qr",
]
