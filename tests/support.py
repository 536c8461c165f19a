"""Test support utilities for the Opsicle core tests."""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field

from opsicle.bootstrap import OpsicleCore, build_core
from opsicle.config import CertificateConfig, OpsicleConfig, PasswordHashConfig, SessionConfig
from opsicle.email import EmailMessage
from opsicle.models import User

SIGNING_SECRET = "test-signing-secret-0123456789-abcdef"
FAST_HASH = PasswordHashConfig(memory_cost=1024, time_cost=1, parallelism=1)
SMALL_KEYS = CertificateConfig(ca_key_bits=2048, leaf_key_bits=2048)
PASSWORD = "Corrects horse battery!1"

_CODE_LINE = re.compile(r"^ {4}(\S+)$", re.MULTILINE)


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: dt.datetime | None = None) -> None:
        self.now = start or dt.datetime(2026, 1, 5, 9, 0, 0, tzinfo=dt.UTC)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float = 0, *, minutes: float = 0, days: float = 0) -> dt.datetime:
        self.now = self.now + dt.timedelta(seconds=seconds, minutes=minutes, days=days)
        return self.now


@dataclass
class MemoryEmailSink:
    messages: list[EmailMessage] = field(default_factory=list)

    async def send(self, message: EmailMessage) -> None:
        self.messages.append(message)

    def sent_to(self, address: str) -> list[EmailMessage]:
        return [message for message in self.messages if message.to == address]

    def last_code(self, address: str) -> str:
        messages = self.sent_to(address)
        if not messages:
            raise AssertionError(f"no email sent to {address}")
        match = _CODE_LINE.search(messages[-1].body)
        if match is None:  # pragma: no cover - guard for template changes
            raise AssertionError("email did not contain a code")
        return match.group(1)


class FailingEmailSender:
    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, message: EmailMessage) -> None:
        self.attempts += 1
        raise RuntimeError("smtp unavailable")


def make_config(**overrides: object) -> OpsicleConfig:
    values: dict[str, object] = {
        "session": SessionConfig(signing_secret=SIGNING_SECRET),
        "password_hash": FAST_HASH,
        "certificates": SMALL_KEYS,
    }
    values.update(overrides)
    return OpsicleConfig(**values)  # type: ignore[arg-type]


def make_core(
    *,
    clock: FakeClock | None = None,
    email: object | None = None,
    **overrides: object,
) -> tuple[OpsicleCore, FakeClock, MemoryEmailSink]:
    clock = clock or FakeClock()
    sink = MemoryEmailSink()
    core = build_core(make_config(**overrides), clock=clock, email=email or sink)  # type: ignore[arg-type]
    return core, clock, sink


async def create_verified_user(core: OpsicleCore, email: str, password: str = PASSWORD) -> User:
    user = await core.users.create(email, password)
    await core.users.admin_verify(user.id)
    return await core.users.get(user.id)
