"""Outbound email hand-off.

Delivery failures are logged and never surfaced to the flow that triggered
the message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

__all__ = [
    "EmailMessage",
    "EmailSender",
    "LoggingEmailSender",
    "deliver",
    "password_reset_message",
    "verification_message",
]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class LoggingEmailSender:
    """Sender for deployments without a mail transport; records recipient and subject only."""

    async def send(self, message: EmailMessage) -> None:
        logger.info("email to %s queued: %s", message.to, message.subject)


async def deliver(sender: EmailSender, message: EmailMessage) -> bool:
    try:
        await sender.send(message)
    except Exception:
        logger.exception("failed to send email to %s", message.to)
        return False
    return True


def verification_message(to: str, code: str) -> EmailMessage:
    body = (
        "Welcome to Opsicle.\n\n"
        "Use the following code to verify your email address:\n\n"
        f"    {code}\n\n"
        "If you did not create an account you can ignore this message.\n"
    )
    return EmailMessage(to=to, subject="Verify your Opsicle email address", body=body)


def password_reset_message(to: str, code: str, *, ip_address: str | None = None, minutes: int = 5) -> EmailMessage:
    origin = f" from {ip_address}" if ip_address else ""
    body = (
        f"A password reset was requested for your Opsicle account{origin}.\n\n"
        f"Use the following code to choose a new password. It expires in {minutes} minutes:\n\n"
        f"    {code}\n\n"
        "If you did not request a reset, your password has not been changed.\n"
    )
    return EmailMessage(to=to, subject="Reset your Opsicle password", body=body)
