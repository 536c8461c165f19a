"""Structured audit events and logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

__all__ = ["AuditEvent", "AuditLog", "configure_logging"]

AUDIT_LOGGER = "opsicle.audit"


@dataclass(slots=True, frozen=True)
class AuditEvent:
    """One security-relevant state change.

    ``data`` must never hold secrets: no passwords, api keys, TOTP secrets,
    private keys or verification codes.
    """

    event: str
    verb: str
    status: str
    entity_type: str = "user"
    entity_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    src_ip: str | None = None
    src_ua: str | None = None
    data: Mapping[str, Any] | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"event": self.event}
        for key in ("entity_id", "entity_type", "verb", "resource_id", "resource_type", "status", "src_ip", "src_ua"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.data:
            payload["data"] = {key: value for key, value in self.data.items() if value is not None}
        return payload


class AuditLog:
    """Emit :class:`AuditEvent` records as compact JSON lines."""

    def __init__(self, logger: logging.Logger | None = None, *, enabled: bool = True) -> None:
        self._logger = logger or logging.getLogger(AUDIT_LOGGER)
        self.enabled = enabled

    def record(self, event: AuditEvent) -> None:
        if not self.enabled:
            return
        self._logger.info(json.dumps(event.as_payload(), separators=(",", ":"), default=str))

    def emit(self, event: str, *, verb: str, status: str = "success", **fields: Any) -> None:
        self.record(AuditEvent(event=event, verb=verb, status=status, **fields))


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install a single stream handler on the ``opsicle`` logger tree."""

    root = logging.getLogger("opsicle")
    root.setLevel(level)
    if any(getattr(handler, "_opsicle_default", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._opsicle_default = True  # type: ignore[attr-defined]
    root.addHandler(handler)
