"""Argon2id password hashing with self-describing encoded hashes."""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import re
import secrets
from dataclasses import dataclass

from argon2.exceptions import HashingError
from argon2.low_level import ARGON2_VERSION
from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw as argon2_hash_secret_raw

from .config import PasswordHashConfig

__all__ = ["EncodedHash", "PasswordHasher", "decode_hash"]

_PARAMS_PATTERN = re.compile(r"^m=(\d+),t=(\d+),p=(\d+)$")


@dataclass(slots=True, frozen=True)
class EncodedHash:
    """Parsed ``$argon2id$v=19$m=..,t=..,p=..$salt$hash`` string."""

    memory_cost: int
    time_cost: int
    parallelism: int
    salt: bytes
    digest: bytes
    version: int = ARGON2_VERSION

    def encode(self) -> str:
        return (
            f"$argon2id$v={self.version}$m={self.memory_cost},t={self.time_cost},p={self.parallelism}"
            f"${_b64encode(self.salt)}${_b64encode(self.digest)}"
        )


def decode_hash(encoded: str) -> EncodedHash | None:
    """Parse an encoded hash, returning ``None`` when it is malformed."""

    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != "" or parts[1] != "argon2id":
        return None
    if parts[2] != f"v={ARGON2_VERSION}":
        return None
    match = _PARAMS_PATTERN.match(parts[3])
    if match is None:
        return None
    memory_cost, time_cost, parallelism = (int(value) for value in match.groups())
    if memory_cost <= 0 or time_cost <= 0 or parallelism <= 0:
        return None
    try:
        salt = _b64decode(parts[4])
        digest = _b64decode(parts[5])
    except (binascii.Error, ValueError):
        return None
    if not salt or not digest:
        return None
    return EncodedHash(memory_cost, time_cost, parallelism, salt, digest)


class PasswordHasher:
    """Async wrapper around argon2id hashing and verification.

    The work runs in a worker thread so the event loop is never blocked for
    the few hundred milliseconds a verification takes.
    """

    def __init__(self, config: PasswordHashConfig | None = None) -> None:
        self.config = config or PasswordHashConfig()
        self._canary: str | None = None

    async def hash(self, password: str) -> str:
        salt = secrets.token_bytes(self.config.salt_len)
        digest = await asyncio.to_thread(
            _argon2_raw,
            password,
            salt,
            self.config.time_cost,
            self.config.memory_cost,
            self.config.parallelism,
            self.config.hash_len,
        )
        return EncodedHash(
            memory_cost=self.config.memory_cost,
            time_cost=self.config.time_cost,
            parallelism=self.config.parallelism,
            salt=salt,
            digest=digest,
        ).encode()

    async def verify(self, encoded: str | None, password: str) -> bool:
        """Return whether ``password`` matches ``encoded``; malformed hashes never match."""

        parsed = decode_hash(encoded) if encoded else None
        if parsed is None:
            await self.verify_dummy(password)
            return False
        try:
            candidate = await asyncio.to_thread(
                _argon2_raw,
                password,
                parsed.salt,
                parsed.time_cost,
                parsed.memory_cost,
                parsed.parallelism,
                len(parsed.digest),
            )
        except HashingError:
            await self.verify_dummy(password)
            return False
        return hmac.compare_digest(candidate, parsed.digest)

    async def verify_dummy(self, password: str) -> None:
        """Spend the same effort as a real verification against a canary hash."""

        if self._canary is None:
            self._canary = await self.hash(secrets.token_urlsafe(16))
        canary = decode_hash(self._canary)
        assert canary is not None
        candidate = await asyncio.to_thread(
            _argon2_raw,
            password,
            canary.salt,
            canary.time_cost,
            canary.memory_cost,
            canary.parallelism,
            len(canary.digest),
        )
        hmac.compare_digest(candidate, canary.digest)

    def needs_rehash(self, encoded: str) -> bool:
        """True when ``encoded`` was produced with parameters other than the configured ones."""

        parsed = decode_hash(encoded)
        if parsed is None:
            return True
        return (
            parsed.memory_cost != self.config.memory_cost
            or parsed.time_cost != self.config.time_cost
            or parsed.parallelism != self.config.parallelism
            or len(parsed.digest) != self.config.hash_len
            or len(parsed.salt) != self.config.salt_len
        )


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    padding = "=" * ((4 - len(data) % 4) % 4)
    return base64.b64decode(data + padding, validate=True)


def _argon2_raw(
    password: str,
    salt: bytes,
    time_cost: int,
    memory_cost: int,
    parallelism: int,
    hash_len: int,
) -> bytes:
    return argon2_hash_secret_raw(
        password.encode(),
        salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=hash_len,
        type=Argon2Type.ID,
        version=ARGON2_VERSION,
    )
