from __future__ import annotations

import base64

import pytest

from opsicle.config import PasswordHashConfig
from opsicle.passwords import EncodedHash, PasswordHasher, decode_hash
from tests.support import FAST_HASH


@pytest.mark.asyncio
async def test_hash_and_verify_round_trip() -> None:
    hasher = PasswordHasher(FAST_HASH)
    encoded = await hasher.hash("Corrects horse battery!1")

    assert encoded.startswith("$argon2id$v=19$m=1024,t=1,p=1$")
    assert await hasher.verify(encoded, "Corrects horse battery!1")
    assert not await hasher.verify(encoded, "corrects horse battery!1")


@pytest.mark.asyncio
async def test_default_parameters_are_encoded() -> None:
    hasher = PasswordHasher()
    encoded = await hasher.hash("pw")

    _, algorithm, version, params, salt, digest = encoded.split("$")
    assert algorithm == "argon2id"
    assert version == "v=19"
    assert params == "m=65536,t=3,p=4"
    assert "=" not in salt and "=" not in digest
    assert len(base64.b64decode(salt + "==")) == 16
    assert len(base64.b64decode(digest + "=")) == 32


@pytest.mark.asyncio
async def test_salts_differ_between_hashes() -> None:
    hasher = PasswordHasher(FAST_HASH)

    first = await hasher.hash("same password")
    second = await hasher.hash("same password")

    assert first != second


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "encoded",
    [
        "",
        "not-a-hash",
        "$argon2i$v=19$m=1024,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g",
        "$argon2id$v=16$m=1024,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g",
        "$argon2id$v=19$m=abc,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g",
        "$argon2id$v=19$m=1024,t=1,p=1$!!!$aGFzaGhhc2g",
        "$argon2id$v=19$m=1024,t=1,p=1$c2FsdHNhbHQ",
    ],
)
async def test_malformed_hashes_never_verify(encoded: str) -> None:
    hasher = PasswordHasher(FAST_HASH)

    assert not await hasher.verify(encoded, "anything")


@pytest.mark.asyncio
async def test_verify_uses_stored_parameters_and_length() -> None:
    legacy = PasswordHasher(PasswordHashConfig(memory_cost=2048, time_cost=2, parallelism=1, hash_len=16))
    encoded = await legacy.hash("rotating secret")

    current = PasswordHasher(FAST_HASH)

    assert await current.verify(encoded, "rotating secret")
    assert current.needs_rehash(encoded)
    assert not legacy.needs_rehash(encoded)


@pytest.mark.asyncio
async def test_truncated_digest_fails_verification() -> None:
    hasher = PasswordHasher(FAST_HASH)
    parsed = decode_hash(await hasher.hash("secret value"))
    assert parsed is not None

    truncated = EncodedHash(
        parsed.memory_cost, parsed.time_cost, parsed.parallelism, parsed.salt, parsed.digest[:-1]
    ).encode()

    assert not await hasher.verify(truncated, "secret value")


@pytest.mark.asyncio
async def test_verify_dummy_and_missing_hash() -> None:
    hasher = PasswordHasher(FAST_HASH)

    await hasher.verify_dummy("whatever")
    assert not await hasher.verify(None, "whatever")


def test_decode_hash_parses_fields() -> None:
    parsed = decode_hash("$argon2id$v=19$m=65536,t=3,p=4$c2FsdHNhbHRzYWx0c2FsdA$aGFzaGhhc2hoYXNoaGFzaA")

    assert parsed is not None
    assert (parsed.memory_cost, parsed.time_cost, parsed.parallelism) == (65536, 3, 4)
    assert parsed.salt == b"saltsaltsaltsalt"
    assert parsed.digest == b"hashhashhashhash"


@pytest.mark.asyncio
async def test_unusable_parameters_still_spend_a_verification(monkeypatch: pytest.MonkeyPatch) -> None:
    hasher = PasswordHasher(FAST_HASH)
    spent: list[str] = []

    async def fake_dummy(password: str) -> None:
        spent.append(password)

    monkeypatch.setattr(hasher, "verify_dummy", fake_dummy)
    # argon2 refuses a memory cost below 8 KiB per lane
    encoded = EncodedHash(memory_cost=1, time_cost=1, parallelism=1, salt=b"s" * 16, digest=b"d" * 32).encode()

    assert decode_hash(encoded) is not None
    assert not await hasher.verify(encoded, "Corrects horse battery!1")
    assert spent == ["Corrects horse battery!1"]
