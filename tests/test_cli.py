from __future__ import annotations

import base64
import logging
import pathlib
import re
from collections.abc import Iterator

import pytest
from cryptography.x509.oid import NameOID

import opsicle.cli as cli
from opsicle.certificates import load_certificate
from opsicle.passwords import PasswordHasher
from tests.support import FAST_HASH, PASSWORD


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    logger = logging.getLogger("opsicle")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def fast_hasher(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "PasswordHasher", lambda: PasswordHasher(FAST_HASH))


def _create_ca(directory: pathlib.Path, code: str = "acme-ops") -> tuple[pathlib.Path, pathlib.Path]:
    status = cli.main(
        ["ca", "create", "--code", code, "--name", "Acme Operations", "--out", str(directory), "--key-bits", "2048"]
    )
    assert status == 0
    return directory / f"{code}-ca.crt", directory / f"{code}-ca.key"


def test_totp_secret_prints_base32(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["totp", "secret"]) == 0

    secret = capsys.readouterr().out.strip()
    assert len(secret) == 32
    assert len(base64.b32decode(secret)) == 20


def test_totp_codes_prints_one_line_per_minute(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["totp", "codes", "--secret", "JBSWY3DPEHPK3PXP", "--validity", "3"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 3
    for line in lines:
        assert re.fullmatch(r"\d{2}:\d{2}:(00|30) \d{6}", line)


def test_totp_qr_prints_uri_and_code(capsys: pytest.CaptureFixture[str]) -> None:
    status = cli.main(
        ["totp", "qr", "--secret", "JBSWY3DPEHPK3PXP", "--account", "jane@example.com", "--issuer", "acme"]
    )

    uri, *art = capsys.readouterr().out.splitlines()
    assert status == 0
    assert uri.startswith("otpauth://totp/acme:jane@example.com?secret=JBSWY3DPEHPK3PXP&issuer=acme")
    assert art
    assert any("█" in row for row in art)


def test_password_hash_then_check(capsys: pytest.CaptureFixture[str], fast_hasher: None) -> None:
    assert cli.main(["password", "hash", "--password", PASSWORD]) == 0
    encoded = capsys.readouterr().out.strip()
    assert encoded.startswith("$argon2id$v=19$m=1024,t=1,p=1$")

    assert cli.main(["password", "check", "--hash", encoded, "--password", PASSWORD]) == 0
    assert capsys.readouterr().out.strip() == "match"
    assert cli.main(["password", "check", "--hash", encoded, "--password", "not it"]) == 1
    assert capsys.readouterr().out.strip() == "mismatch"


def test_password_hash_prompts_when_password_is_omitted(
    capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch, fast_hasher: None
) -> None:
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: PASSWORD)

    assert cli.main(["password", "hash"]) == 0
    assert capsys.readouterr().out.startswith("$argon2id$")


def test_ca_create_writes_bundle_and_refuses_overwrite(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cert_path, key_path = _create_ca(tmp_path)

    out = capsys.readouterr().out
    assert f"wrote {cert_path}" in out
    assert f"wrote {key_path}" in out
    assert key_path.stat().st_mode & 0o777 == 0o600
    certificate = load_certificate(cert_path.read_bytes())
    assert certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "acme-ops-ca"
    assert certificate.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "Acme Operations"

    with pytest.raises(SystemExit):
        _create_ca(tmp_path)


def test_cert_create_and_check(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    ca_cert, ca_key = _create_ca(tmp_path / "ca")
    other_cert, _ = _create_ca(tmp_path / "other", code="other-ops")
    out = tmp_path / "leaf"
    capsys.readouterr()

    status = cli.main(
        [
            "cert",
            "create",
            "--ca-cert",
            str(ca_cert),
            "--ca-key",
            str(ca_key),
            "--name",
            "api",
            "--dns",
            "api.example.com",
            "--ip",
            "10.0.0.1",
            "--out",
            str(out),
        ]
    )
    assert status == 0
    assert (out / "api.crt").exists() and (out / "api.key").exists()
    capsys.readouterr()

    assert cli.main(["cert", "check", "--ca-cert", str(ca_cert), "--cert", str(out / "api.crt")]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "usage: digital_signature, key_encipherment, server_auth",
        "valid",
    ]
    assert cli.main(["cert", "check", "--ca-cert", str(other_cert), "--cert", str(out / "api.crt")]) == 1
    assert capsys.readouterr().out.splitlines()[-1] == "invalid"


def test_cert_create_reports_errors(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    ca_cert, ca_key = _create_ca(tmp_path)
    capsys.readouterr()

    status = cli.main(
        ["cert", "create", "--ca-cert", str(ca_cert), "--ca-key", str(ca_key), "--name", "api", "--out", str(tmp_path)]
    )

    assert status == 1
    assert capsys.readouterr().err.startswith("error: ")
    assert not (tmp_path / "api.crt").exists()


def test_missing_subcommand_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["totp"])

    assert excinfo.value.code == 2
