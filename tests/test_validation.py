from __future__ import annotations

import pytest

from opsicle.exceptions import ErrorKind, OpsicleError
from opsicle.validation import (
    email_problems,
    password_problems,
    validate_email,
    validate_org_code,
    validate_org_name,
    validate_password,
    validate_uuid,
)


@pytest.mark.parametrize(
    "email",
    [
        "jane@example.com",
        "jane.doe@example.io",
        "j_doe-ops@mail.example.dev",
        "ops@agency.gov.uk",
        "billing@shop.com.au",
    ],
)
def test_valid_emails(email: str) -> None:
    assert email_problems(email) == set()


@pytest.mark.parametrize(
    ("email", "reason"),
    [
        ("a@b", "email_missing"),
        ("jane.example.com", "email_invalid_at"),
        ("jane@@example.com", "email_invalid_at"),
        ("@example.com", "email_invalid_at"),
        ("jane@", "email_empty_domain"),
        ("jane@example", "email_domain_invalid"),
        ("jane@example.xyz", "email_domain_tld_not_allowlisted"),
        ("jane+ops@example.com", "email_aliases_not_allowed"),
        ("ja!ne@example.com", "email_user_part_illegal_char"),
        ("jané@example.com", "email_user_part_non_ascii"),
        ("ja..ne@example.com", "email_user_part_consecutive_symbols"),
        (".jane@example.com", "email_user_part_leading_symbols"),
        ("jane-@example.com", "email_user_part_trailing_symbols"),
        ("j" * 65 + "@example.com", "email_user_part_invalid_length"),
    ],
)
def test_email_problems(email: str, reason: str) -> None:
    assert reason in email_problems(email)


def test_validate_email_canonicalizes_and_reports_every_reason() -> None:
    assert validate_email("  Jane@Example.COM ") == "jane@example.com"

    with pytest.raises(OpsicleError) as excinfo:
        validate_email(".ja+ne@example.xyz")

    assert excinfo.value.kind is ErrorKind.INVALID_INPUT
    assert excinfo.value.reasons >= {
        "email_user_part_leading_symbols",
        "email_aliases_not_allowed",
        "email_domain_tld_not_allowlisted",
    }


def test_validate_email_with_custom_allowlist() -> None:
    assert validate_email("jane@example.xyz", allowed_tlds=["xyz"]) == "jane@example.xyz"


@pytest.mark.parametrize(
    ("code", "reasons"),
    [
        ("acme", {"org_code_too_short"}),
        ("a" * 33, {"org_code_too_long"}),
        ("acme_ops", {"org_code_invalid_character"}),
        ("-acme-ops", {"org_code_invalid_prefix_character"}),
        ("acme-ops-", {"org_code_invalid_postfix_character"}),
    ],
)
def test_org_code_rules(code: str, reasons: set[str]) -> None:
    with pytest.raises(OpsicleError) as excinfo:
        validate_org_code(code)

    assert excinfo.value.reasons == reasons


def test_org_code_and_name_accept_valid_values() -> None:
    assert validate_org_code("acme-ops-2") == "acme-ops-2"
    assert validate_org_name("Acme & Sons (Ops), Ltd.") == "Acme & Sons (Ops), Ltd."


@pytest.mark.parametrize(
    ("name", "reason"),
    [
        ("Acme", "org_name_too_short"),
        ("A" * 256, "org_name_too_long"),
        ("Acme Ops <script>", "org_name_invalid_character"),
    ],
)
def test_org_name_rules(name: str, reason: str) -> None:
    with pytest.raises(OpsicleError) as excinfo:
        validate_org_name(name)

    assert reason in excinfo.value.reasons


def test_password_policy() -> None:
    assert password_problems("Corrects horse battery!1") == set()
    assert password_problems("") == {
        "password_too_short",
        "password_no_uppercase",
        "password_no_lowercase",
        "password_no_digit",
        "password_no_symbol",
    }
    assert password_problems("ALLUPPERCASE123!") == {"password_no_lowercase"}
    with pytest.raises(OpsicleError) as excinfo:
        validate_password("short1!A")
    assert excinfo.value.reasons == {"password_too_short"}


def test_validate_uuid() -> None:
    assert validate_uuid("6F9619FF-8B86-D011-B42D-00C04FC964FF") == "6f9619ff-8b86-d011-b42d-00c04fc964ff"
    with pytest.raises(OpsicleError) as excinfo:
        validate_uuid("nope", field="token_id")
    assert excinfo.value.reasons == {"token_id_not_uuid"}
