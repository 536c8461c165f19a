"""Input validators.

Every validator collects all of the problems it finds and raises a single
:class:`~opsicle.exceptions.InvalidInputError` whose ``reasons`` name each
one, e.g. ``{"email_invalid_at", "email_domain_invalid"}``.
"""

from __future__ import annotations

import re
import unicodedata
import uuid
from collections.abc import Iterable

from .exceptions import InvalidInputError

EMAIL_USER_PART_MAX_LENGTH = 64
ORG_CODE_MIN_LENGTH = 6
ORG_CODE_MAX_LENGTH = 32
ORG_NAME_MIN_LENGTH = 6
ORG_NAME_MAX_LENGTH = 255
PASSWORD_MIN_LENGTH = 12

DEFAULT_EMAIL_TLDS: tuple[str, ...] = ("ai", "com", "com.*", "co", "dev", "io", "me", "net", "org", "gov.*")

_DOMAIN_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_DOMAIN_PATTERN = re.compile(rf"^{_DOMAIN_LABEL}(?:\.{_DOMAIN_LABEL})*\.[a-z]{{2,}}$", re.IGNORECASE)
_ORG_CODE_SYMBOLS = frozenset("-")
_ORG_NAME_SYMBOLS = frozenset(".,- &!():")
_EMAIL_USER_SYMBOLS = frozenset(".-_")


def canonical_email(email: str) -> str:
    return email.strip().lower()


def email_problems(email: str, *, allowed_tlds: Iterable[str] = DEFAULT_EMAIL_TLDS) -> set[str]:
    """Return the reason codes ``email`` violates; empty when valid.

    Aliases using ``+`` are rejected.
    """

    if len(email) <= 3:
        return {"email_missing"}
    problems: set[str] = set()
    at = email.find("@")
    if at <= 0 or at != email.rfind("@"):
        problems.add("email_invalid_at")
    if at < 0:
        return problems
    user, domain = email[:at], email[at + 1 :]
    if not domain:
        problems.add("email_empty_domain")
    if not _DOMAIN_PATTERN.match(domain):
        problems.add("email_domain_invalid")
    if not _tld_allowed(domain.lower(), allowed_tlds):
        problems.add("email_domain_tld_not_allowlisted")
    if not 1 <= len(user) <= EMAIL_USER_PART_MAX_LENGTH:
        problems.add("email_user_part_invalid_length")
    previous = ""
    for index, char in enumerate(user):
        if not char.isascii():
            problems.add("email_user_part_non_ascii")
        if char == "+":
            problems.add("email_aliases_not_allowed")
        elif not (_is_latin_alnum(char) or char in _EMAIL_USER_SYMBOLS):
            problems.add("email_user_part_illegal_char")
        if char in ".-" and char == previous:
            problems.add("email_user_part_consecutive_symbols")
        if index == 0 and char in _EMAIL_USER_SYMBOLS:
            problems.add("email_user_part_leading_symbols")
        if index == len(user) - 1 and char in _EMAIL_USER_SYMBOLS:
            problems.add("email_user_part_trailing_symbols")
        previous = char
    return problems


def validate_email(email: str, *, allowed_tlds: Iterable[str] = DEFAULT_EMAIL_TLDS) -> str:
    """Return the canonical form of ``email`` or raise ``invalid_input``."""

    candidate = canonical_email(email)
    problems = email_problems(candidate, allowed_tlds=allowed_tlds)
    if problems:
        raise InvalidInputError(problems, "invalid email")
    return candidate


def _tld_allowed(domain: str, allowed_tlds: Iterable[str]) -> bool:
    labels = domain.split(".")
    for pattern in allowed_tlds:
        parts = pattern.lower().split(".")
        if len(labels) <= len(parts):
            continue
        tail = labels[-len(parts) :]
        if all(expected == "*" and actual.isalpha() or expected == actual for expected, actual in zip(parts, tail)):
            return True
    return False


def validate_org_code(code: str) -> str:
    problems: set[str] = set()
    if len(code) < ORG_CODE_MIN_LENGTH:
        problems.add("org_code_too_short")
    if len(code) > ORG_CODE_MAX_LENGTH:
        problems.add("org_code_too_long")
    if any(not (_is_latin_alnum(char) or char in _ORG_CODE_SYMBOLS) for char in code):
        problems.add("org_code_invalid_character")
    if code and not _is_latin_alnum(code[0]):
        problems.add("org_code_invalid_prefix_character")
    if code and not _is_latin_alnum(code[-1]):
        problems.add("org_code_invalid_postfix_character")
    if problems:
        raise InvalidInputError(problems, "invalid org code")
    return code


def validate_org_name(name: str) -> str:
    problems: set[str] = set()
    if len(name) < ORG_NAME_MIN_LENGTH:
        problems.add("org_name_too_short")
    if len(name) > ORG_NAME_MAX_LENGTH:
        problems.add("org_name_too_long")
    if any(not (char.isalnum() or char in _ORG_NAME_SYMBOLS) for char in name):
        problems.add("org_name_invalid_character")
    if problems:
        raise InvalidInputError(problems, "invalid org name")
    return name


def password_problems(password: str) -> set[str]:
    problems: set[str] = set()
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.add("password_too_short")
    if not any(char.isupper() for char in password):
        problems.add("password_no_uppercase")
    if not any(char.islower() for char in password):
        problems.add("password_no_lowercase")
    if not any(char.isdigit() for char in password):
        problems.add("password_no_digit")
    if not any(unicodedata.category(char)[0] in {"P", "S"} for char in password):
        problems.add("password_no_symbol")
    return problems


def validate_password(password: str) -> str:
    problems = password_problems(password)
    if problems:
        raise InvalidInputError(problems, "password does not meet the policy")
    return password


def validate_uuid(value: str, *, field: str = "id") -> str:
    try:
        parsed = uuid.UUID(value)
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidInputError({f"{field}_not_uuid"}, f"{field} must be a uuid") from exc
    return str(parsed)


def _is_latin_alnum(char: str) -> bool:
    return char.isascii() and char.isalnum()


__all__ = [
    "DEFAULT_EMAIL_TLDS",
    "canonical_email",
    "email_problems",
    "password_problems",
    "validate_email",
    "validate_org_code",
    "validate_org_name",
    "validate_password",
    "validate_uuid",
]
