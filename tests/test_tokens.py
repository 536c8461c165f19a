from __future__ import annotations

import re
import uuid

import pytest
from cryptography.x509.oid import NameOID

from opsicle.bootstrap import OpsicleCore
from opsicle.certificates import CertificateBundle, decode_b64_pem, verify_leaf
from opsicle.exceptions import ErrorKind, OpsicleError
from opsicle.models import Org, OrgRole, OrgToken, OrgTokenRole, User
from opsicle.permissions import Action, Resource
from opsicle.tokens import API_KEY_PREFIX, generate_api_key
from tests.support import create_verified_user, make_core


async def _org_with_role(core: OpsicleCore) -> tuple[User, Org, OrgRole]:
    owner = await create_verified_user(core, "owner@example.com")
    org = await core.orgs.create(name="Acme Operations", code="acme-ops", created_by=owner.id)
    role = await core.orgs.create_role(org.id, "deployers", created_by=owner.id)
    await core.orgs.set_permission(role.id, Resource.AUTOMATIONS, allows=["view", "execute"])
    await core.authorities.create(org.id, actor_id=owner.id)
    return owner, org, role


def test_generate_api_key_format() -> None:
    key = generate_api_key()

    assert key.startswith(API_KEY_PREFIX)
    assert re.fullmatch(r"opsk_[0-9a-f]{64}", key)
    assert generate_api_key() != key


@pytest.mark.asyncio
async def test_create_token_issues_client_certificate_and_hashes_key() -> None:
    core, clock, _ = make_core()
    owner, org, role = await _org_with_role(core)

    issued = await core.tokens.create(org_id=org.id, name="ci", role_id=role.id, created_by=owner.id)

    stored = await core.orm(OrgToken).get(id=issued.token_id)
    assert stored.api_key_hash is not None and stored.api_key_hash.startswith("$argon2id$")
    assert issued.api_key not in stored.api_key_hash
    leaf = CertificateBundle(cert_pem=issued.certificate_pem.encode(), key_pem=issued.private_key_pem.encode())
    subject = leaf.certificate.subject
    assert subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "acme-ops"
    assert subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == org.id
    assert subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)[0].value == issued.token_id
    ca = await core.authorities.load_active(org.id)
    assert verify_leaf(leaf.cert_pem, ca.cert_pem, at=clock())
    assert leaf.not_after <= ca.not_after
    assert await core.tokens.key_usage(org.id, issued.token_id) == [
        "digital_signature",
        "key_encipherment",
        "client_auth",
    ]
    assert (await core.tokens.role_of(issued.token_id)).id == role.id


@pytest.mark.asyncio
async def test_validate_returns_token_subject_scoped_to_role() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    issued = await core.tokens.create(org_id=org.id, name="ci", role_id=role.id, created_by=owner.id)

    subject = await core.tokens.validate(issued.token_id, issued.api_key)

    assert subject.org_id == org.id
    assert subject.role.role_id == role.id
    assert core.permissions.evaluate(subject, Action.EXECUTE, Resource.AUTOMATIONS, org_id=org.id)
    assert not core.permissions.evaluate(subject, Action.DELETE, Resource.AUTOMATIONS, org_id=org.id)
    assert not core.permissions.evaluate(subject, Action.VIEW, Resource.ORG, org_id=org.id)


@pytest.mark.asyncio
async def test_validate_rejects_unknown_id_and_wrong_key() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    issued = await core.tokens.create(org_id=org.id, name="ci", role_id=role.id, created_by=owner.id)

    with pytest.raises(OpsicleError) as unknown:
        await core.tokens.validate(str(uuid.uuid4()), issued.api_key)
    with pytest.raises(OpsicleError) as wrong:
        await core.tokens.validate(issued.token_id, generate_api_key())

    assert unknown.value.kind is ErrorKind.TOKEN_ID_UNKNOWN
    assert wrong.value.kind is ErrorKind.TOKEN_KEY_INVALID
    assert unknown.value.public_kind is wrong.value.public_kind is ErrorKind.INVALID_CREDENTIALS
    assert unknown.value.to_response_body() == wrong.value.to_response_body()


@pytest.mark.asyncio
async def test_caller_supplied_id_and_key() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    token_id = str(uuid.uuid4())

    issued = await core.tokens.create(
        org_id=org.id, name="imported", role_id=role.id, token_id=token_id, api_key="opsk_imported-key"
    )

    assert issued.token_id == token_id
    assert (await core.tokens.validate(token_id, "opsk_imported-key")).token_id == token_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "reason"),
    [
        ({"token_id": "not-a-uuid"}, "token_id_not_uuid"),
        ({"name": "   "}, "token_name_missing"),
    ],
)
async def test_create_rejects_bad_input(kwargs: dict[str, str], reason: str) -> None:
    core, _, _ = make_core()
    _, org, role = await _org_with_role(core)
    arguments = {"org_id": org.id, "name": "ci", "role_id": role.id, **kwargs}

    with pytest.raises(OpsicleError) as excinfo:
        await core.tokens.create(**arguments)
    assert excinfo.value.reasons == {reason}


@pytest.mark.asyncio
async def test_create_needs_role_of_the_same_org_and_an_active_ca() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    other = await core.orgs.create(name="Other Company", code="other-co", created_by=owner.id)
    foreign_role = await core.orgs.create_role(other.id, "deployers")

    with pytest.raises(OpsicleError) as wrong_org:
        await core.tokens.create(org_id=org.id, name="ci", role_id=foreign_role.id)
    assert wrong_org.value.kind is ErrorKind.NOT_FOUND

    with pytest.raises(OpsicleError) as no_ca:
        await core.tokens.create(org_id=other.id, name="ci", role_id=foreign_role.id)
    assert no_ca.value.kind is ErrorKind.CA_NOT_FOUND
    assert await core.orm(OrgToken).list(org_id=other.id) == []


@pytest.mark.asyncio
async def test_list_get_and_delete_tokens_are_redacted() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    first = await core.tokens.create(org_id=org.id, name="ci", role_id=role.id)
    second = await core.tokens.create(org_id=org.id, name="cd", role_id=role.id)

    listed = await core.tokens.list(org.id)
    fetched = await core.tokens.get(org.id, first.token_id)

    assert {token.id for token in listed} == {first.token_id, second.token_id}
    for token in [*listed, fetched]:
        assert token.api_key_hash is None
        assert token.private_key_b64 is None
        assert token.certificate_b64 is None

    await core.tokens.delete(org.id, first.token_id, actor_id=owner.id)

    assert await core.orm(OrgTokenRole).find(org_token_id=first.token_id) is None
    with pytest.raises(OpsicleError) as excinfo:
        await core.tokens.validate(first.token_id, first.api_key)
    assert excinfo.value.kind is ErrorKind.TOKEN_ID_UNKNOWN
    with pytest.raises(OpsicleError) as missing:
        await core.tokens.delete(org.id, first.token_id)
    assert missing.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_get_owned_returns_key_material_to_the_key_holder() -> None:
    core, _, _ = make_core()
    owner, org, role = await _org_with_role(core)
    other = await core.orgs.create(name="Other Company", code="other-co", created_by=owner.id)
    issued = await core.tokens.create(org_id=org.id, name="ci", role_id=role.id, created_by=owner.id)

    token = await core.tokens.get_owned(org.id, issued.token_id, issued.api_key)

    assert token.api_key_hash is None
    assert token.certificate_b64 is not None and token.private_key_b64 is not None
    assert decode_b64_pem(token.certificate_b64).decode() == issued.certificate_pem
    assert decode_b64_pem(token.private_key_b64).decode() == issued.private_key_pem
    with pytest.raises(OpsicleError) as wrong_key:
        await core.tokens.get_owned(org.id, issued.token_id, generate_api_key())
    assert wrong_key.value.kind is ErrorKind.TOKEN_KEY_INVALID
    with pytest.raises(OpsicleError) as wrong_org:
        await core.tokens.get_owned(other.id, issued.token_id, issued.api_key)
    assert wrong_org.value.kind is ErrorKind.TOKEN_ID_UNKNOWN
