"""Organisations, their members and their roles."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Iterable

from .exceptions import ErrorKind, InvalidInputError, OpsicleError
from .models import Org, OrgRole, OrgRolePermission, OrgType, OrgUser, OrgUserRole, User
from .observability import AuditLog
from .orm import ORM, utcnow
from .permissions import (
    ACTIONS_ADMIN,
    ACTIONS_NONE,
    Action,
    MemberSubject,
    MemberTier,
    Resource,
    RolePermissions,
    parse_actions,
    parse_resource,
)
from .store import expect_rows
from .validation import validate_org_code, validate_org_name

__all__ = ["ADMIN_ROLE_NAME", "OrgService", "load_role_permissions"]

logger = logging.getLogger(__name__)

ADMIN_ROLE_NAME = "administrators"


async def load_role_permissions(orm: ORM, role_id: str) -> RolePermissions:
    rows = await orm(OrgRolePermission).list(org_role_id=role_id)
    return RolePermissions.from_rows(role_id, ((row.resource.value, row.allows, row.denys) for row in rows))


class OrgService:
    """Organisation lifecycle and membership management."""

    def __init__(
        self,
        orm: ORM,
        *,
        audit: AuditLog | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._orm = orm
        self._audit = audit or AuditLog()
        self._clock = clock or utcnow

    async def create(
        self,
        *,
        name: str,
        code: str,
        created_by: str,
        type: OrgType = OrgType.TENANT,
    ) -> Org:
        """Create an org; the creator joins as an admin holding the ``administrators`` role.

        Only one ``admin`` org may exist in a deployment.
        """

        name = name.strip()
        code = code.strip()
        problems: set[str] = set()
        for validator, value in ((validate_org_name, name), (validate_org_code, code)):
            try:
                validator(value)
            except InvalidInputError as exc:
                problems |= exc.reasons
        if problems:
            raise InvalidInputError(problems, "invalid org")
        now = self._clock()
        async with self._orm.transaction() as tx:
            await tx(User).get(id=created_by)
            if type is OrgType.ADMIN and await tx(Org).find(type=OrgType.ADMIN) is not None:
                raise OpsicleError(ErrorKind.DUPLICATE_ENTRY, "an admin org already exists")
            org = await tx(Org).create(Org(name=name, code=code, type=type, created_by=created_by, created_at=now))
            await tx(OrgUser).create(
                OrgUser(org_id=org.id, user_id=created_by, member_type=MemberTier.ADMIN, created_at=now)
            )
            role = await tx(OrgRole).create(
                OrgRole(org_id=org.id, name=ADMIN_ROLE_NAME, created_by=created_by, created_at=now, last_updated_at=now)
            )
            for resource in Resource:
                await tx(OrgRolePermission).create(
                    OrgRolePermission(org_role_id=role.id, resource=resource, allows=int(ACTIONS_ADMIN))
                )
            await tx(OrgUserRole).create(
                OrgUserRole(org_id=org.id, user_id=created_by, org_role_id=role.id, assigned_by=created_by)
            )
        logger.info("user[%s] created org[%s]", created_by, org.code)
        self._audit.emit("org.created", verb="create", entity_id=created_by, resource_id=org.id, resource_type="org")
        return org

    async def get(self, org_id: str) -> Org:
        return await self._orm(Org).get(id=org_id, is_deleted=False)

    async def get_by_code(self, code: str) -> Org:
        return await self._orm(Org).get(code=code, is_deleted=False)

    async def list_for_user(self, user_id: str) -> list[Org]:
        memberships = await self._orm(OrgUser).list(user_id=user_id)
        orgs: list[Org] = []
        for membership in memberships:
            org = await self._orm(Org).find(id=membership.org_id, is_deleted=False)
            if org is not None:
                orgs.append(org)
        return sorted(orgs, key=lambda org: org.code)

    async def member_count(self, org_id: str) -> int:
        return len(await self._orm(OrgUser).list(org_id=org_id))

    async def delete(self, org_id: str, *, actor_id: str | None = None) -> None:
        """Hard delete an org and, through cascades, everything that belongs to it."""

        affected = await self._orm(Org).delete(id=org_id)
        expect_rows(affected, action="delete org")
        self._audit.emit("org.deleted", verb="delete", entity_id=actor_id, resource_id=org_id, resource_type="org")

    async def add_member(
        self,
        org_id: str,
        user_id: str,
        *,
        tier: MemberTier = MemberTier.MEMBER,
        actor_id: str | None = None,
    ) -> OrgUser:
        member = await self._orm(OrgUser).create(
            OrgUser(org_id=org_id, user_id=user_id, member_type=tier, created_at=self._clock())
        )
        self._audit.emit(
            "org.member_added",
            verb="create",
            entity_id=actor_id,
            resource_id=org_id,
            resource_type="org_user",
            data={"user_id": user_id, "tier": tier.value},
        )
        return member

    async def get_member(self, org_id: str, user_id: str) -> OrgUser:
        return await self._orm(OrgUser).get(org_id=org_id, user_id=user_id)

    async def list_members(self, org_id: str) -> list[OrgUser]:
        return await self._orm(OrgUser).list(org_id=org_id, order_by=["created_at"])

    async def update_member_tier(self, org_id: str, user_id: str, tier: MemberTier) -> None:
        affected = await self._orm(OrgUser).update({"member_type": tier}, org_id=org_id, user_id=user_id)
        expect_rows(affected, action="update member tier")

    async def remove_member(self, org_id: str, user_id: str, *, actor_id: str | None = None) -> None:
        async with self._orm.transaction() as tx:
            await tx(OrgUserRole).delete(org_id=org_id, user_id=user_id)
            affected = await tx(OrgUser).delete(org_id=org_id, user_id=user_id)
            expect_rows(affected, action="remove org member")
        self._audit.emit(
            "org.member_removed",
            verb="delete",
            entity_id=actor_id,
            resource_id=org_id,
            resource_type="org_user",
            data={"user_id": user_id},
        )

    async def create_role(self, org_id: str, name: str, *, created_by: str | None = None) -> OrgRole:
        name = name.strip()
        if not name:
            raise InvalidInputError({"role_name_missing"}, "role name is required")
        now = self._clock()
        return await self._orm(OrgRole).create(
            OrgRole(org_id=org_id, name=name, created_by=created_by, created_at=now, last_updated_at=now)
        )

    async def list_roles(self, org_id: str) -> list[OrgRole]:
        return await self._orm(OrgRole).list(org_id=org_id, order_by=["name"])

    async def delete_role(self, org_id: str, role_id: str) -> None:
        affected = await self._orm(OrgRole).delete(id=role_id, org_id=org_id)
        expect_rows(affected, action="delete org role")

    async def set_permission(
        self,
        role_id: str,
        resource: Resource | str,
        *,
        allows: Action | int | str | Iterable[str] = ACTIONS_NONE,
        denys: Action | int | str | Iterable[str] = ACTIONS_NONE,
    ) -> OrgRolePermission:
        """Attach allow and deny masks for ``resource``; a second row for the same pair is ``duplicate_entry``."""

        permission = OrgRolePermission(
            org_role_id=role_id,
            resource=parse_resource(resource),
            allows=int(parse_actions(allows)),
            denys=int(parse_actions(denys)),
        )
        await self._orm(OrgRolePermission).create(permission)
        await self._orm(OrgRole).update({"last_updated_at": self._clock()}, id=role_id)
        return permission

    async def role_permissions(self, role_id: str) -> RolePermissions:
        return await load_role_permissions(self._orm, role_id)

    async def assign_role(
        self,
        org_id: str,
        user_id: str,
        role_id: str,
        *,
        assigned_by: str | None = None,
    ) -> OrgUserRole:
        await self._orm(OrgUser).get(org_id=org_id, user_id=user_id)
        await self._orm(OrgRole).get(id=role_id, org_id=org_id)
        return await self._orm(OrgUserRole).create(
            OrgUserRole(org_id=org_id, user_id=user_id, org_role_id=role_id, assigned_by=assigned_by)
        )

    async def unassign_role(self, org_id: str, user_id: str, role_id: str) -> None:
        affected = await self._orm(OrgUserRole).delete(org_id=org_id, user_id=user_id, org_role_id=role_id)
        expect_rows(affected, action="unassign org role")

    async def list_user_roles(self, org_id: str, user_id: str) -> list[OrgRole]:
        links = await self._orm(OrgUserRole).list(org_id=org_id, user_id=user_id)
        return [await self._orm(OrgRole).get(id=link.org_role_id) for link in links]

    async def subject_for(self, org_id: str, user_id: str) -> MemberSubject:
        """Build the authorization subject for a member, loading every attached role."""

        member = await self._orm(OrgUser).find(org_id=org_id, user_id=user_id)
        if member is None:
            raise OpsicleError(ErrorKind.FORBIDDEN, "user is not a member of this org")
        links = await self._orm(OrgUserRole).list(org_id=org_id, user_id=user_id)
        roles = tuple([await load_role_permissions(self._orm, link.org_role_id) for link in links])
        return MemberSubject(user_id=user_id, org_id=org_id, tier=member.member_type, roles=roles)
