"""Bitmask permission algebra and the authorization evaluator.

A role grants or denies actions per resource using two bitmasks.  An action
is allowed when ``allow & action != 0`` and ``deny & action == 0``; when
several roles apply their allows and denies are unioned separately and the
deny union is applied last, so a deny on any role wins.

Organisation members carry a coarse tier.  ``admin``, ``reporter`` and
``billing`` are decided by the tier alone.  ``member`` is the deferred tier:
its authority is the reporter baseline plus the roles attached to the member
inside the organisation, minus every deny those roles carry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntFlag

from .exceptions import ErrorKind, OpsicleError

logger = logging.getLogger(__name__)


class Action(IntFlag):
    CREATE = 1
    VIEW = 2
    UPDATE = 4
    DELETE = 8
    EXECUTE = 16
    MANAGE = 32


ACTIONS_NONE = Action(0)
ACTIONS_REPORTER = Action.VIEW
ACTIONS_USER = ACTIONS_REPORTER | Action.EXECUTE
ACTIONS_OPERATOR = ACTIONS_USER | Action.CREATE | Action.UPDATE | Action.DELETE
ACTIONS_ADMIN = ACTIONS_OPERATOR | Action.MANAGE
ACTIONS_ALL = ACTIONS_ADMIN

ACTION_SETS: dict[str, Action] = {
    "reporter": ACTIONS_REPORTER,
    "user": ACTIONS_USER,
    "operator": ACTIONS_OPERATOR,
    "admin": ACTIONS_ADMIN,
}

_BILLING_ACTIONS = Action.VIEW | Action.UPDATE


class Resource(str, Enum):
    AUTOMATION_LOGS = "automation_logs"
    AUTOMATIONS = "automations"
    TEMPLATES = "templates"
    ORG = "org"
    ORG_BILLING = "org_billing"
    ORG_CONFIG = "org_config"
    ORG_USER = "org_user"


class MemberTier(str, Enum):
    ADMIN = "admin"
    BILLING = "billing"
    MEMBER = "member"
    REPORTER = "reporter"


# deferred members see the organisation and its roster; other resources need a role
DEFAULT_MEMBER_BASELINE: dict[Resource, Action] = {
    Resource.ORG: ACTIONS_REPORTER,
    Resource.ORG_USER: ACTIONS_REPORTER,
}


def parse_actions(value: int | str | Iterable[str]) -> Action:
    """Normalise an integer mask, a set name or action names into an :class:`Action`."""

    if isinstance(value, Action):
        return value
    if isinstance(value, int):
        if value < 0 or value & ~int(ACTIONS_ALL):
            raise OpsicleError(ErrorKind.INVALID_INPUT, f"unknown action bits in {value}", reasons={"action_invalid"})
        return Action(value)
    names = [value] if isinstance(value, str) else list(value)
    mask = ACTIONS_NONE
    for name in names:
        key = name.strip().lower()
        if key in ACTION_SETS:
            mask |= ACTION_SETS[key]
            continue
        try:
            mask |= Action[key.upper()]
        except KeyError as exc:
            raise OpsicleError(ErrorKind.INVALID_INPUT, f"unknown action {name!r}", reasons={"action_invalid"}) from exc
    return mask


def parse_resource(value: str | Resource) -> Resource:
    try:
        return Resource(value)
    except ValueError as exc:
        raise OpsicleError(ErrorKind.INVALID_INPUT, f"unknown resource {value!r}", reasons={"resource_invalid"}) from exc


@dataclass(slots=True, frozen=True)
class RoleGrant:
    """Allow and deny masks one role holds for one resource."""

    resource: Resource
    allows: Action = ACTIONS_NONE
    denys: Action = ACTIONS_NONE

    def permits(self, action: Action) -> bool:
        return bool(self.allows & action) and not (self.denys & action)


@dataclass(slots=True, frozen=True)
class RolePermissions:
    """Flattened permission rows of one role."""

    role_id: str
    grants: Mapping[Resource, RoleGrant] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, role_id: str, rows: Iterable[tuple[str, int, int]]) -> RolePermissions:
        grants: dict[Resource, RoleGrant] = {}
        for resource, allows, denys in rows:
            key = parse_resource(resource)
            grants[key] = RoleGrant(key, Action(allows), Action(denys))
        return cls(role_id=role_id, grants=grants)


@dataclass(slots=True, frozen=True)
class MemberSubject:
    """An organisation member evaluated by tier and attached roles."""

    user_id: str
    org_id: str
    tier: MemberTier
    roles: tuple[RolePermissions, ...] = ()


@dataclass(slots=True, frozen=True)
class TokenSubject:
    """An org token evaluated solely through its bound role."""

    token_id: str
    org_id: str
    role: RolePermissions


Subject = MemberSubject | TokenSubject


def fold_roles(roles: Iterable[RolePermissions], resource: Resource) -> tuple[Action, Action]:
    """Union the allow and deny masks of every role for ``resource``.

    Every role is visited regardless of earlier results.
    """

    allows = ACTIONS_NONE
    denys = ACTIONS_NONE
    for role in roles:
        grant = role.grants.get(resource)
        if grant is None:
            continue
        allows |= grant.allows
        denys |= grant.denys
    return allows, denys


def is_allowed(allows: int, denys: int, action: int) -> bool:
    return (allows & action) != 0 and (denys & action) == 0


class PermissionEvaluator:
    """Answer "can subject S perform action A on resource R within org O".

    ``member_baseline`` holds the reporter permissions every deferred member
    starts from. It is folded into the allow union, so an attached role that
    denies one of those actions still wins.
    """

    def __init__(self, member_baseline: Mapping[Resource, Action] | None = None) -> None:
        self.member_baseline = dict(DEFAULT_MEMBER_BASELINE if member_baseline is None else member_baseline)

    def evaluate(self, subject: Subject, action: Action, resource: Resource, *, org_id: str) -> bool:
        if not action:
            return False
        if subject.org_id != org_id:
            return False
        if isinstance(subject, TokenSubject):
            allows, denys = fold_roles((subject.role,), resource)
            return is_allowed(allows, denys, action)
        tier = subject.tier
        if tier is MemberTier.ADMIN:
            return True
        if tier is MemberTier.REPORTER:
            return action == Action.VIEW
        if tier is MemberTier.BILLING:
            return resource is Resource.ORG_BILLING and (action & ~_BILLING_ACTIONS) == 0
        allows, denys = fold_roles(subject.roles, resource)
        allows |= self.member_baseline.get(resource, ACTIONS_NONE)
        return is_allowed(allows, denys, action)

    def require(self, subject: Subject, action: Action, resource: Resource, *, org_id: str) -> None:
        """Raise ``forbidden`` unless :meth:`evaluate` grants the request."""

        if self.evaluate(subject, action, resource, org_id=org_id):
            return
        logger.debug(
            "denied %s on %s in org %s for %s",
            action.name if action.name else int(action),
            resource.value,
            org_id,
            _subject_label(subject),
        )
        raise OpsicleError(ErrorKind.FORBIDDEN, f"{resource.value} requires {_action_label(action)}")


def _subject_label(subject: Subject) -> str:
    if isinstance(subject, TokenSubject):
        return f"token[{subject.token_id}]"
    return f"user[{subject.user_id}]"


def _action_label(action: Action) -> str:
    names = [member.name.lower() for member in Action if member & action and member.name]
    return "|".join(names) or "nothing"


__all__ = [
    "ACTIONS_ADMIN",
    "ACTIONS_ALL",
    "ACTIONS_NONE",
    "ACTIONS_OPERATOR",
    "ACTIONS_REPORTER",
    "ACTIONS_USER",
    "ACTION_SETS",
    "DEFAULT_MEMBER_BASELINE",
    "Action",
    "MemberSubject",
    "MemberTier",
    "PermissionEvaluator",
    "Resource",
    "RoleGrant",
    "RolePermissions",
    "Subject",
    "TokenSubject",
    "fold_roles",
    "is_allowed",
    "parse_actions",
    "parse_resource",
]
