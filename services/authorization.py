"""Role and area checks applied before the data service writes anything.

The guard is a pure function of the acting principal, the action and an
optional snapshot of the stored record. It raises ``AuthorizationError`` and
never touches the database itself.
"""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from services.errors import AuthorizationError

ROLE_ADMINISTRATOR = "Administrator"
ROLE_AREA_MANAGER = "Area Manager"
ROLE_OVERSIGHT = "Oversight Committee"
ROLE_MEMBER = "Member"

ROLE_ALIASES: Dict[str, str] = {
    "administrator": ROLE_ADMINISTRATOR,
    "administrador": ROLE_ADMINISTRATOR,
    "admin": ROLE_ADMINISTRATOR,
    "area manager": ROLE_AREA_MANAGER,
    "gerente de area": ROLE_AREA_MANAGER,
    "oversight committee": ROLE_OVERSIGHT,
    "oversight": ROLE_OVERSIGHT,
    "comite de vigilancia": ROLE_OVERSIGHT,
    "junta de vigilancia": ROLE_OVERSIGHT,
    "member": ROLE_MEMBER,
    "asociado": ROLE_MEMBER,
}

MANAGE_USERS = "manage_users"
MANAGE_STRATEGIC_GOALS = "manage_strategic_goals"
MANAGE_MEETINGS = "manage_meetings"
MANAGE_DISCUSSIONS = "manage_discussion_threads"
MANAGE_NOTIFICATIONS = "manage_notifications"
WRITE_INDICATOR = "write_indicator"
DELETE_INDICATOR = "delete_indicator"

COLLECTION_ROLES = {
    MANAGE_USERS: frozenset({ROLE_ADMINISTRATOR}),
    MANAGE_STRATEGIC_GOALS: frozenset({ROLE_ADMINISTRATOR}),
    MANAGE_MEETINGS: frozenset({ROLE_ADMINISTRATOR, ROLE_OVERSIGHT}),
    MANAGE_DISCUSSIONS: frozenset({ROLE_ADMINISTRATOR, ROLE_AREA_MANAGER, ROLE_OVERSIGHT, ROLE_MEMBER}),
    MANAGE_NOTIFICATIONS: frozenset({ROLE_ADMINISTRATOR, ROLE_AREA_MANAGER, ROLE_OVERSIGHT, ROLE_MEMBER}),
}

DENIAL_MESSAGES = {
    MANAGE_USERS: "You do not have permission to manage users.",
    MANAGE_STRATEGIC_GOALS: "You do not have permission to manage strategic goals.",
    MANAGE_MEETINGS: "You do not have permission to manage meetings.",
    MANAGE_DISCUSSIONS: "You do not have permission to manage discussion threads.",
    MANAGE_NOTIFICATIONS: "You do not have permission to manage notifications.",
}


class Actor(Protocol):
    id: str
    role: Optional[str]
    area: Optional[str]


@dataclass(frozen=True)
class IndicatorTarget:
    """The indicator an actor is about to write or delete.

    ``stored_area`` is ``None`` for an indicator that does not exist yet and
    ``submitted_area`` is ``None`` for a deletion.
    """

    indicator_id: str
    stored_area: Optional[str] = None
    submitted_area: Optional[str] = None
    exists: bool = False

    def describe(self) -> str:
        return f"indicator {self.indicator_id}"


def _fold(value: Optional[str]) -> str:
    text = unicodedata.normalize("NFKD", value or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.lower().split())


def canonical_role(role: Optional[str]) -> str:
    """Map a stored or token role to its canonical name; unknown roles are members."""
    return ROLE_ALIASES.get(_fold(role), ROLE_MEMBER)


def same_area(left: Optional[str], right: Optional[str]) -> bool:
    folded = _fold(left)
    return bool(folded) and folded == _fold(right)


def _authorize_indicator(actor: Actor, action: str, target: IndicatorTarget) -> None:
    role = canonical_role(actor.role)
    if role in (ROLE_ADMINISTRATOR, ROLE_OVERSIGHT):
        return
    verb = "delete" if action == DELETE_INDICATOR else "modify"
    if role != ROLE_AREA_MANAGER:
        raise AuthorizationError(
            f"You do not have permission to {verb} {target.describe()}.",
            target=target.describe(),
        )
    areas = []
    if target.exists:
        areas.append(target.stored_area)
    if action == WRITE_INDICATOR:
        areas.append(target.submitted_area)
    if not all(same_area(actor.area, area) for area in areas):
        raise AuthorizationError(
            f"You do not have permission to {verb} {target.describe()}, "
            f"which belongs to another area.",
            target=target.describe(),
        )


def authorize(actor: Actor, action: str, target: Optional[IndicatorTarget] = None) -> None:
    """Raise ``AuthorizationError`` unless ``actor`` may perform ``action``."""
    if action in (WRITE_INDICATOR, DELETE_INDICATOR):
        if target is None:
            raise ValueError("Indicator checks require a target")
        _authorize_indicator(actor, action, target)
        return
    allowed = COLLECTION_ROLES.get(action)
    if allowed is None:
        raise ValueError(f"Unknown action: {action}")
    if canonical_role(actor.role) not in allowed:
        raise AuthorizationError(DENIAL_MESSAGES[action], target=action.replace("manage_", ""))


__all__ = [
    "DELETE_INDICATOR",
    "IndicatorTarget",
    "MANAGE_DISCUSSIONS",
    "MANAGE_MEETINGS",
    "MANAGE_NOTIFICATIONS",
    "MANAGE_STRATEGIC_GOALS",
    "MANAGE_USERS",
    "ROLE_ADMINISTRATOR",
    "ROLE_AREA_MANAGER",
    "ROLE_MEMBER",
    "ROLE_OVERSIGHT",
    "WRITE_INDICATOR",
    "authorize",
    "canonical_role",
    "same_area",
]
