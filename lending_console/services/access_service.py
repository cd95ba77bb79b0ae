from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from schemas.session import ConsoleUser


ROLE_STUDENT = "Student"
ROLE_ADMIN = "Admin"
DEFAULT_ROLE = ROLE_STUDENT
KNOWN_ROLES = (ROLE_STUDENT, ROLE_ADMIN)

RIGHTS_BY_ROLE = {
    ROLE_ADMIN: {
        "manageEquipment": True,
        "registerLoans": True,
        "recordReturns": True,
        "viewAllLoans": True,
        "viewReports": True,
        "configureConsole": True,
    },
    ROLE_STUDENT: {
        "manageEquipment": False,
        "registerLoans": False,
        "recordReturns": False,
        "viewAllLoans": False,
        "viewReports": False,
        "configureConsole": False,
    },
}


@dataclass(frozen=True)
class NavItem:
    title: str
    href: str
    capability: str | None = None


COMMON_NAV_ITEMS = (
    NavItem("Dashboard", "/dashboard"),
    NavItem("Inventory", "/inventory"),
    NavItem("Loans", "/loans"),
)

RESTRICTED_NAV_ITEMS = (
    NavItem("Reports", "/reports", capability="viewReports"),
    NavItem("Configuration", "/configuration", capability="configureConsole"),
)


def normalize_role(raw_role: Any) -> str:
    """Map any server-supplied role value onto one of the two console roles.

    The first character is uppercased and the rest lowercased before an exact
    comparison, so ``"admin"``, ``"ADMIN"`` and ``"Admin"`` all become
    ``"Admin"``. Anything else, including ``None`` and non-strings, falls back
    to ``"Student"``.
    """
    if not isinstance(raw_role, str) or not raw_role:
        return DEFAULT_ROLE
    candidate = raw_role[:1].upper() + raw_role[1:].lower()
    if candidate in KNOWN_ROLES:
        return candidate
    return DEFAULT_ROLE


def rights_for(user: ConsoleUser | None) -> dict[str, bool]:
    if user is None:
        return {key: False for key in RIGHTS_BY_ROLE[DEFAULT_ROLE]}
    return dict(RIGHTS_BY_ROLE[normalize_role(user.role)])


def can(user: ConsoleUser | None, capability: str) -> bool:
    if user is None:
        return False
    if capability not in RIGHTS_BY_ROLE[DEFAULT_ROLE]:
        raise KeyError(f"Unknown capability: {capability}")
    return bool(rights_for(user).get(capability))


def build_navigation(user: ConsoleUser | None, current_path: str = "") -> list[dict[str, Any]]:
    if user is None:
        return []
    items: list[dict[str, Any]] = []
    for item in COMMON_NAV_ITEMS + RESTRICTED_NAV_ITEMS:
        if item.capability and not can(user, item.capability):
            continue
        items.append(
            {
                "title": item.title,
                "href": item.href,
                "active": current_path == item.href or current_path.startswith(item.href + "/"),
            }
        )
    return items


def can_access_route(user: ConsoleUser | None, path: str) -> bool:
    if user is None:
        return False
    for item in COMMON_NAV_ITEMS + RESTRICTED_NAV_ITEMS:
        if path == item.href or path.startswith(item.href + "/"):
            return item.capability is None or can(user, item.capability)
    return False
