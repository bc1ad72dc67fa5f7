"""
Identity Resolver

Resolves the current Ivanti user with progressively weaker strategies:
1. the current-user endpoints, tried in order
2. an employee search by display name, when the UI supplied a hint

Each strategy is one async call. Transport errors are logged and the
next strategy is tried; when every strategy fails the result is None
(no identity), which is a normal outcome and not an exception.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sr_assistant.core.client import APIClient
from sr_assistant.core.errors import ToolUnavailable
from sr_assistant.session.models import Identity

logger = logging.getLogger(__name__)

CURRENT_USER_ENDPOINTS = (
    "/HEAT/api/v1/User/current",
    "/HEAT/api/v1/user/current",
    "/HEAT/api/rest/Session/User",
)
EMPLOYEE_SEARCH_ENDPOINT = "/HEAT/api/odata/businessobject/employees"
EMPLOYEE_SELECT = "RecId,LoginID,DisplayName,FullName,PrimaryEmail,Status,Team,Department,Location"


class IdentityResolver(Protocol):
    async def resolve(self, hint: str | None = None) -> Identity | None: ...


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _names(value: Any) -> list[str]:
    """Roles and teams arrive as strings, lists of strings or lists of objects."""
    if not value:
        return []
    items = value if isinstance(value, list) else [value]
    names = []
    for item in items:
        if isinstance(item, dict):
            item = _first(item, "DisplayName", "Name", "Role", "Team")
        if item:
            names.append(str(item).strip())
    return [n for n in names if n]


def identity_from_record(raw: dict[str, Any]) -> Identity | None:
    """Build an Identity from an Ivanti user/employee record, or None if it has no id."""
    if not isinstance(raw, dict):
        return None
    # Some endpoints wrap the user object
    for wrapper in ("User", "user", "Employee"):
        if isinstance(raw.get(wrapper), dict):
            raw = raw[wrapper]
            break

    subject_id = _first(raw, "RecId", "recId", "UserId", "userId", "id")
    if not subject_id:
        return None

    login_id = _first(raw, "LoginID", "LoginId", "loginId", "UserName")
    display_name = _first(raw, "DisplayName", "displayName", "FullName", "fullName") or login_id or subject_id
    roles = _names(_first(raw, "Roles", "roles", "Role"))
    teams = _names(_first(raw, "Teams", "teams")) or _names(raw.get("Team"))

    return Identity(
        subject_id=str(subject_id),
        display_name=str(display_name),
        roles=frozenset(roles),
        teams=frozenset(teams),
        email=_first(raw, "PrimaryEmail", "Email", "email"),
        login_id=login_id,
        department=_first(raw, "Department", "department"),
        location=_first(raw, "Location", "location"),
    )


class IvantiIdentityResolver:
    """Identity strategy chain over the Ivanti REST and OData APIs."""

    def __init__(self, client: APIClient):
        self._client = client

    async def resolve(self, hint: str | None = None) -> Identity | None:
        identity = await self._from_current_user()
        if identity:
            return identity

        if hint:
            identity = await self._from_employee_search(hint)
            if identity:
                return identity

        logger.warning("Identity could not be resolved by any strategy")
        return None

    async def _from_current_user(self) -> Identity | None:
        for endpoint in CURRENT_USER_ENDPOINTS:
            try:
                data = await self._client.get(endpoint)
            except ToolUnavailable as e:
                logger.info(f"Identity strategy {endpoint} failed: {e}")
                continue
            identity = identity_from_record(data) if data else None
            if identity:
                logger.info(f"Identity resolved via {endpoint}: {identity.display_name}")
                return identity
        return None

    async def _from_employee_search(self, name: str) -> Identity | None:
        safe = name.replace("'", "''")
        params = {
            "$filter": f"DisplayName eq '{safe}' or FullName eq '{safe}'",
            "$select": EMPLOYEE_SELECT,
            "$top": "2",
        }
        try:
            data = await self._client.get(EMPLOYEE_SEARCH_ENDPOINT, params=params)
        except ToolUnavailable as e:
            logger.info(f"Employee search failed: {e}")
            return None

        matches = (data or {}).get("value") or []
        if len(matches) != 1:
            # Zero or several employees share the name; do not guess
            logger.info(f"Employee search for hint returned {len(matches)} match(es)")
            return None
        identity = identity_from_record(matches[0])
        if identity:
            logger.info(f"Identity resolved via employee search: {identity.display_name}")
        return identity
