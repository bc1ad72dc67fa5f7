"""
Identity and session records.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Identity:
    """Resolved Ivanti user. Replaced wholesale on re-resolution, never mutated."""

    subject_id: str
    display_name: str
    roles: frozenset[str] = field(default_factory=frozenset)
    teams: frozenset[str] = field(default_factory=frozenset)
    email: str | None = None
    login_id: str | None = None
    department: str | None = None
    location: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "displayName": self.display_name,
            "roles": sorted(self.roles),
            "teams": sorted(self.teams),
            "email": self.email,
            "loginId": self.login_id,
            "department": self.department,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Identity":
        return cls(
            subject_id=data["subjectId"],
            display_name=data.get("displayName") or data["subjectId"],
            roles=frozenset(data.get("roles") or ()),
            teams=frozenset(data.get("teams") or ()),
            email=data.get("email"),
            login_id=data.get("loginId"),
            department=data.get("department"),
            location=data.get("location"),
        )


@dataclass(frozen=True)
class Session:
    identity: Identity
    session_id: str
    established_at: datetime

    @classmethod
    def start(cls, identity: Identity) -> "Session":
        """New session with a token that has never been issued before."""
        return cls(identity=identity, session_id=uuid.uuid4().hex, established_at=datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "sessionId": self.session_id,
            "establishedAt": self.established_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            identity=Identity.from_dict(data["identity"]),
            session_id=data["sessionId"],
            established_at=datetime.fromisoformat(data["establishedAt"]),
        )


class SignalKind(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"


@dataclass(frozen=True)
class IdentitySignal:
    kind: SignalKind
    hint: str | None = None
    source: str = "ui"
