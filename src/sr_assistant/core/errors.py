"""
Error taxonomy shared by the session and request-creation layers.

An unresolved identity is not an error: resolvers return ``None`` and the
lifecycle manager reports "no live session". Duplicate logout signals are
absorbed by the lifecycle guard and never raised.
"""

from __future__ import annotations

from typing import Any


class AssistantError(Exception):
    """Base class for errors raised inside the assistant."""


class ToolUnavailable(AssistantError):
    """The Ticketing API could not be reached or answered with a transient failure."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: int | None = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        # Set when a write reached the server and may have taken effect
        self.outcome_unknown = outcome_unknown


class AuthorizationFailed(ToolUnavailable):
    """The Ticketing API rejected our credentials (HTTP 401/403)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, retryable=False, status_code=status_code)


class RecordRejected(AssistantError):
    """The Ticketing API definitively refused to create the record."""


class GenerationFailed(AssistantError):
    """The LLM Provider failed or returned nothing usable."""


class SchemaIncomplete(AssistantError):
    """Required fields are still unset at commit time."""

    def __init__(self, missing: list[Any]):
        self.missing = list(missing)
        labels = ", ".join(getattr(f, "label", None) or getattr(f, "name", str(f)) for f in self.missing)
        super().__init__(f"Missing required fields: {labels}")


class SessionRequired(AssistantError):
    """A channel operation was attempted while no session is live."""
