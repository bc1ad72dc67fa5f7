"""
Grounded context (GROUND stage).

The only facts the LLM Provider ever sees about the request: the
catalog as returned by the Ticketing API, the selected offering's
declared fields, which of them are filled or missing, and a created
record only once one exists. Nothing else crosses into generation as
fact.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sr_assistant.agents.intent_classifier import TurnIntent
from sr_assistant.agents.models import (
    CreatedRecord,
    FieldSpec,
    Offering,
    RequestCreationState,
    RequestDraft,
)
from sr_assistant.agents.validation import find_missing_required
from sr_assistant.session.models import Identity

BASE_INSTRUCTIONS = (
    "You are the service request assistant for the Ivanti service desk.\n"
    "Reply in short, friendly sentences. Use markdown lists for options and fields.\n"
    "Only state facts that appear in the GROUNDED FACTS block below. "
    "Never invent offerings, field names, option values, ticket numbers or record ids."
)


@dataclass(frozen=True)
class GroundedContext:
    state: RequestCreationState
    intent: str
    user_name: str = ""
    catalog: tuple[Offering, ...] = ()
    suggested: Offering | None = None
    offering: Offering | None = None
    fields: tuple[FieldSpec, ...] = ()
    filled: dict[str, str] = field(default_factory=dict)
    missing: tuple[str, ...] = ()
    rejected: dict[str, str] = field(default_factory=dict)
    record: CreatedRecord | None = None
    notice: str = ""

    def to_system_message(self) -> str:
        lines: list[str] = [BASE_INSTRUCTIONS, "", "--- GROUNDED FACTS ---"]
        lines.append(f"STATE: {self.state.value}")
        lines.append(f"TURN: {self.intent}")
        if self.user_name:
            lines.append(f"USER: {self.user_name}")

        if self.catalog and self.state in (
            RequestCreationState.CATALOG_SHOWN,
            RequestCreationState.OFFERING_SUGGESTED,
        ):
            lines.append(f"CATALOG ({len(self.catalog)} offerings returned by the ticketing system, in this order):")
            for i, offering in enumerate(self.catalog, start=1):
                detail = f" - {offering.description}" if offering.description else ""
                lines.append(f"  {i}. {offering.name}{detail}")
            lines.append(
                "If exactly one offering clearly fits, recommend it by its exact name. "
                "Otherwise ask the user to pick by name or number."
            )
        if self.suggested and self.state is RequestCreationState.OFFERING_SUGGESTED:
            lines.append(f"SUGGESTED: {self.suggested.name} (awaiting the user's confirmation)")

        if self.offering:
            lines.append(f"OFFERING: {self.offering.name}")
        if self.fields:
            lines.append("FIELDS (declared by the offering's schema):")
            for spec in self.fields:
                flag = "required" if spec.required else "optional"
                value = self.filled.get(spec.name)
                status = f"= {value}" if value else "(empty)"
                options = ""
                if spec.options:
                    options = " options: " + ", ".join(o.value for o in spec.options)
                lines.append(f"  - {spec.label} [{flag}] {status}{options}")
            if self.missing:
                lines.append("MISSING REQUIRED: " + ", ".join(self.missing))
                lines.append("Ask the user for the missing required fields, e.g. 'Label: value'.")
            elif self.state is RequestCreationState.FIELDSET_SHOWN:
                lines.append("MISSING REQUIRED: none")
                lines.append("All required fields are set. Tell the user they can submit the request when ready.")
        for name, value in self.rejected.items():
            lines.append(f"REJECTED VALUE: '{value}' for {name} is not one of the declared options")

        if self.record:
            if self.record.confirmed:
                lines.append(f"RECORD: created {self.record.record_number} (record id {self.record.record_id})")
            else:
                lines.append("RECORD: created, but no request number was returned. Do not invent one.")
        else:
            # Submission happens only through the explicit commit action
            lines.append("RECORD: none created. You MUST NOT say the request was submitted or created.")

        if self.notice:
            lines.append(f"NOTE: {self.notice}")
        return "\n".join(lines)


NOTICES = {
    "AMBIGUOUS": "The user's choice was ambiguous. Ask a clarifying question; do not assume a selection.",
    "CONFIRM": "The user confirmed in chat. Submission still requires the explicit submit action.",
    "CANCEL": "The request was cancelled and its draft discarded.",
}


def build_grounded_context(
    draft: RequestDraft,
    intent: TurnIntent,
    identity: Identity | None = None,
    notice: str = "",
) -> GroundedContext:
    """Assemble the fact-bounded context for ``draft`` after this turn's tool results are merged."""
    fields: tuple[FieldSpec, ...] = ()
    missing: tuple[str, ...] = ()
    if draft.schema is not None and draft.state in (
        RequestCreationState.FIELDSET_SHOWN,
        RequestCreationState.COMPLETED,
    ):
        fields = draft.schema.fields
        missing = tuple(spec.label for spec in find_missing_required(draft.schema, draft.values))

    if not notice:
        notice = NOTICES.get(intent.kind, "")
        if intent.kind == "AMBIGUOUS" and intent.reason:
            notice = f"{notice} ({intent.reason})"

    return GroundedContext(
        state=draft.state,
        intent=intent.kind,
        user_name=identity.display_name if identity else "",
        catalog=draft.catalog,
        suggested=draft.suggested,
        offering=draft.offering,
        fields=fields,
        filled={k: v for k, v in draft.values.items() if v},
        missing=missing,
        rejected=dict(draft.rejected),
        record=draft.record,
        notice=notice,
    )
