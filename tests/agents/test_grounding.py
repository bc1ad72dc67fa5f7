"""
Tests for the grounded context handed to the LLM.
"""

from sr_assistant.agents.grounding import build_grounded_context
from sr_assistant.agents.intent_classifier import TurnIntent
from sr_assistant.agents.llm_provider import build_chat_history
from sr_assistant.agents.models import CreatedRecord, Message, RequestCreationState, RequestDraft, Role

State = RequestCreationState


def test_catalog_is_listed_in_order(offerings, identity):
    draft = RequestDraft(state=State.CATALOG_SHOWN, catalog=tuple(offerings))

    message = build_grounded_context(draft, TurnIntent(kind="START_REQUEST"), identity).to_system_message()

    assert "USER: Jane Doe" in message
    assert "1. Laptop Request - New or replacement laptop" in message
    assert "3. Password Reset" in message
    assert message.index("Laptop Request") < message.index("Password Reset")
    assert "FIELDS" not in message


def test_fieldset_shows_status_and_missing(offerings, laptop_schema):
    draft = RequestDraft(
        state=State.FIELDSET_SHOWN,
        offering=offerings[0],
        schema=laptop_schema,
        values={"Model": "Standard"},
    )

    grounded = build_grounded_context(draft, TurnIntent(kind="PROVIDE_VALUES"))
    message = grounded.to_system_message()

    assert grounded.missing == ("Requester Email", "Business Justification")
    assert "- Model [required] = Standard options: Standard, Performance" in message
    assert "- Notes [optional] (empty)" in message
    assert "MISSING REQUIRED: Requester Email, Business Justification" in message
    assert "CATALOG" not in message


def test_complete_form_invites_submit(offerings, laptop_schema):
    values = {"RequesterEmail": "a@b.c", "Justification": "x", "Model": "Standard"}
    draft = RequestDraft(state=State.FIELDSET_SHOWN, offering=offerings[0], schema=laptop_schema, values=values)

    message = build_grounded_context(draft, TurnIntent(kind="CONFIRM")).to_system_message()

    assert "MISSING REQUIRED: none" in message
    assert "Submission still requires the explicit submit action" in message


def test_no_record_means_explicit_denial(offerings, laptop_schema):
    draft = RequestDraft(state=State.FIELDSET_SHOWN, offering=offerings[0], schema=laptop_schema)

    message = build_grounded_context(draft, TurnIntent(kind="OTHER")).to_system_message()

    assert "RECORD: none created" in message
    assert "MUST NOT" in message


def test_record_appears_once_created(offerings, laptop_schema):
    draft = RequestDraft(
        state=State.COMPLETED,
        offering=offerings[0],
        schema=laptop_schema,
        record=CreatedRecord(record_id="REC-9", record_number="SR-77"),
    )

    message = build_grounded_context(draft, TurnIntent(kind="OTHER")).to_system_message()

    assert "RECORD: created SR-77 (record id REC-9)" in message
    assert "none created" not in message


def test_record_without_number_is_not_given_one(offerings, laptop_schema):
    draft = RequestDraft(
        state=State.COMPLETED,
        offering=offerings[0],
        schema=laptop_schema,
        record=CreatedRecord(record_id="REC-9", record_number=""),
    )

    message = build_grounded_context(draft, TurnIntent(kind="OTHER")).to_system_message()

    assert "RECORD: created, but no request number was returned" in message


def test_ambiguous_turn_carries_reason(offerings):
    draft = RequestDraft(state=State.CATALOG_SHOWN, catalog=tuple(offerings))
    intent = TurnIntent(kind="AMBIGUOUS", reason="several offerings named")

    grounded = build_grounded_context(draft, intent)

    assert grounded.notice.endswith("(several offerings named)")


def test_chat_history_starts_with_grounded_facts_and_keeps_window(offerings):
    draft = RequestDraft(state=State.CATALOG_SHOWN, catalog=tuple(offerings))
    grounded = build_grounded_context(draft, TurnIntent(kind="START_REQUEST"))
    history = [Message(Role.USER, f"message {i}") for i in range(5)]
    history.append(Message(Role.ASSISTANT, "latest reply"))

    chat = build_chat_history(grounded, history, window=3)

    assert len(chat.messages) == 4
    assert "GROUNDED FACTS" in chat.messages[0].content
    assert chat.messages[1].content == "message 3"
    assert chat.messages[-1].content == "latest reply"
