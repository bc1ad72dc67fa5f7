"""
Tests for TurnIntentClassifier and field value parsing.
"""

import pytest

from sr_assistant.agents.intent_classifier import (
    TurnIntentClassifier,
    offerings_named_in,
    parse_field_values,
)
from sr_assistant.agents.models import Offering, RequestCreationState, RequestDraft

State = RequestCreationState


@pytest.fixture
def classifier():
    return TurnIntentClassifier()


@pytest.fixture
def catalog_draft(offerings):
    return RequestDraft(state=State.CATALOG_SHOWN, catalog=tuple(offerings))


@pytest.fixture
def suggested_draft(offerings):
    return RequestDraft(state=State.OFFERING_SUGGESTED, catalog=tuple(offerings), suggested=offerings[0])


@pytest.fixture
def fieldset_draft(offerings, laptop_schema):
    return RequestDraft(
        state=State.FIELDSET_SHOWN,
        catalog=tuple(offerings),
        offering=offerings[0],
        schema=laptop_schema,
    )


class TestIdle:
    def test_request_phrase_starts_request(self, classifier):
        assert classifier.classify("I need a new laptop", RequestDraft()).kind == "START_REQUEST"

    def test_small_talk_is_other(self, classifier):
        assert classifier.classify("hello there", RequestDraft()).kind == "OTHER"

    def test_completed_draft_can_start_again(self, classifier):
        draft = RequestDraft(state=State.COMPLETED)
        assert classifier.classify("create a service request", draft).kind == "START_REQUEST"


class TestSelection:
    def test_full_name_selects(self, classifier, catalog_draft):
        intent = classifier.classify("Let's go with Password Reset", catalog_draft)

        assert intent.kind == "SELECT_OFFERING"
        assert intent.offering.offering_id == "off-password"

    def test_partial_name_does_not_select(self, classifier, catalog_draft):
        intent = classifier.classify("the password one maybe", catalog_draft)

        assert intent.kind != "SELECT_OFFERING"

    def test_two_names_are_ambiguous(self, classifier, catalog_draft):
        intent = classifier.classify("Laptop Request or Password Reset?", catalog_draft)

        assert intent.kind == "AMBIGUOUS"
        assert len(intent.candidates) == 2

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("2", "off-software"),
            ("option 3", "off-password"),
            ("#1", "off-laptop"),
            ("the second one", "off-software"),
            ("first", "off-laptop"),
            ("the last one", "off-password"),
        ],
    )
    def test_ordinal_selects_in_catalog_order(self, classifier, catalog_draft, text, expected):
        intent = classifier.classify(text, catalog_draft)

        assert intent.kind == "SELECT_OFFERING"
        assert intent.offering.offering_id == expected

    def test_ordinal_out_of_range_is_ambiguous(self, classifier, catalog_draft):
        intent = classifier.classify("option 7", catalog_draft)

        assert intent.kind == "AMBIGUOUS"

    def test_ordinal_word_inside_sentence_does_not_select(self, classifier, catalog_draft):
        intent = classifier.classify("the first thing I need is access", catalog_draft)

        assert intent.kind != "SELECT_OFFERING"

    def test_yes_accepts_single_suggestion(self, classifier, suggested_draft):
        intent = classifier.classify("yes, that works", suggested_draft)

        assert intent.kind == "SELECT_OFFERING"
        assert intent.offering.offering_id == "off-laptop"

    def test_delegation_accepts_single_suggestion(self, classifier, suggested_draft):
        assert classifier.classify("up to you", suggested_draft).kind == "SELECT_OFFERING"

    def test_yes_without_suggestion_is_ambiguous(self, classifier, catalog_draft):
        assert classifier.classify("yes", catalog_draft).kind == "AMBIGUOUS"

    def test_negated_confirmation_is_not_confirmation(self, classifier):
        assert not classifier.is_confirmation("no, that's not right")
        assert not classifier.is_confirmation("ok no")

    def test_cancel_wins_over_selection(self, classifier, catalog_draft):
        assert classifier.classify("cancel, forget the Laptop Request", catalog_draft).kind == "CANCEL"

    def test_identical_names_are_ambiguous(self, classifier):
        twins = (Offering("a", "VPN Access"), Offering("b", "VPN Access"))
        draft = RequestDraft(state=State.CATALOG_SHOWN, catalog=twins)

        assert classifier.classify("VPN Access", draft).kind == "AMBIGUOUS"


class TestFieldset:
    def test_values_are_parsed(self, classifier, fieldset_draft):
        intent = classifier.classify("Model: Standard", fieldset_draft)

        assert intent.kind == "PROVIDE_VALUES"
        assert intent.values == {"Model": "Standard"}

    def test_delegation(self, classifier, fieldset_draft):
        assert classifier.classify("you decide", fieldset_draft).kind == "DELEGATE"

    def test_confirmation(self, classifier, fieldset_draft):
        assert classifier.classify("sounds good", fieldset_draft).kind == "CONFIRM"

    def test_other(self, classifier, fieldset_draft):
        assert classifier.classify("how long does delivery take?", fieldset_draft).kind == "OTHER"


class TestParseFieldValues:
    def test_labels_and_names_both_work(self, laptop_schema):
        accepted, rejected = parse_field_values(
            "Business Justification: new hire; RequesterEmail = boss@example.com", laptop_schema
        )

        assert accepted == {"Justification": "new hire", "RequesterEmail": "boss@example.com"}
        assert rejected == {}

    def test_option_matching_is_case_insensitive(self, laptop_schema):
        accepted, _ = parse_field_values("model: PERFORMANCE", laptop_schema)

        assert accepted == {"Model": "Performance"}

    def test_unknown_option_is_rejected(self, laptop_schema):
        accepted, rejected = parse_field_values("Model: Gaming Rig", laptop_schema)

        assert accepted == {}
        assert rejected == {"Model": "Gaming Rig"}

    def test_text_without_labels(self, laptop_schema):
        assert parse_field_values("I'd like it soon", laptop_schema) == ({}, {})


class TestSuggestionDetection:
    def test_single_recommendation(self, classifier, offerings):
        reply = "Based on what you said, I recommend **Laptop Request**. Shall I open the form?"

        assert classifier.detect_suggested_offering(reply, offerings).offering_id == "off-laptop"

    def test_catalog_listing_is_not_a_suggestion(self, classifier, offerings):
        reply = "Here are the options:\n1. Laptop Request\n2. Software Installation\n3. Password Reset"

        assert classifier.detect_suggested_offering(reply, offerings) is None

    def test_two_recommendations_are_not_a_suggestion(self, classifier, offerings):
        reply = "I recommend Laptop Request or maybe Software Installation."

        assert classifier.detect_suggested_offering(reply, offerings) is None


def test_shorter_name_inside_longer_match_is_dropped():
    offerings = [Offering("a", "VPN"), Offering("b", "VPN Access")]

    named = offerings_named_in("I need VPN Access", offerings)

    assert [o.offering_id for o in named] == ["b"]
