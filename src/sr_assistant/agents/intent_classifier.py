"""
Turn Intent Classifier

Pure, deterministic classification of a user turn against the current
request-creation state. It runs before any generation call because its
result decides which grounded facts the LLM will see.

Matching rules:
- Confirmation and delegation are phrase lists matched on word boundaries.
- Offering selection needs the full offering name, an ordinal into the
  catalog as shown, or a confirmation of a single suggested offering.
- Anything that could mean more than one thing is AMBIGUOUS, and the
  orchestrator stays in the current state and asks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Sequence

from sr_assistant.agents.models import Offering, OfferingSchema, RequestCreationState, RequestDraft

IntentKind = Literal[
    "START_REQUEST",
    "SELECT_OFFERING",
    "CONFIRM",
    "DELEGATE",
    "PROVIDE_VALUES",
    "CANCEL",
    "AMBIGUOUS",
    "OTHER",
]


@dataclass
class TurnIntent:
    """Result of classifying one user turn"""
    kind: IntentKind
    offering: Offering | None = None
    values: dict[str, str] = field(default_factory=dict)
    rejected: dict[str, str] = field(default_factory=dict)
    candidates: tuple[Offering, ...] = ()
    reason: str = ""


def _phrase_pattern(phrases: Sequence[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(p).replace(r"\ ", r"\s+") for p in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"(?<![\w'])(?:{alternatives})(?![\w'])", re.IGNORECASE)


def _normalize(text: str) -> str:
    return text.replace("’", "'").strip()


def _mentions(text: str, name: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(name)}(?!\w)", text, re.IGNORECASE) is not None


def offerings_named_in(text: str, offerings: Sequence[Offering]) -> list[Offering]:
    """Offerings whose full name appears in ``text``; a name inside a longer matched name does not count."""
    named = [o for o in offerings if o.name and _mentions(text, o.name)]
    return [
        o for o in named
        if not any(len(other.name) > len(o.name) and o.name.lower() in other.name.lower() for other in named)
    ]


class TurnIntentClassifier:
    """Classifies user turns for the request-creation state machine"""

    # ---- Phrases that mean "yes, go ahead" ----
    CONFIRMATIONS = [
        "yes", "yeah", "yep", "yup", "sure", "ok", "okay", "proceed", "confirm",
        "sounds good", "that works", "perfect", "go ahead", "let's do it",
        "i agree", "that's right", "correct", "that one",
    ]

    # ---- Phrases that hand the choice to the assistant ----
    DELEGATIONS = [
        "up to you", "you decide", "your choice", "whatever works", "you choose",
        "just do it", "fill it in", "make it for me", "do it for me", "auto-fill",
        "autofill", "i don't care", "i trust you", "use your best judgement",
        "use your best judgment", "use the defaults", "use defaults",
    ]

    NEGATIONS = ["no", "nope", "not", "don't", "do not", "wrong", "nah"]

    CANCELLATIONS = ["cancel", "never mind", "nevermind", "start over", "forget it", "abort"]

    # ---- Phrases that start a new service request ----
    REQUEST_KEYWORDS = [
        "create sr", "new sr", "create a service request", "service request", "request for",
        "i need", "i want", "can i get", "laptop", "computer", "hardware", "software",
        "access", "account", "unlock", "reset password",
    ]

    # ---- Assistant phrasing that proposes a single offering ----
    SUGGESTION_PHRASES = [
        "i suggest", "i'd suggest", "i would suggest", "i recommend", "i'd recommend",
        "i would recommend", "recommended", "best match", "best option", "best fit",
        "closest match", "looks like", "sounds like", "would you like", "shall i",
        "should i", "do you want", "want me to", "go with", "you'll want", "you will want",
        "the right one", "suited", "matches your request",
    ]

    ORDINAL_WORDS = {
        "first": 1, "1st": 1, "second": 2, "2nd": 2, "third": 3, "3rd": 3,
        "fourth": 4, "4th": 4, "fifth": 5, "5th": 5, "last": -1,
    }

    def __init__(self) -> None:
        self._confirm = _phrase_pattern(self.CONFIRMATIONS)
        self._delegate = _phrase_pattern(self.DELEGATIONS)
        self._negate = _phrase_pattern(self.NEGATIONS)
        self._cancel = _phrase_pattern(self.CANCELLATIONS)
        self._request = _phrase_pattern(self.REQUEST_KEYWORDS)
        self._suggest = _phrase_pattern(self.SUGGESTION_PHRASES)
        words = "|".join(self.ORDINAL_WORDS)
        self._ordinal_word = re.compile(
            rf"\b(?:({words})\s+(?:one|option|choice)\b|^\s*(?:the\s+)?({words})\s*[.!]?\s*$)", re.IGNORECASE
        )
        self._ordinal_number = re.compile(r"(?:\b(?:number|option|choice|no\.?)\s*|#)(\d{1,2})\b", re.IGNORECASE)
        self._bare_number = re.compile(r"^\s*#?(\d{1,2})\s*[.)]?\s*$")

    # ------------------------------------------------------------------
    # Phrase predicates
    # ------------------------------------------------------------------
    def is_confirmation(self, text: str) -> bool:
        text = _normalize(text)
        return bool(self._confirm.search(text)) and not self._negate.search(text)

    def is_delegation(self, text: str) -> bool:
        return bool(self._delegate.search(_normalize(text)))

    def is_cancellation(self, text: str) -> bool:
        return bool(self._cancel.search(_normalize(text)))

    def is_request_start(self, text: str) -> bool:
        return bool(self._request.search(_normalize(text)))

    # ------------------------------------------------------------------
    def classify(self, text: str, draft: RequestDraft) -> TurnIntent:
        """Classify ``text`` given the channel's current draft."""
        text = _normalize(text)
        state = draft.state

        if state in (RequestCreationState.IDLE, RequestCreationState.COMPLETED, RequestCreationState.ABANDONED):
            if self.is_request_start(text):
                return TurnIntent(kind="START_REQUEST")
            return TurnIntent(kind="OTHER")

        if self.is_cancellation(text):
            return TurnIntent(kind="CANCEL")

        if state is RequestCreationState.FIELDSET_SHOWN:
            return self._classify_fieldset(text, draft)

        return self._classify_selection(text, draft)

    def _classify_selection(self, text: str, draft: RequestDraft) -> TurnIntent:
        catalog = draft.catalog

        ordinal = self.parse_ordinal(text)
        if ordinal is not None:
            index = len(catalog) - 1 if ordinal == -1 else ordinal - 1
            if 0 <= index < len(catalog):
                return TurnIntent(kind="SELECT_OFFERING", offering=catalog[index], reason="ordinal")
            return TurnIntent(kind="AMBIGUOUS", candidates=catalog, reason=f"no option {ordinal} in catalog")

        named = offerings_named_in(text, catalog)
        if len(named) == 1:
            return TurnIntent(kind="SELECT_OFFERING", offering=named[0], reason="named")
        if len(named) > 1:
            return TurnIntent(kind="AMBIGUOUS", candidates=tuple(named), reason="several offerings named")

        if self.is_delegation(text) or self.is_confirmation(text):
            if draft.state is RequestCreationState.OFFERING_SUGGESTED and draft.suggested is not None:
                return TurnIntent(kind="SELECT_OFFERING", offering=draft.suggested, reason="accepted suggestion")
            return TurnIntent(kind="AMBIGUOUS", candidates=catalog, reason="confirmation without a single suggestion")

        if self.is_request_start(text):
            return TurnIntent(kind="START_REQUEST")
        return TurnIntent(kind="OTHER")

    def _classify_fieldset(self, text: str, draft: RequestDraft) -> TurnIntent:
        if draft.schema is not None:
            values, rejected = parse_field_values(text, draft.schema)
            if values or rejected:
                return TurnIntent(kind="PROVIDE_VALUES", values=values, rejected=rejected)
        if self.is_delegation(text):
            return TurnIntent(kind="DELEGATE")
        if self.is_confirmation(text):
            return TurnIntent(kind="CONFIRM")
        return TurnIntent(kind="OTHER")

    # ------------------------------------------------------------------
    # Catalog helpers
    # ------------------------------------------------------------------
    def parse_ordinal(self, text: str) -> int | None:
        """1-based position named in the text, -1 for "the last one", else None."""
        match = self._bare_number.match(text) or self._ordinal_number.search(text)
        if match:
            return int(match.group(1))
        match = self._ordinal_word.search(text)
        if match:
            return self.ORDINAL_WORDS[(match.group(1) or match.group(2)).lower()]
        return None

    def detect_suggested_offering(self, assistant_text: str, offerings: Sequence[Offering]) -> Offering | None:
        """
        The single offering the assistant proposed, or None.

        Only sentences with suggestion phrasing count, and they must name
        exactly one offering between them. Listing the catalog is not a
        suggestion.
        """
        text = _normalize(assistant_text or "")
        sentences = re.split(r"(?<=[.!?])\s+|\n+", text)
        named: dict[str, Offering] = {}
        for sentence in sentences:
            if not self._suggest.search(sentence):
                continue
            for offering in offerings_named_in(sentence, offerings):
                named[offering.offering_id] = offering
        if len(named) == 1:
            return next(iter(named.values()))
        return None


def parse_field_values(text: str, schema: OfferingSchema) -> tuple[dict[str, str], dict[str, str]]:
    """
    Extract ``Label: value`` pairs for fields declared in ``schema``.

    Returns (accepted, rejected), both keyed by field name. Values for
    enumerated fields are accepted only when they match a declared option
    and are stored as that option's value.
    """
    keys: dict[str, str] = {}
    for spec in schema.fields:
        keys[spec.label.lower()] = spec.name
        keys[spec.name.lower()] = spec.name
    if not keys:
        return {}, {}

    alternatives = "|".join(re.escape(k) for k in sorted(keys, key=len, reverse=True) if k)
    pattern = re.compile(rf"(?:^|(?<=[\s,;]))({alternatives})\s*[:=]\s*", re.IGNORECASE)
    matches = list(pattern.finditer(text))

    accepted: dict[str, str] = {}
    rejected: dict[str, str] = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        raw = text[match.end():end].strip().rstrip(",;").strip()
        if not raw:
            continue
        name = keys[match.group(1).lower()]
        spec = schema.find_field(name)
        if spec is not None and spec.is_enumerated:
            option = spec.match_option(raw)
            if option is None:
                rejected[name] = raw
                continue
            raw = option.value
        accepted[name] = raw
        rejected.pop(name, None)
    return accepted, rejected
