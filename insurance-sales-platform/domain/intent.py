"""
Domain: inbound message intent and lead scoring.

Intent detection is heuristic, so it sits behind the `IntentClassifier`
protocol; the keyword matcher below is the default strategy and can be
swapped without touching the scoring rules.

Scoring (lead qualification):
- base 50
- insurance_interest +30, price_inquiry +20, cancellation -40
- +10 for each of phone, email, name present
- clamped to [0, 100]; a score above 70 sends a proposal
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol, Tuple

INSURANCE_INTEREST = "insurance_interest"
PRICE_INQUIRY = "price_inquiry"
CANCELLATION = "cancellation"
GENERAL_INQUIRY = "general_inquiry"

BASE_SCORE = 50
PROPOSAL_THRESHOLD = 70

_INTENT_BONUS: Mapping[str, int] = {
    INSURANCE_INTEREST: 30,
    PRICE_INQUIRY: 20,
    CANCELLATION: -40,
}

_CONTACT_FIELDS: Tuple[str, ...] = ("phone", "email", "name")


@dataclass(frozen=True, slots=True)
class IntentResult:
    intent: str
    confidence: float


class IntentClassifier(Protocol):
    def classify(self, text: str) -> IntentResult: ...


class KeywordIntentClassifier:
    """First matching keyword group wins; anything else is a general inquiry."""

    KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        (INSURANCE_INTEREST, ("seguro", "cotação")),
        (PRICE_INQUIRY, ("preço", "valor")),
        (CANCELLATION, ("cancelar", "não quero")),
    )

    def classify(self, text: str) -> IntentResult:
        lowered = (text or "").lower()
        for intent, words in self.KEYWORDS:
            if any(word in lowered for word in words):
                return IntentResult(intent=intent, confidence=0.8)
        return IntentResult(intent=GENERAL_INQUIRY, confidence=0.3)


def score_lead(intent: str, contact: Mapping[str, object]) -> int:
    score = BASE_SCORE + _INTENT_BONUS.get(intent, 0)
    score += sum(10 for name in _CONTACT_FIELDS if contact.get(name))
    return max(0, min(100, score))


def next_action_for(score: int) -> str:
    return "send_proposal" if score > PROPOSAL_THRESHOLD else "request_more_info"


__all__ = [
    "INSURANCE_INTEREST",
    "PRICE_INQUIRY",
    "CANCELLATION",
    "GENERAL_INQUIRY",
    "PROPOSAL_THRESHOLD",
    "IntentResult",
    "IntentClassifier",
    "KeywordIntentClassifier",
    "score_lead",
    "next_action_for",
]
