"""
Confidence Engine — combines the three sub-scores into one match confidence.

Confidence = (name × W_name + date × W_date + amount × W_amount) / 100

Weights default to 50 / 30 / 20 and must add to 100. Classification:

  confidence ≥ auto_link_threshold (90)          → auto_link
  review_threshold (60) ≤ confidence < auto      → needs_review
  confidence < review_threshold                  → reject

The value is truncated (never rounded up) to 6 decimals before banding,
so 89.9999 stays needs_review while exactly 90 is auto_link.

No I/O — deterministic over pre-computed sub-scores.
"""

import math
from dataclasses import dataclass, field

from ..config import Settings, settings as default_settings
from ..exceptions import ValidationError

AUTO_LINK = "auto_link"
NEEDS_REVIEW = "needs_review"
REJECT = "reject"
CLASSIFICATIONS = (AUTO_LINK, NEEDS_REVIEW, REJECT)


@dataclass
class MatchCandidate:
    """Ephemeral scored pair — never the system of record."""

    activity_id: int
    deal_id: int
    name_score: float = 0
    date_score: float = 0
    amount_score: float = 0
    confidence: float = 0
    classification: str = REJECT
    reasons: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    activity: dict = field(default_factory=dict)
    deal: dict = field(default_factory=dict)

    @property
    def pair(self) -> tuple[int, int]:
        return (self.activity_id, self.deal_id)

    def to_dict(self) -> dict:
        return {
            "activity_id": self.activity_id,
            "deal_id": self.deal_id,
            "scores": {
                "name": round(self.name_score, 1),
                "date": round(self.date_score, 1),
                "amount": round(self.amount_score, 1),
            },
            "confidence": round(self.confidence, 2),
            "classification": self.classification,
            "reasons": self.reasons,
            "risks": self.risks,
            "activity": self.activity,
            "deal": self.deal,
        }


@dataclass(frozen=True)
class ScoreResult:
    confidence: float
    classification: str


class ConfidenceEngine:
    def __init__(
        self,
        weight_name: float = 50,
        weight_date: float = 30,
        weight_amount: float = 20,
        auto_link_threshold: float = 90,
        review_threshold: float = 60,
    ):
        total = weight_name + weight_date + weight_amount
        if not math.isclose(total, 100):
            raise ValidationError(
                f"Confidence weights must add to 100 (got {total:g})",
                detail={"name": weight_name, "date": weight_date, "amount": weight_amount},
            )
        if min(weight_name, weight_date, weight_amount) < 0:
            raise ValidationError("Confidence weights cannot be negative")
        if not 0 <= review_threshold <= auto_link_threshold <= 100:
            raise ValidationError(
                "Thresholds must satisfy 0 <= review <= auto_link <= 100",
                detail={"review": review_threshold, "auto_link": auto_link_threshold},
            )
        self.weight_name = weight_name
        self.weight_date = weight_date
        self.weight_amount = weight_amount
        self.auto_link_threshold = auto_link_threshold
        self.review_threshold = review_threshold

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "ConfidenceEngine":
        cfg = cfg or default_settings
        return cls(
            weight_name=cfg.weight_name,
            weight_date=cfg.weight_date,
            weight_amount=cfg.weight_amount,
            auto_link_threshold=cfg.auto_link_threshold,
            review_threshold=cfg.review_threshold,
        )

    def confidence(self, name_score: float, date_score: float, amount_score: float) -> float:
        raw = (
            name_score * self.weight_name
            + date_score * self.weight_date
            + amount_score * self.weight_amount
        ) / 100
        # Truncate float noise downward; never promote into a higher band
        return math.floor(raw * 1_000_000) / 1_000_000

    def classify(self, confidence: float) -> str:
        if confidence >= self.auto_link_threshold:
            return AUTO_LINK
        if confidence >= self.review_threshold:
            return NEEDS_REVIEW
        return REJECT

    def score(self, candidate: MatchCandidate) -> ScoreResult:
        """Fill confidence + classification on the candidate and return them."""
        value = self.confidence(candidate.name_score, candidate.date_score, candidate.amount_score)
        band = self.classify(value)
        candidate.confidence = value
        candidate.classification = band
        return ScoreResult(confidence=value, classification=band)
