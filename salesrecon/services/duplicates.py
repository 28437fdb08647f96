"""
duplicates.py — Duplicate suspect detection within activities or deals.

Groups records by (normalized name, calendar day), and by owner while
match_same_owner is on; inside each group of two or more, every pair is
scored with the normal sub-scores (date fixed at 100 since the day is
identical) and flagged as a duplicate suspect at or above
duplicate_threshold (default 90, stricter than linking since a wrong merge
costs more than a wrong link).

The suggested survivor is always the first-created record of the pair.
A suspect whose pair lacks an amount on either side is flagged without
amount evidence; its score rests on name and day alone.

Called by: services/orchestrator.py, services/analysis_service.py
Depends on: services/similarity.py, services/confidence.py, models
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from itertools import combinations

from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..exceptions import ValidationError
from ..models import Activity, Deal
from ..utils.normalization import normalize_company_name
from .candidates import date_range_bounds
from .confidence import ConfidenceEngine
from .similarity import amount_correlation, name_similarity

log = logging.getLogger("salesrecon.duplicates")

RECORD_TYPES = ("activity", "deal")


@dataclass
class DuplicateSuspect:
    record_type: str
    keep_id: int
    drop_id: int
    normalized_name: str
    day: date
    name_score: float
    amount_score: float
    confidence: float
    amount_evidence: bool = True

    def to_dict(self) -> dict:
        return {
            "record_type": self.record_type,
            "keep_id": self.keep_id,
            "drop_id": self.drop_id,
            "normalized_name": self.normalized_name,
            "day": self.day.isoformat(),
            "scores": {"name": round(self.name_score, 1), "date": 100.0, "amount": round(self.amount_score, 1)},
            "confidence": round(self.confidence, 2),
            "amount_evidence": self.amount_evidence,
        }


def creation_order(record) -> tuple:
    return (record.created_at.timestamp() if record.created_at else 0, record.id)


def _activity_rows(db: Session, owner_id, date_from, date_to, cfg: Settings):
    q = db.query(Activity).filter(
        Activity.retired_at.is_(None),
        Activity.activity_type.in_(cfg.orphan_activity_types),
    )
    if owner_id is not None:
        q = q.filter(Activity.user_id == owner_id)
    start, end = date_range_bounds(date_from, date_to)
    if start:
        q = q.filter(Activity.occurred_at >= start)
    if end:
        q = q.filter(Activity.occurred_at < end)
    return q.order_by(Activity.id).all()


def _deal_rows(db: Session, owner_id, date_from, date_to):
    q = db.query(Deal).filter(Deal.retired_at.is_(None))
    if owner_id is not None:
        q = q.filter(Deal.owner_id == owner_id)
    start, end = date_range_bounds(date_from, date_to)
    if start:
        q = q.filter(Deal.stage_changed_at >= start)
    if end:
        q = q.filter(Deal.stage_changed_at < end)
    return q.order_by(Deal.id).all()


def find_duplicate_suspects(
    db: Session,
    record_type: str = "activity",
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    cfg: Settings | None = None,
) -> list[DuplicateSuspect]:
    """Flag near-identical records of one type logged twice on the same day."""
    if record_type not in RECORD_TYPES:
        raise ValidationError(f"Unknown record type: {record_type}", detail={"allowed": list(RECORD_TYPES)})
    cfg = cfg or default_settings
    engine = ConfidenceEngine.from_settings(cfg)

    if record_type == "activity":
        rows = _activity_rows(db, owner_id, date_from, date_to, cfg)
        name_of, day_of, amount_of, owner_of = (
            lambda r: r.client_name,
            lambda r: r.occurred_at.date(),
            lambda r: r.amount,
            lambda r: r.user_id,
        )
    else:
        rows = _deal_rows(db, owner_id, date_from, date_to)
        name_of, day_of, amount_of, owner_of = (
            lambda r: r.company,
            lambda r: r.stage_changed_at.date(),
            lambda r: r.comparable_value,
            lambda r: r.owner_id,
        )

    groups: dict[tuple[str, date, int | None], list] = defaultdict(list)
    for row in rows:
        norm = normalize_company_name(name_of(row))
        if norm:
            owner = owner_of(row) if cfg.match_same_owner else None
            groups[(norm, day_of(row), owner)].append(row)

    suspects: list[DuplicateSuspect] = []
    for (norm, day, _owner), members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=creation_order)
        for first, second in combinations(members, 2):
            name_score = name_similarity(name_of(first), name_of(second), cfg.company_aliases)
            amount_score = amount_correlation(
                amount_of(first),
                amount_of(second),
                tolerance_pct=cfg.amount_tolerance_pct,
                neutral=cfg.amount_neutral_score,
            )
            confidence = engine.confidence(name_score, 100.0, amount_score)
            if confidence >= cfg.duplicate_threshold:
                suspects.append(
                    DuplicateSuspect(
                        record_type=record_type,
                        keep_id=first.id,
                        drop_id=second.id,
                        normalized_name=norm,
                        day=day,
                        name_score=name_score,
                        amount_score=amount_score,
                        confidence=confidence,
                        amount_evidence=amount_of(first) is not None and amount_of(second) is not None,
                    )
                )

    suspects.sort(key=lambda s: (s.day, s.normalized_name, s.keep_id, s.drop_id))
    if suspects:
        log.info("Found %d %s duplicate suspects", len(suspects), record_type)
    return suspects
