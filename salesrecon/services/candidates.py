"""
candidates.py — Orphan discovery and bounded candidate generation.

Finds orphan activities (completed sales with no linked deal) and orphan
deals (won, no linked activity), then proposes a short, ranked list of
plausible counterparts for each orphan instead of the full cross-product.

Business Rules:
- Candidate deals: stage in candidate_deal_stages (won/open), not retired,
  not already linked, same owner (configurable), stage-changed date within
  ±candidate_window_days calendar days of the activity date
- Name pre-filter: normalized names must reach prefilter_min_similarity
  (ratio) OR share a common substring of min_common_substring chars OR
  resolve to the same alias
- At most max_candidates_per_orphan survive the cheap pre-filter ranking;
  only those are fully scored
- Pairs a reviewer rejected (mark_reviewed / reject, not rolled back) are
  never proposed again
- Zero candidates is "unmatched", never an error

Called by: services/orchestrator.py, services/reconciliation_service.py
Depends on: services/similarity.py, services/confidence.py, models
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.orm import Session
from thefuzz import fuzz

from ..config import Settings, settings as default_settings
from ..exceptions import ValidationError
from ..models import Activity, Deal, ReconciliationAction
from ..utils.normalization import build_alias_index, longest_common_substring, normalize_company_name
from .confidence import CLASSIFICATIONS, ConfidenceEngine, MatchCandidate
from .similarity import (
    amount_correlation,
    date_proximity,
    day_delta,
    match_analysis,
    name_similarity,
    relative_difference,
)

log = logging.getLogger("salesrecon.candidates")

# Orphan priority levels
REVENUE_RISK = "revenue_risk"
REVENUE_TRACKING = "revenue_tracking"
DATA_INTEGRITY = "data_integrity"


# ── Record summaries ─────────────────────────────────────────────────────


def _money(value) -> float | None:
    return float(value) if value is not None else None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def activity_summary(a: Activity) -> dict:
    """Plain, thread-safe view of an activity for scoring and display."""
    return {
        "id": a.id,
        "client_name": a.client_name,
        "activity_type": a.activity_type,
        "status": a.status,
        "amount": _money(a.amount),
        "occurred_at": _iso(a.occurred_at),
        "user_id": a.user_id,
    }


def deal_summary(d: Deal) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "company": d.company,
        "stage": d.stage,
        "value": _money(d.comparable_value),
        "stage_changed_at": _iso(d.stage_changed_at),
        "owner_id": d.owner_id,
    }


def activity_priority(a: Activity) -> str:
    return REVENUE_RISK if a.amount is not None and a.amount > 0 else DATA_INTEGRITY


def deal_priority(d: Deal) -> str:
    value = d.comparable_value
    return REVENUE_TRACKING if value is not None and value > 0 else DATA_INTEGRITY


# ── Orphan queries ───────────────────────────────────────────────────────


def _day_bounds(day: date, window_days: int) -> tuple[datetime, datetime]:
    """[start, end) covering day ± window_days whole calendar days (UTC)."""
    start = datetime.combine(day - timedelta(days=window_days), time.min, tzinfo=timezone.utc)
    end = datetime.combine(day + timedelta(days=window_days + 1), time.min, tzinfo=timezone.utc)
    return start, end


def date_range_bounds(date_from: date | None, date_to: date | None):
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = (
        datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        if date_to
        else None
    )
    return start, end


def orphan_activity_query(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    cfg: Settings | None = None,
):
    cfg = cfg or default_settings
    q = db.query(Activity).filter(
        Activity.activity_type.in_(cfg.orphan_activity_types),
        Activity.status.in_(cfg.orphan_activity_statuses),
        Activity.linked_deal_id.is_(None),
        Activity.retired_at.is_(None),
    )
    if owner_id is not None:
        q = q.filter(Activity.user_id == owner_id)
    start, end = date_range_bounds(date_from, date_to)
    if start:
        q = q.filter(Activity.occurred_at >= start)
    if end:
        q = q.filter(Activity.occurred_at < end)
    return q


def orphan_deal_query(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
):
    q = db.query(Deal).filter(
        Deal.stage == "won",
        Deal.linked_activity_id.is_(None),
        Deal.retired_at.is_(None),
    )
    if owner_id is not None:
        q = q.filter(Deal.owner_id == owner_id)
    start, end = date_range_bounds(date_from, date_to)
    if start:
        q = q.filter(Deal.stage_changed_at >= start)
    if end:
        q = q.filter(Deal.stage_changed_at < end)
    return q


def find_orphan_activities(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    after_id: int | None = None,
    limit: int | None = None,
    cfg: Settings | None = None,
) -> list[Activity]:
    """Orphan activities in id order; after_id/limit give keyset batches."""
    q = orphan_activity_query(db, owner_id, date_from, date_to, cfg)
    if after_id is not None:
        q = q.filter(Activity.id > after_id)
    q = q.order_by(Activity.id)
    if limit:
        q = q.limit(limit)
    return q.all()


def find_orphan_deals(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    after_id: int | None = None,
    limit: int | None = None,
) -> list[Deal]:
    q = orphan_deal_query(db, owner_id, date_from, date_to)
    if after_id is not None:
        q = q.filter(Deal.id > after_id)
    q = q.order_by(Deal.id)
    if limit:
        q = q.limit(limit)
    return q.all()


# ── Reviewer decisions ───────────────────────────────────────────────────


def rejected_pairs(
    db: Session,
    activity_ids: list[int] | None = None,
    deal_ids: list[int] | None = None,
) -> set[tuple[int, int]]:
    """Pairs whose latest live review decision is reject."""
    q = db.query(ReconciliationAction).filter(
        ReconciliationAction.action_type == "mark_reviewed",
        ReconciliationAction.rolled_back.is_(False),
    )
    if activity_ids is not None:
        q = q.filter(ReconciliationAction.activity_id.in_(activity_ids))
    if deal_ids is not None:
        q = q.filter(ReconciliationAction.deal_id.in_(deal_ids))

    latest: dict[tuple[int, int], str] = {}
    for action in q.order_by(ReconciliationAction.id):
        latest[(action.activity_id, action.deal_id)] = (action.details or {}).get("decision")
    return {pair for pair, decision in latest.items() if decision == "reject"}


# ── Pre-filter and scoring ───────────────────────────────────────────────


def passes_prefilter(norm_a: str, norm_b: str, alias_index: dict[str, str], cfg: Settings) -> int | None:
    """Cheap ranking score for a name pair, or None when it is implausible."""
    if not norm_a or not norm_b:
        return None
    if norm_a == norm_b:
        return 100
    canon = alias_index.get(norm_a)
    if canon and canon == alias_index.get(norm_b):
        return 95
    ratio = fuzz.ratio(norm_a, norm_b)
    if ratio >= cfg.prefilter_min_similarity:
        return ratio
    if longest_common_substring(norm_a, norm_b) >= cfg.min_common_substring:
        return ratio
    return None


def score_pair(
    activity: dict,
    deal: dict,
    engine: ConfidenceEngine,
    cfg: Settings | None = None,
) -> MatchCandidate:
    """Score one (activity, deal) summary pair. Pure — safe across threads."""
    cfg = cfg or default_settings
    name_score = name_similarity(activity["client_name"], deal["company"], cfg.company_aliases)
    date_score = date_proximity(activity["occurred_at"], deal["stage_changed_at"], cfg.date_tolerance_days)
    amount_score = amount_correlation(
        activity["amount"],
        deal["value"],
        tolerance_pct=cfg.amount_tolerance_pct,
        neutral=cfg.amount_neutral_score,
    )
    reasons, risks = match_analysis(
        name_score,
        day_delta(activity["occurred_at"], deal["stage_changed_at"]),
        relative_difference(activity["amount"], deal["value"]),
    )
    candidate = MatchCandidate(
        activity_id=activity["id"],
        deal_id=deal["id"],
        name_score=name_score,
        date_score=date_score,
        amount_score=amount_score,
        reasons=reasons,
        risks=risks,
        activity=activity,
        deal=deal,
    )
    engine.score(candidate)
    return candidate


def score_pairs(
    pairs: list[tuple[dict, dict]],
    engine: ConfidenceEngine,
    cfg: Settings | None = None,
    workers: int | None = None,
) -> list[MatchCandidate]:
    """Fan pure scoring out over a thread pool; order of input is kept."""
    cfg = cfg or default_settings
    workers = workers if workers is not None else cfg.scoring_workers
    if workers <= 1 or len(pairs) <= 1:
        return [score_pair(a, d, engine, cfg) for a, d in pairs]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda p: score_pair(p[0], p[1], engine, cfg), pairs))


def _rank_and_cap(orphan_norm: str, others: list[tuple[dict, str, int]], alias_index, cfg) -> list[dict]:
    ranked = []
    for summary, other_norm, delta in others:
        pre = passes_prefilter(orphan_norm, other_norm, alias_index, cfg)
        if pre is not None:
            ranked.append((-pre, delta, summary["id"], summary))
    ranked.sort(key=lambda r: r[:3])
    return [r[3] for r in ranked[: cfg.max_candidates_per_orphan]]


# ── Per-orphan candidate lists ───────────────────────────────────────────


def _deals_near(db: Session, activity: Activity, cfg: Settings) -> list[Deal]:
    start, end = _day_bounds(activity.occurred_at.date(), cfg.candidate_window_days)
    q = db.query(Deal).filter(
        Deal.stage.in_(cfg.candidate_deal_stages),
        Deal.retired_at.is_(None),
        Deal.linked_activity_id.is_(None),
        Deal.stage_changed_at >= start,
        Deal.stage_changed_at < end,
    )
    if cfg.match_same_owner:
        q = q.filter(Deal.owner_id == activity.user_id)
    return q.order_by(Deal.id).all()


def _activities_near(db: Session, deal: Deal, cfg: Settings) -> list[Activity]:
    start, end = _day_bounds(deal.stage_changed_at.date(), cfg.candidate_window_days)
    q = orphan_activity_query(db, cfg=cfg).filter(
        Activity.occurred_at >= start,
        Activity.occurred_at < end,
    )
    if cfg.match_same_owner:
        q = q.filter(Activity.user_id == deal.owner_id)
    return q.order_by(Activity.id).all()


def shortlist_for_activity(
    db: Session,
    activity: Activity,
    cfg: Settings | None = None,
    excluded: set[tuple[int, int]] | None = None,
) -> list[tuple[dict, dict]]:
    """Capped (activity, deal) summary pairs worth fully scoring."""
    cfg = cfg or default_settings
    if excluded is None:
        excluded = rejected_pairs(db, activity_ids=[activity.id])
    alias_index = build_alias_index(cfg.company_aliases)
    a_sum = activity_summary(activity)
    others = [
        (deal_summary(d), normalize_company_name(d.company), day_delta(activity.occurred_at, d.stage_changed_at))
        for d in _deals_near(db, activity, cfg)
        if (activity.id, d.id) not in excluded
    ]
    kept = _rank_and_cap(normalize_company_name(activity.client_name), others, alias_index, cfg)
    return [(a_sum, d_sum) for d_sum in kept]


def shortlist_for_deal(
    db: Session,
    deal: Deal,
    cfg: Settings | None = None,
    excluded: set[tuple[int, int]] | None = None,
) -> list[tuple[dict, dict]]:
    cfg = cfg or default_settings
    if excluded is None:
        excluded = rejected_pairs(db, deal_ids=[deal.id])
    alias_index = build_alias_index(cfg.company_aliases)
    d_sum = deal_summary(deal)
    others = [
        (activity_summary(a), normalize_company_name(a.client_name), day_delta(a.occurred_at, deal.stage_changed_at))
        for a in _activities_near(db, deal, cfg)
        if (a.id, deal.id) not in excluded
    ]
    kept = _rank_and_cap(normalize_company_name(deal.company), others, alias_index, cfg)
    return [(a_sum, d_sum) for a_sum in kept]


def _by_confidence(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    return sorted(candidates, key=lambda c: (-c.confidence, c.activity_id, c.deal_id))


def candidates_for_activity(
    db: Session,
    activity: Activity,
    engine: ConfidenceEngine | None = None,
    cfg: Settings | None = None,
    excluded: set[tuple[int, int]] | None = None,
) -> list[MatchCandidate]:
    """Scored deal candidates for one orphan activity, best first."""
    cfg = cfg or default_settings
    engine = engine or ConfidenceEngine.from_settings(cfg)
    pairs = shortlist_for_activity(db, activity, cfg, excluded)
    return _by_confidence(score_pairs(pairs, engine, cfg))


def candidates_for_deal(
    db: Session,
    deal: Deal,
    engine: ConfidenceEngine | None = None,
    cfg: Settings | None = None,
    excluded: set[tuple[int, int]] | None = None,
) -> list[MatchCandidate]:
    """Scored activity candidates for one orphan deal, best first."""
    cfg = cfg or default_settings
    engine = engine or ConfidenceEngine.from_settings(cfg)
    pairs = shortlist_for_deal(db, deal, cfg, excluded)
    return _by_confidence(score_pairs(pairs, engine, cfg))


def generate_candidates(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    band: str | None = None,
    min_confidence: float | None = None,
    limit: int | None = None,
    cfg: Settings | None = None,
) -> list[MatchCandidate]:
    """Candidates for every orphan activity in scope, optionally band-filtered.

    Read-only. Pairs are gathered per orphan first, then scored together so
    the thread pool sees the whole workload.
    """
    cfg = cfg or default_settings
    if band is not None and band not in CLASSIFICATIONS:
        raise ValidationError(f"Unknown confidence band: {band}", detail={"allowed": list(CLASSIFICATIONS)})
    engine = ConfidenceEngine.from_settings(cfg)

    orphans = find_orphan_activities(db, owner_id, date_from, date_to, cfg=cfg)
    excluded = rejected_pairs(db, activity_ids=[a.id for a in orphans]) if orphans else set()
    pairs: list[tuple[dict, dict]] = []
    for activity in orphans:
        pairs.extend(shortlist_for_activity(db, activity, cfg, excluded))

    scored = score_pairs(pairs, engine, cfg)
    if band is not None:
        scored = [c for c in scored if c.classification == band]
    if min_confidence is not None:
        scored = [c for c in scored if c.confidence >= min_confidence]
    scored = _by_confidence(scored)
    log.info("Generated %d candidates for %d orphan activities", len(scored), len(orphans))
    return scored[:limit] if limit else scored
