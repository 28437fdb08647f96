"""
Reconciliation Analysis — read-only overview of activity / deal consistency.

Returns an AnalysisReport value: orphan lists with priority, duplicate
suspects, summary counts, linkage rates, a data-quality score, per-owner
statistics and integrity findings. Nothing is cached or kept in module state.

Summary metrics:
  activity_deal_linkage_rate  = linked sales activities / sales activities
  deal_activity_linkage_rate  = linked won deals / won deals
  overall_data_quality_score  = all linked records / all records (both sides)

Integrity findings (fatal, never auto-corrected):
  dangling_link    link column points at a record that does not exist
  asymmetric_link  A → D but D does not point back at A
  linked_retired   a live record is linked to a retired one

Called by: services/reconciliation_service.py, scripts/audit_link_integrity.py
Depends on: services/candidates.py, services/duplicates.py, models
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import case, func
from sqlalchemy.orm import Session, aliased

from ..config import Settings, settings as default_settings
from ..exceptions import IntegrityError
from ..models import Activity, Deal, User
from .candidates import (
    activity_priority,
    activity_summary,
    date_range_bounds,
    deal_priority,
    deal_summary,
    orphan_activity_query,
    orphan_deal_query,
)
from .duplicates import find_duplicate_suspects

log = logging.getLogger("salesrecon.analysis")

DEFAULT_LIST_LIMIT = 500


@dataclass
class AnalysisReport:
    summary: dict
    orphan_activities: list[dict] = field(default_factory=list)
    orphan_deals: list[dict] = field(default_factory=list)
    duplicate_suspects: list[dict] = field(default_factory=list)
    owner_statistics: list[dict] = field(default_factory=list)
    integrity_findings: list[dict] = field(default_factory=list)
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


def _rate(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole else 0.0


def _deal_value_expr():
    return func.coalesce(
        Deal.value,
        func.coalesce(Deal.one_off_revenue, 0) + 12 * func.coalesce(Deal.monthly_mrr, 0),
    )


# ── Integrity ────────────────────────────────────────────────────────────


def find_integrity_violations(db: Session) -> list[dict]:
    """Scan both link columns for dangling, asymmetric or retired links."""
    findings: list[dict] = []
    linked_deal = aliased(Deal)
    linked_activity = aliased(Activity)

    rows = (
        db.query(Activity.id, Activity.linked_deal_id, Activity.retired_at, linked_deal)
        .outerjoin(linked_deal, linked_deal.id == Activity.linked_deal_id)
        .filter(Activity.linked_deal_id.isnot(None))
        .all()
    )
    for activity_id, deal_id, retired_at, deal in rows:
        if deal is None:
            findings.append({"type": "dangling_link", "record": f"activities:{activity_id}", "points_to": f"deals:{deal_id}"})
        elif deal.linked_activity_id != activity_id:
            findings.append({"type": "asymmetric_link", "record": f"activities:{activity_id}", "points_to": f"deals:{deal_id}"})
        elif (retired_at is None) != (deal.retired_at is None):
            findings.append({"type": "linked_retired", "record": f"activities:{activity_id}", "points_to": f"deals:{deal_id}"})

    rows = (
        db.query(Deal.id, Deal.linked_activity_id, linked_activity)
        .outerjoin(linked_activity, linked_activity.id == Deal.linked_activity_id)
        .filter(Deal.linked_activity_id.isnot(None))
        .all()
    )
    for deal_id, activity_id, activity in rows:
        if activity is None:
            findings.append({"type": "dangling_link", "record": f"deals:{deal_id}", "points_to": f"activities:{activity_id}"})
        elif activity.linked_deal_id != deal_id:
            findings.append({"type": "asymmetric_link", "record": f"deals:{deal_id}", "points_to": f"activities:{activity_id}"})

    for finding in findings:
        log.error("Integrity violation: %s %s -> %s", finding["type"], finding["record"], finding["points_to"])
    return findings


def assert_link_integrity(db: Session) -> None:
    """Raise IntegrityError if any link invariant is broken."""
    findings = find_integrity_violations(db)
    if findings:
        raise IntegrityError(
            f"{len(findings)} link integrity violation(s) found",
            detail={"findings": findings},
        )


# ── Statistics ───────────────────────────────────────────────────────────


def owner_statistics(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    cfg: Settings | None = None,
) -> list[dict]:
    """Per-owner sales activity / won deal counts, orphans, revenue, linkage."""
    cfg = cfg or default_settings
    start, end = date_range_bounds(date_from, date_to)

    aq = db.query(
        Activity.user_id,
        func.count(Activity.id),
        func.count(Activity.linked_deal_id),
        func.coalesce(func.sum(Activity.amount), 0),
    ).filter(
        Activity.activity_type.in_(cfg.orphan_activity_types),
        Activity.status.in_(cfg.orphan_activity_statuses),
        Activity.retired_at.is_(None),
    )
    dq = db.query(
        Deal.owner_id,
        func.count(Deal.id),
        func.sum(case((Deal.linked_activity_id.isnot(None), 1), else_=0)),
        func.coalesce(func.sum(_deal_value_expr()), 0),
    ).filter(Deal.stage == "won", Deal.retired_at.is_(None))
    if owner_id is not None:
        aq = aq.filter(Activity.user_id == owner_id)
        dq = dq.filter(Deal.owner_id == owner_id)
    if start:
        aq = aq.filter(Activity.occurred_at >= start)
        dq = dq.filter(Deal.stage_changed_at >= start)
    if end:
        aq = aq.filter(Activity.occurred_at < end)
        dq = dq.filter(Deal.stage_changed_at < end)

    stats: dict[int, dict] = {}

    def _row(uid: int) -> dict:
        return stats.setdefault(
            uid,
            {
                "owner_id": uid,
                "owner_name": None,
                "sales_activities": 0,
                "linked_activities": 0,
                "orphan_activities": 0,
                "activity_revenue": 0.0,
                "won_deals": 0,
                "linked_deals": 0,
                "orphan_deals": 0,
                "deal_revenue": 0.0,
            },
        )

    for uid, total, linked, revenue in aq.group_by(Activity.user_id).all():
        s = _row(uid)
        s.update(
            sales_activities=total,
            linked_activities=linked,
            orphan_activities=total - linked,
            activity_revenue=float(revenue or 0),
        )
    for uid, total, linked, revenue in dq.group_by(Deal.owner_id).all():
        s = _row(uid)
        linked = int(linked or 0)
        s.update(won_deals=total, linked_deals=linked, orphan_deals=total - linked, deal_revenue=float(revenue or 0))

    if stats:
        for user in db.query(User).filter(User.id.in_(list(stats))).all():
            stats[user.id]["owner_name"] = user.name or user.email

    for s in stats.values():
        s["linkage_rate"] = _rate(
            s["linked_activities"] + s["linked_deals"],
            s["sales_activities"] + s["won_deals"],
        )
    return sorted(stats.values(), key=lambda s: (s["linkage_rate"], s["owner_id"]))


def summarize(owner_stats: list[dict], duplicate_count: int) -> dict:
    acts = sum(s["sales_activities"] for s in owner_stats)
    won = sum(s["won_deals"] for s in owner_stats)
    orphan_acts = sum(s["orphan_activities"] for s in owner_stats)
    orphan_deals = sum(s["orphan_deals"] for s in owner_stats)
    return {
        "total_sales_activities": acts,
        "total_won_deals": won,
        "orphan_activities": orphan_acts,
        "orphan_deals": orphan_deals,
        "duplicate_suspects": duplicate_count,
        "total_activity_revenue": round(sum(s["activity_revenue"] for s in owner_stats), 2),
        "total_deal_revenue": round(sum(s["deal_revenue"] for s in owner_stats), 2),
        "activity_deal_linkage_rate": _rate(acts - orphan_acts, acts),
        "deal_activity_linkage_rate": _rate(won - orphan_deals, won),
        "overall_data_quality_score": _rate((acts - orphan_acts) + (won - orphan_deals), acts + won),
    }


# ── Report ───────────────────────────────────────────────────────────────


def analyze(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    list_limit: int = DEFAULT_LIST_LIMIT,
    cfg: Settings | None = None,
) -> AnalysisReport:
    """Build the full read-only reconciliation report."""
    cfg = cfg or default_settings

    orphan_acts = (
        orphan_activity_query(db, owner_id, date_from, date_to, cfg).order_by(Activity.id).limit(list_limit).all()
    )
    orphan_deals = orphan_deal_query(db, owner_id, date_from, date_to).order_by(Deal.id).limit(list_limit).all()
    suspects = find_duplicate_suspects(db, "activity", owner_id, date_from, date_to, cfg=cfg) + find_duplicate_suspects(
        db, "deal", owner_id, date_from, date_to, cfg=cfg
    )
    stats = owner_statistics(db, owner_id, date_from, date_to, cfg)

    report = AnalysisReport(
        summary=summarize(stats, len(suspects)),
        orphan_activities=[
            {**activity_summary(a), "issue_type": "orphan_activity", "priority": activity_priority(a)}
            for a in orphan_acts
        ],
        orphan_deals=[
            {**deal_summary(d), "issue_type": "orphan_deal", "priority": deal_priority(d)} for d in orphan_deals
        ],
        duplicate_suspects=[s.to_dict() for s in suspects],
        owner_statistics=stats,
        integrity_findings=find_integrity_violations(db),
    )
    log.info(
        "Analysis: %d orphan activities, %d orphan deals, %d duplicate suspects, quality %.2f",
        report.summary["orphan_activities"],
        report.summary["orphan_deals"],
        report.summary["duplicate_suspects"],
        report.summary["overall_data_quality_score"],
    )
    return report
