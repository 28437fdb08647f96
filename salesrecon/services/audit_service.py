"""
audit_service.py — Reconciliation audit log: snapshots, restore, queries.

Every mutating action writes exactly one ReconciliationAction row carrying
the before- and after-state of each record it touched. Snapshots are keyed
"<table>:<id>"; a null value means the record did not exist.

Business Rules:
- Snapshots hold JSON-safe values only: datetimes as UTC ISO strings,
  Numeric as fixed-scale decimal strings; updated_at is never captured
- restore_snapshot() is two-phase: clear link columns and flush, then
  assign every captured value, so the unique link constraints never see
  a transient duplicate
- A record whose before-state is null was created by the action; restoring
  retires it (retired_at, status/stage "rolled_back") instead of deleting
- Query helpers are read-only projections over the log

Called by: services/action_executor.py, services/reconciliation_service.py
Depends on: models
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import Numeric, func, inspect, or_, select
from sqlalchemy.orm import Session

from ..database import UTCDateTime
from ..exceptions import NotFoundError, ValidationError
from ..models import Activity, Deal, DealStageChange, ReconciliationAction

log = logging.getLogger("salesrecon.audit")

SNAPSHOT_MODELS = {
    "activities": Activity,
    "deals": Deal,
    "deal_stage_changes": DealStageChange,
}
SNAPSHOT_EXCLUDE = {"updated_at"}
LINK_COLUMNS = {"activities": "linked_deal_id", "deals": "linked_activity_id"}
STATUS_COLUMNS = {"activities": "status", "deals": "stage"}


# ── Snapshots ────────────────────────────────────────────────────────────


def record_key(obj) -> str:
    return f"{obj.__tablename__}:{obj.id}"


def parse_key(key: str):
    table, _, raw_id = key.partition(":")
    model = SNAPSHOT_MODELS.get(table)
    if model is None or not raw_id.isdigit():
        raise ValidationError(f"Malformed snapshot key: {key}")
    return model, int(raw_id)


def _columns(model):
    return [c for c in inspect(model).columns if c.key not in SNAPSHOT_EXCLUDE]


def _dump(column, value):
    if value is None:
        return None
    if isinstance(column.type, UTCDateTime) and isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(column.type, Numeric):
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
        if column.type.scale is not None:
            dec = dec.quantize(Decimal(1).scaleb(-column.type.scale))
        return str(dec)
    return value


def _load(column, value):
    if value is None:
        return None
    if isinstance(column.type, UTCDateTime):
        return datetime.fromisoformat(value)
    if isinstance(column.type, Numeric):
        return Decimal(value)
    return value


def snapshot_record(obj) -> dict:
    """JSON-safe state of one ORM record."""
    return {c.key: _dump(c, getattr(obj, c.key)) for c in _columns(type(obj))}


def load_record(db: Session, key: str, lock: bool = False):
    model, record_id = parse_key(key)
    q = db.query(model).filter(model.id == record_id)
    if lock:
        q = q.with_for_update().populate_existing()
    return q.first()


def snapshot(db: Session, keys, lock: bool = False) -> dict:
    """Current state of every keyed record (None for missing ones)."""
    state = {}
    for key in sorted(keys):
        obj = load_record(db, key, lock=lock)
        state[key] = snapshot_record(obj) if obj is not None else None
    return state


def diff_snapshots(expected: dict, actual: dict) -> list[str]:
    """Keys whose live state no longer matches the expected snapshot."""
    return sorted(k for k in expected if expected.get(k) != actual.get(k))


def restore_snapshot(db: Session, state: dict) -> None:
    """Re-apply a before-state snapshot onto the live records."""
    records = {}
    for key in sorted(state):
        obj = load_record(db, key)
        if obj is None:
            raise NotFoundError(f"Record {key} no longer exists", detail={"record": key})
        records[key] = obj

    # Phase 1: free the unique link slots
    for key, obj in records.items():
        link_col = LINK_COLUMNS.get(obj.__tablename__)
        if link_col:
            setattr(obj, link_col, None)
    db.flush()

    # Phase 2: assign captured values / retire created records
    now = datetime.now(timezone.utc)
    for key, obj in records.items():
        before = state[key]
        if before is None:
            status_col = STATUS_COLUMNS.get(obj.__tablename__)
            if status_col:
                setattr(obj, status_col, "rolled_back")
            if hasattr(obj, "retired_at"):
                obj.retired_at = now
            continue
        for column in _columns(type(obj)):
            if column.key in before and column.key != "id":
                setattr(obj, column.key, _load(column, before[column.key]))
    db.flush()


# ── Writing ──────────────────────────────────────────────────────────────


def record_action(
    db: Session,
    action_type: str,
    *,
    before: dict,
    after: dict,
    activity_id: int | None = None,
    deal_id: int | None = None,
    record_type: str | None = None,
    confidence: float | None = None,
    automatic: bool = False,
    actor: str = "system",
    job_id: str | None = None,
    details: dict | None = None,
    rollback_of_id: int | None = None,
) -> ReconciliationAction:
    """Append one audit row in the caller's transaction."""
    action = ReconciliationAction(
        action_type=action_type,
        activity_id=activity_id,
        deal_id=deal_id,
        record_type=record_type,
        record_ids=sorted(set(before) | set(after)),
        confidence=confidence,
        automatic=automatic,
        actor=actor,
        job_id=job_id,
        before_state=before,
        after_state=after,
        details=details or {},
        rollback_of_id=rollback_of_id,
    )
    db.add(action)
    db.flush()
    return action


# ── Queries ──────────────────────────────────────────────────────────────


def action_to_dict(action: ReconciliationAction, include_states: bool = False) -> dict:
    d = {
        "id": action.id,
        "action_type": action.action_type,
        "activity_id": action.activity_id,
        "deal_id": action.deal_id,
        "record_type": action.record_type,
        "record_ids": action.record_ids or [],
        "confidence": action.confidence,
        "automatic": bool(action.automatic),
        "actor": action.actor,
        "job_id": action.job_id,
        "details": action.details or {},
        "rolled_back": bool(action.rolled_back),
        "rolled_back_at": action.rolled_back_at.isoformat() if action.rolled_back_at else None,
        "rollback_of_id": action.rollback_of_id,
        "created_at": action.created_at.isoformat() if action.created_at else None,
    }
    if include_states:
        d["before_state"] = action.before_state or {}
        d["after_state"] = action.after_state or {}
    return d


def get_action(db: Session, action_id: int) -> ReconciliationAction:
    action = db.get(ReconciliationAction, action_id)
    if not action:
        raise NotFoundError(f"Action {action_id} not found", detail={"action_id": action_id})
    return action


def _owned_by(owner_id: int):
    """Filter clause: actions touching an activity or deal of this owner."""
    return or_(
        ReconciliationAction.activity_id.in_(select(Activity.id).where(Activity.user_id == owner_id)),
        ReconciliationAction.deal_id.in_(select(Deal.id).where(Deal.owner_id == owner_id)),
    )


def recent_actions(
    db: Session,
    limit: int = 50,
    action_type: str | None = None,
    actor: str | None = None,
    job_id: str | None = None,
) -> list[dict]:
    q = db.query(ReconciliationAction)
    if action_type:
        q = q.filter(ReconciliationAction.action_type == action_type)
    if actor:
        q = q.filter(ReconciliationAction.actor == actor)
    if job_id:
        q = q.filter(ReconciliationAction.job_id == job_id)
    rows = q.order_by(ReconciliationAction.id.desc()).limit(limit).all()
    return [action_to_dict(a) for a in rows]


def action_statistics(db: Session, days: int = 30) -> list[dict]:
    """Per-action-type totals over the last `days` days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    rows = (
        db.query(
            ReconciliationAction.action_type,
            ReconciliationAction.automatic,
            ReconciliationAction.rolled_back,
            func.count(ReconciliationAction.id),
            func.avg(ReconciliationAction.confidence),
        )
        .filter(ReconciliationAction.created_at >= since)
        .group_by(
            ReconciliationAction.action_type,
            ReconciliationAction.automatic,
            ReconciliationAction.rolled_back,
        )
        .all()
    )

    stats: dict[str, dict] = {}
    conf_sums: dict[str, tuple[float, int]] = defaultdict(lambda: (0.0, 0))
    for action_type, automatic, rolled_back, count, avg_conf in rows:
        s = stats.setdefault(
            action_type,
            {"action_type": action_type, "total": 0, "automatic": 0, "manual": 0, "rolled_back": 0},
        )
        s["total"] += count
        s["automatic" if automatic else "manual"] += count
        if rolled_back:
            s["rolled_back"] += count
        if avg_conf is not None:
            total, n = conf_sums[action_type]
            conf_sums[action_type] = (total + float(avg_conf) * count, n + count)

    for action_type, s in stats.items():
        total, n = conf_sums.get(action_type, (0.0, 0))
        s["avg_confidence"] = round(total / n, 2) if n else None
    return sorted(stats.values(), key=lambda s: -s["total"])


def daily_metrics(db: Session, days: int = 30) -> list[dict]:
    """Per-day action counts (by type) for the last `days` days, oldest first."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    rows = (
        db.query(
            ReconciliationAction.created_at,
            ReconciliationAction.action_type,
            ReconciliationAction.automatic,
            ReconciliationAction.rolled_back,
        )
        .filter(ReconciliationAction.created_at >= since)
        .all()
    )

    by_day: dict[date, dict] = {}
    for created_at, action_type, automatic, rolled_back in rows:
        day = created_at.date()
        m = by_day.setdefault(
            day,
            {"day": day.isoformat(), "total": 0, "automatic": 0, "rolled_back": 0, "by_type": {}},
        )
        m["total"] += 1
        if automatic:
            m["automatic"] += 1
        if rolled_back:
            m["rolled_back"] += 1
        m["by_type"][action_type] = m["by_type"].get(action_type, 0) + 1
    return [by_day[d] for d in sorted(by_day)]


def rollback_target_query(db: Session, owner_id: int | None = None, since: datetime | None = None):
    q = db.query(ReconciliationAction).filter(
        ReconciliationAction.rolled_back.is_(False),
        ReconciliationAction.action_type != "rollback",
    )
    if owner_id is not None:
        q = q.filter(_owned_by(owner_id))
    if since is not None:
        q = q.filter(ReconciliationAction.created_at >= since)
    return q.order_by(ReconciliationAction.id.desc())


def rollback_targets(db: Session, limit: int = 50, owner_id: int | None = None) -> list[dict]:
    """Most recent actions that can still be rolled back."""
    return [action_to_dict(a) for a in rollback_target_query(db, owner_id).limit(limit).all()]
