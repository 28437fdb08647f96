"""
reconciliation_service.py — Public operation surface of the engine.

Thin facade over the analysis, candidate, orchestrator, executor and audit
modules. Every input is validated through schemas/reconciliation.py before
any I/O; pydantic errors surface as ValidationError.

Operations:
  analyze(db, ...)              → AnalysisReport            (read-only)
  generate_candidates(db, ...)  → list[MatchCandidate]      (read-only)
  execute(db, mode, options)    → BatchResult               (mutating)
  progress(job_id) / cancel(job_id)
  rollback(db, action_id, confirm)          → RollbackResult
  rollback_since(db, since, confirm, ...)   → RollbackSinceResult
  recent_actions / action_statistics / daily_metrics / rollback_targets

Called by: routers/reconciliation.py, scripts/*.py
Depends on: services/*, schemas/reconciliation.py
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..exceptions import ReconciliationError, ValidationError
from ..schemas.reconciliation import (
    AnalyzeFilter,
    CandidateFilter,
    ExecuteRequest,
    RollbackRequest,
    RollbackSinceRequest,
    validate_input,
)
from . import analysis_service, audit_service, candidates
from .action_executor import ActionExecutor
from .analysis_service import AnalysisReport
from .confidence import MatchCandidate
from .orchestrator import BatchOrchestrator, BatchResult, JobRegistry, ProgressSnapshot, registry

log = logging.getLogger("salesrecon.service")


@dataclass
class RollbackResult:
    action_id: int
    rollback_action_id: int
    restored_records: list[str]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RollbackSinceResult:
    since: str
    reverted: list[int] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Read-only ────────────────────────────────────────────────────────────


def analyze(
    db: Session,
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    cfg: Settings | None = None,
) -> AnalysisReport:
    f = validate_input(AnalyzeFilter, {"owner_id": owner_id, "date_from": date_from, "date_to": date_to})
    return analysis_service.analyze(db, f.owner_id, f.date_from, f.date_to, cfg=cfg)


def generate_candidates(
    db: Session,
    filters: CandidateFilter | dict | None = None,
    cfg: Settings | None = None,
) -> list[MatchCandidate]:
    f = validate_input(CandidateFilter, filters)
    return candidates.generate_candidates(
        db,
        owner_id=f.owner_id,
        date_from=f.date_from,
        date_to=f.date_to,
        band=f.band,
        min_confidence=f.min_confidence,
        limit=f.limit,
        cfg=cfg,
    )


# ── Batch execution ──────────────────────────────────────────────────────


def execute(
    db: Session,
    mode: str,
    options: dict | None = None,
    session_factory=None,
    cfg: Settings | None = None,
    jobs: JobRegistry | None = None,
) -> BatchResult:
    """Run a reconciliation job (or one manual action)."""
    request = validate_input(ExecuteRequest, {"mode": mode, "options": options or {}})
    orchestrator = BatchOrchestrator(db, cfg=cfg, jobs=jobs, session_factory=session_factory)
    return orchestrator.run(request.mode, request.options)


def progress(job_id: str | None = None, jobs: JobRegistry | None = None) -> ProgressSnapshot | None:
    """Latest snapshot for job_id, or for the most recent job when omitted."""
    return (jobs or registry).get(job_id)


def cancel(job_id: str, jobs: JobRegistry | None = None) -> bool:
    cancelled = (jobs or registry).cancel(job_id)
    if cancelled:
        log.info("Cancellation requested for job %s", job_id)
    return cancelled


# ── Rollback ─────────────────────────────────────────────────────────────


def rollback(
    db: Session,
    action_id: int,
    confirm: bool = False,
    actor: str = "system",
    cfg: Settings | None = None,
) -> RollbackResult:
    req = validate_input(RollbackRequest, {"confirm": confirm, "actor": actor})
    executor = ActionExecutor(db, actor=req.actor, cfg=cfg or default_settings, autocommit=True)
    row = executor.rollback(action_id)
    return RollbackResult(
        action_id=action_id,
        rollback_action_id=row.id,
        restored_records=list(row.record_ids or []),
    )


def rollback_since(
    db: Session,
    since: datetime,
    confirm: bool = False,
    owner_id: int | None = None,
    actor: str = "system",
    cfg: Settings | None = None,
) -> RollbackSinceResult:
    """Roll back every eligible action created at or after `since`, newest first.

    Each rollback is its own transaction; a failure is recorded and the
    remaining actions are still attempted.
    """
    req = validate_input(
        RollbackSinceRequest,
        {"since": since, "confirm": confirm, "owner_id": owner_id, "actor": actor},
    )
    since_utc = req.since if req.since.tzinfo else req.since.replace(tzinfo=timezone.utc)
    if since_utc > datetime.now(timezone.utc):
        raise ValidationError("since cannot be in the future", detail={"since": since_utc.isoformat()})

    target_ids = [a.id for a in audit_service.rollback_target_query(db, req.owner_id, since_utc).all()]
    executor = ActionExecutor(db, actor=req.actor, cfg=cfg or default_settings, autocommit=True)
    result = RollbackSinceResult(since=since_utc.isoformat())
    for action_id in target_ids:
        try:
            executor.rollback(action_id)
            result.reverted.append(action_id)
        except ReconciliationError as e:
            result.failed.append({"action_id": action_id, "code": e.code, "error": e.message})
    log.info(
        "Bulk rollback since %s: %d reverted, %d failed",
        result.since,
        len(result.reverted),
        len(result.failed),
    )
    return result


# ── Audit projections ────────────────────────────────────────────────────


def recent_actions(db: Session, limit: int = 50, action_type: str | None = None, job_id: str | None = None) -> list[dict]:
    if not 1 <= limit <= 500:
        raise ValidationError("limit must be between 1 and 500", detail={"limit": limit})
    return audit_service.recent_actions(db, limit=limit, action_type=action_type, job_id=job_id)


def get_action(db: Session, action_id: int) -> dict:
    return audit_service.action_to_dict(audit_service.get_action(db, action_id), include_states=True)


def action_statistics(db: Session, days: int = 30) -> list[dict]:
    if not 1 <= days <= 365:
        raise ValidationError("days must be between 1 and 365", detail={"days": days})
    return audit_service.action_statistics(db, days=days)


def daily_metrics(db: Session, days: int = 30) -> list[dict]:
    if not 1 <= days <= 365:
        raise ValidationError("days must be between 1 and 365", detail={"days": days})
    return audit_service.daily_metrics(db, days=days)


def rollback_targets(db: Session, limit: int = 50, owner_id: int | None = None) -> list[dict]:
    if not 1 <= limit <= 500:
        raise ValidationError("limit must be between 1 and 500", detail={"limit": limit})
    return audit_service.rollback_targets(db, limit=limit, owner_id=owner_id)
