"""
reconciliation.py — Reconciliation API

Maps query/body parameters onto the engine operations in
services/reconciliation_service.py. No reconciliation logic lives here.

Business Rules:
- Mutating routes (execute, rollback, rollback-since, cancel) are rate limited
- Rollbacks require confirm=true in the body
- Domain errors are translated to HTTP by the handlers in main.py

Called by: main.py (router mount)
Depends on: services/reconciliation_service, schemas/reconciliation, rate_limit
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal, get_db
from ..exceptions import NotFoundError
from ..rate_limit import limiter
from ..schemas.reconciliation import ExecuteRequest, RollbackRequest, RollbackSinceRequest
from ..services import reconciliation_service as svc

router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"])


# ── Read-only ────────────────────────────────────────────────────────


@router.get("/analysis")
async def get_analysis(
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    db: Session = Depends(get_db),
):
    """Orphans, duplicate suspects, linkage rates and integrity findings."""
    return svc.analyze(db, owner_id, date_from, date_to).to_dict()


@router.get("/candidates")
async def list_candidates(
    owner_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    band: str | None = None,
    min_confidence: float | None = None,
    limit: int | None = Query(None, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    filters = {
        "owner_id": owner_id,
        "date_from": date_from,
        "date_to": date_to,
        "band": band,
        "min_confidence": min_confidence,
        "limit": limit,
    }
    candidates = svc.generate_candidates(db, filters)
    return {"count": len(candidates), "candidates": [c.to_dict() for c in candidates]}


# ── Batch jobs ───────────────────────────────────────────────────────


@router.post("/execute")
@limiter.limit(settings.rate_limit_actions)
def execute_reconciliation(
    payload: ExecuteRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Run a reconciliation job, or one manual action in manual mode."""
    logger.info("Reconciliation execute requested", mode=payload.mode, owner_id=payload.options.owner_id)
    result = svc.execute(db, payload.mode, payload.options, session_factory=SessionLocal)
    return result.to_dict()


@router.get("/progress")
async def get_progress(job_id: str | None = None):
    snap = svc.progress(job_id)
    if snap is None:
        raise NotFoundError("No reconciliation job found", detail={"job_id": job_id})
    return snap.to_dict()


@router.post("/jobs/{job_id}/cancel")
@limiter.limit(settings.rate_limit_actions)
async def cancel_job(job_id: str, request: Request):
    if not svc.cancel(job_id):
        raise NotFoundError(f"No running job {job_id}", detail={"job_id": job_id})
    return {"job_id": job_id, "cancel_requested": True}


# ── Rollback ─────────────────────────────────────────────────────────


@router.post("/actions/{action_id}/rollback")
@limiter.limit(settings.rate_limit_actions)
def rollback_action(
    action_id: int,
    payload: RollbackRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    return svc.rollback(db, action_id, confirm=payload.confirm, actor=payload.actor).to_dict()


@router.post("/rollback-since")
@limiter.limit(settings.rate_limit_actions)
def rollback_since(
    payload: RollbackSinceRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    result = svc.rollback_since(
        db,
        payload.since,
        confirm=payload.confirm,
        owner_id=payload.owner_id,
        actor=payload.actor,
    )
    return result.to_dict()


# ── Audit ────────────────────────────────────────────────────────────


@router.get("/actions")
async def list_actions(
    limit: int = 50,
    action_type: str | None = None,
    job_id: str | None = None,
    db: Session = Depends(get_db),
):
    return svc.recent_actions(db, limit=limit, action_type=action_type, job_id=job_id)


@router.get("/actions/{action_id}")
async def get_action(action_id: int, db: Session = Depends(get_db)):
    return svc.get_action(db, action_id)


@router.get("/statistics")
async def get_statistics(days: int = 30, db: Session = Depends(get_db)):
    return svc.action_statistics(db, days=days)


@router.get("/metrics/daily")
async def get_daily_metrics(days: int = 30, db: Session = Depends(get_db)):
    return svc.daily_metrics(db, days=days)


@router.get("/rollback-targets")
async def get_rollback_targets(
    limit: int = 50,
    owner_id: int | None = None,
    db: Session = Depends(get_db),
):
    return svc.rollback_targets(db, limit=limit, owner_id=owner_id)
