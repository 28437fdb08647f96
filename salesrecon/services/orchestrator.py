"""
orchestrator.py — Batch reconciliation driver.

Pipeline per batch: orphans → candidate shortlist → parallel scoring →
apply (gated by mode) → audit → progress record.

Modes:
  dry_run     score and report planned actions; zero mutation
  safe        auto-apply auto_link candidates only
  aggressive  also auto-apply candidates ≥ aggressive_threshold, create
              counterparts for unmatched orphans (create_missing) and merge
              duplicate suspects backed by amounts (merge_duplicates)
  manual      apply one caller-specified action

Business Rules:
- Orphans are processed in keyset batches (id > cursor, batch_size rows);
  the cursor is kept per phase so a job can resume after its last
  completed batch
- One SAVEPOINT per item; the batch commits once. An item failure is
  recorded and processing continues; a failed batch commit halts the job
  with the cursor left before that batch
- already_linked / already_exists / record_retired conflicts are benign skips
- An IntegrityError finding halts the job
- A record paired earlier in the job is not reconsidered from the other side;
  a review pair is queued once per job
- Only one job per owner scope at a time (ConflictError(job_running))
- Cancellation skips batches not yet dispatched
- With parallel_batches > 1 and a session factory, batches of one phase are
  partitioned into disjoint id ranges and run on separate sessions

Called by: services/reconciliation_service.py, scripts/run_reconciliation.py
Depends on: services/candidates.py, services/duplicates.py,
            services/action_executor.py, loguru
"""

import copy
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..exceptions import (
    ConflictError,
    IntegrityError,
    NotFoundError,
    ReconciliationError,
    TransactionError,
    ValidationError,
)
from ..models import Activity, Deal
from ..schemas.reconciliation import ExecuteOptions, ManualAction, validate_input
from .action_executor import ActionExecutor
from .candidates import (
    find_orphan_activities,
    find_orphan_deals,
    rejected_pairs,
    score_pairs,
    shortlist_for_activity,
    shortlist_for_deal,
)
from .confidence import AUTO_LINK, NEEDS_REVIEW, ConfidenceEngine, MatchCandidate
from .duplicates import find_duplicate_suspects

log = logging.getLogger("salesrecon.orchestrator")

MODES = ("dry_run", "safe", "aggressive", "manual")
BENIGN_CONFLICTS = {"already_linked", "already_exists", "record_retired"}
MAX_ERRORS_KEPT = 100
COUNTERS = (
    "processed",
    "linked",
    "deals_created",
    "activities_created",
    "duplicates_found",
    "merged",
    "queued_for_review",
    "skipped",
    "errors",
)


# ── Progress records ─────────────────────────────────────────────────────


@dataclass
class BatchProgress:
    """Progress record for one completed batch."""

    batch: int
    phase: str
    first_id: int | None = None
    last_id: int | None = None
    processed: int = 0
    linked: int = 0
    deals_created: int = 0
    activities_created: int = 0
    duplicates_found: int = 0
    merged: int = 0
    queued_for_review: int = 0
    skipped: int = 0
    errors: int = 0
    committed: bool = False
    error_details: list[dict] = field(default_factory=list)
    planned: list[dict] = field(default_factory=list)
    review_queue: list[dict] = field(default_factory=list)
    action_ids: list[int] = field(default_factory=list)
    halted: bool = False

    def counters(self) -> dict:
        return {name: getattr(self, name) for name in COUNTERS}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProgressSnapshot:
    job_id: str
    mode: str
    scope: str
    status: str = "running"  # running | completed | failed | cancelled
    phase: str | None = None
    batches_completed: int = 0
    totals: dict = field(default_factory=lambda: {name: 0 for name in COUNTERS})
    cursor: dict = field(default_factory=dict)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: str | None = None
    cancel_requested: bool = False
    last_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BatchResult:
    job_id: str
    mode: str
    status: str
    totals: dict
    cursor: dict = field(default_factory=dict)
    batches: list[BatchProgress] = field(default_factory=list)
    error_details: list[dict] = field(default_factory=list)

    @property
    def planned(self) -> list[dict]:
        return [p for b in self.batches for p in b.planned]

    @property
    def review_queue(self) -> list[dict]:
        return [r for b in self.batches for r in b.review_queue]

    @property
    def action_ids(self) -> list[int]:
        return [a for b in self.batches for a in b.action_ids]

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "mode": self.mode,
            "status": self.status,
            "totals": self.totals,
            "cursor": self.cursor,
            "batches": [b.to_dict() for b in self.batches],
            "planned": self.planned,
            "review_queue": self.review_queue,
            "action_ids": self.action_ids,
            "errors": self.error_details[:MAX_ERRORS_KEPT],
        }


# ── Job registry ─────────────────────────────────────────────────────────


class JobRegistry:
    """In-process registry of reconciliation jobs and owner-scope locks.

    Keeps at most `max_finished` finished jobs, dropping the oldest first.
    Running jobs are always kept.
    """

    ALL_SCOPE = "all"

    def __init__(self, max_finished: int = 100):
        self.max_finished = max_finished
        self._lock = threading.Lock()
        self._jobs: dict[str, ProgressSnapshot] = {}
        self._scopes: dict[str, str] = {}
        self._latest: str | None = None

    @staticmethod
    def scope_for(owner_id: int | None) -> str:
        return JobRegistry.ALL_SCOPE if owner_id is None else f"owner:{owner_id}"

    def start(self, job_id: str, mode: str, scope: str) -> ProgressSnapshot:
        with self._lock:
            blocking = self._scopes.get(scope) or self._scopes.get(self.ALL_SCOPE)
            if scope == self.ALL_SCOPE and not blocking and self._scopes:
                blocking = next(iter(self._scopes.values()))
            if blocking:
                raise ConflictError(
                    f"A reconciliation job is already running for {scope}",
                    code="job_running",
                    detail={"job_id": blocking, "scope": scope},
                )
            snap = ProgressSnapshot(job_id=job_id, mode=mode, scope=scope)
            self._jobs[job_id] = snap
            self._scopes[scope] = job_id
            self._latest = job_id
            return copy.deepcopy(snap)

    def record_batch(self, job_id: str, progress: BatchProgress, cursor: dict) -> None:
        with self._lock:
            snap = self._jobs[job_id]
            snap.phase = progress.phase
            snap.batches_completed += 1
            for name, value in progress.counters().items():
                snap.totals[name] += value
            snap.cursor = dict(cursor)

    def set_phase(self, job_id: str, phase: str) -> None:
        with self._lock:
            self._jobs[job_id].phase = phase

    def finish(self, job_id: str, status: str, error: str | None = None) -> ProgressSnapshot:
        with self._lock:
            snap = self._jobs[job_id]
            snap.status = status
            snap.finished_at = datetime.now(timezone.utc).isoformat()
            snap.last_error = error
            if self._scopes.get(snap.scope) == job_id:
                del self._scopes[snap.scope]
            self._prune()
            return copy.deepcopy(snap)

    def _prune(self) -> None:
        finished = [k for k, s in self._jobs.items() if s.status != "running"]
        for key in finished[: max(len(finished) - self.max_finished, 0)]:
            if key != self._latest:
                del self._jobs[key]

    def get(self, job_id: str | None = None) -> ProgressSnapshot | None:
        with self._lock:
            key = job_id or self._latest
            snap = self._jobs.get(key) if key else None
            return copy.deepcopy(snap) if snap else None

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            snap = self._jobs.get(job_id)
            if not snap or snap.status != "running":
                return False
            snap.cancel_requested = True
            return True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            snap = self._jobs.get(job_id)
            return bool(snap and snap.cancel_requested)

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._scopes.clear()
            self._latest = None


registry = JobRegistry(max_finished=default_settings.job_history_limit)


class _JobHalted(Exception):
    """Internal signal: stop dispatching further batches."""


def _new_claims() -> dict[str, set]:
    """Record ids paired (or pairs queued for review) so far in one job."""
    return {"activity": set(), "deal": set(), "queued": set()}


# ── Orchestrator ─────────────────────────────────────────────────────────


class BatchOrchestrator:
    def __init__(
        self,
        db: Session,
        cfg: Settings | None = None,
        jobs: JobRegistry | None = None,
        session_factory=None,
    ):
        self.db = db
        self.cfg = cfg or default_settings
        self.jobs = jobs or registry
        self.session_factory = session_factory
        self.engine = ConfidenceEngine.from_settings(self.cfg)

    def run(self, mode: str, options: ExecuteOptions | dict | None = None) -> BatchResult:
        if mode not in MODES:
            raise ValidationError(f"Unknown mode: {mode}", detail={"allowed": list(MODES)})
        options = validate_input(ExecuteOptions, options)
        if mode == "manual":
            if options.action is None:
                raise ValidationError("manual mode requires options.action")
            return self._run_manual(options.action, options.actor)

        cursor = self._resume_cursor(options)
        job_id = uuid.uuid4().hex
        scope = JobRegistry.scope_for(options.owner_id)
        self.jobs.start(job_id, mode, scope)

        result = BatchResult(job_id=job_id, mode=mode, status="running", totals={}, cursor=cursor)
        status, error = "completed", None
        with logger.contextualize(job_id=job_id):
            log.info("Reconciliation job started mode=%s scope=%s batch_size=%s", mode, scope, options.batch_size)
            try:
                self._run_phases(job_id, mode, options, result)
                if self.jobs.is_cancelled(job_id):
                    status = "cancelled"
            except _JobHalted as e:
                status, error = "failed", str(e)
            except Exception as e:
                status, error = "failed", str(e)
                log.error("Reconciliation job crashed: %s", e, exc_info=True)
                raise
            finally:
                snap = self.jobs.finish(job_id, status, error)
                result.status = status
                result.totals = snap.totals
                result.cursor = snap.cursor or result.cursor
                log.info("Reconciliation job %s totals=%s", status, snap.totals)
        return result

    # ── Manual ────────────────────────────────────────────────────────

    def _run_manual(self, action: ManualAction, actor: str) -> BatchResult:
        executor = ActionExecutor(self.db, actor=actor, cfg=self.cfg, autocommit=True)
        progress = BatchProgress(batch=1, phase="manual", processed=1, committed=True)
        row = apply_manual_action(executor, action)
        progress.action_ids.append(row.id)
        counter = {
            "link": "linked",
            "create_deal": "deals_created",
            "create_activity": "activities_created",
            "merge_duplicates": "merged",
        }.get(action.action_type)
        if counter:
            setattr(progress, counter, 1)
        return BatchResult(
            job_id=f"manual-{row.id}",
            mode="manual",
            status="completed",
            totals=progress.counters(),
            batches=[progress],
        )

    # ── Phases ────────────────────────────────────────────────────────

    def _resume_cursor(self, options: ExecuteOptions) -> dict:
        cursor: dict = {}
        if options.resume_job_id:
            snap = self.jobs.get(options.resume_job_id)
            if snap is None:
                raise NotFoundError(
                    f"Job {options.resume_job_id} not found",
                    detail={"job_id": options.resume_job_id},
                )
            cursor.update(snap.cursor)
        if options.resume_from:
            cursor.update(options.resume_from)
        return cursor

    def _run_phases(self, job_id: str, mode: str, options: ExecuteOptions, result: BatchResult) -> None:
        batch_no = 0
        claims = _new_claims()
        phases = ["activities"]
        if options.include_deals:
            phases.append("deals")
        for phase in phases:
            self.jobs.set_phase(job_id, phase)
            batch_no = self._run_orphan_phase(job_id, mode, options, result, phase, batch_no, claims)
            if self.jobs.is_cancelled(job_id):
                return
        if options.include_duplicates:
            self.jobs.set_phase(job_id, "duplicates")
            progress = self._run_duplicates(job_id, mode, options, batch_no + 1)
            self._complete_batch(job_id, result, progress)

    def _complete_batch(
        self,
        job_id: str,
        result: BatchResult,
        progress: BatchProgress,
        advance_cursor: bool = True,
        raise_on_halt: bool = True,
    ) -> None:
        if advance_cursor and progress.last_id is not None and progress.committed:
            result.cursor[progress.phase] = max(result.cursor.get(progress.phase, 0), progress.last_id)
        result.batches.append(progress)
        result.error_details.extend(progress.error_details)
        self.jobs.record_batch(job_id, progress, result.cursor)
        log.info(
            "Batch %s (%s) ids %s..%s: %s",
            progress.batch,
            progress.phase,
            progress.first_id,
            progress.last_id,
            progress.counters(),
        )
        if progress.halted and raise_on_halt:
            raise _JobHalted(progress.error_details[-1]["error"] if progress.error_details else "batch failed")

    def _fetch_orphans(self, db: Session, phase: str, options: ExecuteOptions, after_id, limit):
        if phase == "activities":
            return find_orphan_activities(
                db, options.owner_id, options.date_from, options.date_to, after_id=after_id, limit=limit, cfg=self.cfg
            )
        return find_orphan_deals(db, options.owner_id, options.date_from, options.date_to, after_id=after_id, limit=limit)

    def _run_orphan_phase(self, job_id, mode, options, result, phase, batch_no, claims) -> int:
        if options.parallel_batches > 1 and self.session_factory is not None and mode != "dry_run":
            return self._run_orphan_phase_parallel(job_id, mode, options, result, phase, batch_no)

        cursor = result.cursor.get(phase)
        batches_run = 0
        while options.max_batches is None or batches_run < options.max_batches:
            if self.jobs.is_cancelled(job_id):
                log.info("Cancellation requested; skipping remaining %s batches", phase)
                break
            orphans = self._fetch_orphans(self.db, phase, options, cursor, options.batch_size)
            if not orphans:
                break
            batch_no += 1
            batches_run += 1
            progress = self._process_batch(self.db, job_id, mode, options, phase, batch_no, orphans, claims)
            self._complete_batch(job_id, result, progress)
            cursor = progress.last_id
            if len(orphans) < options.batch_size:
                break
        return batch_no

    def _run_orphan_phase_parallel(self, job_id, mode, options, result, phase, batch_no) -> int:
        """Partition orphan ids into disjoint ranges and run them on separate sessions."""
        cursor = result.cursor.get(phase)
        ids = [o.id for o in self._fetch_orphans(self.db, phase, options, cursor, None)]
        # Workers take row locks on their own connections; end this read first
        self.db.commit()
        chunks = [ids[i : i + options.batch_size] for i in range(0, len(ids), options.batch_size)]
        if options.max_batches is not None:
            chunks = chunks[: options.max_batches]

        model = Activity if phase == "activities" else Deal

        def worker(numbered):
            number, chunk = numbered
            if self.jobs.is_cancelled(job_id):
                return None
            db = self.session_factory()
            try:
                with logger.contextualize(job_id=job_id):
                    orphans = db.query(model).filter(model.id.in_(chunk)).order_by(model.id).all()
                    return self._process_batch(db, job_id, mode, options, phase, number, orphans, _new_claims())
            finally:
                db.close()

        numbered = [(batch_no + i + 1, chunk) for i, chunk in enumerate(chunks)]
        with ThreadPoolExecutor(max_workers=options.parallel_batches) as pool:
            outcomes = list(pool.map(worker, numbered))

        # The resume cursor only advances across an unbroken run of committed batches
        contiguous = True
        halted = None
        for progress in outcomes:
            if progress is None:
                contiguous = False
                continue
            contiguous = contiguous and progress.committed
            self._complete_batch(job_id, result, progress, advance_cursor=contiguous, raise_on_halt=False)
            if progress.halted and halted is None:
                halted = progress
        if halted is not None:
            raise _JobHalted(halted.error_details[-1]["error"] if halted.error_details else "batch failed")
        return batch_no + len(chunks)

    # ── One batch ─────────────────────────────────────────────────────

    def _process_batch(self, db, job_id, mode, options, phase, batch_no, orphans, claims) -> BatchProgress:
        progress = BatchProgress(
            batch=batch_no,
            phase=phase,
            first_id=orphans[0].id,
            last_id=orphans[-1].id,
        )
        dry_run = mode == "dry_run"
        auto_floor = self.cfg.aggressive_threshold if mode == "aggressive" else self.cfg.auto_link_threshold
        executor = ActionExecutor(
            db,
            actor=options.actor,
            cfg=self.cfg,
            autocommit=False,
            job_id=job_id,
            auto_floor=auto_floor,
        )

        ids = [o.id for o in orphans]
        if phase == "activities":
            excluded = rejected_pairs(db, activity_ids=ids)
            pairs = [p for o in orphans for p in shortlist_for_activity(db, o, self.cfg, excluded)]
        else:
            excluded = rejected_pairs(db, deal_ids=ids)
            pairs = [p for o in orphans for p in shortlist_for_deal(db, o, self.cfg, excluded)]
        scored = score_pairs(pairs, self.engine, self.cfg)

        by_orphan: dict[int, list[MatchCandidate]] = {i: [] for i in ids}
        for cand in scored:
            by_orphan[cand.activity_id if phase == "activities" else cand.deal_id].append(cand)

        own, other = ("activity", "deal") if phase == "activities" else ("deal", "activity")
        for orphan in orphans:
            # Already paired earlier in this job (dry runs leave it an orphan)
            if orphan.id in claims[own]:
                continue
            progress.processed += 1
            ranked = sorted(by_orphan[orphan.id], key=lambda c: (-c.confidence, c.activity_id, c.deal_id))
            best = next((c for c in ranked if getattr(c, f"{other}_id") not in claims[other]), None)
            try:
                self._decide(executor, mode, options, phase, orphan, best, progress, claims, dry_run)
            except ConflictError as e:
                if e.code in BENIGN_CONFLICTS:
                    progress.skipped += 1
                    log.info("Skipped %s %s: %s", phase, orphan.id, e.code)
                else:
                    self._record_error(progress, orphan.id, e)
            except IntegrityError as e:
                self._record_error(progress, orphan.id, e)
                progress.halted = True
                break
            except ReconciliationError as e:
                self._record_error(progress, orphan.id, e)

        if dry_run:
            progress.committed = True
            return progress
        try:
            db.commit()
            progress.committed = True
        except SQLAlchemyError as e:
            db.rollback()
            log.error("Batch %s commit failed, batch rolled back: %s", batch_no, e, exc_info=True)
            err = TransactionError(f"Batch commit failed: {e.__class__.__name__}")
            progress.linked = progress.deals_created = progress.activities_created = 0
            progress.action_ids.clear()
            self._record_error(progress, None, err)
            progress.halted = True
        return progress

    def _decide(self, executor, mode, options, phase, orphan, best, progress, claims, dry_run) -> None:
        applies = best is not None and (
            best.classification == AUTO_LINK
            or (mode == "aggressive" and best.confidence >= self.cfg.aggressive_threshold)
        )

        if applies:
            if dry_run:
                progress.planned.append({"action": "link", **best.to_dict()})
            else:
                row = executor.link(
                    best.activity_id,
                    best.deal_id,
                    confidence=best.confidence,
                    automatic=True,
                    details={"classification": best.classification, "mode": mode},
                )
                progress.action_ids.append(row.id)
            claims["activity"].add(best.activity_id)
            claims["deal"].add(best.deal_id)
            progress.linked += 1
            return

        if best is not None and best.classification == NEEDS_REVIEW:
            if best.pair in claims["queued"]:
                progress.skipped += 1
                return
            claims["queued"].add(best.pair)
            progress.queued_for_review += 1
            progress.review_queue.append(best.to_dict())
            return

        # Unmatched
        if mode == "aggressive" and options.create_missing:
            action = "create_deal" if phase == "activities" else "create_activity"
            if dry_run:
                progress.planned.append({"action": action, "orphan_id": orphan.id})
            else:
                create = (
                    executor.create_deal_from_activity if phase == "activities" else executor.create_activity_from_deal
                )
                row = create(orphan.id, automatic=True, unmatched=True, details={"mode": mode, "reason": "unmatched"})
                progress.action_ids.append(row.id)
            if phase == "activities":
                progress.deals_created += 1
            else:
                progress.activities_created += 1
            return
        progress.skipped += 1

    def _run_duplicates(self, job_id, mode, options, batch_no) -> BatchProgress:
        progress = BatchProgress(batch=batch_no, phase="duplicates")
        executor = ActionExecutor(self.db, actor=options.actor, cfg=self.cfg, autocommit=False, job_id=job_id)
        merge = mode == "aggressive" and options.merge_duplicates

        for record_type in ("activity", "deal"):
            suspects = find_duplicate_suspects(
                self.db, record_type, options.owner_id, options.date_from, options.date_to, cfg=self.cfg
            )
            progress.duplicates_found += len(suspects)
            for suspect in suspects:
                progress.processed += 1
                if not merge:
                    progress.planned.append({"action": "merge_duplicates", **suspect.to_dict()})
                    continue
                if not suspect.amount_evidence:
                    # Name and day alone never retire a record
                    progress.planned.append({"action": "merge_duplicates", **suspect.to_dict()})
                    progress.skipped += 1
                    log.info("Left %s %s for review: no amount evidence", record_type, suspect.drop_id)
                    continue
                try:
                    row = executor.merge_duplicates(
                        suspect.keep_id,
                        suspect.drop_id,
                        record_type,
                        confidence=suspect.confidence,
                        automatic=True,
                    )
                    progress.action_ids.append(row.id)
                    progress.merged += 1
                except ConflictError as e:
                    if e.code in BENIGN_CONFLICTS:
                        progress.skipped += 1
                    else:
                        self._record_error(progress, suspect.drop_id, e)
                except ReconciliationError as e:
                    self._record_error(progress, suspect.drop_id, e)

        if merge:
            try:
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                progress.merged = 0
                progress.action_ids.clear()
                self._record_error(progress, None, TransactionError(f"Duplicate merge commit failed: {e}"))
                progress.halted = True
                return progress
        progress.committed = True
        return progress

    @staticmethod
    def _record_error(progress: BatchProgress, record_id, error: ReconciliationError) -> None:
        progress.errors += 1
        if len(progress.error_details) < MAX_ERRORS_KEPT:
            progress.error_details.append({"record_id": record_id, "code": error.code, "error": error.message})
        level = logging.ERROR if isinstance(error, (IntegrityError, TransactionError)) else logging.WARNING
        log.log(level, "%s %s failed: %s (%s)", progress.phase, record_id, error.message, error.code)


def apply_manual_action(executor: ActionExecutor, action: ManualAction):
    """Dispatch one validated manual action to the executor."""
    kind = action.action_type
    if kind == "link":
        return executor.link(action.activity_id, action.deal_id, force=action.force)
    if kind == "create_deal":
        return executor.create_deal_from_activity(action.activity_id)
    if kind == "create_activity":
        return executor.create_activity_from_deal(action.deal_id)
    if kind == "merge_duplicates":
        return executor.merge_duplicates(action.keep_id, action.drop_id, action.record_type)
    if kind == "mark_reviewed":
        return executor.mark_reviewed(action.activity_id, action.deal_id, action.decision, notes=action.notes)
    return executor.rollback(action.action_id)
