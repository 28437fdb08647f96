"""
action_executor.py — Applies reconciliation actions transactionally.

Actions: link, create_deal_from_activity, create_activity_from_deal,
merge_duplicates, mark_reviewed, rollback. Each one runs in its own
SAVEPOINT; the record mutation and its ReconciliationAction row commit or
roll back together.

Business Rules:
- Rows are acquired with SELECT ... FOR UPDATE before they are inspected
- link fails with ConflictError(already_linked) if either side is linked;
  force (human reviewers only) unlinks the previous partners first
- Creates check-before-create: a live derived record means
  ConflictError(already_exists), never a second copy
- merge keeps the first-created record, retires the other and repoints
  every reference to it
- mark_reviewed never touches records; repeating the same decision
  returns the existing row
- rollback refuses when any touched record changed since the action
  (ConflictError(rollback_conflict)) and never partially applies
- Automatic actions need confidence >= the executor's auto floor, except
  creations for an orphan left without a candidate in the review band or
  above (unmatched=True)
- When autocommit is True the executor owns the transaction and commits
  per action; otherwise the caller (batch orchestrator) commits

Called by: services/orchestrator.py, services/reconciliation_service.py
Depends on: services/audit_service.py, models
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

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
from ..models import Activity, Deal, DealStageChange, ReconciliationAction
from .audit_service import diff_snapshots, record_action, record_key, restore_snapshot, snapshot
from .duplicates import RECORD_TYPES, creation_order

log = logging.getLogger("salesrecon.actions")

REVIEW_DECISIONS = ("accept", "reject")
ENGINE_SOURCE = "reconciliation_engine"

# Activity status → stage of a derived deal
_STAGE_FOR_STATUS = {"completed": "won", "pending": "open", "cancelled": "lost"}

# References repointed by a merge: (model, column) pointing at the dropped id
_MERGE_REFERENCES = {
    "activity": [(Activity, "merged_into_id"), (Deal, "origin_activity_id")],
    "deal": [(Deal, "merged_into_id"), (Activity, "origin_deal_id"), (DealStageChange, "deal_id")],
}


def _positive_id(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", detail={name: value})
    return value


class ActionExecutor:
    def __init__(
        self,
        db: Session,
        actor: str = "system",
        cfg: Settings | None = None,
        autocommit: bool = True,
        job_id: str | None = None,
        auto_floor: float | None = None,
    ):
        self.db = db
        self.actor = actor
        self.cfg = cfg or default_settings
        self.autocommit = autocommit
        self.job_id = job_id
        self.auto_floor = self.cfg.auto_link_threshold if auto_floor is None else auto_floor

    # ── Transaction plumbing ──────────────────────────────────────────

    @contextmanager
    def _unit(self, label: str):
        """One SAVEPOINT per action; commit it when the executor owns the transaction."""
        try:
            with self.db.begin_nested():
                yield
            if self.autocommit:
                self.db.commit()
        except ReconciliationError:
            if self.autocommit:
                self.db.rollback()
            raise
        except SQLAlchemyError as e:
            log.error("%s failed, transaction rolled back: %s", label, e, exc_info=True)
            if self.autocommit:
                self.db.rollback()
            raise TransactionError(f"{label} failed: {e.__class__.__name__}", detail={"action": label}) from e

    def _check_automatic(self, automatic: bool, confidence: float | None, unmatched: bool = False) -> None:
        if not automatic:
            return
        if unmatched:
            # Nothing was scored, so there is no confidence to hold to the floor
            return
        if confidence is None or confidence < self.auto_floor:
            raise ValidationError(
                "Automatic actions require confidence at or above the auto-link floor",
                detail={"confidence": confidence, "floor": self.auto_floor},
            )

    def _lock(self, model, record_id: int, label: str):
        obj = (
            self.db.query(model)
            .filter(model.id == record_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if obj is None:
            raise NotFoundError(f"{label} {record_id} not found", detail={f"{label.lower()}_id": record_id})
        return obj

    @staticmethod
    def _ensure_live(obj, label: str) -> None:
        if obj.retired_at is not None:
            raise ConflictError(
                f"{label} {obj.id} is retired",
                code="record_retired",
                detail={"record": record_key(obj)},
            )

    def _assert_link_integrity(self, activity: Activity | None = None, deal: Deal | None = None) -> None:
        """The record pointing back at each side must be the one that side points to."""
        if activity is not None:
            back = self.db.query(Deal.id).filter(Deal.linked_activity_id == activity.id).first()
            if back is not None and back.id != activity.linked_deal_id:
                raise IntegrityError(
                    f"Deal {back.id} links to activity {activity.id} but not the reverse",
                    code="asymmetric_link",
                    detail={"record": record_key(activity), "points_from": f"deals:{back.id}"},
                )
        if deal is not None:
            back = self.db.query(Activity.id).filter(Activity.linked_deal_id == deal.id).first()
            if back is not None and back.id != deal.linked_activity_id:
                raise IntegrityError(
                    f"Activity {back.id} links to deal {deal.id} but not the reverse",
                    code="asymmetric_link",
                    detail={"record": record_key(deal), "points_from": f"activities:{back.id}"},
                )

    def _record(self, action_type: str, **kw) -> ReconciliationAction:
        return record_action(self.db, action_type, actor=self.actor, job_id=self.job_id, **kw)

    # ── link ──────────────────────────────────────────────────────────

    def link(
        self,
        activity_id: int,
        deal_id: int,
        force: bool = False,
        confidence: float | None = None,
        automatic: bool = False,
        details: dict | None = None,
    ) -> ReconciliationAction:
        """Link an activity and a deal 1:1."""
        _positive_id(activity_id, "activity_id")
        _positive_id(deal_id, "deal_id")
        if force and automatic:
            raise ValidationError("force is reserved for human reviewers")
        self._check_automatic(automatic, confidence)

        with self._unit("link"):
            activity = self._lock(Activity, activity_id, "Activity")
            deal = self._lock(Deal, deal_id, "Deal")
            self._ensure_live(activity, "Activity")
            self._ensure_live(deal, "Deal")
            self._assert_link_integrity(activity, deal)

            if activity.linked_deal_id == deal.id and deal.linked_activity_id == activity.id:
                raise ConflictError(
                    f"Activity {activity_id} is already linked to deal {deal_id}",
                    code="already_linked",
                    detail={"activity_id": activity_id, "deal_id": deal_id},
                )
            if not force and (activity.linked_deal_id is not None or deal.linked_activity_id is not None):
                raise ConflictError(
                    "Activity or deal is already linked",
                    code="already_linked",
                    detail={
                        "activity_id": activity_id,
                        "deal_id": deal_id,
                        "activity_linked_deal_id": activity.linked_deal_id,
                        "deal_linked_activity_id": deal.linked_activity_id,
                    },
                )

            touched = [activity, deal]
            if activity.linked_deal_id is not None:
                old_deal = self.db.query(Deal).filter(Deal.id == activity.linked_deal_id).with_for_update().first()
                if old_deal is not None:
                    touched.append(old_deal)
            if deal.linked_activity_id is not None:
                old_activity = (
                    self.db.query(Activity).filter(Activity.id == deal.linked_activity_id).with_for_update().first()
                )
                if old_activity is not None:
                    touched.append(old_activity)
            keys = [record_key(o) for o in touched]
            before = snapshot(self.db, keys)

            for obj in touched[2:]:
                if isinstance(obj, Deal):
                    obj.linked_activity_id = None
                else:
                    obj.linked_deal_id = None
            activity.linked_deal_id = None
            deal.linked_activity_id = None
            self.db.flush()
            activity.linked_deal_id = deal.id
            deal.linked_activity_id = activity.id
            self.db.flush()

            action = self._record(
                "link",
                before=before,
                after=snapshot(self.db, keys),
                activity_id=activity.id,
                deal_id=deal.id,
                confidence=confidence,
                automatic=automatic,
                details={"force": force, **(details or {})},
            )

        log.info(
            "link activity=%s deal=%s actor=%s confidence=%s automatic=%s",
            activity_id,
            deal_id,
            self.actor,
            confidence,
            automatic,
        )
        return action

    # ── create_deal_from_activity ─────────────────────────────────────

    def create_deal_from_activity(
        self,
        activity_id: int,
        confidence: float | None = None,
        automatic: bool = False,
        unmatched: bool = False,
        details: dict | None = None,
    ) -> ReconciliationAction:
        """Derive a deal from an orphan activity and link the two."""
        _positive_id(activity_id, "activity_id")
        self._check_automatic(automatic, confidence, unmatched)

        with self._unit("create_deal"):
            activity = self._lock(Activity, activity_id, "Activity")
            self._ensure_live(activity, "Activity")
            self._assert_link_integrity(activity=activity)
            if activity.linked_deal_id is not None:
                raise ConflictError(
                    f"Activity {activity_id} is already linked",
                    code="already_linked",
                    detail={"activity_id": activity_id, "deal_id": activity.linked_deal_id},
                )
            existing = (
                self.db.query(Deal)
                .filter(Deal.origin_activity_id == activity.id, Deal.retired_at.is_(None))
                .first()
            )
            if existing is not None:
                raise ConflictError(
                    f"Deal {existing.id} was already derived from activity {activity_id}",
                    code="already_exists",
                    detail={"activity_id": activity_id, "deal_id": existing.id},
                )

            activity_key = record_key(activity)
            before = snapshot(self.db, [activity_key])

            stage = _STAGE_FOR_STATUS.get(activity.status or "completed", "won")
            deal = Deal(
                name=f"{activity.client_name} ({activity.activity_type})",
                company=activity.client_name,
                stage=stage,
                value=activity.amount,
                one_off_revenue=activity.amount,
                stage_changed_at=activity.occurred_at,
                owner_id=activity.user_id,
                origin_activity_id=activity.id,
                source=ENGINE_SOURCE,
            )
            deal.stage_changes.append(DealStageChange(stage=stage, entered_at=activity.occurred_at))
            self.db.add(deal)
            self.db.flush()

            deal_key = record_key(deal)
            before[deal_key] = None
            deal.linked_activity_id = activity.id
            activity.linked_deal_id = deal.id
            self.db.flush()

            action = self._record(
                "create_deal",
                before=before,
                after=snapshot(self.db, [activity_key, deal_key]),
                activity_id=activity.id,
                deal_id=deal.id,
                confidence=confidence,
                automatic=automatic,
                details=details,
            )

        log.info("create_deal activity=%s deal=%s actor=%s", activity_id, action.deal_id, self.actor)
        return action

    # ── create_activity_from_deal ─────────────────────────────────────

    @staticmethod
    def infer_activity(deal: Deal) -> tuple[str, str, datetime]:
        """(activity_type, status, occurred_at) implied by a deal's stage history."""
        history = list(deal.stage_changes or [])
        entered = {}
        for change in history:
            entered[change.stage] = change.entered_at
        if deal.stage == "won":
            return "sale", "completed", entered.get("won") or deal.stage_changed_at
        if deal.stage == "lost":
            return "sale", "cancelled", entered.get("lost") or deal.stage_changed_at
        # Open deal: first touch is the earliest recorded stage entry
        first_touch = min((c.entered_at for c in history), default=deal.stage_changed_at)
        return "meeting", "pending", first_touch

    def create_activity_from_deal(
        self,
        deal_id: int,
        confidence: float | None = None,
        automatic: bool = False,
        unmatched: bool = False,
        details: dict | None = None,
    ) -> ReconciliationAction:
        """Derive an activity from an orphan deal and link the two."""
        _positive_id(deal_id, "deal_id")
        self._check_automatic(automatic, confidence, unmatched)

        with self._unit("create_activity"):
            deal = self._lock(Deal, deal_id, "Deal")
            self._ensure_live(deal, "Deal")
            self._assert_link_integrity(deal=deal)
            if deal.linked_activity_id is not None:
                raise ConflictError(
                    f"Deal {deal_id} is already linked",
                    code="already_linked",
                    detail={"deal_id": deal_id, "activity_id": deal.linked_activity_id},
                )
            existing = (
                self.db.query(Activity)
                .filter(Activity.origin_deal_id == deal.id, Activity.retired_at.is_(None))
                .first()
            )
            if existing is not None:
                raise ConflictError(
                    f"Activity {existing.id} was already derived from deal {deal_id}",
                    code="already_exists",
                    detail={"deal_id": deal_id, "activity_id": existing.id},
                )

            deal_key = record_key(deal)
            before = snapshot(self.db, [deal_key])

            activity_type, status, occurred_at = self.infer_activity(deal)
            activity = Activity(
                activity_type=activity_type,
                status=status,
                client_name=deal.company,
                amount=deal.comparable_value,
                occurred_at=occurred_at,
                user_id=deal.owner_id,
                details=f"Derived from deal #{deal.id}",
                origin_deal_id=deal.id,
                source=ENGINE_SOURCE,
            )
            self.db.add(activity)
            self.db.flush()

            activity_key = record_key(activity)
            before[activity_key] = None
            activity.linked_deal_id = deal.id
            deal.linked_activity_id = activity.id
            self.db.flush()

            action = self._record(
                "create_activity",
                before=before,
                after=snapshot(self.db, [activity_key, deal_key]),
                activity_id=activity.id,
                deal_id=deal.id,
                confidence=confidence,
                automatic=automatic,
                details={"inferred_type": activity_type, **(details or {})},
            )

        log.info("create_activity deal=%s activity=%s actor=%s", deal_id, action.activity_id, self.actor)
        return action

    # ── merge_duplicates ──────────────────────────────────────────────

    def merge_duplicates(
        self,
        keep_id: int,
        drop_id: int,
        record_type: str = "activity",
        confidence: float | None = None,
        automatic: bool = False,
    ) -> ReconciliationAction:
        """Retire drop_id in favour of keep_id and repoint references to it."""
        _positive_id(keep_id, "keep_id")
        _positive_id(drop_id, "drop_id")
        if keep_id == drop_id:
            raise ValidationError("keep_id and drop_id must differ", detail={"id": keep_id})
        if record_type not in RECORD_TYPES:
            raise ValidationError(f"Unknown record type: {record_type}", detail={"allowed": list(RECORD_TYPES)})

        model, label = (Activity, "Activity") if record_type == "activity" else (Deal, "Deal")
        link_col = "linked_deal_id" if record_type == "activity" else "linked_activity_id"
        partner_model = Deal if record_type == "activity" else Activity
        partner_link_col = "linked_activity_id" if record_type == "activity" else "linked_deal_id"

        with self._unit("merge_duplicates"):
            first, second = sorted((keep_id, drop_id))
            locked = {first: self._lock(model, first, label), second: self._lock(model, second, label)}
            keep, drop = locked[keep_id], locked[drop_id]
            self._ensure_live(keep, label)
            self._ensure_live(drop, label)
            if creation_order(drop) < creation_order(keep):
                raise ValidationError(
                    f"{label} {keep_id} is not the first-created record",
                    code="keep_not_first",
                    detail={"keep_id": keep_id, "drop_id": drop_id},
                )

            keep_link, drop_link = getattr(keep, link_col), getattr(drop, link_col)
            if keep_link is not None and drop_link is not None:
                raise ConflictError(
                    f"Both {label.lower()}s are linked to different counterparts",
                    code="link_conflict",
                    detail={"keep_linked": keep_link, "drop_linked": drop_link},
                )

            touched = [keep, drop]
            partner = None
            if drop_link is not None:
                partner = (
                    self.db.query(partner_model)
                    .filter(partner_model.id == drop_link)
                    .with_for_update()
                    .first()
                )
                if partner is not None:
                    touched.append(partner)

            referencing = []
            for ref_model, column in _MERGE_REFERENCES[record_type]:
                rows = (
                    self.db.query(ref_model)
                    .filter(getattr(ref_model, column) == drop.id)
                    .with_for_update()
                    .all()
                )
                referencing.extend((row, column) for row in rows)
            for row, _ in referencing:
                if row not in touched:
                    touched.append(row)

            keys = [record_key(o) for o in touched]
            before = snapshot(self.db, keys)

            # Move the drop's link (if any) onto the survivor
            setattr(drop, link_col, None)
            self.db.flush()
            if partner is not None:
                setattr(keep, link_col, partner.id)
                setattr(partner, partner_link_col, keep.id)

            for row, column in referencing:
                setattr(row, column, keep.id)

            drop.merged_into_id = keep.id
            drop.retired_at = datetime.now(timezone.utc)
            if record_type == "activity":
                drop.status = "merged"
            else:
                drop.stage = "merged"
            self.db.flush()

            action = self._record(
                "merge_duplicates",
                before=before,
                after=snapshot(self.db, keys),
                activity_id=keep.id if record_type == "activity" else None,
                deal_id=keep.id if record_type == "deal" else None,
                record_type=record_type,
                confidence=confidence,
                automatic=automatic,
                details={"keep_id": keep.id, "drop_id": drop.id, "repointed": len(referencing)},
            )

        log.info("merge_duplicates %s keep=%s drop=%s actor=%s", record_type, keep_id, drop_id, self.actor)
        return action

    # ── mark_reviewed ─────────────────────────────────────────────────

    def mark_reviewed(
        self,
        activity_id: int,
        deal_id: int,
        decision: str,
        notes: str | None = None,
        confidence: float | None = None,
    ) -> ReconciliationAction:
        """Record a reviewer's accept/reject on a pair. Never mutates records."""
        _positive_id(activity_id, "activity_id")
        _positive_id(deal_id, "deal_id")
        if decision not in REVIEW_DECISIONS:
            raise ValidationError(
                f"Unknown review decision: {decision}",
                detail={"allowed": list(REVIEW_DECISIONS)},
            )

        with self._unit("mark_reviewed"):
            if self.db.get(Activity, activity_id) is None:
                raise NotFoundError(f"Activity {activity_id} not found", detail={"activity_id": activity_id})
            if self.db.get(Deal, deal_id) is None:
                raise NotFoundError(f"Deal {deal_id} not found", detail={"deal_id": deal_id})

            latest = (
                self.db.query(ReconciliationAction)
                .filter(
                    ReconciliationAction.action_type == "mark_reviewed",
                    ReconciliationAction.activity_id == activity_id,
                    ReconciliationAction.deal_id == deal_id,
                    ReconciliationAction.rolled_back.is_(False),
                )
                .order_by(ReconciliationAction.id.desc())
                .first()
            )
            if latest is not None and (latest.details or {}).get("decision") == decision:
                return latest

            action = self._record(
                "mark_reviewed",
                before={},
                after={},
                activity_id=activity_id,
                deal_id=deal_id,
                confidence=confidence,
                details={"decision": decision, "notes": notes},
            )

        log.info("mark_reviewed activity=%s deal=%s decision=%s actor=%s", activity_id, deal_id, decision, self.actor)
        return action

    # ── rollback ──────────────────────────────────────────────────────

    def rollback(self, action_id: int) -> ReconciliationAction:
        """Restore the before-state of a prior action and log a rollback row."""
        _positive_id(action_id, "action_id")

        with self._unit("rollback"):
            original = (
                self.db.query(ReconciliationAction)
                .filter(ReconciliationAction.id == action_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if original is None:
                raise NotFoundError(f"Action {action_id} not found", detail={"action_id": action_id})
            if original.action_type == "rollback":
                raise ValidationError(
                    "Rollback actions cannot be rolled back",
                    code="not_reversible",
                    detail={"action_id": action_id},
                )
            if original.rolled_back:
                raise ConflictError(
                    f"Action {action_id} was already rolled back",
                    code="already_rolled_back",
                    detail={"action_id": action_id},
                )

            before_state = original.before_state or {}
            after_state = original.after_state or {}
            keys = sorted(set(before_state) | set(after_state))

            live = snapshot(self.db, keys, lock=True)
            changed = diff_snapshots(after_state, live)
            if changed:
                raise ConflictError(
                    f"Records changed since action {action_id}; refusing to overwrite",
                    code="rollback_conflict",
                    detail={"action_id": action_id, "records": changed},
                )

            restore_snapshot(self.db, before_state)

            original.rolled_back = True
            original.rolled_back_at = datetime.now(timezone.utc)
            action = self._record(
                "rollback",
                before=live,
                after=snapshot(self.db, keys),
                activity_id=original.activity_id,
                deal_id=original.deal_id,
                record_type=original.record_type,
                rollback_of_id=original.id,
                details={"rolled_back_type": original.action_type},
            )

        log.info("rollback action=%s (%s) actor=%s", action_id, action.details.get("rolled_back_type"), self.actor)
        return action
