"""
test_action_executor.py — Tests for ActionExecutor transitions.

link / create_deal_from_activity / create_activity_from_deal /
merge_duplicates / mark_reviewed, each with its audit row.

Called by: pytest
Depends on: salesrecon/services/action_executor.py, conftest.py
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from salesrecon.exceptions import ConflictError, IntegrityError, NotFoundError, ValidationError
from salesrecon.models import Activity, Deal, DealStageChange, ReconciliationAction
from salesrecon.services.action_executor import ENGINE_SOURCE, ActionExecutor
from salesrecon.services.audit_service import snapshot


def _utc(day, hour=12):
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


@pytest.fixture()
def executor(db_session):
    return ActionExecutor(db_session, actor="reviewer@example.com")


def _actions(db, action_type=None):
    q = db.query(ReconciliationAction)
    if action_type:
        q = q.filter(ReconciliationAction.action_type == action_type)
    return q.all()


# ── link ────────────────────────────────────────────────────────────


class TestLink:
    def test_sets_both_sides_and_audits(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        deal = make_deal()

        action = executor.link(activity.id, deal.id, confidence=85.0)

        db_session.expire_all()
        assert db_session.get(Activity, activity.id).linked_deal_id == deal.id
        assert db_session.get(Deal, deal.id).linked_activity_id == activity.id
        assert action.action_type == "link"
        assert action.actor == "reviewer@example.com"
        assert action.automatic is False
        assert action.record_ids == [f"activities:{activity.id}", f"deals:{deal.id}"]
        assert action.before_state[f"activities:{activity.id}"]["linked_deal_id"] is None
        assert action.after_state[f"deals:{deal.id}"]["linked_activity_id"] == activity.id

    def test_after_state_matches_live_records(self, db_session, executor, make_activity, make_deal):
        action = executor.link(make_activity().id, make_deal().id)
        db_session.expire_all()
        assert snapshot(db_session, action.record_ids) == action.after_state

    def test_second_link_conflicts_without_new_audit_row(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        deal = make_deal()
        executor.link(activity.id, deal.id)

        with pytest.raises(ConflictError) as exc:
            executor.link(activity.id, deal.id)

        assert exc.value.code == "already_linked"
        assert len(_actions(db_session, "link")) == 1

    def test_other_side_already_linked(self, db_session, executor, make_activity, make_deal):
        first = make_activity()
        second = make_activity()
        deal = make_deal()
        executor.link(first.id, deal.id)

        with pytest.raises(ConflictError) as exc:
            executor.link(second.id, deal.id)

        assert exc.value.code == "already_linked"
        assert db_session.query(Activity).filter(Activity.linked_deal_id == deal.id).count() == 1

    def test_force_relinks_and_captures_old_partner(self, db_session, executor, make_activity, make_deal):
        first = make_activity()
        second = make_activity()
        deal = make_deal()
        executor.link(first.id, deal.id)

        action = executor.link(second.id, deal.id, force=True)

        db_session.expire_all()
        assert db_session.get(Activity, first.id).linked_deal_id is None
        assert db_session.get(Activity, second.id).linked_deal_id == deal.id
        assert db_session.get(Deal, deal.id).linked_activity_id == second.id
        assert f"activities:{first.id}" in action.record_ids
        assert action.details["force"] is True

    def test_force_is_for_humans_only(self, executor, make_activity, make_deal):
        with pytest.raises(ValidationError):
            executor.link(make_activity().id, make_deal().id, force=True, confidence=99, automatic=True)

    def test_automatic_needs_auto_link_confidence(self, db_session, executor, make_activity, make_deal):
        with pytest.raises(ValidationError):
            executor.link(make_activity().id, make_deal().id, confidence=85.0, automatic=True)
        assert _actions(db_session) == []

    def test_automatic_floor_is_configurable(self, db_session, make_activity, make_deal):
        executor = ActionExecutor(db_session, auto_floor=80)
        action = executor.link(make_activity().id, make_deal().id, confidence=85.0, automatic=True)
        assert action.automatic is True

    def test_missing_records(self, executor, make_activity, make_deal):
        with pytest.raises(NotFoundError):
            executor.link(make_activity().id, 9999)
        with pytest.raises(NotFoundError):
            executor.link(9999, make_deal().id)

    def test_invalid_ids_rejected_before_io(self, executor):
        with pytest.raises(ValidationError):
            executor.link(0, 1)
        with pytest.raises(ValidationError):
            executor.link("1", 1)

    def test_retired_record(self, executor, make_activity, make_deal):
        retired = make_activity(retired_at=_utc(16))
        with pytest.raises(ConflictError) as exc:
            executor.link(retired.id, make_deal().id)
        assert exc.value.code == "record_retired"

    def test_asymmetric_link_is_fatal(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        stray = make_deal()
        stray.linked_activity_id = activity.id
        db_session.commit()

        with pytest.raises(IntegrityError):
            executor.link(activity.id, make_deal().id)


# ── create_deal_from_activity ───────────────────────────────────────


class TestCreateDealFromActivity:
    def test_derives_and_links(self, db_session, executor, make_activity):
        activity = make_activity("Acme Corp", amount=5000, occurred_at=_utc(15))

        action = executor.create_deal_from_activity(activity.id)

        deal = db_session.get(Deal, action.deal_id)
        assert deal.company == "Acme Corp"
        assert deal.value == Decimal("5000.00")
        assert deal.stage == "won"
        assert deal.stage_changed_at == _utc(15)
        assert deal.owner_id == activity.user_id
        assert deal.origin_activity_id == activity.id
        assert deal.source == ENGINE_SOURCE
        assert deal.linked_activity_id == activity.id
        assert activity.linked_deal_id == deal.id
        assert [c.stage for c in deal.stage_changes] == ["won"]
        assert action.before_state[f"deals:{deal.id}"] is None

    def test_stage_follows_activity_status(self, db_session, executor, make_activity):
        pending = make_activity(status="pending")
        action = executor.create_deal_from_activity(pending.id)
        assert db_session.get(Deal, action.deal_id).stage == "open"

    def test_already_linked(self, executor, make_activity, make_deal):
        activity = make_activity()
        executor.link(activity.id, make_deal().id)
        with pytest.raises(ConflictError) as exc:
            executor.create_deal_from_activity(activity.id)
        assert exc.value.code == "already_linked"

    def test_check_before_create(self, db_session, executor, make_activity):
        activity = make_activity()
        action = executor.create_deal_from_activity(activity.id)
        # Someone unlinks the pair outside the engine
        deal = db_session.get(Deal, action.deal_id)
        activity.linked_deal_id = None
        deal.linked_activity_id = None
        db_session.commit()

        with pytest.raises(ConflictError) as exc:
            executor.create_deal_from_activity(activity.id)

        assert exc.value.code == "already_exists"
        assert db_session.query(Deal).filter(Deal.origin_activity_id == activity.id).count() == 1

    def test_automatic_needs_confidence_unless_unmatched(self, db_session, executor, make_activity):
        activity = make_activity()
        with pytest.raises(ValidationError):
            executor.create_deal_from_activity(activity.id, automatic=True)
        assert _actions(db_session) == []

        action = executor.create_deal_from_activity(
            activity.id, automatic=True, unmatched=True, details={"reason": "unmatched"}
        )
        assert action.automatic is True
        assert action.confidence is None
        assert action.details == {"reason": "unmatched"}


# ── create_activity_from_deal ───────────────────────────────────────


class TestCreateActivityFromDeal:
    def test_won_deal_becomes_completed_sale(self, db_session, executor, make_deal):
        deal = make_deal("Globex", value=None, one_off_revenue=200, monthly_mrr=50, stage_changed_at=_utc(20))

        action = executor.create_activity_from_deal(deal.id)

        activity = db_session.get(Activity, action.activity_id)
        assert activity.activity_type == "sale"
        assert activity.status == "completed"
        assert activity.occurred_at == _utc(20)
        assert activity.amount == Decimal("800.00")
        assert activity.client_name == "Globex"
        assert activity.origin_deal_id == deal.id
        assert activity.linked_deal_id == deal.id
        assert deal.linked_activity_id == activity.id
        assert action.details["inferred_type"] == "sale"

    def test_open_deal_uses_first_stage_entry(self, db_session, executor, make_deal):
        deal = make_deal("Initech", stage="open", stage_changed_at=_utc(20))
        db_session.add(DealStageChange(deal_id=deal.id, stage="qualified", entered_at=_utc(10)))
        db_session.commit()
        db_session.expire(deal, ["stage_changes"])

        action = executor.create_activity_from_deal(deal.id)

        activity = db_session.get(Activity, action.activity_id)
        assert activity.activity_type == "meeting"
        assert activity.status == "pending"
        assert activity.occurred_at == _utc(10)

    def test_lost_deal(self, db_session, executor, make_deal):
        deal = make_deal("Hooli", stage="lost")
        action = executor.create_activity_from_deal(deal.id)
        assert db_session.get(Activity, action.activity_id).status == "cancelled"

    def test_check_before_create(self, db_session, executor, make_deal):
        deal = make_deal()
        action = executor.create_activity_from_deal(deal.id)
        activity = db_session.get(Activity, action.activity_id)
        activity.linked_deal_id = None
        deal.linked_activity_id = None
        db_session.commit()

        with pytest.raises(ConflictError) as exc:
            executor.create_activity_from_deal(deal.id)
        assert exc.value.code == "already_exists"

    def test_automatic_unmatched_keeps_inferred_type(self, db_session, executor, make_deal):
        deal = make_deal()
        with pytest.raises(ValidationError):
            executor.create_activity_from_deal(deal.id, automatic=True, confidence=50.0)

        action = executor.create_activity_from_deal(
            deal.id, automatic=True, unmatched=True, details={"mode": "aggressive"}
        )
        assert action.automatic is True
        assert action.details == {"inferred_type": "sale", "mode": "aggressive"}


# ── merge_duplicates ────────────────────────────────────────────────


class TestMergeDuplicates:
    def test_retires_drop_and_moves_link(self, db_session, executor, make_activity, make_deal):
        keep = make_activity()
        drop = make_activity()
        deal = make_deal()
        executor.link(drop.id, deal.id)

        action = executor.merge_duplicates(keep.id, drop.id, "activity", confidence=100.0)

        db_session.expire_all()
        keep, drop, deal = (
            db_session.get(Activity, keep.id),
            db_session.get(Activity, drop.id),
            db_session.get(Deal, deal.id),
        )
        assert drop.retired_at is not None
        assert drop.status == "merged"
        assert drop.merged_into_id == keep.id
        assert drop.linked_deal_id is None
        assert keep.linked_deal_id == deal.id
        assert deal.linked_activity_id == keep.id
        assert action.details["keep_id"] == keep.id
        assert action.before_state[f"activities:{drop.id}"]["retired_at"] is None

    def test_repoints_references(self, db_session, executor, make_activity):
        keep = make_activity()
        drop = make_activity()
        derived = db_session.get(Deal, executor.create_deal_from_activity(drop.id).deal_id)
        action = executor.merge_duplicates(keep.id, drop.id, "activity")

        db_session.expire_all()
        derived = db_session.get(Deal, derived.id)
        assert derived.origin_activity_id == keep.id
        assert derived.linked_activity_id == keep.id
        assert action.details["repointed"] == 1

    def test_deal_merge_moves_stage_history(self, db_session, executor, make_deal):
        keep = make_deal("Globex")
        drop = make_deal("Globex")

        executor.merge_duplicates(keep.id, drop.id, "deal")

        db_session.expire_all()
        assert db_session.query(DealStageChange).filter(DealStageChange.deal_id == drop.id).count() == 0
        assert db_session.query(DealStageChange).filter(DealStageChange.deal_id == keep.id).count() == 2
        assert db_session.get(Deal, drop.id).stage == "merged"

    def test_keep_must_be_first_created(self, executor, make_activity):
        first = make_activity()
        second = make_activity()
        with pytest.raises(ValidationError) as exc:
            executor.merge_duplicates(second.id, first.id, "activity")
        assert exc.value.code == "keep_not_first"

    def test_both_linked_conflict(self, executor, make_activity, make_deal):
        keep = make_activity()
        drop = make_activity()
        executor.link(keep.id, make_deal().id)
        executor.link(drop.id, make_deal().id)
        with pytest.raises(ConflictError) as exc:
            executor.merge_duplicates(keep.id, drop.id, "activity")
        assert exc.value.code == "link_conflict"

    def test_same_id(self, executor, make_activity):
        a = make_activity()
        with pytest.raises(ValidationError):
            executor.merge_duplicates(a.id, a.id, "activity")

    def test_unknown_record_type(self, executor):
        with pytest.raises(ValidationError):
            executor.merge_duplicates(1, 2, "invoice")

    def test_already_retired(self, executor, make_activity):
        keep = make_activity()
        drop = make_activity()
        executor.merge_duplicates(keep.id, drop.id, "activity")
        with pytest.raises(ConflictError) as exc:
            executor.merge_duplicates(keep.id, drop.id, "activity")
        assert exc.value.code == "record_retired"


# ── mark_reviewed ───────────────────────────────────────────────────


class TestMarkReviewed:
    def test_records_decision_without_touching_records(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        deal = make_deal()

        action = executor.mark_reviewed(activity.id, deal.id, "reject", notes="different order")

        assert action.details == {"decision": "reject", "notes": "different order"}
        assert action.record_ids == []
        assert activity.linked_deal_id is None
        assert deal.linked_activity_id is None

    def test_same_decision_is_idempotent(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        deal = make_deal()
        first = executor.mark_reviewed(activity.id, deal.id, "reject")
        again = executor.mark_reviewed(activity.id, deal.id, "reject")
        assert again.id == first.id
        assert len(_actions(db_session, "mark_reviewed")) == 1

    def test_changed_decision_appends(self, db_session, executor, make_activity, make_deal):
        activity = make_activity()
        deal = make_deal()
        executor.mark_reviewed(activity.id, deal.id, "reject")
        executor.mark_reviewed(activity.id, deal.id, "accept")
        assert len(_actions(db_session, "mark_reviewed")) == 2

    def test_unknown_decision(self, executor, make_activity, make_deal):
        with pytest.raises(ValidationError):
            executor.mark_reviewed(make_activity().id, make_deal().id, "maybe")

    def test_missing_deal(self, executor, make_activity):
        with pytest.raises(NotFoundError):
            executor.mark_reviewed(make_activity().id, 9999, "accept")
