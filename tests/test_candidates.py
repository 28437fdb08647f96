"""
test_candidates.py — Tests for orphan discovery and candidate generation.

Covers the orphan definitions, the ±window date filter, the name
pre-filter, the per-orphan cap and exclusion of rejected pairs.

Called by: pytest
Depends on: salesrecon/services/candidates.py, conftest.py
"""

from datetime import datetime, timezone

import pytest

from salesrecon.config import Settings
from salesrecon.exceptions import ValidationError
from salesrecon.services.action_executor import ActionExecutor
from salesrecon.services.candidates import (
    DATA_INTEGRITY,
    REVENUE_RISK,
    REVENUE_TRACKING,
    activity_priority,
    candidates_for_activity,
    candidates_for_deal,
    deal_priority,
    find_orphan_activities,
    find_orphan_deals,
    generate_candidates,
    passes_prefilter,
    rejected_pairs,
)
from salesrecon.services.confidence import NEEDS_REVIEW


def _utc(day, hour=12):
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


# ── Orphans ─────────────────────────────────────────────────────────


class TestOrphans:
    def test_orphan_activity_definition(self, db_session, make_activity, make_deal):
        orphan = make_activity("Acme Corp")
        make_activity("Meeting Co", activity_type="meeting")
        make_activity("Pending Co", status="pending")
        make_activity("Retired Co", retired_at=_utc(16))
        linked = make_activity("Linked Co")
        deal = make_deal("Linked Co")
        linked.linked_deal_id = deal.id
        deal.linked_activity_id = linked.id
        db_session.commit()

        assert [a.id for a in find_orphan_activities(db_session)] == [orphan.id]

    def test_orphan_deal_definition(self, db_session, make_deal):
        won = make_deal("Acme Corp")
        make_deal("Open Co", stage="open")
        make_deal("Lost Co", stage="lost")
        assert [d.id for d in find_orphan_deals(db_session)] == [won.id]

    def test_keyset_batches(self, db_session, make_activity):
        ids = [make_activity(f"Client {i}").id for i in range(5)]
        first = find_orphan_activities(db_session, limit=2)
        second = find_orphan_activities(db_session, after_id=first[-1].id, limit=2)
        assert [a.id for a in first] == ids[:2]
        assert [a.id for a in second] == ids[2:4]

    def test_owner_and_date_scope(self, db_session, make_activity, other_user):
        mine = make_activity("Acme", occurred_at=_utc(10))
        make_activity("Acme", occurred_at=_utc(10), user_id=other_user.id)
        make_activity("Acme", occurred_at=_utc(20))
        found = find_orphan_activities(
            db_session,
            owner_id=mine.user_id,
            date_from=_utc(9).date(),
            date_to=_utc(10).date(),
        )
        assert [a.id for a in found] == [mine.id]

    def test_priorities(self, make_activity, make_deal):
        assert activity_priority(make_activity("A", amount=100)) == REVENUE_RISK
        assert activity_priority(make_activity("B", amount=None)) == DATA_INTEGRITY
        assert deal_priority(make_deal("C", value=100)) == REVENUE_TRACKING
        assert deal_priority(make_deal("D", value=None)) == DATA_INTEGRITY

    def test_deal_priority_uses_recurring_revenue(self, make_deal):
        deal = make_deal("MRR Co", value=None, monthly_mrr=100)
        assert deal.comparable_value == 1200
        assert deal_priority(deal) == REVENUE_TRACKING


# ── Pre-filter ──────────────────────────────────────────────────────


class TestPrefilter:
    cfg = Settings()

    def test_identical(self):
        assert passes_prefilter("acme", "acme", {}, self.cfg) == 100

    def test_alias(self):
        index = {"msft": "microsoft", "microsoft": "microsoft"}
        assert passes_prefilter("msft", "microsoft", index, self.cfg) == 95

    def test_common_substring_rescues_low_ratio(self):
        assert passes_prefilter("acme", "acme industries", {}, self.cfg) is not None

    def test_unrelated_dropped(self):
        assert passes_prefilter("acme", "globex", {}, self.cfg) is None


# ── Per-orphan candidates ───────────────────────────────────────────


class TestCandidatesForActivity:
    def test_acme_example_needs_review(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp", amount=5000, occurred_at=_utc(15))
        deal = make_deal("ACME CORP.", value=5000, stage_changed_at=_utc(16))

        cands = candidates_for_activity(db_session, activity)

        assert len(cands) == 1
        assert cands[0].deal_id == deal.id
        assert cands[0].name_score == 100.0
        assert cands[0].date_score == 50.0
        assert cands[0].amount_score == 100.0
        assert cands[0].confidence == pytest.approx(85.0)
        assert cands[0].classification == NEEDS_REVIEW
        assert cands[0].reasons

    def test_outside_date_window_excluded(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp", occurred_at=_utc(15))
        make_deal("Acme Corp", stage_changed_at=_utc(20))
        assert candidates_for_activity(db_session, activity) == []

    def test_other_owner_excluded(self, db_session, make_activity, make_deal, other_user):
        activity = make_activity("Acme Corp")
        make_deal("Acme Corp", owner_id=other_user.id)
        assert candidates_for_activity(db_session, activity) == []

    def test_other_owner_allowed_when_configured(self, db_session, make_activity, make_deal, other_user):
        activity = make_activity("Acme Corp")
        make_deal("Acme Corp", owner_id=other_user.id)
        cfg = Settings(match_same_owner=False)
        assert len(candidates_for_activity(db_session, activity, cfg=cfg)) == 1

    def test_linked_and_lost_deals_excluded(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        other = make_activity("Acme Corp", activity_type="meeting")
        linked = make_deal("Acme Corp")
        linked.linked_activity_id = other.id
        other.linked_deal_id = linked.id
        db_session.commit()
        make_deal("Acme Corp", stage="lost")
        assert candidates_for_activity(db_session, activity) == []

    def test_unrelated_names_excluded(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        make_deal("Globex")
        assert candidates_for_activity(db_session, activity) == []

    def test_capped_per_orphan(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        for _ in range(7):
            make_deal("Acme Corp")
        assert len(candidates_for_activity(db_session, activity)) == 5

    def test_sorted_best_first(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp", amount=5000, occurred_at=_utc(15))
        near = make_deal("Acme Corp", value=5000, stage_changed_at=_utc(16))
        exact = make_deal("Acme Corp", value=5000, stage_changed_at=_utc(15))
        cands = candidates_for_activity(db_session, activity)
        assert [c.deal_id for c in cands] == [exact.id, near.id]

    def test_zero_candidates_is_not_an_error(self, db_session, make_activity):
        assert candidates_for_activity(db_session, make_activity("Lonely Co")) == []


class TestCandidatesForDeal:
    def test_finds_orphan_activity(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp", occurred_at=_utc(15))
        deal = make_deal("Acme Corp", stage_changed_at=_utc(15))
        cands = candidates_for_deal(db_session, deal)
        assert [c.activity_id for c in cands] == [activity.id]
        assert cands[0].confidence == 100.0


# ── Rejected pairs ──────────────────────────────────────────────────


class TestRejectedPairs:
    def test_rejected_pair_never_proposed(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        deal = make_deal("Acme Corp")
        ActionExecutor(db_session, actor="reviewer").mark_reviewed(activity.id, deal.id, "reject")

        assert rejected_pairs(db_session) == {(activity.id, deal.id)}
        assert candidates_for_activity(db_session, activity) == []
        assert generate_candidates(db_session) == []

    def test_later_accept_overrides_reject(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        deal = make_deal("Acme Corp")
        executor = ActionExecutor(db_session, actor="reviewer")
        executor.mark_reviewed(activity.id, deal.id, "reject")
        executor.mark_reviewed(activity.id, deal.id, "accept")
        assert rejected_pairs(db_session) == set()

    def test_rolled_back_reject_reproposed(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        deal = make_deal("Acme Corp")
        executor = ActionExecutor(db_session, actor="reviewer")
        review = executor.mark_reviewed(activity.id, deal.id, "reject")
        executor.rollback(review.id)
        assert [c.deal_id for c in candidates_for_activity(db_session, activity)] == [deal.id]


# ── generate_candidates ─────────────────────────────────────────────


class TestGenerateCandidates:
    def test_band_filter(self, db_session, make_activity, make_deal):
        make_activity("Acme Corp", occurred_at=_utc(15))
        make_deal("ACME CORP.", stage_changed_at=_utc(16))
        make_activity("Globex", occurred_at=_utc(15))
        make_deal("Globex", stage_changed_at=_utc(15))

        assert len(generate_candidates(db_session)) == 2
        review = generate_candidates(db_session, band="needs_review")
        assert len(review) == 1
        assert review[0].deal["company"] == "ACME CORP."
        assert len(generate_candidates(db_session, band="auto_link")) == 1

    def test_min_confidence_and_limit(self, db_session, make_activity, make_deal):
        make_activity("Acme Corp", occurred_at=_utc(15))
        make_deal("ACME CORP.", stage_changed_at=_utc(16))
        make_activity("Globex", occurred_at=_utc(15))
        make_deal("Globex", stage_changed_at=_utc(15))

        assert len(generate_candidates(db_session, min_confidence=90)) == 1
        top = generate_candidates(db_session, limit=1)
        assert len(top) == 1
        assert top[0].confidence == 100.0

    def test_unknown_band(self, db_session):
        with pytest.raises(ValidationError):
            generate_candidates(db_session, band="maybe")

    def test_read_only(self, db_session, make_activity, make_deal):
        activity = make_activity("Acme Corp")
        make_deal("Acme Corp")
        generate_candidates(db_session)
        db_session.refresh(activity)
        assert activity.linked_deal_id is None
