"""
test_parallel_batches.py — Tests for parallel batch dispatch.

Runs BatchOrchestrator with parallel_batches > 1 against a file-backed
SQLite database so every worker gets its own connection.

Called by: pytest
Depends on: salesrecon/services/orchestrator.py, salesrecon/database.py
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from salesrecon.database import configure_sqlite
from salesrecon.models import Activity, Base, Deal, DealStageChange, ReconciliationAction, User
from salesrecon.services.analysis_service import find_integrity_violations
from salesrecon.services.orchestrator import BatchOrchestrator

DAY = datetime(2024, 1, 15, 12, tzinfo=timezone.utc)
PARALLEL = {"parallel_batches": 2, "batch_size": 1, "include_deals": False, "include_duplicates": False}


@pytest.fixture()
def file_sessions(tmp_path):
    """Session factory over a fresh SQLite file shared by all workers."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'parallel.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    configure_sqlite(engine, begin_statement="BEGIN IMMEDIATE")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        engine.dispose()


def _seed(factory, activities, deals) -> tuple[list[int], list[int]]:
    """Add one owner plus sale activities and won deals on the same day."""
    db = factory()
    try:
        user = User(email="rep@example.com", name="Sales Rep", role="sales")
        db.add(user)
        db.flush()
        activity_rows = [
            Activity(
                activity_type="sale",
                status="completed",
                client_name=name,
                amount=Decimal("5000"),
                occurred_at=DAY,
                user_id=user.id,
            )
            for name in activities
        ]
        deal_rows = []
        for name in deals:
            deal = Deal(
                name=f"{name} deal",
                company=name,
                stage="won",
                value=Decimal("5000"),
                stage_changed_at=DAY,
                owner_id=user.id,
            )
            deal.stage_changes.append(DealStageChange(stage="won", entered_at=DAY))
            deal_rows.append(deal)
        db.add_all(activity_rows + deal_rows)
        db.commit()
        return [a.id for a in activity_rows], [d.id for d in deal_rows]
    finally:
        db.close()


def _run(factory, mode="safe", **options):
    db = factory()
    try:
        return BatchOrchestrator(db, session_factory=factory).run(mode, {**PARALLEL, **options})
    finally:
        db.close()


class TestParallelDispatch:
    def test_disjoint_batches_link_every_pair(self, file_sessions):
        names = ["Acme Corp", "Globex", "Initech", "Umbrella"]
        activity_ids, deal_ids = _seed(file_sessions, names, names)

        result = _run(file_sessions)

        assert result.status == "completed"
        assert [(b.first_id, b.last_id) for b in result.batches] == [(i, i) for i in activity_ids]
        assert [b.batch for b in result.batches] == [1, 2, 3, 4]
        assert result.totals["linked"] == 4
        assert result.totals["errors"] == 0
        assert result.cursor == {"activities": activity_ids[-1]}

        db = file_sessions()
        try:
            for activity_id, deal_id in zip(activity_ids, deal_ids):
                assert db.get(Activity, activity_id).linked_deal_id == deal_id
                assert db.get(Deal, deal_id).linked_activity_id == activity_id
            assert find_integrity_violations(db) == []
            assert db.query(ReconciliationAction).count() == 4
        finally:
            db.close()

    def test_competing_batches_link_deal_once(self, file_sessions):
        activity_ids, (deal_id,) = _seed(file_sessions, ["Acme Corp", "Acme Corp"], ["Acme Corp"])

        result = _run(file_sessions)

        assert result.status == "completed"
        assert result.totals["linked"] == 1
        assert result.totals["errors"] == 0
        db = file_sessions()
        try:
            linked = db.query(Activity).filter(Activity.linked_deal_id == deal_id).all()
            assert len(linked) == 1
            assert linked[0].id in activity_ids
            assert db.get(Deal, deal_id).linked_activity_id == linked[0].id
            assert db.query(ReconciliationAction).filter(ReconciliationAction.action_type == "link").count() == 1
        finally:
            db.close()

    def test_commit_failure_holds_cursor_before_failed_batch(self, file_sessions):
        names = ["Acme Corp", "Globex", "Initech", "Umbrella"]
        activity_ids, _ = _seed(file_sessions, names, names)
        failure = OperationalError("COMMIT", {}, Exception("disk I/O error"))
        original = BatchOrchestrator._process_batch

        def failing_second_batch(self, db, job_id, mode, options, phase, batch_no, orphans, claims):
            if orphans[0].id == activity_ids[1]:
                db.commit = Mock(side_effect=failure)
            return original(self, db, job_id, mode, options, phase, batch_no, orphans, claims)

        with patch.object(BatchOrchestrator, "_process_batch", new=failing_second_batch):
            result = _run(file_sessions)

        assert result.status == "failed"
        assert result.cursor == {"activities": activity_ids[0]}
        assert result.error_details[-1]["code"] == "transaction_failed"
        assert [b.committed for b in result.batches] == [True, False, True, True]

        db = file_sessions()
        try:
            assert db.get(Activity, activity_ids[1]).linked_deal_id is None
            for activity_id in (activity_ids[0], activity_ids[2], activity_ids[3]):
                assert db.get(Activity, activity_id).linked_deal_id is not None
        finally:
            db.close()
