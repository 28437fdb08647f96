"""
conftest.py — Shared Test Fixtures for salesrecon

Provides an in-memory SQLite database, a FastAPI TestClient and factory
fixtures for the core models (User, Activity, Deal).

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- Foreign keys are enforced and SAVEPOINTs nest like on PostgreSQL
- Each test function gets a fresh schema and session
- The in-process job registry is cleared between tests

Called by: all test files via pytest autodiscovery
Depends on: salesrecon.models (Base), salesrecon.database (get_db, configure_sqlite)
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"  # Must be set before importing salesrecon modules
os.environ["RATE_LIMIT_ENABLED"] = "false"

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesrecon.database import configure_sqlite
from salesrecon.models import Activity, Base, Deal, DealStageChange, User
from salesrecon.services.orchestrator import registry

# ── In-memory SQLite engine ──────────────────────────────────────────

TEST_DB_URL = "sqlite://"  # in-memory, fresh per test

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
configure_sqlite(engine)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def utc(year, month, day, hour=12, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    registry.clear()
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        registry.clear()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sales_user(db_session: Session) -> User:
    """A sales-role user owning the test records."""
    user = User(email="rep@example.com", name="Sales Rep", role="sales")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def other_user(db_session: Session) -> User:
    user = User(email="other@example.com", name="Other Rep", role="sales")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def make_activity(db_session: Session, sales_user: User):
    """Factory: completed sale activity for sales_user unless overridden."""

    def _make(client_name="Acme Corp", amount=5000, occurred_at=None, **kw):
        activity = Activity(
            activity_type=kw.pop("activity_type", "sale"),
            status=kw.pop("status", "completed"),
            client_name=client_name,
            amount=Decimal(str(amount)) if amount is not None else None,
            occurred_at=occurred_at or utc(2024, 1, 15),
            user_id=kw.pop("user_id", sales_user.id),
            **kw,
        )
        db_session.add(activity)
        db_session.commit()
        db_session.refresh(activity)
        return activity

    return _make


@pytest.fixture()
def make_deal(db_session: Session, sales_user: User):
    """Factory: won deal for sales_user unless overridden, with stage history."""

    def _make(company="Acme Corp", value=5000, stage_changed_at=None, stage="won", **kw):
        changed = stage_changed_at or utc(2024, 1, 15)
        deal = Deal(
            name=kw.pop("name", f"{company} deal"),
            company=company,
            stage=stage,
            value=Decimal(str(value)) if value is not None else None,
            stage_changed_at=changed,
            owner_id=kw.pop("owner_id", sales_user.id),
            **kw,
        )
        deal.stage_changes.append(DealStageChange(stage=stage, entered_at=changed))
        db_session.add(deal)
        db_session.commit()
        db_session.refresh(deal)
        return deal

    return _make


@pytest.fixture()
def client(db_session: Session) -> TestClient:
    """FastAPI TestClient with get_db overridden to use the test session."""
    from salesrecon.database import get_db
    from salesrecon.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
