"""Reconciliation audit log — append-only ReconciliationAction rows.

Rows are never updated except for the rolled_back / rolled_back_at pair,
which is flipped in the same transaction that writes the compensating
`rollback` row.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Float, ForeignKey, Index, Integer, String

from ..database import UTCDateTime
from .base import Base

ACTION_TYPES = (
    "link",
    "create_deal",
    "create_activity",
    "merge_duplicates",
    "mark_reviewed",
    "rollback",
)


class ReconciliationAction(Base):
    __tablename__ = "reconciliation_actions"
    id = Column(Integer, primary_key=True)
    action_type = Column(String(30), nullable=False)
    activity_id = Column(Integer, index=True)
    deal_id = Column(Integer, index=True)
    record_type = Column(String(20))  # activity | deal (merge_duplicates)
    record_ids = Column(JSON, default=list)  # ["activities:3", "deals:7"]
    confidence = Column(Float)
    automatic = Column(Boolean, default=False)
    actor = Column(String(100), nullable=False, default="system")
    job_id = Column(String(64), index=True)
    before_state = Column(JSON, default=dict)
    after_state = Column(JSON, default=dict)
    details = Column(JSON, default=dict)
    rolled_back = Column(Boolean, default=False, nullable=False)
    rolled_back_at = Column(UTCDateTime)
    rollback_of_id = Column(Integer, ForeignKey("reconciliation_actions.id"))
    created_at = Column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_recon_actions_type_created", "action_type", "created_at"),
        Index("ix_recon_actions_pair", "activity_id", "deal_id"),
    )
