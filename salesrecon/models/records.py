"""Sales records — Activities, Deals and Deal stage history.

Activities and deals are owned by upstream surfaces. The reconciliation
engine only writes the link columns, retirement markers and records it
derives itself (source="reconciliation_engine").
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


def _now():
    return datetime.now(timezone.utc)


class Activity(Base):
    """A logged sales event (call, meeting, completed sale)."""

    __tablename__ = "activities"
    id = Column(Integer, primary_key=True)
    activity_type = Column(String(50), nullable=False)  # sale | meeting | outbound | ...
    status = Column(String(50), default="completed")  # completed | pending | cancelled | merged | rolled_back
    client_name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2))
    occurred_at = Column(UTCDateTime, nullable=False, default=_now)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    details = Column(Text)

    # 1:1 link to a deal, unique on both sides
    linked_deal_id = Column(
        Integer, ForeignKey("deals.id", ondelete="SET NULL"), unique=True
    )
    # Set when this record was derived from a deal by the engine
    origin_deal_id = Column(Integer, index=True)
    # Soft retirement (duplicate merge, rolled-back creation)
    merged_into_id = Column(Integer, ForeignKey("activities.id"))
    retired_at = Column(UTCDateTime)
    source = Column(String(50), default="manual")

    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now)

    owner = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_activities_user_occurred", "user_id", "occurred_at"),
        Index("ix_activities_type_status", "activity_type", "status"),
    )


class Deal(Base):
    """A pipeline opportunity (won / lost / open)."""

    __tablename__ = "deals"
    id = Column(Integer, primary_key=True)
    name = Column(String(255))
    company = Column(String(255), nullable=False)
    stage = Column(String(20), nullable=False, default="open")  # won | lost | open | merged | rolled_back
    value = Column(Numeric(12, 2))
    one_off_revenue = Column(Numeric(12, 2))
    monthly_mrr = Column(Numeric(12, 2))
    stage_changed_at = Column(UTCDateTime, nullable=False, default=_now)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    linked_activity_id = Column(Integer, unique=True)
    origin_activity_id = Column(Integer, index=True)
    merged_into_id = Column(Integer, ForeignKey("deals.id"))
    retired_at = Column(UTCDateTime)
    source = Column(String(50), default="manual")

    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now)

    owner = relationship("User", foreign_keys=[owner_id])
    stage_changes = relationship(
        "DealStageChange",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="DealStageChange.entered_at",
    )

    __table_args__ = (
        Index("ix_deals_owner_stage_changed", "owner_id", "stage_changed_at"),
        Index("ix_deals_stage", "stage"),
    )

    @property
    def comparable_value(self) -> Decimal | None:
        """Total value; falls back to one-off + annualised recurring revenue."""
        if self.value is not None:
            return Decimal(self.value)
        if self.one_off_revenue is None and self.monthly_mrr is None:
            return None
        return Decimal(self.one_off_revenue or 0) + Decimal(self.monthly_mrr or 0) * 12


class DealStageChange(Base):
    """Stage history row — entered_at is when the deal moved into `stage`."""

    __tablename__ = "deal_stage_changes"
    id = Column(Integer, primary_key=True)
    deal_id = Column(Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    stage = Column(String(20), nullable=False)
    entered_at = Column(UTCDateTime, nullable=False, default=_now)

    deal = relationship("Deal", back_populates="stage_changes")

    __table_args__ = (Index("ix_deal_stage_changes_deal", "deal_id", "entered_at"),)
