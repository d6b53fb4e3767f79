"""
Usage record model - design metering per user per billing period (usage_records table)
"""

from sqlalchemy import (
    Column, String, ForeignKey, Integer, Boolean, Numeric, Uuid,
    UniqueConstraint, CheckConstraint, Index,
)
from turbomerch.utils.database import Base, UTCDateTime, utcnow
import uuid


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Billing period [start, end)
    billing_period_start = Column(UTCDateTime, nullable=False)
    billing_period_end = Column(UTCDateTime, nullable=False)

    # Snapshots taken when the period opens
    tier = Column(String(50), nullable=False)
    designs_allowance = Column(Integer, nullable=False)
    overage_price_per_design = Column(Numeric(10, 2), nullable=False, default=0)

    # Metering
    designs_used_in_period = Column(Integer, nullable=False, default=0)
    overage_settled_designs = Column(Integer, nullable=False, default=0)

    # overage_designs and cap flags derive from the totals; overage_charge accrues at the price in effect
    overage_designs = Column(Integer, nullable=False, default=0)
    overage_charge = Column(Numeric(10, 2), nullable=False, default=0)
    soft_cap_reached = Column(Boolean, nullable=False, default=False)
    hard_cap_reached = Column(Boolean, nullable=False, default=False)

    last_generation_at = Column(UTCDateTime)
    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "billing_period_start", name="uq_usage_records_user_period"),
        CheckConstraint("designs_used_in_period >= 0", name="ck_usage_records_used_non_negative"),
        CheckConstraint("billing_period_end > billing_period_start", name="ck_usage_records_period_order"),
        Index("ix_usage_records_user_period_end", "user_id", "billing_period_end"),
    )

    __mapper_args__ = {"version_id_col": version}

    def contains(self, moment) -> bool:
        """True when `moment` falls inside this billing period"""
        return self.billing_period_start <= moment < self.billing_period_end

    def __repr__(self):
        return (
            f"<UsageRecord(id={self.id}, user_id={self.user_id}, "
            f"period={self.billing_period_start:%Y-%m-%d}, used={self.designs_used_in_period}/{self.designs_allowance})>"
        )
