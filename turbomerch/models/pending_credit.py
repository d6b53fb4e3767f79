"""
Pending credit - overage covered by an upgrade, deducted from the next period's allowance
"""

from sqlalchemy import Column, ForeignKey, Integer, Uuid, CheckConstraint
from turbomerch.utils.database import Base, UTCDateTime, utcnow
import uuid


class PendingCredit(Base):
    __tablename__ = "pending_credits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # One credit per settled usage record; deleted when the next record consumes it
    source_usage_record_id = Column(
        Uuid(as_uuid=True), ForeignKey("usage_records.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    designs = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("designs > 0", name="ck_pending_credits_designs_positive"),
    )

    def __repr__(self):
        return f"<PendingCredit(user_id={self.user_id}, designs={self.designs})>"
