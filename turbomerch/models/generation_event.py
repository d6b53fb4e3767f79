"""
Design generation event - one row per idempotency key
"""

from sqlalchemy import Column, String, ForeignKey, Integer, Uuid, CheckConstraint
from turbomerch.utils.database import Base, UTCDateTime, utcnow
import uuid


class DesignGenerationEvent(Base):
    __tablename__ = "design_generation_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String(100), nullable=False, unique=True, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_record_id = Column(Uuid(as_uuid=True), ForeignKey("usage_records.id", ondelete="SET NULL"))
    design_count = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("design_count > 0", name="ck_design_generation_events_count_positive"),
    )

    def __repr__(self):
        return f"<DesignGenerationEvent(key='{self.idempotency_key}', user_id={self.user_id}, count={self.design_count})>"
