"""
Billing ledger - immutable record of overage payments and period invoices
"""

from sqlalchemy import Column, String, ForeignKey, Integer, Numeric, Uuid
from turbomerch.utils.database import Base, UTCDateTime, utcnow
import uuid
import enum


class LedgerKind(str, enum.Enum):
    OVERAGE_PAYMENT = "overage_payment"
    PERIOD_CLOSE = "period_close"


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"


class BillingLedgerEntry(Base):
    __tablename__ = "billing_ledger"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_record_id = Column(Uuid(as_uuid=True), ForeignKey("usage_records.id", ondelete="SET NULL"), index=True)
    kind = Column(String(50), nullable=False)

    # Period and pricing snapshot
    tier = Column(String(50), nullable=False)
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    designs_included = Column(Integer, nullable=False)
    designs_used = Column(Integer, nullable=False)
    overage_designs = Column(Integer, nullable=False)
    overage_rate = Column(Numeric(10, 2), nullable=False)

    # Amounts
    subscription_fee = Column(Numeric(10, 2), nullable=False, default=0)
    overage_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)

    payment_reference = Column(String(100))  # Stripe invoice id
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    idempotency_key = Column(String(200), nullable=False, unique=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<BillingLedgerEntry(kind='{self.kind}', user_id={self.user_id}, total=${self.total_amount})>"
