"""
User model - each Turbo Merch account
"""

from sqlalchemy import Column, String, Boolean, Uuid
from turbomerch.utils.database import Base, UTCDateTime, utcnow
import uuid
import enum


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    clerk_id = Column(String(100), unique=True, index=True)  # external auth subject
    email = Column(String(255), unique=True, index=True, nullable=False)
    subscription_tier = Column(String(50), nullable=False, default=SubscriptionTier.FREE.value, index=True)
    status = Column(String(50), nullable=False, default=UserStatus.ACTIVE.value)
    is_admin = Column(Boolean, nullable=False, default=False)

    # Billing anchor: periods start on this day of the month
    subscribed_at = Column(UTCDateTime)

    # Stripe integration fields
    stripe_customer_id = Column(String(100), index=True)
    stripe_subscription_id = Column(String(100), index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def billing_anchor(self):
        """Date the billing periods are anchored to"""
        return self.subscribed_at or self.created_at

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', tier='{self.subscription_tier}')>"
