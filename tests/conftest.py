"""Shared fixtures for the usage metering tests.

Provides a file-backed SQLite database (via aiosqlite), a pinned billing
clock, tier tables, a mocked payment collector, a ready-made UsageMeter and
a user factory.
"""

import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

# Set the JWT secret BEFORE importing application modules so cached settings
# pick up a deterministic value.
TEST_JWT_SECRET = "test-secret-for-turbomerch-usage"
os.environ.setdefault("AUTH_JWT_SECRET", TEST_JWT_SECRET)

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from turbomerch.config.tiers import DEFAULT_TIERS, TierConfig, TierTable
from turbomerch.models.user import User
from turbomerch.services.billing_clock import FixedClock
from turbomerch.services.payment_collector import PaymentReceipt
from turbomerch.services.usage_meter import UsageMeter
from turbomerch.utils.database import create_tables

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
ANCHOR = datetime(2026, 1, 10, 9, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Async engine on a fresh SQLite file (separate connections per session)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}",
        connect_args={"timeout": 30},
    )
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def tiers() -> TierTable:
    """Default tier table with two tiers tuned for the pricing scenarios.

    pro: allowance 50, $0.50 per design, hard cap 20
    starter: allowance 10, $2.00 per design, hard cap 5
    """
    base = TierTable(DEFAULT_TIERS)
    return base.with_overrides(
        pro=TierConfig(
            name="pro",
            display_name="Pro",
            monthly_price=Decimal("59.99"),
            design_allowance=50,
            max_per_run=10,
            overage_enabled=True,
            overage_price_per_design=Decimal("0.50"),
            overage_hard_cap=20,
        ),
        starter=TierConfig(
            name="starter",
            display_name="Starter",
            monthly_price=Decimal("19.99"),
            design_allowance=10,
            max_per_run=10,
            overage_enabled=True,
            overage_price_per_design=Decimal("2.00"),
            overage_hard_cap=5,
        ),
    )


@pytest.fixture
def collector() -> AsyncMock:
    """Payment collector that succeeds with a deterministic invoice id."""

    async def _collect(customer_id, amount, description, idempotency_key, metadata=None):
        return PaymentReceipt(reference=f"in_{idempotency_key}", amount=amount)

    mock = AsyncMock()
    mock.collect = AsyncMock(side_effect=_collect)
    return mock


@pytest.fixture
def meter(session_factory, tiers, clock, collector) -> UsageMeter:
    return UsageMeter(
        session_factory=session_factory,
        tiers=tiers,
        clock=clock,
        payment_collector=collector,
        max_attempts=3,
        retry_backoff=0,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    """Factory that inserts a user and returns it."""

    async def _make_user(
        tier: str = "pro",
        is_admin: bool = False,
        subscribed_at: datetime = ANCHOR,
        stripe_customer_id: str = "cus_test",
        clerk_id: str = None,
    ) -> User:
        user_id = uuid.uuid4()
        user = User(
            id=user_id,
            clerk_id=clerk_id or f"user_{user_id.hex[:12]}",
            email=f"{user_id.hex[:12]}@example.com",
            subscription_tier=tier,
            is_admin=is_admin,
            subscribed_at=subscribed_at,
            stripe_customer_id=stripe_customer_id,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


async def record_many(meter: UsageMeter, user: User, total: int, prefix: str = "seed") -> None:
    """Record `total` designs in batches of up to 10."""
    done = 0
    while done < total:
        batch = min(10, total - done)
        await meter.record_generation(user.id, batch, f"{prefix}-{user.id}-{done}")
        done += batch
