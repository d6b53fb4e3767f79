"""HTTP tests for the usage metering API.

Runs the FastAPI app in-process through httpx's ASGI transport with the
database session and usage meter overridden to the SQLite test fixtures.

Covers:
- Bearer token authentication (missing, invalid, unknown subject)
- /designs/check-quota and /designs/track status codes and bodies
- /usage/summary and /usage/fix
- /billing upgrade preview, overage decision and admin period close
"""

from datetime import datetime, timezone
from decimal import Decimal

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import TEST_JWT_SECRET, record_many
from turbomerch.config.settings import get_settings
from turbomerch.main import app
from turbomerch.services.exceptions import PaymentCollectionError
from turbomerch.services.usage_meter import get_usage_meter
from turbomerch.utils.database import get_db

API = "/api/v1"


def auth_headers(user) -> dict:
    token = jwt.encode({"sub": user.clerk_id}, TEST_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(meter, session_factory):
    """Client bound to the app with test database and meter."""

    async def _get_db():
        async with session_factory() as session:
            yield session

    get_settings.cache_clear()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_usage_meter] = lambda: meter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    get_settings.cache_clear()


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.post(f"{API}/designs/check-quota", json={"designCount": 1})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get(
            f"{API}/usage/summary", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, client, make_user):
        user = await make_user()
        token = jwt.encode(
            {"sub": user.clerk_id, "exp": datetime(2020, 1, 1, tzinfo=timezone.utc)},
            TEST_JWT_SECRET,
            algorithm="HS256",
        )
        response = await client.get(
            f"{API}/usage/summary", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    @pytest.mark.asyncio
    async def test_unknown_subject(self, client):
        token = jwt.encode({"sub": "user_nobody"}, TEST_JWT_SECRET, algorithm="HS256")
        response = await client.get(
            f"{API}/usage/summary", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_internal_id_as_subject(self, client, make_user):
        user = await make_user()
        token = jwt.encode({"sub": str(user.id)}, TEST_JWT_SECRET, algorithm="HS256")
        response = await client.get(
            f"{API}/usage/summary", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200


class TestDesignEndpoints:
    @pytest.mark.asyncio
    async def test_check_quota_allowed(self, client, make_user):
        user = await make_user(tier="pro")
        response = await client.post(
            f"{API}/designs/check-quota", json={"designCount": 5}, headers=auth_headers(user)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["usage"]["remaining"] == 50
        assert "overage" not in body

    @pytest.mark.asyncio
    async def test_check_quota_with_overage_warning(self, client, make_user, meter):
        user = await make_user(tier="pro")
        await record_many(meter, user, 48)

        response = await client.post(
            f"{API}/designs/check-quota", json={"designCount": 5}, headers=auth_headers(user)
        )

        body = response.json()
        assert response.status_code == 200
        assert body["overage"] == {"count": 3, "charge": 1.5}
        assert "$1.50" in body["warning"]

    @pytest.mark.asyncio
    async def test_check_quota_blocked(self, client, make_user, meter):
        user = await make_user(tier="free")
        for i in range(3):
            await meter.record_generation(user.id, 1, f"free-{i}")

        response = await client.post(
            f"{API}/designs/check-quota", json={"designCount": 1}, headers=auth_headers(user)
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "quota_exceeded"
        assert body["usage"]["used"] == 3
        assert body["hardCapReached"] is True

    @pytest.mark.asyncio
    async def test_check_quota_invalid_count(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"{API}/designs/check-quota", json={"designCount": 0}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_track_and_duplicate(self, client, make_user):
        user = await make_user(tier="pro")
        payload = {"designCount": 3, "idempotencyKey": "job-42"}

        first = await client.post(f"{API}/designs/track", json=payload, headers=auth_headers(user))
        second = await client.post(f"{API}/designs/track", json=payload, headers=auth_headers(user))

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["usage"]["used"] == 3
        assert second.status_code == 409
        assert second.json()["error"] == "duplicate"
        assert second.json()["usage"]["used"] == 3

    @pytest.mark.asyncio
    async def test_track_generates_key(self, client, make_user):
        user = await make_user(tier="pro")
        response = await client.post(
            f"{API}/designs/track", json={"designCount": 1}, headers=auth_headers(user)
        )
        assert response.status_code == 200
        assert response.json()["idempotencyKey"].startswith(f"{user.id}:")

    @pytest.mark.asyncio
    async def test_track_over_hard_cap(self, client, make_user, meter):
        user = await make_user(tier="starter")
        await record_many(meter, user, 15)

        response = await client.post(
            f"{API}/designs/track", json={"designCount": 1}, headers=auth_headers(user)
        )

        assert response.status_code == 403
        assert response.json()["hardCapReached"] is True


class TestUsageEndpoints:
    @pytest.mark.asyncio
    async def test_summary(self, client, make_user, meter):
        user = await make_user(tier="pro")
        await record_many(meter, user, 12)

        response = await client.get(f"{API}/usage/summary", headers=auth_headers(user))

        assert response.status_code == 200
        body = response.json()
        assert body["used"] == 12
        assert body["displayName"] == "Pro"

    @pytest.mark.asyncio
    async def test_fix_without_record(self, client, make_user):
        user = await make_user()
        response = await client.post(f"{API}/usage/fix", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["message"] == "No current usage record found - nothing to fix"


class TestBillingEndpoints:
    @pytest.mark.asyncio
    async def test_preview_invalid_tier(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"{API}/billing/check-upgrade-overages", json={"newTier": "platinum"}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid tier specified"

    @pytest.mark.asyncio
    async def test_preview_and_credit(self, client, make_user, meter):
        user = await make_user(tier="pro")
        await record_many(meter, user, 53)

        preview = await client.post(
            f"{API}/billing/check-upgrade-overages", json={"newTier": "business"}, headers=auth_headers(user)
        )
        assert preview.json()["overageCount"] == 3

        response = await client.post(
            f"{API}/billing/apply-overage-decision",
            json={"decision": "credits", "newTier": "business"},
            headers=auth_headers(user),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "credited"
        assert response.json()["overageDesigns"] == 3

    @pytest.mark.asyncio
    async def test_invalid_decision(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"{API}/billing/apply-overage-decision", json={"decision": "later"}, headers=auth_headers(user)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_declined_payment(self, client, make_user, meter, collector):
        user = await make_user(tier="pro")
        await record_many(meter, user, 53)
        collector.collect.side_effect = PaymentCollectionError(
            "Payment failed. Please check your payment method.", kind=PaymentCollectionError.DECLINED
        )

        response = await client.post(
            f"{API}/billing/apply-overage-decision", json={"decision": "pay"}, headers=auth_headers(user)
        )

        assert response.status_code == 402
        assert response.json()["details"]["kind"] == "declined"

    @pytest.mark.asyncio
    async def test_close_period_requires_admin(self, client, make_user):
        user = await make_user()
        response = await client.post(
            f"{API}/billing/close-period", json={"userId": str(user.id)}, headers=auth_headers(user)
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_close_period_as_admin(self, client, make_user, meter, clock):
        admin = await make_user(is_admin=True)
        user = await make_user(tier="pro")
        await record_many(meter, user, 52)
        clock.advance_to(datetime(2026, 4, 11, tzinfo=timezone.utc))

        response = await client.post(
            f"{API}/billing/close-period", json={"userId": str(user.id)}, headers=auth_headers(admin)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["overageDesigns"] == 2
        assert Decimal(str(body["totalAmount"])) == Decimal("60.99")
        assert body["paymentStatus"] == "pending"


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "healthy", "service": "turbomerch-usage"}
