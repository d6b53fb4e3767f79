"""Tests for the Stripe-backed overage payment collector.

Stripe calls are patched; no network access.

Covers:
- Invoice flow and idempotency keys passed to Stripe
- Missing customer or payment method
- Declines, missing resources and transient API failures
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from turbomerch.services.exceptions import PaymentCollectionError
from turbomerch.services.payment_collector import StripePaymentCollector

CUSTOMER = {"id": "cus_test", "invoice_settings": {"default_payment_method": "pm_card_visa"}}


@pytest.fixture
def stripe_api():
    """Patch the Stripe resources the collector touches."""
    with patch.object(stripe.Customer, "retrieve", return_value=CUSTOMER) as retrieve, \
         patch.object(stripe.Invoice, "create", return_value=SimpleNamespace(id="in_123")) as create, \
         patch.object(stripe.InvoiceItem, "create") as item, \
         patch.object(stripe.Invoice, "finalize_invoice",
                      return_value=SimpleNamespace(id="in_123", status="open")) as finalize, \
         patch.object(stripe.Invoice, "pay",
                      return_value=SimpleNamespace(id="in_123", status="paid")) as pay:
        yield SimpleNamespace(
            retrieve=retrieve, create=create, item=item, finalize=finalize, pay=pay
        )


def _collector() -> StripePaymentCollector:
    return StripePaymentCollector(api_key="sk_test_123")


class TestCollect:
    @pytest.mark.asyncio
    async def test_successful_charge(self, stripe_api):
        receipt = await _collector().collect(
            "cus_test", Decimal("1.50"), "Overage charge: 3 additional designs", "overage:rec:0",
            metadata={"overage_count": 3},
        )

        assert receipt.reference == "in_123"
        assert receipt.amount == Decimal("1.50")
        assert receipt.status == "paid"

        item_kwargs = stripe_api.item.call_args.kwargs
        assert item_kwargs["amount"] == 150
        assert item_kwargs["currency"] == "usd"
        assert item_kwargs["invoice"] == "in_123"
        assert stripe_api.create.call_args.kwargs["metadata"] == {"overage_count": "3"}

    @pytest.mark.asyncio
    async def test_idempotency_keys_derived_from_caller_key(self, stripe_api):
        await _collector().collect("cus_test", Decimal("2.00"), "Overage", "overage:rec:3")

        assert stripe_api.create.call_args.kwargs["idempotency_key"] == "overage:rec:3:invoice"
        assert stripe_api.item.call_args.kwargs["idempotency_key"] == "overage:rec:3:item"
        assert stripe_api.finalize.call_args.kwargs["idempotency_key"] == "overage:rec:3:finalize"
        assert stripe_api.pay.call_args.kwargs["idempotency_key"] == "overage:rec:3:pay"

    @pytest.mark.asyncio
    async def test_no_customer(self, stripe_api):
        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect(None, Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.NO_PAYMENT_METHOD
        assert exc.value.retryable is False
        stripe_api.retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_default_payment_method(self, stripe_api):
        stripe_api.retrieve.return_value = {"id": "cus_test", "invoice_settings": {}}

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.NO_PAYMENT_METHOD
        stripe_api.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_card_declined(self, stripe_api):
        stripe_api.pay.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.DECLINED
        assert exc.value.provider_code == "card_declined"
        assert exc.value.status_code == 402

    @pytest.mark.asyncio
    async def test_missing_customer_resource(self, stripe_api):
        stripe_api.retrieve.side_effect = stripe.InvalidRequestError(
            "No such customer: 'cus_gone'", "id", code="resource_missing"
        )

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_gone", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.NO_PAYMENT_METHOD

    @pytest.mark.asyncio
    async def test_other_invalid_request_is_transient(self, stripe_api):
        stripe_api.create.side_effect = stripe.InvalidRequestError("Bad request", "amount")

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.TRANSIENT

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self, stripe_api):
        stripe_api.finalize.side_effect = stripe.APIConnectionError("Connection reset")

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.retryable is True
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_unpaid_invoice_is_declined(self, stripe_api):
        stripe_api.pay.return_value = SimpleNamespace(id="in_123", status="open")

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.DECLINED

    @pytest.mark.asyncio
    async def test_deleted_customer(self, stripe_api):
        deleted = MagicMock(deleted=True)
        stripe_api.retrieve.return_value = deleted

        with pytest.raises(PaymentCollectionError) as exc:
            await _collector().collect("cus_test", Decimal("1.50"), "Overage", "k")

        assert exc.value.kind == PaymentCollectionError.NO_PAYMENT_METHOD
