"""
Overage Payment Collection
Charges settled overage through a one-off Stripe invoice
"""

import os
import stripe
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from turbomerch.services.exceptions import PaymentCollectionError

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")


@dataclass(frozen=True)
class PaymentReceipt:
    reference: str       # Stripe invoice id
    amount: Decimal
    status: str = "paid"


class PaymentCollector(Protocol):
    """Anything that can collect a one-off amount from a customer"""

    async def collect(
        self,
        customer_id: Optional[str],
        amount: Decimal,
        description: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> PaymentReceipt:
        ...


class StripePaymentCollector:
    """
    Collects overage through Stripe invoices.

    Flow: create invoice -> add invoice item -> finalize -> pay. Every call
    carries an idempotency key derived from the caller's key, so a retried
    collection never creates a second charge.
    """

    def __init__(self, api_key: Optional[str] = None, currency: str = "usd"):
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        self.currency = currency

    async def collect(
        self,
        customer_id: Optional[str],
        amount: Decimal,
        description: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> PaymentReceipt:
        if not customer_id:
            raise PaymentCollectionError(
                "No payment method on file. Please add a payment method first.",
                kind=PaymentCollectionError.NO_PAYMENT_METHOD,
            )

        amount_cents = int((amount * 100).to_integral_value())
        metadata = {k: str(v) for k, v in (metadata or {}).items()}

        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
            if getattr(customer, "deleted", False):
                raise PaymentCollectionError(
                    "Stripe customer not found",
                    kind=PaymentCollectionError.NO_PAYMENT_METHOD,
                )
            settings = customer.get("invoice_settings") or {}
            if not settings.get("default_payment_method"):
                raise PaymentCollectionError(
                    "No default payment method on the billing account",
                    kind=PaymentCollectionError.NO_PAYMENT_METHOD,
                )

            invoice = stripe.Invoice.create(
                customer=customer_id,
                auto_advance=False,
                collection_method="charge_automatically",
                description=description,
                metadata=metadata,
                api_key=self.api_key,
                idempotency_key=f"{idempotency_key}:invoice",
            )

            stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice.id,
                amount=amount_cents,
                currency=self.currency,
                description=description,
                api_key=self.api_key,
                idempotency_key=f"{idempotency_key}:item",
            )

            finalized = stripe.Invoice.finalize_invoice(
                invoice.id,
                api_key=self.api_key,
                idempotency_key=f"{idempotency_key}:finalize",
            )
            paid = stripe.Invoice.pay(
                finalized.id,
                api_key=self.api_key,
                idempotency_key=f"{idempotency_key}:pay",
            )

        except stripe.CardError as e:
            logger.warning(f"Overage charge declined for customer {customer_id}: {e}")
            raise PaymentCollectionError(
                "Payment failed. Please check your payment method.",
                kind=PaymentCollectionError.DECLINED,
                provider_code=getattr(e, "code", None),
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise PaymentCollectionError(
                    "Stripe customer not found",
                    kind=PaymentCollectionError.NO_PAYMENT_METHOD,
                    provider_code=e.code,
                )
            logger.error(f"Stripe rejected overage invoice for {customer_id}: {e}")
            raise PaymentCollectionError(
                "Failed to process payment. Please try again.",
                provider_code=getattr(e, "code", None),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error while charging overage for {customer_id}: {e}")
            raise PaymentCollectionError(
                "Failed to process payment. Please try again.",
                provider_code=getattr(e, "code", None),
            )

        if paid.status != "paid":
            raise PaymentCollectionError(
                f"Invoice {paid.id} was not paid (status: {paid.status})",
                kind=PaymentCollectionError.DECLINED,
            )

        logger.info(f"Collected ${amount} overage from {customer_id} (invoice {paid.id})")
        return PaymentReceipt(reference=paid.id, amount=amount)
