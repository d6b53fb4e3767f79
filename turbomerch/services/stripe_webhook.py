"""
Stripe Webhook Handler
Keeps each user's subscription tier, account status and billing anchor in
step with Stripe
"""

import stripe
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select

from turbomerch.config.settings import get_settings
from turbomerch.models.user import User, SubscriptionTier, UserStatus
from turbomerch.utils.database import AsyncSessionLocal

logger = logging.getLogger(__name__)

# Stripe subscription status -> account status
SUBSCRIPTION_STATUS = {
    "active": UserStatus.ACTIVE,
    "trialing": UserStatus.ACTIVE,
    "past_due": UserStatus.PAST_DUE,
    "unpaid": UserStatus.PAST_DUE,
    "incomplete": UserStatus.PAST_DUE,
    "canceled": UserStatus.CANCELLED,
    "incomplete_expired": UserStatus.CANCELLED,
}


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeWebhookHandler:
    """Handles Stripe webhook events"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        webhook_secret: Optional[str] = None,
        price_tiers: Optional[Dict[str, str]] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory or AsyncSessionLocal
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.price_tiers = price_tiers if price_tiers is not None else settings.stripe_price_tiers
        if not self.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not configured")

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify webhook signature and construct event"""
        try:
            return stripe.Webhook.construct_event(
                payload, sig_header, self.webhook_secret
            )
        except ValueError as e:
            logger.error(f"Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid signature")

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route webhook events to appropriate handlers"""

        event_type = event['type']
        logger.info(f"Processing Stripe event: {event_type}")

        try:
            if event_type == 'checkout.session.completed':
                return await self.handle_checkout_completed(event)

            elif event_type == 'customer.subscription.created':
                return await self.handle_subscription_created(event)

            elif event_type == 'customer.subscription.updated':
                return await self.handle_subscription_updated(event)

            elif event_type == 'customer.subscription.deleted':
                return await self.handle_subscription_cancelled(event)

            elif event_type == 'invoice.payment_succeeded':
                return await self.handle_payment_succeeded(event)

            elif event_type == 'invoice.payment_failed':
                return await self.handle_payment_failed(event)

            else:
                logger.info(f"Unhandled event type: {event_type}")
                return {"status": "ignored", "event_type": event_type}

        except Exception as e:
            logger.error(f"Error handling event {event_type}: {e}")
            return {"status": "error", "message": str(e)}

    async def handle_checkout_completed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Link the Stripe customer to the user who started checkout"""
        session = event['data']['object']
        customer_id = session.get('customer')
        reference = session.get('client_reference_id') or (session.get('metadata') or {}).get('userId')

        if not customer_id or not reference:
            return {"status": "ignored", "reason": "missing customer or user reference"}

        async with self.session_factory() as db:
            result = await db.execute(select(User).where(User.clerk_id == reference))
            user = result.scalar_one_or_none()
            if not user:
                return {"status": "user_not_found", "reference": reference}

            user.stripe_customer_id = customer_id
            if session.get('subscription'):
                user.stripe_subscription_id = session['subscription']
            await db.commit()

        logger.info(f"Linked Stripe customer {customer_id} to user {user.id}")
        return {"status": "success", "user_id": str(user.id)}

    async def handle_subscription_created(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle new subscription creation"""
        subscription = event['data']['object']

        async with self.session_factory() as db:
            user = await self._find_user(db, subscription)
            if not user:
                logger.warning(f"No user for subscription {subscription['id']} (customer {subscription.get('customer')})")
                return {"status": "user_not_found", "subscription_id": subscription['id']}

            tier = self._tier_from_subscription(subscription)
            user.stripe_subscription_id = subscription['id']
            user.stripe_customer_id = subscription.get('customer') or user.stripe_customer_id
            if tier:
                user.subscription_tier = tier
            user.status = SUBSCRIPTION_STATUS.get(subscription.get('status'), UserStatus.ACTIVE).value
            user.subscribed_at = (
                _timestamp(subscription.get('billing_cycle_anchor'))
                or _timestamp(subscription.get('start_date'))
                or user.subscribed_at
            )

            await db.commit()
            logger.info(f"Updated user {user.email} with subscription {subscription['id']} (tier={user.subscription_tier})")

            return {
                "status": "success",
                "user_id": str(user.id),
                "tier": user.subscription_tier,
            }

    async def handle_subscription_updated(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle subscription changes (upgrades, downgrades, status changes)"""
        subscription = event['data']['object']

        async with self.session_factory() as db:
            user = await self._find_user(db, subscription)
            if not user:
                return {"status": "user_not_found", "subscription_id": subscription['id']}

            old_tier = user.subscription_tier
            new_tier = self._tier_from_subscription(subscription)
            if new_tier:
                user.subscription_tier = new_tier

            status = SUBSCRIPTION_STATUS.get(subscription.get('status'))
            if status:
                user.status = status.value

            anchor = _timestamp(subscription.get('billing_cycle_anchor'))
            if anchor:
                user.subscribed_at = anchor

            await db.commit()

            if new_tier and new_tier != old_tier:
                logger.info(f"Plan changed for {user.email}: {old_tier} -> {new_tier}")

            return {
                "status": "success",
                "user_id": str(user.id),
                "old_tier": old_tier,
                "new_tier": user.subscription_tier,
            }

    async def handle_subscription_cancelled(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle subscription cancellation: back to the free tier"""
        subscription = event['data']['object']

        async with self.session_factory() as db:
            user = await self._find_user(db, subscription)
            if not user:
                return {"status": "user_not_found", "subscription_id": subscription['id']}

            user.subscription_tier = SubscriptionTier.FREE.value
            user.status = UserStatus.CANCELLED.value
            user.stripe_subscription_id = None

            await db.commit()
            logger.info(f"Subscription cancelled for {user.email}")

            return {"status": "success", "user_id": str(user.id)}

    async def handle_payment_succeeded(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle successful payment"""
        invoice = event['data']['object']

        async with self.session_factory() as db:
            user = await self._find_user_by_customer(db, invoice.get('customer'))
            if not user:
                return {"status": "user_not_found", "customer_id": invoice.get('customer')}

            if user.status == UserStatus.PAST_DUE.value:
                user.status = UserStatus.ACTIVE.value
                await db.commit()
                logger.info(f"Payment recovered for {user.email}")

            return {"status": "success", "user_id": str(user.id), "invoice_id": invoice.get('id')}

    async def handle_payment_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle failed payment"""
        invoice = event['data']['object']

        async with self.session_factory() as db:
            user = await self._find_user_by_customer(db, invoice.get('customer'))
            if not user:
                return {"status": "user_not_found", "customer_id": invoice.get('customer')}

            user.status = UserStatus.PAST_DUE.value
            await db.commit()
            logger.warning(f"Payment failed for {user.email} (invoice {invoice.get('id')})")

            return {"status": "success", "user_id": str(user.id)}

    def _tier_from_subscription(self, subscription: Dict[str, Any]) -> Optional[str]:
        """Map the subscription's price to a tier, None when the price is unknown"""
        try:
            price_id = subscription['items']['data'][0]['price']['id']
        except (KeyError, IndexError, TypeError):
            return None

        tier = self.price_tiers.get(price_id)
        if not tier:
            logger.warning(f"Unknown Stripe price {price_id}; keeping the user's current tier")
        return tier

    async def _find_user(self, db: AsyncSession, subscription: Dict[str, Any]) -> Optional[User]:
        result = await db.execute(
            select(User).where(User.stripe_subscription_id == subscription['id'])
        )
        user = result.scalar_one_or_none()
        if user:
            return user
        return await self._find_user_by_customer(db, subscription.get('customer'))

    async def _find_user_by_customer(self, db: AsyncSession, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        result = await db.execute(select(User).where(User.stripe_customer_id == customer_id))
        return result.scalar_one_or_none()


_handler: Optional[StripeWebhookHandler] = None


def get_webhook_handler() -> StripeWebhookHandler:
    """Global handler instance, created on first use"""
    global _handler
    if _handler is None:
        _handler = StripeWebhookHandler()
    return _handler
