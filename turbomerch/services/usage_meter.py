"""
Usage Metering Engine
Quota decisions, idempotent generation recording, period lifecycle and
overage reconciliation when a user upgrades
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from turbomerch.config.settings import get_settings
from turbomerch.config.tiers import TierConfig, TierTable, load_tier_table
from turbomerch.models.billing_ledger import BillingLedgerEntry, LedgerKind, PaymentStatus
from turbomerch.models.generation_event import DesignGenerationEvent
from turbomerch.models.pending_credit import PendingCredit
from turbomerch.models.usage import UsageRecord
from turbomerch.models.user import User
from turbomerch.services.billing_clock import BillingClock
from turbomerch.services.exceptions import (
    ConcurrencyConflictError,
    PaymentCollectionError,
    QuotaExceededError,
    UserNotFoundError,
    ValidationError,
)
from turbomerch.services.overage import (
    UNLIMITED,
    OverageDecision,
    accrue_on_record,
    admin_decision,
    evaluate_request,
    repair_record,
    settle_overage,
    to_money,
    usage_snapshot_from_record,
)
from turbomerch.services.payment_collector import PaymentCollector, StripePaymentCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_DESIGNS_PER_REQUEST = 1
MAX_DESIGNS_PER_REQUEST = 10
MAX_IDEMPOTENCY_KEY_LENGTH = 100

DECISION_CREDITS = "credits"
DECISION_PAY = "pay"

# Driver messages that mean "another transaction holds the row"
_LOCK_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize",
    "lock timeout",
    "could not obtain lock",
)

# Unique keys that concurrent writers of the same row can both claim
_RACE_UNIQUE_KEYS = (
    "uq_usage_records_user_period",
    "usage_records.user_id, usage_records.billing_period_start",
    "idempotency_key",
    "source_usage_record_id",
)


@dataclass
class RecordResult:
    record: Optional[UsageRecord]
    duplicate: bool = False
    warning: Optional[str] = None
    admin_bypass: bool = False


@dataclass
class ReconciliationResult:
    decision: str
    status: str                        # noop | credited | charged
    overage_designs: int = 0
    overage_charge: Decimal = Decimal("0.00")
    payment_reference: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "decision": self.decision,
            "status": self.status,
            "overageDesigns": self.overage_designs,
            "overageCharge": float(self.overage_charge),
            "paymentReference": self.payment_reference,
            "message": self.message,
        }


def _is_unique_race(exc: IntegrityError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    if "unique" not in text and "duplicate key" not in text:
        return False
    return any(key in text for key in _RACE_UNIQUE_KEYS)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        return _is_unique_race(exc)
    if isinstance(exc, DBAPIError):
        text = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in text for marker in _LOCK_MARKERS)
    return False


def _validate_count(count: Any) -> int:
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValidationError(
            "designCount must be an integer",
            details={"designCount": count},
        )
    if count < MIN_DESIGNS_PER_REQUEST or count > MAX_DESIGNS_PER_REQUEST:
        raise ValidationError(
            f"designCount must be between {MIN_DESIGNS_PER_REQUEST} and {MAX_DESIGNS_PER_REQUEST}",
            details={"designCount": count},
        )
    return count


def _coerce_user_id(user_id: Any) -> uuid.UUID:
    if user_id is None or user_id == "":
        raise ValidationError("User id is required")
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise ValidationError("Invalid user id", details={"user_id": str(user_id)})


class UsageMeter:
    """
    Metering engine for design generations.

    Every mutation runs in its own session and transaction. Row conflicts
    (version mismatch, lock timeouts, lost unique races) are retried up to
    `max_attempts` times before surfacing as ConcurrencyConflictError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        tiers: TierTable,
        clock: Optional[BillingClock] = None,
        payment_collector: Optional[PaymentCollector] = None,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.tiers = tiers
        self.clock = clock or BillingClock()
        self.payment_collector = payment_collector or StripePaymentCollector()
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    # ------------------------------------------------------------------
    # Quota checks
    # ------------------------------------------------------------------

    async def can_generate(self, user_id: Any, requested_count: int) -> OverageDecision:
        """
        Decide whether a user may generate `requested_count` designs now.

        Read-only: when the period has no usage record yet, a transient
        snapshot is evaluated and nothing is written.
        """
        requested_count = _validate_count(requested_count)
        uid = _coerce_user_id(user_id)

        async with self.session_factory() as session:
            user = await self._load_user(session, uid)
            tier = self.tiers.resolve(user.subscription_tier)

            if user.is_admin:
                return admin_decision(tier, requested_count)

            now = self.clock.now()
            record = await self._find_active_record(session, user.id, now)
            if record is not None:
                used = record.designs_used_in_period
                allowance = record.designs_allowance
                settled = record.overage_settled_designs or 0
                accrued = record.overage_charge
            else:
                used = 0
                allowance = max(0, tier.design_allowance - await self._pending_credit_total(session, user.id))
                settled = 0
                accrued = None

        decision = evaluate_request(
            tier, used, allowance, requested_count, settled=settled, accrued=accrued
        )
        if not decision.allowed:
            logger.warning(
                f"Generation blocked: user={uid}, tier={tier.name}, used={used}/{allowance}, "
                f"requested={requested_count}, reason={decision.reason}"
            )
        return decision

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_generation(self, user_id: Any, count: int, idempotency_key: str) -> RecordResult:
        """
        Record a completed generation of `count` designs.

        A known idempotency key is a no-op that returns the current record
        with duplicate=True.

        Raises:
            QuotaExceededError: the new total passes the allowance with overage
                disabled, or passes allowance + hard cap
            ConcurrencyConflictError: conflicts persisted through every retry
        """
        count = _validate_count(count)
        uid = _coerce_user_id(user_id)
        if not idempotency_key or not isinstance(idempotency_key, str):
            raise ValidationError("Idempotency key is required")
        if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(
                f"Idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                details={"length": len(idempotency_key)},
            )

        return await self._with_retries(
            "record_generation",
            lambda session: self._record_once(session, uid, count, idempotency_key),
        )

    async def _record_once(
        self, session: AsyncSession, user_id: uuid.UUID, count: int, key: str
    ) -> RecordResult:
        user = await self._load_user(session, user_id)

        existing = await session.scalar(
            select(DesignGenerationEvent).where(DesignGenerationEvent.idempotency_key == key)
        )
        if existing is not None:
            return await self._duplicate_result(session, existing, user_id)

        now = self.clock.now()
        tier = self.tiers.resolve(user.subscription_tier)

        # Inserting the event first takes the write lock before the usage row is read
        event = DesignGenerationEvent(
            idempotency_key=key,
            user_id=user.id,
            design_count=count,
            created_at=now,
        )
        session.add(event)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            existing = await session.scalar(
                select(DesignGenerationEvent).where(DesignGenerationEvent.idempotency_key == key)
            )
            if existing is None:
                raise
            return await self._duplicate_result(session, existing, user_id)

        if user.is_admin:
            await session.commit()
            logger.info(f"Admin generation recorded without metering: user={user.id}, count={count}, key={key}")
            return RecordResult(record=None, admin_bypass=True)

        record = await self._get_or_create_record(session, user, tier, now, lock=True)
        used = record.designs_used_in_period
        settled = record.overage_settled_designs or 0

        decision = evaluate_request(
            tier, used, record.designs_allowance, count,
            settled=settled, enforce_batch_limit=False, accrued=record.overage_charge,
        )
        if not decision.allowed:
            logger.warning(
                f"Recording rejected: user={user.id}, tier={tier.name}, "
                f"used={used}/{record.designs_allowance}, count={count}, reason={decision.reason}"
            )
            raise QuotaExceededError(
                decision.reason,
                usage=decision.usage_snapshot(),
                hard_cap_reached=decision.hard_cap_reached,
            )

        added = accrue_on_record(record, tier, count)
        record.last_generation_at = now
        event.usage_record_id = record.id

        await session.commit()

        if decision.warning:
            logger.warning(
                f"User entered overage: user={user.id}, tier={tier.name}, "
                f"used={record.designs_used_in_period}/{record.designs_allowance}, added={added}, charge={record.overage_charge}"
            )
        logger.info(
            f"Generation recorded: user={user.id}, count={count}, key={key}, "
            f"used={record.designs_used_in_period}/{record.designs_allowance}, overage={record.overage_designs}"
        )
        return RecordResult(record=record, warning=decision.warning)

    async def _duplicate_result(
        self, session: AsyncSession, event: DesignGenerationEvent, user_id: uuid.UUID
    ) -> RecordResult:
        if event.user_id != user_id:
            logger.warning(f"Idempotency key {event.idempotency_key} reused by a different user ({user_id})")

        record = None
        if event.usage_record_id is not None:
            record = await session.get(UsageRecord, event.usage_record_id)
        if record is None:
            record = await self._find_active_record(session, user_id, self.clock.now())

        logger.info(f"Duplicate generation ignored: user={user_id}, key={event.idempotency_key}")
        return RecordResult(record=record, duplicate=True)

    # ------------------------------------------------------------------
    # Upgrade reconciliation
    # ------------------------------------------------------------------

    async def reconcile_overage_on_upgrade(self, user_id: Any, decision: str) -> ReconciliationResult:
        """
        Settle the active period's overage before an upgrade.

        Args:
            user_id: User being upgraded
            decision: "credits" to deduct the overage from the next period's
                allowance, or "pay" to charge it now

        Raises:
            PaymentCollectionError: the charge failed; nothing was settled
        """
        if decision not in (DECISION_CREDITS, DECISION_PAY):
            raise ValidationError(
                'Invalid decision. Must be "credits" or "pay".',
                details={"decision": decision},
            )
        uid = _coerce_user_id(user_id)

        if decision == DECISION_CREDITS:
            return await self._with_retries(
                "reconcile_credits", lambda session: self._apply_credits(session, uid)
            )
        return await self._apply_payment(uid)

    async def _apply_credits(self, session: AsyncSession, user_id: uuid.UUID) -> ReconciliationResult:
        user = await self._load_user(session, user_id)
        record = await self._find_active_record(session, user.id, self.clock.now(), lock=True)
        if record is None or record.overage_designs == 0:
            return ReconciliationResult(decision=DECISION_CREDITS, status="noop", message="No overages to process")

        designs = record.overage_designs
        charge = to_money(record.overage_charge)
        settle_overage(record, designs, charge)

        credit = await session.scalar(
            select(PendingCredit).where(PendingCredit.source_usage_record_id == record.id)
        )
        if credit is None:
            session.add(PendingCredit(user_id=user.id, source_usage_record_id=record.id, designs=designs))
        else:
            credit.designs += designs

        await session.commit()
        logger.info(f"Overage credited: user={user.id}, record={record.id}, designs={designs}, waived={charge}")
        return ReconciliationResult(
            decision=DECISION_CREDITS,
            status="credited",
            overage_designs=designs,
            overage_charge=charge,
            message=f"{designs} overages will be deducted from your new plan credits",
        )

    async def _apply_payment(self, user_id: uuid.UUID) -> ReconciliationResult:
        snapshot = await self._with_retries(
            "reconcile_pay_snapshot", lambda session: self._snapshot_overage(session, user_id)
        )
        if snapshot is None:
            return ReconciliationResult(decision=DECISION_PAY, status="noop", message="No overages to process")

        key = f"overage:{snapshot['record_id']}:{snapshot['settled_before']}"
        try:
            receipt = await self.payment_collector.collect(
                snapshot["customer_id"],
                snapshot["charge"],
                f"Overage charge: {snapshot['designs']} additional designs",
                key,
                metadata={
                    "type": "overage_charge",
                    "user_id": str(user_id),
                    "usage_record_id": str(snapshot["record_id"]),
                    "overage_count": snapshot["designs"],
                },
            )
        except PaymentCollectionError as e:
            logger.error(
                f"Overage payment failed: user={user_id}, record={snapshot['record_id']}, "
                f"amount={snapshot['charge']}, kind={e.kind}, retryable={e.retryable}"
            )
            raise

        return await self._with_retries(
            "reconcile_pay_settle",
            lambda session: self._settle_payment(session, user_id, snapshot, key, receipt.reference),
        )

    async def _snapshot_overage(self, session: AsyncSession, user_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        user = await self._load_user(session, user_id)
        record = await self._find_active_record(session, user.id, self.clock.now(), lock=True)
        if record is None or record.overage_designs == 0:
            return None
        snapshot = {
            "record_id": record.id,
            "settled_before": record.overage_settled_designs or 0,
            "designs": record.overage_designs,
            "charge": to_money(record.overage_charge),
            "customer_id": user.stripe_customer_id,
        }
        # Release the row lock before talking to the payment processor
        await session.commit()
        return snapshot

    async def _settle_payment(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        snapshot: Dict[str, Any],
        key: str,
        reference: str,
    ) -> ReconciliationResult:
        charged = ReconciliationResult(
            decision=DECISION_PAY,
            status="charged",
            overage_designs=snapshot["designs"],
            overage_charge=snapshot["charge"],
            payment_reference=reference,
            message=f"${snapshot['charge']} charged successfully",
        )

        entry = await session.scalar(
            select(BillingLedgerEntry).where(BillingLedgerEntry.idempotency_key == key)
        )
        if entry is not None:
            # Another request already settled this charge
            charged.payment_reference = entry.payment_reference
            return charged

        record = await session.scalar(
            select(UsageRecord)
            .where(UsageRecord.id == snapshot["record_id"])
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if record is None or (record.overage_settled_designs or 0) != snapshot["settled_before"]:
            logger.error(
                f"Overage settled concurrently after payment {reference}: user={user_id}, "
                f"record={snapshot['record_id']}, paid_designs={snapshot['designs']}"
            )
            raise ConcurrencyConflictError(
                f"Overage changed while payment {reference} was processed; manual review required"
            )

        settle_overage(record, snapshot["designs"], snapshot["charge"])
        session.add(BillingLedgerEntry(
            user_id=record.user_id,
            usage_record_id=record.id,
            kind=LedgerKind.OVERAGE_PAYMENT.value,
            tier=record.tier,
            period_start=record.billing_period_start,
            period_end=record.billing_period_end,
            designs_included=record.designs_allowance,
            designs_used=record.designs_used_in_period,
            overage_designs=snapshot["designs"],
            overage_rate=to_money(record.overage_price_per_design),
            subscription_fee=Decimal("0.00"),
            overage_fee=snapshot["charge"],
            total_amount=snapshot["charge"],
            payment_reference=reference,
            payment_status=PaymentStatus.PAID.value,
            idempotency_key=key,
        ))
        await session.commit()

        logger.info(
            f"Overage paid: user={user_id}, record={record.id}, designs={snapshot['designs']}, "
            f"amount={snapshot['charge']}, invoice={reference}"
        )
        return charged

    # ------------------------------------------------------------------
    # Summaries and maintenance
    # ------------------------------------------------------------------

    async def get_usage_summary(self, user_id: Any) -> Dict[str, Any]:
        """Current period usage for display"""
        uid = _coerce_user_id(user_id)
        async with self.session_factory() as session:
            user = await self._load_user(session, uid)
            tier = self.tiers.resolve(user.subscription_tier)
            now = self.clock.now()

            if user.is_admin:
                return {
                    "tier": "Admin (Unlimited)",
                    "allowance": UNLIMITED,
                    "used": 0,
                    "remaining": UNLIMITED,
                    "overage": 0,
                    "overageCharge": 0.0,
                    "inOverage": False,
                    "periodEnd": None,
                    "isAdmin": True,
                }

            pending = await self._pending_credit_total(session, user.id)
            record = await self._find_active_record(session, user.id, now)

        if record is not None:
            summary = usage_snapshot_from_record(record)
            summary["periodStart"] = record.billing_period_start.isoformat()
            summary["softCapReached"] = record.soft_cap_reached
            summary["hardCapReached"] = record.hard_cap_reached
        else:
            start, end = self.clock.period_for(user.billing_anchor, now)
            allowance = max(0, tier.design_allowance - pending)
            summary = {
                "tier": tier.name,
                "allowance": allowance,
                "used": 0,
                "remaining": allowance,
                "overage": 0,
                "overageCharge": 0.0,
                "inOverage": False,
                "periodStart": start.isoformat(),
                "periodEnd": end.isoformat(),
                "softCapReached": allowance == 0,
                "hardCapReached": False,
            }

        summary.update({
            "currentTier": tier.name,
            "displayName": tier.display_name,
            "maxPerRun": tier.max_per_run,
            "overageEnabled": tier.overage_enabled,
            "overagePricePerDesign": float(tier.overage_price_per_design),
            "overageHardCap": tier.overage_hard_cap,
            "pendingCredits": pending,
            "isAdmin": False,
        })
        return summary

    async def repair_usage(self, user_id: Any) -> Dict[str, Any]:
        """Recompute the derived overage fields of the active record from its totals"""
        uid = _coerce_user_id(user_id)
        return await self._with_retries("repair_usage", lambda session: self._repair_once(session, uid))

    async def _repair_once(self, session: AsyncSession, user_id: uuid.UUID) -> Dict[str, Any]:
        user = await self._load_user(session, user_id)
        record = await self._find_active_record(session, user.id, self.clock.now(), lock=True)
        if record is None:
            return {"message": "No current usage record found - nothing to fix", "before": None, "after": None}

        def _state(r: UsageRecord) -> Dict[str, Any]:
            return {
                "designsUsed": r.designs_used_in_period,
                "allowance": r.designs_allowance,
                "overage": r.overage_designs,
                "overageCharge": str(to_money(r.overage_charge or 0)),
                "hardCapReached": r.hard_cap_reached,
            }

        before = _state(record)
        repair_record(record, self.tiers.resolve(user.subscription_tier))
        after = _state(record)
        await session.commit()

        if before != after:
            logger.warning(f"Usage record repaired: user={user.id}, record={record.id}, before={before}, after={after}")
        return {"message": "Usage record fixed successfully", "before": before, "after": after}

    async def preview_upgrade(self, user_id: Any, new_tier: str) -> Dict[str, Any]:
        """Overage the user carries into an upgrade to `new_tier`"""
        target = self.tiers.get_tier_config(new_tier)
        uid = _coerce_user_id(user_id)
        async with self.session_factory() as session:
            user = await self._load_user(session, uid)
            record = await self._find_active_record(session, user.id, self.clock.now())

        overage = record.overage_designs if record is not None else 0
        charge = to_money(record.overage_charge) if record is not None else Decimal("0.00")
        return {
            "hasOverages": overage > 0,
            "currentTier": self.tiers.resolve(user.subscription_tier).name,
            "newTier": target.name,
            "overageCount": overage,
            "overageCharge": float(charge),
            "newTierAllowance": target.design_allowance,
            "allowanceAfterCredits": max(0, target.design_allowance - overage),
        }

    async def close_billing_period(
        self, user_id: Any, usage_record_id: Optional[Any] = None
    ) -> BillingLedgerEntry:
        """
        Write the period-close invoice record for a finished period.

        Defaults to the user's most recently ended period. Repeated calls for
        the same period return the existing entry.
        """
        uid = _coerce_user_id(user_id)
        rid = _coerce_user_id(usage_record_id) if usage_record_id is not None else None
        return await self._with_retries(
            "close_billing_period", lambda session: self._close_once(session, uid, rid)
        )

    async def _close_once(
        self, session: AsyncSession, user_id: uuid.UUID, record_id: Optional[uuid.UUID]
    ) -> BillingLedgerEntry:
        user = await self._load_user(session, user_id)
        now = self.clock.now()

        if record_id is not None:
            record = await session.get(UsageRecord, record_id)
            if record is None or record.user_id != user.id:
                raise ValidationError("Usage record not found for user", details={"usage_record_id": str(record_id)})
        else:
            record = await session.scalar(
                select(UsageRecord)
                .where(UsageRecord.user_id == user.id, UsageRecord.billing_period_end <= now)
                .order_by(UsageRecord.billing_period_end.desc())
                .limit(1)
            )
            if record is None:
                raise ValidationError("No completed billing period to close")

        key = f"period_close:{record.id}"
        entry = await session.scalar(select(BillingLedgerEntry).where(BillingLedgerEntry.idempotency_key == key))
        if entry is not None:
            return entry

        tier = self.tiers.resolve(record.tier)
        subscription_fee = to_money(tier.monthly_price)
        overage_fee = to_money(record.overage_charge or 0)
        entry = BillingLedgerEntry(
            user_id=user.id,
            usage_record_id=record.id,
            kind=LedgerKind.PERIOD_CLOSE.value,
            tier=record.tier,
            period_start=record.billing_period_start,
            period_end=record.billing_period_end,
            designs_included=record.designs_allowance,
            designs_used=record.designs_used_in_period,
            overage_designs=record.overage_designs,
            overage_rate=to_money(record.overage_price_per_design or 0),
            subscription_fee=subscription_fee,
            overage_fee=overage_fee,
            total_amount=subscription_fee + overage_fee,
            payment_status=PaymentStatus.PENDING.value,
            idempotency_key=key,
        )
        session.add(entry)
        await session.commit()

        logger.info(
            f"Billing period closed: user={user.id}, record={record.id}, "
            f"subscription={subscription_fee}, overage={overage_fee}"
        )
        return entry

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _with_retries(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.session_factory() as session:
                    return await work(session)
            except (StaleDataError, DBAPIError) as e:
                if not _is_retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"{operation} gave up after {attempt} attempts: {e}")
                    raise ConcurrencyConflictError(
                        f"Usage record is busy, please retry ({operation})", attempts=attempt
                    ) from e
                logger.warning(f"{operation} conflict on attempt {attempt}/{self.max_attempts}: {type(e).__name__}")
                await asyncio.sleep(self.retry_backoff * attempt)

    async def _load_user(self, session: AsyncSession, user_id: uuid.UUID) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _find_active_record(
        self, session: AsyncSession, user_id: uuid.UUID, now: datetime, lock: bool = False
    ) -> Optional[UsageRecord]:
        stmt = (
            select(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.billing_period_start <= now,
                UsageRecord.billing_period_end > now,
            )
            .order_by(UsageRecord.billing_period_start.desc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await session.scalar(stmt)

    async def _pending_credit_total(self, session: AsyncSession, user_id: uuid.UUID) -> int:
        total = await session.scalar(
            select(func.coalesce(func.sum(PendingCredit.designs), 0)).where(PendingCredit.user_id == user_id)
        )
        return int(total or 0)

    async def _get_or_create_record(
        self, session: AsyncSession, user: User, tier: TierConfig, now: datetime, lock: bool = False
    ) -> UsageRecord:
        """
        Active record for the user, opening a new period when none exists.

        A new period consumes the user's pending credits and never overlaps
        the previous one.
        """
        record = await self._find_active_record(session, user.id, now, lock=lock)
        if record is not None:
            return record

        start, end = self.clock.period_for(user.billing_anchor or now, now)
        previous = await session.scalar(
            select(UsageRecord)
            .where(UsageRecord.user_id == user.id, UsageRecord.billing_period_start <= now)
            .order_by(UsageRecord.billing_period_end.desc())
            .limit(1)
        )
        if previous is not None and previous.billing_period_end > start:
            start = previous.billing_period_end

        credits = (await session.scalars(
            select(PendingCredit).where(PendingCredit.user_id == user.id)
        )).all()
        credit_total = sum(c.designs for c in credits)
        for credit in credits:
            await session.delete(credit)

        record = UsageRecord(
            user_id=user.id,
            billing_period_start=start,
            billing_period_end=end,
            tier=tier.name,
            designs_allowance=max(0, tier.design_allowance - credit_total),
            overage_price_per_design=to_money(tier.overage_price_per_design),
            designs_used_in_period=0,
            overage_settled_designs=0,
            overage_designs=0,
            overage_charge=Decimal("0.00"),
            soft_cap_reached=False,
            hard_cap_reached=False,
            created_at=now,
        )
        session.add(record)
        await session.flush()

        logger.info(
            f"Opened billing period: user={user.id}, tier={tier.name}, "
            f"start={start:%Y-%m-%d}, end={end:%Y-%m-%d}, allowance={record.designs_allowance}, "
            f"credits_applied={credit_total}"
        )
        return record


@lru_cache
def get_usage_meter() -> UsageMeter:
    """Process-wide usage meter, built from settings on first use"""
    from turbomerch.utils.database import AsyncSessionLocal

    settings = get_settings()
    return UsageMeter(
        session_factory=AsyncSessionLocal,
        tiers=load_tier_table(settings.tier_config_path),
        clock=BillingClock(),
        payment_collector=StripePaymentCollector(api_key=settings.stripe_secret_key),
        max_attempts=settings.usage_max_attempts,
        retry_backoff=settings.usage_retry_backoff_seconds,
    )
