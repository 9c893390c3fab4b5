"""
Subscription orchestrator.

Single entry point for subscriber-facing lifecycle operations. Every
write runs inside one unit of work: the state machine and metering engine
mutate rows, the session commits, and only then are the queued lifecycle
events published. A failed operation rolls back and publishes nothing.

The batch sweeps (expire overdue, auto-renew, usage reset) reuse the same
operations with one unit of work per item, so a single bad subscription
never aborts the sweep.
"""

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import partial
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subsphere.db import utcnow
from subsphere.entitlements import state_machine
from subsphere.entitlements.enums import FeatureResetPeriod, PlanChangeType, SubscriptionStatus
from subsphere.entitlements.events import (
    emit_feature_usage_reset,
    emit_feature_used,
    emit_subscription_canceled,
    emit_subscription_changed,
    emit_subscription_created,
    emit_subscription_expired,
    emit_subscription_renewal_failed,
    emit_subscription_renewed,
    emit_subscription_started,
    emit_trial_started,
    subscription_snapshot,
)
from subsphere.entitlements.interfaces import (
    FeatureAccess,
    Subscribable,
    SubscriberRef,
    SubscriptionActions,
    SubscriptionLike,
    SubscriptionQueries,
    SubscriptionValidation,
)
from subsphere.entitlements.metering import FeatureUsageSummary, UsageMeter
from subsphere.entitlements.models import Plan, PlanPricing, Subscription, SubscriptionUsage
from subsphere.entitlements.repositories import PlanRepository, SubscriptionRepository
from subsphere.entitlements.state_machine import SubscriptionStateMachine
from subsphere.entitlements.validation import SubscriptionValidator, determine_change_type
from subsphere.events import EventBus, EventPublishError
from subsphere.exceptions import (
    AlreadySubscribedError,
    EntitlementError,
    InvalidStateTransitionError,
    PricingNotFoundError,
    SubscriptionNotFoundError,
)
from subsphere.logging import log_audit_event
from subsphere.settings import (
    CurrencySettings,
    LocaleSettings,
    SubscriptionSettings,
    get_settings,
)

logger = structlog.get_logger(__name__)

PendingEvent = Callable[[], Awaitable[None]]

CENT = Decimal("0.01")

# Sweep backlog older than this marks the engine unhealthy
STALE_BACKLOG = timedelta(hours=24)

DUPLICABLE_STATUSES = (
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.INACTIVE,
)


# ============================================================================
# Result models
# ============================================================================


class PlanChangeSummary(BaseModel):
    """What a plan change replaced and with what."""

    change_type: PlanChangeType
    old_plan_id: int
    new_plan_id: int
    old_pricing_id: int
    new_pricing_id: int
    old_plan_name: Any = None
    new_plan_name: Any = None
    old_pricing_label: Any = None
    new_pricing_label: Any = None
    old_price: Decimal
    new_price: Decimal
    currency: str
    changed_at: datetime
    usage_reset: bool
    proration_amount: Decimal = Decimal("0.00")


class PlanChangeResult(BaseModel):
    """The new subscription, the canceled one it replaced and the change summary."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    subscription: Subscription
    previous_subscription: Subscription
    summary: PlanChangeSummary


class BatchItem(BaseModel):
    """Outcome for one subscription or usage row in a sweep."""

    status: str
    subscription_id: int | None = None
    usage_id: int | None = None
    feature_key: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    """Counters and per-item outcomes of a sweep."""

    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    items: list[BatchItem] = Field(default_factory=list)

    def record(self, item: BatchItem) -> None:
        self.processed += 1
        if item.status == "failed":
            self.failed += 1
        elif item.status == "skipped":
            self.skipped += 1
        elif not self.dry_run:
            self.succeeded += 1
        self.items.append(item)


def calculate_proration(
    old_pricing: PlanPricing,
    new_pricing: PlanPricing,
    old_price: Decimal,
    new_price: Decimal,
    days_left: int | None,
) -> Decimal:
    """
    Informational price difference for the rest of the current period.

    ``(new daily rate - old daily rate) * days left``, zero when either
    side is a lifetime pricing or nothing is left of the period.
    """
    if old_pricing.is_lifetime or new_pricing.is_lifetime or not days_left:
        return Decimal("0.00")
    old_daily = Decimal(old_price) / Decimal(old_pricing.duration_in_days)
    new_daily = Decimal(new_price) / Decimal(new_pricing.duration_in_days)
    return ((new_daily - old_daily) * days_left).quantize(CENT, rounding=ROUND_HALF_UP)


# ============================================================================
# Service
# ============================================================================


class SubscriptionService(
    SubscriptionQueries,
    SubscriptionActions,
    SubscriptionValidation,
    FeatureAccess,
):
    """
    Transactional lifecycle and entitlement operations for subscribers.

    The service owns the transaction: pass it a session that is not inside
    an explicit ``begin()`` block. Lifecycle events are published after
    commit on ``event_bus`` (the process-wide bus when not given).
    """

    def __init__(
        self,
        db: AsyncSession,
        config: SubscriptionSettings | None = None,
        event_bus: EventBus | None = None,
        locale: LocaleSettings | None = None,
        currency: CurrencySettings | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.config = config or settings.subscriptions
        self.locale = locale or settings.locale
        self.currency = currency or settings.currency
        self.event_bus = event_bus

        self.subscriptions = SubscriptionRepository(db)
        self.plans = PlanRepository(db)
        self.meter = UsageMeter(db, self.locale)
        self.state_machine = SubscriptionStateMachine(self.config.grace_period_days)
        self.validator = SubscriptionValidator(
            self.subscriptions, self.plans, self.config, self.locale
        )

    # ==================== Unit of Work ====================

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[list[PendingEvent]]:
        """Commit on success, roll back on error, then publish queued events."""
        outbox: list[PendingEvent] = []
        try:
            yield outbox
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self._publish(outbox)

    async def _publish(self, outbox: list[PendingEvent]) -> None:
        for emit in outbox:
            try:
                await emit()
            except EventPublishError:
                # The write is already committed; a lost notification must not undo it
                logger.exception("Failed to publish lifecycle event")

    async def _flush(self, ref: SubscriberRef) -> None:
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise AlreadySubscribedError(
                "Subscriber already has an active subscription",
                subscriber_type=ref.subscriber_type,
                subscriber_id=ref.subscriber_id,
            ) from e

    async def _load(self, subscription: SubscriptionLike, for_update: bool = True) -> Subscription:
        subscription_id = subscription.id if isinstance(subscription, Subscription) else subscription
        found = await self.subscriptions.get_by_id(subscription_id, for_update=for_update)
        if found is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return found

    async def _find(self, subscription: SubscriptionLike) -> Subscription | None:
        try:
            return await self._load(subscription, for_update=False)
        except SubscriptionNotFoundError:
            return None

    async def _ensure_no_other_active(self, subscription: Subscription) -> None:
        """Reactivating a subscription must not create a second active one."""
        existing = await self.subscriptions.get_active_for_subscriber(
            subscription.subscriber_type, subscription.subscriber_id, for_update=True
        )
        if existing is not None and existing.id != subscription.id:
            raise AlreadySubscribedError(
                "Subscriber already has another active subscription",
                subscriber_type=subscription.subscriber_type,
                subscriber_id=subscription.subscriber_id,
            )

    async def _has_other_active(self, subscription: Subscription) -> bool:
        existing = await self.subscriptions.get_active_for_subscriber(
            subscription.subscriber_type, subscription.subscriber_id
        )
        return existing is not None and existing.id != subscription.id

    def _queue(
        self,
        outbox: list[PendingEvent],
        emitter: Callable[..., Awaitable[None]],
        *args: Any,
        **kwargs: Any,
    ) -> None:
        outbox.append(partial(emitter, *args, event_bus=self.event_bus, **kwargs))

    def _price_of(self, pricing: PlanPricing) -> Decimal:
        code = self.currency.default_currency
        amount = pricing.get_price_in_currency(
            code, default_currency=code, fallback_to_default=self.currency.fallback_to_default
        )
        return amount if amount is not None else pricing.price

    # ==================== Creation ====================

    async def _create(
        self,
        ref: SubscriberRef,
        plan: Plan,
        pricing: PlanPricing,
        outbox: list[PendingEvent],
        action: str,
        trial_days: int = 0,
        usages: list[SubscriptionUsage] | None = None,
        now: datetime | None = None,
        announce_start: bool = True,
        paid_after_trial: bool = False,
        **details: Any,
    ) -> Subscription:
        now = now or utcnow()
        trial_ends_at = now + timedelta(days=trial_days) if trial_days else None

        ends_at = None
        if not pricing.is_lifetime:
            # Only start_trial defers the paid period until the trial ends
            paid_from = trial_ends_at if paid_after_trial and trial_ends_at else now
            ends_at = paid_from + timedelta(days=pricing.duration_in_days)

        subscription = Subscription(
            subscriber_type=ref.subscriber_type,
            subscriber_id=ref.subscriber_id,
            plan=plan,
            pricing=pricing,
            status=SubscriptionStatus.TRIAL if trial_days else SubscriptionStatus.ACTIVE,
            starts_at=now,
            ends_at=ends_at,
            trial_ends_at=trial_ends_at,
            grace_ends_at=self.state_machine.grace_end_for(ends_at),
            is_auto_renewal=self.config.auto_renewal_default,
            usages=usages or [],
        )
        state_machine.validate_state(subscription, now)

        self.db.add(subscription)
        await self._flush(ref)

        snapshot = subscription_snapshot(subscription)
        self._queue(outbox, emit_subscription_created, snapshot, action, **details)
        if announce_start:
            if trial_days:
                self._queue(outbox, emit_trial_started, snapshot, trial_days)
            else:
                self._queue(outbox, emit_subscription_started, snapshot)

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            subscriber_type=ref.subscriber_type,
            subscriber_id=ref.subscriber_id,
            plan_id=plan.id,
            pricing_id=pricing.id,
            status=subscription.status.value,
            action=action,
        )
        return subscription

    async def _prepare_trial(self, ref: SubscriberRef, plan: Plan, trial_days: int) -> None:
        self.validator.validate_trial_duration(trial_days)
        await self.validator.validate_trial_eligibility(
            ref.subscriber_type, ref.subscriber_id, plan.id
        )

    async def subscribe(
        self,
        subscriber: Subscribable,
        plan_id: int,
        pricing_id: int,
        trial_days: int | None = None,
    ) -> Subscription:
        """
        Subscribe to a plan pricing.

        Args:
            subscriber: Subscriber entity or SubscriberRef
            plan_id: Plan to subscribe to
            pricing_id: Pricing of that plan
            trial_days: Open with a trial of this many days (0/None: no trial)

        Returns:
            The new ACTIVE or TRIAL subscription

        Raises:
            AlreadySubscribedError: Subscriber already has an active subscription
            PlanNotFoundError, PlanNotAvailableError, PricingNotFoundError
            InvalidTrialDurationError, TrialNotAllowedError
        """
        ref = SubscriberRef.of(subscriber)
        async with self._transaction() as outbox:
            await self.subscriptions.lock_subscriber(ref.subscriber_type, ref.subscriber_id)
            await self.validator.validate_no_active_subscription(
                ref.subscriber_type, ref.subscriber_id
            )
            plan = await self.validator.get_available_plan(plan_id)
            pricing = await self.validator.get_pricing_for_plan(plan, pricing_id)
            if trial_days:
                await self._prepare_trial(ref, plan, trial_days)

            subscription = await self._create(
                ref,
                plan,
                pricing,
                outbox,
                action="trial" if trial_days else "subscribe",
                trial_days=trial_days or 0,
            )
        return subscription

    async def start_trial(
        self, subscriber: Subscribable, plan_id: int, trial_days: int | None = None
    ) -> Subscription:
        """
        Start a trial on a plan.

        The pricing is picked deterministically (cheapest, then shortest,
        then oldest); the trial length does not have to match it.
        """
        ref = SubscriberRef.of(subscriber)
        days = self.config.trial_period_days if trial_days is None else trial_days
        async with self._transaction() as outbox:
            await self.subscriptions.lock_subscriber(ref.subscriber_type, ref.subscriber_id)
            await self.validator.validate_no_active_subscription(
                ref.subscriber_type, ref.subscriber_id
            )
            plan = await self.validator.get_available_plan(plan_id)
            pricing = await self.plans.get_trial_pricing(plan.id)
            if pricing is None:
                raise PricingNotFoundError(f"Plan {plan.slug} has no pricing", plan_id=plan.id)
            await self._prepare_trial(ref, plan, days)

            subscription = await self._create(
                ref,
                plan,
                pricing,
                outbox,
                action="trial",
                trial_days=days,
                paid_after_trial=True,
            )
        return subscription

    async def duplicate_subscription(
        self,
        subscriber: Subscribable,
        source_subscription_id: int,
        with_trial: bool = False,
    ) -> Subscription:
        """
        Start a fresh subscription on the same plan and pricing as an ended one.

        The source must belong to the subscriber and be EXPIRED, CANCELED
        or INACTIVE. Usage counters are copied with ``used=0``. With
        ``with_trial`` the copy opens with the source's trial length, or
        the configured trial period when the source never had a trial.
        """
        ref = SubscriberRef.of(subscriber)
        async with self._transaction() as outbox:
            await self.subscriptions.lock_subscriber(ref.subscriber_type, ref.subscriber_id)
            source = await self.subscriptions.get_by_id(source_subscription_id)
            if (
                source is None
                or source.subscriber_type != ref.subscriber_type
                or source.subscriber_id != ref.subscriber_id
            ):
                raise SubscriptionNotFoundError(
                    f"Subscription {source_subscription_id} not found for subscriber",
                    subscription_id=source_subscription_id,
                    subscriber_type=ref.subscriber_type,
                    subscriber_id=ref.subscriber_id,
                )
            if source.status not in DUPLICABLE_STATUSES:
                raise InvalidStateTransitionError(
                    "Cannot duplicate an active subscription",
                    current_state=source.status.value,
                    requested_state=SubscriptionStatus.ACTIVE.value,
                    subscription_id=source.id,
                )

            await self.validator.validate_no_active_subscription(
                ref.subscriber_type, ref.subscriber_id
            )
            plan = await self.validator.get_available_plan(source.plan_id)
            pricing = await self.validator.get_pricing_for_plan(plan, source.plan_pricing_id)

            trial_days = 0
            if with_trial:
                trial_days = self.config.trial_period_days
                if source.trial_ends_at is not None:
                    trial_days = max(1, (source.trial_ends_at - source.starts_at).days)
                self.validator.validate_trial_duration(trial_days)

            usages = [
                SubscriptionUsage(key=usage.key, used=0)
                for usage in await self.subscriptions.get_usages(source.id)
            ]
            subscription = await self._create(
                ref,
                plan,
                pricing,
                outbox,
                action="duplicate",
                trial_days=trial_days,
                usages=usages,
                announce_start=False,
                original_subscription_id=source.id,
                with_trial=with_trial,
            )

            snapshot = subscription_snapshot(subscription)
            self._queue(outbox, emit_subscription_started, snapshot)
            if trial_days:
                self._queue(outbox, emit_trial_started, snapshot, trial_days)
        return subscription

    # ==================== Lifecycle ====================

    async def _renew_locked(
        self,
        subscription: Subscription,
        automatic: bool,
        outbox: list[PendingEvent],
        now: datetime,
    ) -> None:
        plan = await self.plans.get_plan(subscription.plan_id)
        if plan is None:
            raise SubscriptionNotFoundError(
                f"Plan of subscription {subscription.id} no longer exists",
                subscription_id=subscription.id,
            )
        self.validator.validate_plan_availability(plan)
        pricing = await self.validator.get_pricing_for_plan(plan, subscription.plan_pricing_id)

        if not subscription.status.is_active_family:
            await self._ensure_no_other_active(subscription)

        self.state_machine.renew(subscription, pricing.duration_in_days, now)
        await self._flush(SubscriberRef.of(subscription))

        self._queue(outbox, emit_subscription_renewed, subscription_snapshot(subscription), automatic)
        logger.info(
            "Subscription renewed",
            subscription_id=subscription.id,
            subscriber_type=subscription.subscriber_type,
            subscriber_id=subscription.subscriber_id,
            plan_id=subscription.plan_id,
            ends_at=subscription.ends_at.isoformat() if subscription.ends_at else None,
            automatic=automatic,
        )

    async def renew(self, subscription: SubscriptionLike, automatic: bool = False) -> Subscription:
        """Extend by another pricing period and make ACTIVE."""
        async with self._transaction() as outbox:
            current = await self._load(subscription)
            await self._renew_locked(current, automatic, outbox, utcnow())
        return current

    async def cancel(self, subscription: SubscriptionLike) -> Subscription:
        """Cancel an ACTIVE or TRIAL subscription and open its grace window."""
        async with self._transaction() as outbox:
            current = await self._load(subscription)
            self.state_machine.cancel(current, start_grace=True, now=utcnow())
            await self.db.flush()
            self._queue(outbox, emit_subscription_canceled, subscription_snapshot(current))
            logger.info(
                "Subscription canceled",
                subscription_id=current.id,
                subscriber_type=current.subscriber_type,
                subscriber_id=current.subscriber_id,
                grace_ends_at=current.grace_ends_at.isoformat() if current.grace_ends_at else None,
            )
        return current

    async def resume(self, subscription: SubscriptionLike) -> Subscription:
        """Undo a cancellation while the paid period or grace window is valid."""
        async with self._transaction() as outbox:
            current = await self._load(subscription)
            await self._ensure_no_other_active(current)
            self.state_machine.resume(current, now=utcnow())
            await self._flush(SubscriberRef.of(current))
            self._queue(outbox, emit_subscription_started, subscription_snapshot(current))
            logger.info("Subscription resumed", subscription_id=current.id)
        return current

    async def _expire_locked(
        self, subscription: Subscription, outbox: list[PendingEvent], now: datetime
    ) -> None:
        was_in_grace_period = state_machine.is_in_grace_period(subscription, now)
        self.state_machine.expire(subscription, now)
        await self.db.flush()
        self._queue(
            outbox,
            emit_subscription_expired,
            subscription_snapshot(subscription),
            was_in_grace_period,
        )
        logger.info(
            "Subscription expired",
            subscription_id=subscription.id,
            subscriber_type=subscription.subscriber_type,
            subscriber_id=subscription.subscriber_id,
            was_in_grace_period=was_in_grace_period,
        )

    async def expire(self, subscription: SubscriptionLike) -> Subscription:
        """Force EXPIRED (not from CANCELED, lifetime only from inside grace)."""
        async with self._transaction() as outbox:
            current = await self._load(subscription)
            await self._expire_locked(current, outbox, utcnow())
        return current

    async def activate(self, subscription: SubscriptionLike) -> bool:
        """Make ACTIVE. Returns False, with no event, when it already is."""
        async with self._transaction() as outbox:
            current = await self._load(subscription)
            if current.status is SubscriptionStatus.ACTIVE:
                return False
            if not current.status.is_active_family:
                await self._ensure_no_other_active(current)
            self.state_machine.activate(current, now=utcnow())
            await self._flush(SubscriberRef.of(current))
            self._queue(outbox, emit_subscription_started, subscription_snapshot(current))
        return True

    async def deactivate(self, subscription: SubscriptionLike) -> Subscription:
        """Suspend an ACTIVE subscription without touching its dates."""
        async with self._transaction():
            current = await self._load(subscription)
            self.state_machine.deactivate(current)
            await self.db.flush()
            logger.info("Subscription deactivated", subscription_id=current.id)
        return current

    # ==================== Plan Change ====================

    async def change_plan(
        self,
        subscriber: Subscribable,
        new_plan_id: int,
        new_pricing_id: int,
        reset_usage: bool | None = None,
    ) -> PlanChangeResult:
        """
        Replace the active subscription with a new one on another plan.

        The current subscription is canceled without grace and without
        auto-renewal; the new one starts now. Downgrades reset usage
        counters (when ``reset_usage_on_plan_change`` is on), upgrades and
        lateral changes carry them over. ``reset_usage`` overrides that
        policy for one call.

        Raises:
            SubscriptionNotFoundError: No active subscription to change
            PlanChangeNotAllowedError: Same plan, trial, downgrade or excess usage rules
        """
        ref = SubscriberRef.of(subscriber)
        now = utcnow()
        async with self._transaction() as outbox:
            await self.subscriptions.lock_subscriber(ref.subscriber_type, ref.subscriber_id)
            current = await self.subscriptions.get_active_for_subscriber(
                ref.subscriber_type, ref.subscriber_id, for_update=True
            )
            if current is None:
                raise SubscriptionNotFoundError(
                    "Subscriber has no active subscription to change",
                    subscriber_type=ref.subscriber_type,
                    subscriber_id=ref.subscriber_id,
                )

            new_plan = await self.validator.get_available_plan(new_plan_id)
            new_pricing = await self.validator.get_pricing_for_plan(new_plan, new_pricing_id)
            old_pricing = await self.plans.get_pricing(current.plan_pricing_id)
            if old_pricing is None:
                raise PricingNotFoundError(
                    f"Pricing {current.plan_pricing_id} of the current subscription is missing",
                    plan_id=current.plan_id,
                    pricing_id=current.plan_pricing_id,
                )
            old_plan = await self.plans.get_plan(current.plan_id)

            # Direction decides the default reset policy, so work it out
            # before validating with the matching carry-over flag
            preview = determine_change_type(old_pricing, new_pricing)
            if reset_usage is not None:
                should_reset = reset_usage
            else:
                should_reset = (
                    self.config.reset_usage_on_plan_change
                    and preview is PlanChangeType.DOWNGRADE
                )
            change_type = await self.validator.validate_plan_change(
                current, new_plan, new_pricing, carry_usage=not should_reset
            )

            old_usages = await self.subscriptions.get_usages(current.id)
            days_left = state_machine.days_remaining(current, now)
            previous_id = current.id

            self.state_machine.cancel(current, start_grace=False, now=now)
            current.is_auto_renewal = False
            await self.db.flush()

            usages = [
                SubscriptionUsage(
                    key=usage.key,
                    used=0 if should_reset else usage.used,
                    last_used_at=None if should_reset else usage.last_used_at,
                )
                for usage in old_usages
            ]
            new_subscription = await self._create(
                ref,
                new_plan,
                new_pricing,
                outbox,
                action="change_plan",
                usages=usages,
                now=now,
                announce_start=False,
                previous_subscription_id=previous_id,
            )

            old_price = self._price_of(old_pricing)
            new_price = self._price_of(new_pricing)
            locale, fallback = self.locale.default_locale, self.locale.fallback_locale
            summary = PlanChangeSummary(
                change_type=change_type,
                old_plan_id=current.plan_id,
                new_plan_id=new_plan.id,
                old_pricing_id=old_pricing.id,
                new_pricing_id=new_pricing.id,
                old_plan_name=old_plan.get_name(locale, fallback) if old_plan else None,
                new_plan_name=new_plan.get_name(locale, fallback),
                old_pricing_label=old_pricing.get_label(locale, fallback),
                new_pricing_label=new_pricing.get_label(locale, fallback),
                old_price=old_price,
                new_price=new_price,
                currency=self.currency.default_currency,
                changed_at=now,
                usage_reset=should_reset,
                proration_amount=calculate_proration(
                    old_pricing, new_pricing, old_price, new_price, days_left
                ),
            )

            self._queue(
                outbox,
                emit_subscription_changed,
                subscription_snapshot(new_subscription),
                subscription_snapshot(current),
                summary.model_dump(mode="json"),
            )
            log_audit_event(
                action="subscription.plan_changed",
                category="subscription",
                subscriber=(ref.subscriber_type, ref.subscriber_id),
                subscription_id=new_subscription.id,
                previous_subscription_id=current.id,
                change_type=change_type.value,
                old_plan_id=current.plan_id,
                new_plan_id=new_plan.id,
                usage_reset=should_reset,
            )
        return PlanChangeResult(
            subscription=new_subscription,
            previous_subscription=current,
            summary=summary,
        )

    # ==================== Queries ====================

    async def get_active_subscription(self, subscriber: Subscribable) -> Subscription | None:
        ref = SubscriberRef.of(subscriber)
        return await self.subscriptions.get_active_for_subscriber(
            ref.subscriber_type, ref.subscriber_id
        )

    async def get_subscriptions(
        self,
        subscriber: Subscribable,
        statuses: Sequence[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        ref = SubscriberRef.of(subscriber)
        return await self.subscriptions.list_for_subscriber(
            ref.subscriber_type, ref.subscriber_id, statuses
        )

    async def get_subscription_by_id(self, subscription_id: int) -> Subscription:
        return await self._load(subscription_id, for_update=False)

    async def has_active_subscription(self, subscriber: Subscribable) -> bool:
        subscription = await self.get_active_subscription(subscriber)
        return subscription is not None and state_machine.is_active(subscription)

    async def has_any_subscription(self, subscriber: Subscribable) -> bool:
        return bool(await self.get_subscriptions(subscriber))

    # ==================== Eligibility ====================

    async def can_cancel(self, subscription: SubscriptionLike) -> bool:
        current = await self._find(subscription)
        return current is not None and state_machine.can_cancel(current)

    async def can_resume(self, subscription: SubscriptionLike) -> bool:
        current = await self._find(subscription)
        if current is None or not state_machine.can_resume(current):
            return False
        return not await self._has_other_active(current)

    async def can_renew(self, subscription: SubscriptionLike) -> bool:
        current = await self._find(subscription)
        if current is None or not state_machine.can_renew(current):
            return False
        plan = await self.plans.get_plan(current.plan_id)
        if plan is None or not plan.is_available:
            return False
        if current.status.is_active_family:
            return True
        return not await self._has_other_active(current)

    # ==================== Feature Access ====================

    async def has_feature(self, subscriber: Subscribable, key: str) -> bool:
        self.validator.validate_feature_key(key)
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return False
        return await self.meter.has_feature(subscription, key)

    async def get_feature_value(
        self, subscriber: Subscribable, key: str, locale: str | None = None
    ) -> Any:
        self.validator.validate_feature_key(key)
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return None
        return await self.meter.get_feature_value(subscription, key, locale)

    async def get_remaining_usage(self, subscriber: Subscribable, key: str) -> int | float | None:
        """Units left; 0 without an active subscription, None when unlimited or not numeric."""
        self.validator.validate_feature_key(key)
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return 0
        return await self.meter.get_remaining_usage(subscription, key)

    async def can_consume_feature(self, subscriber: Subscribable, key: str, amount: int = 1) -> bool:
        self.validator.validate_feature_key(key)
        self.validator.validate_amount(amount)
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return False
        return await self.meter.can_consume_feature(subscription, key, amount)

    async def get_usage_summary(
        self, subscriber: Subscribable, locale: str | None = None
    ) -> dict[str, FeatureUsageSummary]:
        subscription = await self.get_active_subscription(subscriber)
        if subscription is None:
            return {}
        return await self.meter.get_usage_summary(subscription, locale)

    async def consume_feature(self, subscriber: Subscribable, key: str, amount: int = 1) -> bool:
        """
        Record ``amount`` units of a metered feature.

        Returns False when the subscriber has no active subscription, the
        plan lacks the feature or the limit would be exceeded. Invalid keys
        and amounts raise.
        """
        self.validator.validate_feature_key(key)
        self.validator.validate_amount(amount)
        ref = SubscriberRef.of(subscriber)

        async with self._transaction() as outbox:
            subscription = await self.subscriptions.get_active_for_subscriber(
                ref.subscriber_type, ref.subscriber_id
            )
            if subscription is None:
                logger.debug(
                    "No active subscription for feature consumption",
                    subscriber_type=ref.subscriber_type,
                    subscriber_id=ref.subscriber_id,
                    feature_key=key,
                )
                return False

            result = await self.meter.consume_feature(subscription, key, amount)
            snapshot = subscription_snapshot(subscription)
            if result.was_reset:
                self._queue(
                    outbox,
                    emit_feature_usage_reset,
                    snapshot,
                    key,
                    result.used_before_reset or 0,
                    reason="period_elapsed",
                )
            if result.consumed:
                self._queue(outbox, emit_feature_used, snapshot, key, amount, result.remaining)
        return result.consumed

    async def reset_feature(self, subscriber: Subscribable, key: str) -> bool:
        """Zero one feature counter of the active subscription. False when never used."""
        self.validator.validate_feature_key(key)
        ref = SubscriberRef.of(subscriber)

        async with self._transaction() as outbox:
            subscription = await self.subscriptions.get_active_for_subscriber(
                ref.subscriber_type, ref.subscriber_id
            )
            if subscription is None:
                return False
            usage = await self.meter.get_usage(subscription, key)
            old_used = usage.used if usage is not None else 0
            reset = await self.meter.reset_feature_usage(subscription, key)
            if reset:
                self._queue(
                    outbox,
                    emit_feature_usage_reset,
                    subscription_snapshot(subscription),
                    key,
                    old_used,
                    reason="manual",
                )
        return reset

    # ==================== Batch Jobs ====================

    async def expire_overdue_subscriptions(
        self,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> BatchResult:
        """
        Expire active-family subscriptions whose grace window (or paid
        period, without grace) has ended.

        Each subscription is expired in its own transaction; failures are
        logged and the sweep moves on.
        """
        now = now or utcnow()
        result = BatchResult(job="expire_overdue", dry_run=dry_run)
        candidates = await self.subscriptions.get_overdue_for_expiry(
            now, limit or self.config.batch_size
        )
        targets = [(sub.id, sub.subscriber_type, sub.subscriber_id) for sub in candidates]

        for subscription_id, subscriber_type, subscriber_id in targets:
            if dry_run:
                result.record(BatchItem(status="would_expire", subscription_id=subscription_id))
                continue
            try:
                async with self._transaction() as outbox:
                    current = await self._load(subscription_id)
                    if not state_machine.is_overdue(current, now):
                        result.record(BatchItem(status="skipped", subscription_id=subscription_id))
                        continue
                    await self._expire_locked(current, outbox, now)
                result.record(BatchItem(status="expired", subscription_id=subscription_id))
            except Exception as e:
                logger.exception(
                    "Failed to expire subscription",
                    subscription_id=subscription_id,
                    subscriber_type=subscriber_type,
                    subscriber_id=subscriber_id,
                )
                result.record(
                    BatchItem(status="failed", subscription_id=subscription_id, error=str(e))
                )

        self._audit_sweep(result)
        return result

    async def auto_renew_eligible_subscriptions(
        self,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> BatchResult:
        """
        Renew auto-renewing ACTIVE subscriptions whose paid period has ended.

        A failed renewal is logged, reported as ``subscription.renewal_failed``
        and skipped.
        """
        now = now or utcnow()
        result = BatchResult(job="auto_renew", dry_run=dry_run)
        candidates = await self.subscriptions.get_eligible_for_renewal(
            now, limit or self.config.batch_size
        )
        targets = [(sub.id, subscription_snapshot(sub)) for sub in candidates]

        for subscription_id, snapshot in targets:
            if dry_run:
                result.record(BatchItem(status="would_renew", subscription_id=subscription_id))
                continue
            try:
                async with self._transaction() as outbox:
                    current = await self._load(subscription_id)
                    if not state_machine.should_auto_renew(current, now):
                        result.record(BatchItem(status="skipped", subscription_id=subscription_id))
                        continue
                    await self._renew_locked(current, True, outbox, now)
                result.record(BatchItem(status="renewed", subscription_id=subscription_id))
            except Exception as e:
                logger.exception(
                    "Failed to auto-renew subscription",
                    subscription_id=subscription_id,
                    subscriber_type=snapshot["subscriber_type"],
                    subscriber_id=snapshot["subscriber_id"],
                    plan_id=snapshot["plan_id"],
                )
                result.record(
                    BatchItem(status="failed", subscription_id=subscription_id, error=str(e))
                )
                context = e.to_dict() if isinstance(e, EntitlementError) else {}
                await self._publish(
                    [
                        partial(
                            emit_subscription_renewal_failed,
                            snapshot,
                            str(e),
                            context,
                            event_bus=self.event_bus,
                        )
                    ]
                )

        self._audit_sweep(result)
        return result

    async def reset_due_usage(
        self,
        period: FeatureResetPeriod | str | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> BatchResult:
        """
        Zero usage rows whose feature period rolled over since their last use.

        Args:
            period: One reset period, or None/"all" for every automatic period
            limit: Maximum rows per period
            dry_run: Report candidate rows without writing
            now: Reference time (defaults to the current time)
        """
        now = now or utcnow()
        if period is None or period == "all":
            periods = FeatureResetPeriod.automatic()
        else:
            periods = [FeatureResetPeriod(period)]

        result = BatchResult(job="reset_usage", dry_run=dry_run)
        for reset_period in periods:
            boundary = reset_period.period_start(now)
            if boundary is None:
                continue
            rows = await self.subscriptions.get_usages_requiring_reset(
                reset_period, now, limit or self.config.batch_size
            )
            targets = [(row.id, row.subscription_id, row.key) for row in rows]
            if not targets:
                continue

            if dry_run:
                for usage_id, subscription_id, key in targets:
                    result.record(
                        BatchItem(
                            status="would_reset",
                            usage_id=usage_id,
                            subscription_id=subscription_id,
                            feature_key=key,
                        )
                    )
                continue

            try:
                async with self._transaction():
                    reset_ids = await self.meter.reset_usage_rows(
                        [usage_id for usage_id, _, _ in targets], before=boundary, now=now
                    )
            except Exception as e:
                logger.exception(
                    "Failed to reset feature usage",
                    reset_period=reset_period.value,
                    rows=len(targets),
                )
                for usage_id, subscription_id, key in targets:
                    result.record(
                        BatchItem(
                            status="failed",
                            usage_id=usage_id,
                            subscription_id=subscription_id,
                            feature_key=key,
                            error=str(e),
                        )
                    )
                continue

            # Rows touched between the select and the update were already
            # reset lazily by their consumer
            for usage_id, subscription_id, key in targets:
                result.record(
                    BatchItem(
                        status="reset" if usage_id in reset_ids else "skipped",
                        usage_id=usage_id,
                        subscription_id=subscription_id,
                        feature_key=key,
                    )
                )
            logger.info(
                "Feature usage reset",
                reset_period=reset_period.value,
                selected=len(targets),
                reset=len(reset_ids),
            )

        self._audit_sweep(result)
        return result

    def _audit_sweep(self, result: BatchResult) -> None:
        if result.dry_run:
            return
        log_audit_event(
            action=f"subscription.sweep.{result.job}",
            category="system",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
        )

    # ==================== Reporting ====================

    async def get_health_status(self) -> dict[str, Any]:
        """
        Lifecycle health snapshot.

        ``healthy`` turns False when overdue expiries or renewals have been
        waiting longer than a day, which means the sweeps are not running.
        """
        now = utcnow()
        counts = await self.subscriptions.count_by_status()
        overdue = await self.subscriptions.count_overdue(now)
        due = await self.subscriptions.count_due_for_renewal(now)
        stale_overdue = await self.subscriptions.count_overdue(now - STALE_BACKLOG)
        stale_due = await self.subscriptions.count_due_for_renewal(now - STALE_BACKLOG)
        return {
            "healthy": stale_overdue == 0 and stale_due == 0,
            "checked_at": now.isoformat(),
            "active": counts[SubscriptionStatus.ACTIVE],
            "trial": counts[SubscriptionStatus.TRIAL],
            "overdue_for_expiry": overdue,
            "due_for_renewal": due,
        }

    async def get_subscription_statistics(self) -> dict[str, Any]:
        counts = await self.subscriptions.count_by_status()
        expiring = await self.subscriptions.get_expiring_within(self.config.ending_soon_days)
        return {
            "total": sum(counts.values()),
            "active": counts[SubscriptionStatus.ACTIVE] + counts[SubscriptionStatus.TRIAL],
            "by_status": {status.value: count for status, count in counts.items()},
            "by_plan": await self.subscriptions.count_by_plan(),
            "expiring_soon": len(expiring),
        }


__all__ = [
    "BatchItem",
    "BatchResult",
    "PlanChangeResult",
    "PlanChangeSummary",
    "SubscriptionService",
    "calculate_proration",
]
