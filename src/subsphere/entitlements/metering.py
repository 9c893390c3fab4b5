"""
Usage metering engine.

Tracks per-feature consumption for a subscription against the limit on
its plan. The check and the increment are a single conditional UPDATE, so
two callers racing on the same (subscription, feature) row cannot both
pass the limit check. Periodic resets happen lazily on the next
consumption and proactively through the scheduled sweep.
"""

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subsphere.db import utcnow
from subsphere.entitlements import state_machine
from subsphere.entitlements.enums import FeatureResetPeriod
from subsphere.entitlements.models import PlanFeature, Subscription, SubscriptionUsage
from subsphere.exceptions import DataIntegrityError, InvalidUsageAmountError
from subsphere.settings import LocaleSettings, get_settings

logger = structlog.get_logger(__name__)

Number = int | float


class ConsumptionResult(BaseModel):
    """Outcome of a consume call."""

    consumed: bool
    feature_key: str
    amount: int
    used: int = 0
    limit: Number | None = None
    remaining: Number | None = None
    was_reset: bool = False
    used_before_reset: int | None = None
    reason: str | None = None


class FeatureUsageSummary(BaseModel):
    """Usage snapshot for one plan feature."""

    key: str
    limit: Any = None
    used: int = 0
    remaining: Number | None = None
    exhausted: bool = False
    reset_period: FeatureResetPeriod = FeatureResetPeriod.NEVER
    last_used_at: datetime | None = None
    next_reset_at: datetime | None = None
    percentage_used: float | None = None


def numeric_limit(value: Any) -> Number | None:
    """Limit as a number, or None when unlimited or not a numeric feature."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _remaining(limit: Number | None, used: int) -> Number | None:
    if limit is None:
        return None
    return max(0, limit - used)


def validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidUsageAmountError("Usage amount must be a positive integer", amount=amount)


class UsageMeter:
    """Feature lookups, consumption and resets for subscriptions."""

    def __init__(self, session: AsyncSession, locale: LocaleSettings | None = None) -> None:
        self.session = session
        self.locale = locale or get_settings().locale

    # ========================================
    # Feature lookups
    # ========================================

    async def get_plan_feature(self, subscription: Subscription, key: str) -> PlanFeature | None:
        result = await self.session.execute(
            select(PlanFeature).where(
                PlanFeature.plan_id == subscription.plan_id,
                PlanFeature.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def has_feature(self, subscription: Subscription, key: str) -> bool:
        return await self.get_plan_feature(subscription, key) is not None

    def _resolve(self, feature: PlanFeature, locale: str | None = None) -> Any:
        return feature.get_value(locale or self.locale.default_locale, self.locale.fallback_locale)

    async def get_feature_value(
        self, subscription: Subscription, key: str, locale: str | None = None
    ) -> Any:
        """
        Decoded feature value for the subscription's plan.

        Returns None both for a missing feature and for an unlimited one;
        use ``has_feature`` to tell them apart.
        """
        feature = await self.get_plan_feature(subscription, key)
        if feature is None:
            return None
        return self._resolve(feature, locale)

    # ========================================
    # Usage rows
    # ========================================

    async def get_usage(self, subscription: Subscription, key: str) -> SubscriptionUsage | None:
        result = await self.session.execute(
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.subscription_id == subscription.id,
                SubscriptionUsage.key == key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_usage(self, subscription: Subscription, key: str) -> SubscriptionUsage:
        usage = await self.get_usage(subscription, key)
        if usage is not None:
            return usage

        # A concurrent caller may insert the same row; ignore the conflict
        # and read whichever row won.
        now = utcnow()
        values = {
            "subscription_id": subscription.id,
            "key": key,
            "used": 0,
            "created_at": now,
            "updated_at": now,
        }
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            stmt = pg_insert(SubscriptionUsage).values(**values).on_conflict_do_nothing()
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert

            stmt = sqlite_insert(SubscriptionUsage).values(**values).on_conflict_do_nothing()
        else:
            stmt = insert(SubscriptionUsage).values(**values)

        await self.session.execute(stmt)
        usage = await self.get_usage(subscription, key)
        if usage is None:
            raise DataIntegrityError(
                f"Usage row for {key!r} could not be created",
                subscription_id=subscription.id,
                feature_key=key,
            )
        return usage

    async def get_feature_usage(
        self, subscription: Subscription, key: str, now: datetime | None = None
    ) -> int:
        """Units consumed in the current period (0 when the period has rolled over)."""
        usage = await self.get_usage(subscription, key)
        if usage is None:
            return 0
        feature = await self.get_plan_feature(subscription, key)
        if feature is not None and feature.reset_period.has_elapsed(
            usage.last_used_at, now or utcnow()
        ):
            return 0
        return usage.used

    # ========================================
    # Limits
    # ========================================

    async def get_remaining_usage(
        self, subscription: Subscription, key: str, now: datetime | None = None
    ) -> Number | None:
        """Units left, or None for unlimited, non-numeric or missing features."""
        feature = await self.get_plan_feature(subscription, key)
        if feature is None:
            return None
        limit = numeric_limit(self._resolve(feature))
        if limit is None:
            return None
        return _remaining(limit, await self.get_feature_usage(subscription, key, now))

    async def is_feature_exhausted(
        self, subscription: Subscription, key: str, now: datetime | None = None
    ) -> bool:
        remaining = await self.get_remaining_usage(subscription, key, now)
        if remaining is None:
            return False
        return remaining <= 0

    async def can_consume_feature(
        self,
        subscription: Subscription,
        key: str,
        amount: int = 1,
        now: datetime | None = None,
    ) -> bool:
        validate_amount(amount)
        now = now or utcnow()
        if not await self.has_feature(subscription, key):
            return False
        if not state_machine.is_active(subscription, now):
            return False
        remaining = await self.get_remaining_usage(subscription, key, now)
        return remaining is None or remaining >= amount

    # ========================================
    # Consumption
    # ========================================

    async def consume_feature(
        self,
        subscription: Subscription,
        key: str,
        amount: int = 1,
        now: datetime | None = None,
    ) -> ConsumptionResult:
        """
        Record ``amount`` units of usage if the limit allows it.

        An elapsed reset period zeroes the counter first. Exhaustion, a
        missing feature or an inactive subscription come back as
        ``consumed=False``; only an invalid amount raises.
        """
        validate_amount(amount)
        now = now or utcnow()

        feature = await self.get_plan_feature(subscription, key)
        if feature is None:
            return ConsumptionResult(
                consumed=False, feature_key=key, amount=amount, reason="feature_not_found"
            )
        if not state_machine.is_active(subscription, now):
            return ConsumptionResult(
                consumed=False, feature_key=key, amount=amount, reason="subscription_inactive"
            )

        limit = numeric_limit(self._resolve(feature))
        usage = await self.get_or_create_usage(subscription, key)

        was_reset = False
        used_before_reset: int | None = None
        if feature.reset_period.has_elapsed(usage.last_used_at, now):
            used_before_reset = usage.used
            was_reset = await self._reset_if_before(usage, feature.reset_period, now)

        stmt = (
            update(SubscriptionUsage)
            .where(SubscriptionUsage.id == usage.id)
            .values(
                used=SubscriptionUsage.used + amount,
                last_used_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            stmt = stmt.where(SubscriptionUsage.used + amount <= limit)

        result = await self.session.execute(stmt)
        usage = await self.get_usage(subscription, key) or usage

        if result.rowcount == 0:
            logger.info(
                "Feature usage limit reached",
                subscription_id=subscription.id,
                feature_key=key,
                amount=amount,
                used=usage.used,
                limit=limit,
            )
            return ConsumptionResult(
                consumed=False,
                feature_key=key,
                amount=amount,
                used=usage.used,
                limit=limit,
                remaining=_remaining(limit, usage.used),
                was_reset=was_reset,
                used_before_reset=used_before_reset if was_reset else None,
                reason="limit_exceeded",
            )

        logger.debug(
            "Feature consumed",
            subscription_id=subscription.id,
            feature_key=key,
            amount=amount,
            used=usage.used,
        )
        return ConsumptionResult(
            consumed=True,
            feature_key=key,
            amount=amount,
            used=usage.used,
            limit=limit,
            remaining=_remaining(limit, usage.used),
            was_reset=was_reset,
            used_before_reset=used_before_reset if was_reset else None,
        )

    # ========================================
    # Resets
    # ========================================

    async def _reset_if_before(
        self, usage: SubscriptionUsage, period: FeatureResetPeriod, now: datetime
    ) -> bool:
        """Zero a row still stamped in an earlier period. Only one racer wins."""
        boundary = period.period_start(now)
        if boundary is None:
            return False
        result = await self.session.execute(
            update(SubscriptionUsage)
            .where(
                SubscriptionUsage.id == usage.id,
                SubscriptionUsage.last_used_at < boundary,
            )
            .values(used=0, last_used_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "Feature usage reset for new period",
                subscription_id=usage.subscription_id,
                feature_key=usage.key,
                reset_period=period.value,
            )
        return bool(result.rowcount)

    async def reset_feature_usage(self, subscription: Subscription, key: str) -> bool:
        """Zero one feature's counter. False when it was never used."""
        usage = await self.get_usage(subscription, key)
        if usage is None:
            return False
        usage.used = 0
        usage.last_used_at = None
        await self.session.flush()
        return True

    async def reset_all_usages(self, subscription: Subscription) -> int:
        """Zero every counter of the subscription. Returns the number of rows touched."""
        result = await self.session.execute(
            update(SubscriptionUsage)
            .where(SubscriptionUsage.subscription_id == subscription.id)
            .values(used=0, last_used_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def should_reset_feature_usage(
        self, subscription: Subscription, key: str, now: datetime | None = None
    ) -> bool:
        feature = await self.get_plan_feature(subscription, key)
        usage = await self.get_usage(subscription, key)
        if feature is None or usage is None:
            return False
        return feature.reset_period.has_elapsed(usage.last_used_at, now or utcnow())

    async def reset_feature_usage_if_expired(
        self, subscription: Subscription, key: str, now: datetime | None = None
    ) -> bool:
        now = now or utcnow()
        feature = await self.get_plan_feature(subscription, key)
        usage = await self.get_usage(subscription, key)
        if feature is None or usage is None:
            return False
        if not feature.reset_period.has_elapsed(usage.last_used_at, now):
            return False
        return await self._reset_if_before(usage, feature.reset_period, now)

    async def perform_scheduled_resets(
        self, subscription: Subscription, now: datetime | None = None
    ) -> list[str]:
        """Reset every counter of the subscription whose period has elapsed."""
        now = now or utcnow()
        reset_keys = []
        result = await self.session.execute(
            select(SubscriptionUsage).where(SubscriptionUsage.subscription_id == subscription.id)
        )
        for usage in result.scalars().all():
            if await self.reset_feature_usage_if_expired(subscription, usage.key, now):
                reset_keys.append(usage.key)
        return reset_keys

    async def reset_usage_rows(
        self,
        usage_ids: list[int],
        before: datetime,
        now: datetime | None = None,
    ) -> set[int]:
        """
        Bulk zero the given rows, skipping any touched since ``before``.

        Returns:
            Ids of the rows that were actually reset
        """
        if not usage_ids:
            return set()
        result = await self.session.execute(
            update(SubscriptionUsage)
            .where(
                SubscriptionUsage.id.in_(usage_ids),
                SubscriptionUsage.last_used_at < before,
            )
            .values(used=0, last_used_at=None, updated_at=now or utcnow())
            .returning(SubscriptionUsage.id)
            .execution_options(synchronize_session=False)
        )
        return set(result.scalars().all())

    # ========================================
    # Reporting
    # ========================================

    async def get_usage_summary(
        self,
        subscription: Subscription,
        locale: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, FeatureUsageSummary]:
        """Limit, usage and reset information for every feature of the plan."""
        now = now or utcnow()
        features = await self.session.execute(
            select(PlanFeature)
            .where(PlanFeature.plan_id == subscription.plan_id)
            .order_by(PlanFeature.key)
        )
        usages = await self.session.execute(
            select(SubscriptionUsage)
            .where(SubscriptionUsage.subscription_id == subscription.id)
            .execution_options(populate_existing=True)
        )
        usage_by_key = {usage.key: usage for usage in usages.scalars().all()}

        summary: dict[str, FeatureUsageSummary] = {}
        for feature in features.scalars().all():
            value = self._resolve(feature, locale)
            limit = numeric_limit(value)
            usage = usage_by_key.get(feature.key)
            used = 0
            last_used_at = None
            if usage is not None:
                last_used_at = usage.last_used_at
                if not feature.reset_period.has_elapsed(usage.last_used_at, now):
                    used = usage.used
            remaining = _remaining(limit, used)
            percentage = None
            if limit is not None and limit > 0:
                percentage = round(min(100.0, used / limit * 100), 2)
            summary[feature.key] = FeatureUsageSummary(
                key=feature.key,
                limit=value,
                used=used,
                remaining=remaining,
                exhausted=remaining is not None and remaining <= 0,
                reset_period=feature.reset_period,
                last_used_at=last_used_at,
                next_reset_at=feature.reset_period.next_reset_at(now),
                percentage_used=percentage,
            )
        return summary
