"""
Repositories for subscriptions and plans.

Thin query objects over an ``AsyncSession``. They never commit; the
service owns transaction boundaries.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from subsphere.db import utcnow
from subsphere.entitlements.enums import FeatureResetPeriod, SubscriptionStatus
from subsphere.entitlements.models import (
    Plan,
    PlanFeature,
    PlanPricing,
    Subscription,
    SubscriptionUsage,
)


class SubscriptionRepository:
    """Subscription and usage lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, subscription_id: int, for_update: bool = False) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_active_for_subscriber(
        self,
        subscriber_type: str,
        subscriber_id: str,
        for_update: bool = False,
    ) -> Subscription | None:
        """The subscriber's ACTIVE or TRIAL subscription, if any."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.subscriber_type == subscriber_type,
                Subscription.subscriber_id == subscriber_id,
                Subscription.status.in_(SubscriptionStatus.active_statuses()),
            )
            .order_by(Subscription.id.desc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def lock_subscriber(self, subscriber_type: str, subscriber_id: str) -> list[Subscription]:
        """Row-lock every subscription of a subscriber to serialise lifecycle changes."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.subscriber_type == subscriber_type,
                Subscription.subscriber_id == subscriber_id,
            )
            .with_for_update()
        )
        return list(result.scalars().all())

    async def list_for_subscriber(
        self,
        subscriber_type: str,
        subscriber_id: str,
        statuses: Sequence[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        stmt = select(Subscription).where(
            Subscription.subscriber_type == subscriber_type,
            Subscription.subscriber_id == subscriber_id,
        )
        if statuses:
            stmt = stmt.where(Subscription.status.in_(statuses))
        result = await self.session.execute(stmt.order_by(Subscription.id.desc()))
        return list(result.scalars().all())

    async def get_by_statuses(
        self, statuses: Sequence[SubscriptionStatus], limit: int | None = None
    ) -> list[Subscription]:
        stmt = select(Subscription).where(Subscription.status.in_(statuses)).order_by(Subscription.id)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_expiring_within(
        self, days: int, now: datetime | None = None
    ) -> list[Subscription]:
        """Active-family subscriptions whose paid period ends in the next ``days`` days."""
        now = now or utcnow()
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status.in_(SubscriptionStatus.active_statuses()),
                Subscription.ends_at.is_not(None),
                Subscription.ends_at > now,
                Subscription.ends_at <= now + timedelta(days=days),
            )
            .order_by(Subscription.ends_at)
        )
        return list(result.scalars().all())

    def _overdue_clause(self, now: datetime):
        return and_(
            Subscription.status.in_(SubscriptionStatus.active_statuses()),
            or_(
                and_(Subscription.grace_ends_at.is_not(None), Subscription.grace_ends_at <= now),
                and_(
                    Subscription.grace_ends_at.is_(None),
                    Subscription.ends_at.is_not(None),
                    Subscription.ends_at <= now,
                ),
            ),
        )

    async def get_overdue_for_expiry(
        self, now: datetime | None = None, limit: int | None = None
    ) -> list[Subscription]:
        """Active-family subscriptions past their grace window (or past ends_at without grace)."""
        stmt = (
            select(Subscription)
            .where(self._overdue_clause(now or utcnow()))
            .order_by(Subscription.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def _renewal_clause(self, now: datetime):
        return and_(
            Subscription.is_auto_renewal.is_(True),
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.ends_at.is_not(None),
            Subscription.ends_at <= now,
        )

    async def get_eligible_for_renewal(
        self, now: datetime | None = None, limit: int | None = None
    ) -> list[Subscription]:
        """Auto-renewing ACTIVE subscriptions whose paid period has ended."""
        stmt = (
            select(Subscription)
            .where(self._renewal_clause(now or utcnow()))
            .order_by(Subscription.ends_at, Subscription.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_usages_requiring_reset(
        self,
        period: FeatureResetPeriod,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[SubscriptionUsage]:
        """Usage rows of ``period`` features last touched before the current period began."""
        boundary = period.period_start(now or utcnow())
        if boundary is None:
            return []
        stmt = (
            select(SubscriptionUsage)
            .join(Subscription, Subscription.id == SubscriptionUsage.subscription_id)
            .join(
                PlanFeature,
                and_(
                    PlanFeature.plan_id == Subscription.plan_id,
                    PlanFeature.key == SubscriptionUsage.key,
                ),
            )
            .where(
                PlanFeature.reset_period == period,
                SubscriptionUsage.last_used_at.is_not(None),
                SubscriptionUsage.last_used_at < boundary,
            )
            .order_by(SubscriptionUsage.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_usages(self, subscription_id: int) -> list[SubscriptionUsage]:
        result = await self.session.execute(
            select(SubscriptionUsage)
            .where(SubscriptionUsage.subscription_id == subscription_id)
            .order_by(SubscriptionUsage.key)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def has_used_trial_for_plan(
        self, subscriber_type: str, subscriber_id: str, plan_id: int
    ) -> bool:
        result = await self.session.execute(
            select(func.count(Subscription.id)).where(
                Subscription.subscriber_type == subscriber_type,
                Subscription.subscriber_id == subscriber_id,
                Subscription.plan_id == plan_id,
                Subscription.trial_ends_at.is_not(None),
            )
        )
        return (result.scalar() or 0) > 0

    async def count_by_status(self) -> dict[SubscriptionStatus, int]:
        result = await self.session.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        )
        counts = {status: 0 for status in SubscriptionStatus}
        for status, count in result.all():
            counts[SubscriptionStatus(status)] = count
        return counts

    async def count_by_plan(self) -> dict[str, int]:
        """Active-family subscription counts keyed by plan slug."""
        result = await self.session.execute(
            select(Plan.slug, func.count(Subscription.id))
            .join(Plan, Plan.id == Subscription.plan_id)
            .where(Subscription.status.in_(SubscriptionStatus.active_statuses()))
            .group_by(Plan.slug)
        )
        return {slug: count for slug, count in result.all()}

    async def count_overdue(self, now: datetime | None = None) -> int:
        result = await self.session.execute(
            select(func.count(Subscription.id)).where(self._overdue_clause(now or utcnow()))
        )
        return result.scalar() or 0

    async def count_due_for_renewal(self, now: datetime | None = None) -> int:
        result = await self.session.execute(
            select(func.count(Subscription.id)).where(self._renewal_clause(now or utcnow()))
        )
        return result.scalar() or 0


class PlanRepository:
    """Read-only plan and pricing lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active_plans(self) -> list[Plan]:
        result = await self.session.execute(
            select(Plan)
            .where(Plan.is_active.is_(True), Plan.deleted_at.is_(None))
            .order_by(Plan.sort_order, Plan.id)
        )
        return list(result.scalars().all())

    async def get_plan(self, plan_id: int) -> Plan | None:
        """Plan with its pricings and features loaded, including soft-deleted plans."""
        result = await self.session.execute(select(Plan).where(Plan.id == plan_id))
        return result.scalar_one_or_none()

    async def get_pricing(self, pricing_id: int) -> PlanPricing | None:
        result = await self.session.execute(select(PlanPricing).where(PlanPricing.id == pricing_id))
        return result.scalar_one_or_none()

    async def get_pricing_for_plan(self, plan_id: int, pricing_id: int) -> PlanPricing | None:
        """Pricing only if it belongs to ``plan_id``."""
        result = await self.session.execute(
            select(PlanPricing).where(
                PlanPricing.id == pricing_id,
                PlanPricing.plan_id == plan_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_trial_pricing(self, plan_id: int) -> PlanPricing | None:
        """Deterministic pricing for trials: lowest price, then shortest duration, then id."""
        result = await self.session.execute(
            select(PlanPricing)
            .where(PlanPricing.plan_id == plan_id)
            .order_by(
                PlanPricing.price,
                func.coalesce(PlanPricing.duration_in_days, 0),
                PlanPricing.id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()
