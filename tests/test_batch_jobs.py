"""
Tests for the lifecycle sweeps and reporting.

Every sweep takes an explicit reference time, so the tests move "now"
forward instead of ageing rows.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from subsphere.db import utcnow
from subsphere.entitlements.enums import FeatureResetPeriod, SubscriptionStatus
from subsphere.entitlements.events import SubscriptionEvents
from subsphere.entitlements.interfaces import SubscriberRef
from subsphere.entitlements.models import Plan, Subscription

pytestmark = pytest.mark.asyncio

DAY_ONE = datetime(2024, 3, 14, 10, 0, tzinfo=UTC)
DAY_TWO = datetime(2024, 3, 15, 9, 0, tzinfo=UTC)


def ref(n: int) -> SubscriberRef:
    return SubscriberRef(subscriber_type="user", subscriber_id=str(n))


async def set_fields(session, subscription_id: int, **values) -> None:
    await session.execute(
        update(Subscription).where(Subscription.id == subscription_id).values(**values)
    )
    await session.commit()


@pytest_asyncio.fixture
async def basic(make_plan):
    plan = await make_plan("basic")
    return plan.id, plan.pricings[0].id


@pytest_asyncio.fixture
async def metered(make_plan):
    """Lifetime plan with one counter per reset period."""
    plan = await make_plan(
        "metered",
        pricings=((None, "0.00"),),
        features={
            "calls": (10, FeatureResetPeriod.DAILY),
            "exports": (5, FeatureResetPeriod.MONTHLY),
            "reports": (5, FeatureResetPeriod.YEARLY),
            "seats": 3,
        },
    )
    return plan.id, plan.pricings[0].id


class TestExpireOverdue:
    """Expiring subscriptions whose grace window has ended."""

    async def test_expires_after_grace(self, service, basic, recorded_events):
        subscription = await service.subscribe(ref(1), *basic)
        subscription_id = subscription.id
        recorded_events.clear()

        result = await service.expire_overdue_subscriptions(now=utcnow() + timedelta(days=34))

        assert result.job == "expire_overdue"
        assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
        assert result.items[0].status == "expired"
        assert result.items[0].subscription_id == subscription_id
        current = await service.get_subscription_by_id(subscription_id)
        assert current.status is SubscriptionStatus.EXPIRED
        assert [event.event_type for event in recorded_events] == [
            SubscriptionEvents.SUBSCRIPTION_EXPIRED
        ]
        assert recorded_events[0].payload["was_in_grace_period"] is False

    async def test_grace_window_is_respected(self, service, basic):
        await service.subscribe(ref(1), *basic)

        result = await service.expire_overdue_subscriptions(now=utcnow() + timedelta(days=32))

        assert result.processed == 0

    async def test_lifetime_and_canceled_are_left_alone(self, service, basic, make_plan):
        lifetime = await make_plan("lifetime", pricings=((None, "99.00"),))
        await service.subscribe(ref(1), lifetime.id, lifetime.pricings[0].id)
        canceled = await service.subscribe(ref(2), *basic)
        await service.cancel(canceled)

        result = await service.expire_overdue_subscriptions(now=utcnow() + timedelta(days=400))

        assert result.processed == 0

    async def test_dry_run_changes_nothing(self, service, basic, recorded_events):
        subscription = await service.subscribe(ref(1), *basic)
        recorded_events.clear()

        result = await service.expire_overdue_subscriptions(
            dry_run=True, now=utcnow() + timedelta(days=34)
        )

        assert result.dry_run
        assert (result.processed, result.succeeded) == (1, 0)
        assert result.items[0].status == "would_expire"
        assert (await service.get_subscription_by_id(subscription.id)).status is (
            SubscriptionStatus.ACTIVE
        )
        assert recorded_events == []

    async def test_limit(self, service, basic):
        for n in range(3):
            await service.subscribe(ref(n), *basic)

        result = await service.expire_overdue_subscriptions(
            limit=2, now=utcnow() + timedelta(days=34)
        )

        assert result.processed == 2
        assert len(await service.subscriptions.get_overdue_for_expiry(utcnow() + timedelta(days=34))) == 1

    async def test_one_failure_does_not_stop_the_sweep(self, service, basic, monkeypatch):
        bad = await service.subscribe(ref(1), *basic)
        good = await service.subscribe(ref(2), *basic)
        bad_id, good_id = bad.id, good.id
        expire_locked = service._expire_locked

        async def flaky_expire(subscription, outbox, now):
            if subscription.id == bad_id:
                raise RuntimeError("row is corrupt")
            await expire_locked(subscription, outbox, now)

        monkeypatch.setattr(service, "_expire_locked", flaky_expire)

        result = await service.expire_overdue_subscriptions(now=utcnow() + timedelta(days=34))

        assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
        failed = next(item for item in result.items if item.status == "failed")
        assert failed.subscription_id == bad_id
        assert failed.error == "row is corrupt"
        assert (await service.get_subscription_by_id(bad_id)).status is SubscriptionStatus.ACTIVE
        assert (await service.get_subscription_by_id(good_id)).status is SubscriptionStatus.EXPIRED


class TestAutoRenew:
    """Renewing auto-renewing subscriptions whose period has ended."""

    async def test_renews_due_subscription(self, service, basic, recorded_events):
        subscription = await service.subscribe(ref(1), *basic)
        subscription_id = subscription.id
        now = subscription.ends_at + timedelta(hours=1)
        recorded_events.clear()

        result = await service.auto_renew_eligible_subscriptions(now=now)

        assert result.job == "auto_renew"
        assert [item.status for item in result.items] == ["renewed"]
        current = await service.get_subscription_by_id(subscription_id)
        assert current.status is SubscriptionStatus.ACTIVE
        assert current.ends_at == now + timedelta(days=30)
        assert [event.event_type for event in recorded_events] == [
            SubscriptionEvents.SUBSCRIPTION_RENEWED
        ]
        assert recorded_events[0].payload["automatic"] is True

    async def test_not_due_yet(self, service, basic):
        await service.subscribe(ref(1), *basic)

        result = await service.auto_renew_eligible_subscriptions(now=utcnow() + timedelta(days=29))

        assert result.processed == 0

    async def test_auto_renewal_disabled(self, service, basic, async_session):
        subscription = await service.subscribe(ref(1), *basic)
        await set_fields(async_session, subscription.id, is_auto_renewal=False)

        result = await service.auto_renew_eligible_subscriptions(now=utcnow() + timedelta(days=31))

        assert result.processed == 0

    async def test_dry_run(self, service, basic):
        subscription = await service.subscribe(ref(1), *basic)
        original_end = subscription.ends_at

        result = await service.auto_renew_eligible_subscriptions(
            dry_run=True, now=utcnow() + timedelta(days=31)
        )

        assert [item.status for item in result.items] == ["would_renew"]
        assert result.succeeded == 0
        assert (await service.get_subscription_by_id(subscription.id)).ends_at == original_end

    async def test_failed_renewal_is_reported(
        self, service, basic, async_session, recorded_events
    ):
        """A retired plan cannot be renewed; the sweep reports it and moves on."""
        plan_id, _ = basic
        subscription = await service.subscribe(ref(1), *basic)
        subscription_id = subscription.id
        await async_session.execute(update(Plan).where(Plan.id == plan_id).values(is_active=False))
        await async_session.commit()
        recorded_events.clear()

        result = await service.auto_renew_eligible_subscriptions(
            now=utcnow() + timedelta(days=31)
        )

        assert (result.processed, result.failed) == (1, 1)
        assert [event.event_type for event in recorded_events] == [
            SubscriptionEvents.SUBSCRIPTION_RENEWAL_FAILED
        ]
        payload = recorded_events[0].payload
        assert payload["subscription"]["id"] == subscription_id
        assert payload["context"]["error_code"] == "PLAN_NOT_AVAILABLE"
        assert "not active" in payload["reason"]
        current = await service.get_subscription_by_id(subscription_id)
        assert current.status is SubscriptionStatus.ACTIVE


class TestResetDueUsage:
    """Scheduled reset of periodic usage counters."""

    @pytest_asyncio.fixture
    async def usage(self, service, metered, async_session):
        """Every counter used once on DAY_ONE; returns the subscription."""
        subscription = await service.subscribe(ref(1), *metered)
        for key in ("calls", "exports", "reports", "seats"):
            await service.meter.consume_feature(subscription, key, 2, now=DAY_ONE)
        await async_session.commit()
        return subscription

    async def used(self, service, subscription, key: str) -> int:
        row = await service.meter.get_usage(subscription, key)
        return row.used

    async def test_resets_only_elapsed_periods(self, service, usage):
        result = await service.reset_due_usage(now=DAY_TWO)

        assert result.job == "reset_usage"
        assert [(item.feature_key, item.status) for item in result.items] == [("calls", "reset")]
        assert await self.used(service, usage, "calls") == 0
        assert await self.used(service, usage, "exports") == 2
        assert await self.used(service, usage, "seats") == 2

    async def test_all_periods_at_year_start(self, service, usage):
        result = await service.reset_due_usage(now=datetime(2025, 1, 1, 0, 5, tzinfo=UTC))

        assert sorted(item.feature_key for item in result.items) == ["calls", "exports", "reports"]
        assert result.succeeded == 3
        assert await self.used(service, usage, "seats") == 2

    @pytest.mark.parametrize("period", ["monthly", FeatureResetPeriod.MONTHLY])
    async def test_single_period(self, service, usage, period):
        result = await service.reset_due_usage(
            period=period, now=datetime(2024, 4, 2, tzinfo=UTC)
        )

        assert [item.feature_key for item in result.items] == ["exports"]
        assert await self.used(service, usage, "calls") == 2

    async def test_never_period_is_a_no_op(self, service, usage):
        result = await service.reset_due_usage(period="never", now=datetime(2030, 1, 1, tzinfo=UTC))

        assert result.processed == 0

    async def test_unknown_period(self, service):
        with pytest.raises(ValueError):
            await service.reset_due_usage(period="weekly")

    async def test_dry_run(self, service, usage):
        result = await service.reset_due_usage(dry_run=True, now=DAY_TWO)

        assert [item.status for item in result.items] == ["would_reset"]
        assert await self.used(service, usage, "calls") == 2

    async def test_row_consumed_after_selection_is_skipped(
        self, service, usage, metered, async_session, monkeypatch
    ):
        """A counter already reset by its consumer is not zeroed a second time."""
        second = await service.subscribe(ref(2), *metered)
        await service.meter.consume_feature(second, "calls", 3, now=DAY_ONE)
        await async_session.commit()
        first_id, second_id = usage.id, second.id
        select_rows = service.subscriptions.get_usages_requiring_reset

        async def select_then_consume(period, now, limit):
            rows = await select_rows(period, now, limit)
            await service.meter.consume_feature(usage, "calls", 1, now=DAY_TWO)
            await async_session.commit()
            return rows

        monkeypatch.setattr(service.subscriptions, "get_usages_requiring_reset", select_then_consume)

        result = await service.reset_due_usage(period="daily", now=DAY_TWO)

        assert {item.subscription_id: item.status for item in result.items} == {
            first_id: "skipped",
            second_id: "reset",
        }
        assert (result.succeeded, result.skipped) == (1, 1)
        assert await self.used(service, usage, "calls") == 1
        assert await self.used(service, second, "calls") == 0


class TestReporting:
    async def test_health_with_no_backlog(self, service, basic):
        await service.subscribe(ref(1), *basic)
        await service.start_trial(ref(2), basic[0])

        health = await service.get_health_status()

        assert health["healthy"] is True
        assert health["active"] == 1
        assert health["trial"] == 1
        assert health["overdue_for_expiry"] == 0
        assert health["due_for_renewal"] == 0

    async def test_recent_backlog_is_still_healthy(self, service, basic, async_session):
        subscription = await service.subscribe(ref(1), *basic)
        now = utcnow()
        await set_fields(
            async_session,
            subscription.id,
            ends_at=now - timedelta(hours=2),
            grace_ends_at=now + timedelta(days=2),
        )

        health = await service.get_health_status()

        assert health["healthy"] is True
        assert health["due_for_renewal"] == 1

    async def test_stale_backlog_is_unhealthy(self, service, basic, async_session):
        """Overdue rows older than a day mean the sweeps are not running."""
        subscription = await service.subscribe(ref(1), *basic)
        now = utcnow()
        await set_fields(
            async_session,
            subscription.id,
            ends_at=now - timedelta(days=10),
            grace_ends_at=now - timedelta(days=7),
        )

        health = await service.get_health_status()

        assert health["healthy"] is False
        assert health["overdue_for_expiry"] == 1

    async def test_statistics(self, service, basic, make_plan, async_session):
        other = await make_plan("other")
        soon = await service.subscribe(ref(1), *basic)
        await service.subscribe(ref(2), *basic)
        await service.start_trial(ref(3), other.id)
        ended = await service.subscribe(ref(4), *basic)
        await service.expire(ended)
        await set_fields(async_session, soon.id, ends_at=utcnow() + timedelta(days=3))

        stats = await service.get_subscription_statistics()

        assert stats["total"] == 4
        assert stats["active"] == 3
        assert stats["by_status"]["expired"] == 1
        assert stats["by_status"]["trial"] == 1
        assert stats["by_plan"] == {"basic": 2, "other": 1}
        assert stats["expiring_soon"] == 1
