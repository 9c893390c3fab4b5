"""
Shared fixtures for the subscription engine tests.

Every test gets a fresh in-memory SQLite database, its own event bus and
default settings.
"""

from collections.abc import Iterable
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from subsphere.db import Base
from subsphere.entitlements.enums import FeatureResetPeriod
from subsphere.entitlements.interfaces import SubscriberRef
from subsphere.entitlements.models import Plan, PlanFeature, PlanPrice, PlanPricing
from subsphere.entitlements.service import SubscriptionService
from subsphere.events import EventBus, reset_event_bus
from subsphere.settings import SubscriptionSettings, reset_settings


@pytest.fixture(autouse=True)
def isolated_globals():
    """Drop cached settings and the global event bus around each test."""
    reset_settings()
    reset_event_bus()
    yield
    reset_settings()
    reset_event_bus()


@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def async_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def subscription_settings() -> SubscriptionSettings:
    return SubscriptionSettings()


@pytest.fixture
def service(async_session, event_bus, subscription_settings) -> SubscriptionService:
    return SubscriptionService(async_session, config=subscription_settings, event_bus=event_bus)


@pytest.fixture
def subscriber() -> SubscriberRef:
    return SubscriberRef(subscriber_type="user", subscriber_id="42")


@pytest.fixture
def other_subscriber() -> SubscriberRef:
    return SubscriberRef(subscriber_type="team", subscriber_id="7")


@pytest.fixture
def make_plan(async_session):
    """
    Factory creating a committed plan.

    ``pricings`` is a sequence of ``(duration_in_days, price)``; ``features``
    maps a key to a value or to ``(value, FeatureResetPeriod)``.
    """

    async def _make_plan(
        slug: str = "basic",
        pricings: Iterable[tuple[int | None, str]] = ((30, "10.00"),),
        features: dict[str, Any] | None = None,
        is_active: bool = True,
        name: Any = None,
        prices: dict[str, str] | None = None,
    ) -> Plan:
        plan_features = []
        for key, definition in (features or {}).items():
            if isinstance(definition, tuple):
                value, period = definition
            else:
                value, period = definition, FeatureResetPeriod.NEVER
            plan_features.append(PlanFeature(key=key, name=key, value=value, reset_period=period))

        plan = Plan(
            slug=slug,
            name=name or slug.title(),
            is_active=is_active,
            pricings=[
                PlanPricing(
                    label=f"{days} days" if days else "Lifetime",
                    duration_in_days=days,
                    price=Decimal(price),
                    prices=[
                        PlanPrice(currency=code, amount=Decimal(amount))
                        for code, amount in (prices or {}).items()
                    ],
                )
                for days, price in pricings
            ],
            features=plan_features,
        )
        async_session.add(plan)
        await async_session.commit()
        return plan

    return _make_plan


@pytest.fixture
def recorded_events(event_bus) -> list:
    """Every event published on the test bus, in order."""
    events: list = []
    event_bus.subscribe("*", events.append)
    return events
