"""
Subscriber reference and the narrow service interfaces.

Host applications make any entity subscribable by exposing a stable type
tag and id. Code that needs subscription behaviour depends on the
smallest interface below instead of the whole service.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, field_validator

from subsphere.entitlements.enums import SubscriptionStatus
from subsphere.entitlements.models import Subscription


@runtime_checkable
class Subscribable(Protocol):
    """Anything that can own subscriptions."""

    @property
    def subscriber_type(self) -> str: ...  # pragma: no cover - protocol definition

    @property
    def subscriber_id(self) -> str: ...  # pragma: no cover - protocol definition


class SubscriberRef(BaseModel):
    """Explicit ``(type, id)`` reference to a subscriber."""

    model_config = ConfigDict(frozen=True)

    subscriber_type: str
    subscriber_id: str

    @field_validator("subscriber_id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("subscriber_type", "subscriber_id")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Subscriber reference fields cannot be blank")
        return value

    @classmethod
    def of(cls, subscriber: Subscribable) -> "SubscriberRef":
        if isinstance(subscriber, SubscriberRef):
            return subscriber
        return cls(
            subscriber_type=subscriber.subscriber_type,
            subscriber_id=subscriber.subscriber_id,
        )


SubscriptionLike = Subscription | int


class SubscriptionQueries(ABC):
    """Read-only subscription lookups for a subscriber."""

    @abstractmethod
    async def get_active_subscription(self, subscriber: Subscribable) -> Subscription | None:
        """Current ACTIVE or TRIAL subscription."""

    @abstractmethod
    async def get_subscriptions(
        self,
        subscriber: Subscribable,
        statuses: Sequence[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        """All subscriptions, newest first, optionally filtered by status."""

    @abstractmethod
    async def has_active_subscription(self, subscriber: Subscribable) -> bool:
        """Whether the subscriber has a usable subscription right now."""

    @abstractmethod
    async def has_any_subscription(self, subscriber: Subscribable) -> bool:
        """Whether the subscriber ever subscribed."""


class SubscriptionActions(ABC):
    """Lifecycle commands."""

    @abstractmethod
    async def subscribe(
        self,
        subscriber: Subscribable,
        plan_id: int,
        pricing_id: int,
        trial_days: int | None = None,
    ) -> Subscription:
        """Create a subscription."""

    @abstractmethod
    async def start_trial(
        self, subscriber: Subscribable, plan_id: int, trial_days: int | None = None
    ) -> Subscription:
        """Create a trial subscription."""

    @abstractmethod
    async def renew(self, subscription: SubscriptionLike, automatic: bool = False) -> Subscription:
        """Extend for another pricing period."""

    @abstractmethod
    async def cancel(self, subscription: SubscriptionLike) -> Subscription:
        """Cancel and open the grace window."""

    @abstractmethod
    async def resume(self, subscription: SubscriptionLike) -> Subscription:
        """Undo a cancellation within the valid period."""

    @abstractmethod
    async def expire(self, subscription: SubscriptionLike) -> Subscription:
        """Mark as expired."""

    @abstractmethod
    async def change_plan(
        self,
        subscriber: Subscribable,
        new_plan_id: int,
        new_pricing_id: int,
        reset_usage: bool | None = None,
    ) -> Any:
        """Replace the active subscription with one on another plan."""


class SubscriptionValidation(ABC):
    """Non-throwing eligibility checks."""

    @abstractmethod
    async def can_cancel(self, subscription: SubscriptionLike) -> bool:
        """Whether cancel() would succeed."""

    @abstractmethod
    async def can_resume(self, subscription: SubscriptionLike) -> bool:
        """Whether resume() would succeed."""

    @abstractmethod
    async def can_renew(self, subscription: SubscriptionLike) -> bool:
        """Whether renew() would succeed."""


class FeatureAccess(ABC):
    """Feature entitlement checks and metering for a subscriber."""

    @abstractmethod
    async def has_feature(self, subscriber: Subscribable, key: str) -> bool:
        """Whether the active plan defines the feature."""

    @abstractmethod
    async def get_feature_value(
        self, subscriber: Subscribable, key: str, locale: str | None = None
    ) -> Any:
        """Decoded feature value on the active plan."""

    @abstractmethod
    async def get_remaining_usage(self, subscriber: Subscribable, key: str) -> int | float | None:
        """Units left, None when not applicable."""

    @abstractmethod
    async def can_consume_feature(self, subscriber: Subscribable, key: str, amount: int = 1) -> bool:
        """Whether consume_feature() would succeed."""

    @abstractmethod
    async def consume_feature(self, subscriber: Subscribable, key: str, amount: int = 1) -> bool:
        """Record usage. False when exhausted or not subscribed."""
