"""Status and period enumerations for the entitlement model."""

import calendar
from datetime import datetime, timedelta
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def active_statuses(cls) -> tuple["SubscriptionStatus", ...]:
        """Statuses counted by the one-active-subscription-per-subscriber rule."""
        return (cls.ACTIVE, cls.TRIAL)

    @property
    def is_active_family(self) -> bool:
        return self in self.active_statuses()

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses are only left through an explicit resume or renew."""
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)

    def valid_transitions(self) -> frozenset["SubscriptionStatus"]:
        return _TRANSITIONS[self]

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset(
        {
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.EXPIRED,
        }
    ),
    SubscriptionStatus.TRIAL: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.INACTIVE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE}),
}


class FeatureResetPeriod(str, Enum):
    """How often a metered feature's usage counter starts over."""

    NEVER = "never"
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def automatic(cls) -> tuple["FeatureResetPeriod", ...]:
        """Periods handled by the scheduled reset sweep."""
        return (cls.DAILY, cls.MONTHLY, cls.YEARLY)

    def period_start(self, now: datetime) -> datetime | None:
        """Start of the calendar period containing ``now`` (None for NEVER)."""
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is FeatureResetPeriod.DAILY:
            return midnight
        if self is FeatureResetPeriod.MONTHLY:
            return midnight.replace(day=1)
        if self is FeatureResetPeriod.YEARLY:
            return midnight.replace(month=1, day=1)
        return None

    def next_reset_at(self, now: datetime) -> datetime | None:
        """Start of the calendar period following the one containing ``now``."""
        start = self.period_start(now)
        if start is None:
            return None
        if self is FeatureResetPeriod.DAILY:
            return start + timedelta(days=1)
        if self is FeatureResetPeriod.MONTHLY:
            days_in_month = calendar.monthrange(start.year, start.month)[1]
            return start + timedelta(days=days_in_month)
        return start.replace(year=start.year + 1)

    def has_elapsed(self, last_used_at: datetime | None, now: datetime) -> bool:
        """True when usage recorded at ``last_used_at`` belongs to an earlier period."""
        if last_used_at is None:
            return False
        start = self.period_start(now)
        if start is None:
            return False
        return last_used_at < start


class PlanChangeType(str, Enum):
    """Direction of a plan change, decided by comparing pricing prices."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"
