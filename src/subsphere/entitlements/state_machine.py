"""
Subscription lifecycle state machine.

Predicates derive usability from the stored status and the three time
windows (trial, paid period, grace). Transitions validate the requested
edge, mutate the subscription in place and raise
``InvalidStateTransitionError`` on illegal requests. Nothing here touches
the database; callers persist the result.

The grace window is derived from ``grace_ends_at`` rather than being a
status of its own: a subscription whose ``ends_at`` has passed but whose
``grace_ends_at`` has not is still usable.
"""

from datetime import datetime, timedelta
from typing import Protocol

import structlog

from subsphere.db import utcnow
from subsphere.entitlements.enums import SubscriptionStatus
from subsphere.exceptions import DataIntegrityError, InvalidStateTransitionError

logger = structlog.get_logger(__name__)


class Lifecycle(Protocol):
    """Fields the state machine reads and writes."""

    id: int
    status: SubscriptionStatus
    starts_at: datetime
    ends_at: datetime | None
    trial_ends_at: datetime | None
    grace_ends_at: datetime | None
    is_auto_renewal: bool


# ============================================================================
# Predicates
# ============================================================================


def is_lifetime(subscription: Lifecycle) -> bool:
    return subscription.ends_at is None


def is_in_grace_period(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Paid period is over (or absent) but the grace window is still open."""
    now = now or utcnow()
    if subscription.grace_ends_at is None or subscription.grace_ends_at < now:
        return False
    return subscription.ends_at is None or subscription.ends_at < now


def has_valid_period(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Lifetime, inside the paid period, or inside the grace window."""
    now = now or utcnow()
    if subscription.ends_at is None:
        return True
    if is_in_grace_period(subscription, now):
        return True
    return subscription.ends_at > now


def is_active(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Usable right now: active-family status and a valid period."""
    return subscription.status.is_active_family and has_valid_period(subscription, now)


def is_on_trial(subscription: Lifecycle, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return (
        subscription.status is SubscriptionStatus.TRIAL
        and subscription.trial_ends_at is not None
        and subscription.trial_ends_at > now
    )


def is_ending_soon(
    subscription: Lifecycle, threshold_days: int = 7, now: datetime | None = None
) -> bool:
    """``ends_at`` falls within the next ``threshold_days`` whole days."""
    if subscription.ends_at is None:
        return False
    now = now or utcnow()
    remaining = subscription.ends_at - now
    if remaining < timedelta(0):
        return False
    return remaining.days <= threshold_days


def is_overdue(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Active-family subscription whose grace (or, without grace, paid period) has ended."""
    now = now or utcnow()
    if not subscription.status.is_active_family:
        return False
    if subscription.grace_ends_at is not None:
        return subscription.grace_ends_at <= now
    return subscription.ends_at is not None and subscription.ends_at <= now


def days_remaining(subscription: Lifecycle, now: datetime | None = None) -> int | None:
    """Whole days left, counting the grace window when inside it. None for lifetime."""
    if subscription.ends_at is None:
        return None
    now = now or utcnow()
    end = subscription.ends_at
    if is_in_grace_period(subscription, now) and subscription.grace_ends_at is not None:
        end = subscription.grace_ends_at
    return max(0, (end - now).days)


def trial_days_remaining(subscription: Lifecycle, now: datetime | None = None) -> int | None:
    now = now or utcnow()
    if not is_on_trial(subscription, now) or subscription.trial_ends_at is None:
        return None
    return max(0, (subscription.trial_ends_at - now).days)


def should_auto_renew(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Flagged for auto-renewal, ACTIVE, and the paid period has ended."""
    now = now or utcnow()
    return (
        subscription.is_auto_renewal
        and subscription.status is SubscriptionStatus.ACTIVE
        and subscription.ends_at is not None
        and subscription.ends_at <= now
    )


def can_renew(subscription: Lifecycle) -> bool:
    return subscription.status in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.INACTIVE,
    )


def can_cancel(subscription: Lifecycle) -> bool:
    return subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


def can_resume(subscription: Lifecycle, now: datetime | None = None) -> bool:
    return subscription.status is SubscriptionStatus.CANCELED and has_valid_period(
        subscription, now
    )


def can_expire(subscription: Lifecycle, now: datetime | None = None) -> bool:
    """Anything but CANCELED/EXPIRED, and lifetime subscriptions only from inside grace."""
    if subscription.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
        return False
    if subscription.ends_at is None:
        return is_in_grace_period(subscription, now)
    return True


def validate_state(subscription: Lifecycle, now: datetime | None = None) -> None:
    """
    Check the date invariants of a subscription.

    Raises:
        DataIntegrityError: If starts_at is after ends_at, a TRIAL has no
            future trial end, or grace ends before the paid period.
    """
    now = now or utcnow()
    subscription_id = getattr(subscription, "id", None)

    if subscription.ends_at is not None and subscription.starts_at > subscription.ends_at:
        raise DataIntegrityError(
            "Subscription start date is after its end date",
            subscription_id=subscription_id,
            starts_at=subscription.starts_at.isoformat(),
            ends_at=subscription.ends_at.isoformat(),
        )

    if subscription.status is SubscriptionStatus.TRIAL and (
        subscription.trial_ends_at is None or subscription.trial_ends_at <= now
    ):
        raise DataIntegrityError(
            "Trial subscription must have a trial end date in the future",
            subscription_id=subscription_id,
        )

    if (
        subscription.grace_ends_at is not None
        and subscription.ends_at is not None
        and subscription.grace_ends_at < subscription.ends_at
    ):
        raise DataIntegrityError(
            "Grace period cannot end before the subscription period",
            subscription_id=subscription_id,
        )


# ============================================================================
# Transitions
# ============================================================================


class SubscriptionStateMachine:
    """Applies legal status transitions to a subscription."""

    def __init__(self, grace_period_days: int = 3) -> None:
        if grace_period_days < 0:
            raise ValueError("grace_period_days must be >= 0")
        self.grace_period_days = grace_period_days

    def grace_end_for(self, ends_at: datetime | None) -> datetime | None:
        """Grace window end for a paid period ending at ``ends_at`` (None for lifetime)."""
        if ends_at is None:
            return None
        return ends_at + timedelta(days=self.grace_period_days)

    def _reject(self, subscription: Lifecycle, requested: SubscriptionStatus, reason: str) -> None:
        raise InvalidStateTransitionError(
            f"Cannot move subscription from {subscription.status.value} to "
            f"{requested.value}: {reason}",
            current_state=subscription.status.value,
            requested_state=requested.value,
            subscription_id=getattr(subscription, "id", None),
        )

    def _move(self, subscription: Lifecycle, target: SubscriptionStatus) -> None:
        previous = subscription.status
        if not previous.can_transition_to(target):
            self._reject(subscription, target, "transition not allowed")
        subscription.status = target
        logger.debug(
            "Subscription status changed",
            subscription_id=getattr(subscription, "id", None),
            from_status=previous.value,
            to_status=target.value,
        )

    def activate(self, subscription: Lifecycle, now: datetime | None = None) -> bool:
        """
        Move to ACTIVE.

        Returns False without touching the subscription when it is already
        ACTIVE. Activating a CANCELED subscription follows the resume rule.
        """
        if subscription.status is SubscriptionStatus.ACTIVE:
            return False
        if subscription.status is SubscriptionStatus.CANCELED and not has_valid_period(
            subscription, now
        ):
            self._reject(subscription, SubscriptionStatus.ACTIVE, "paid period has lapsed")
        self._move(subscription, SubscriptionStatus.ACTIVE)
        return True

    def cancel(
        self,
        subscription: Lifecycle,
        start_grace: bool = True,
        now: datetime | None = None,
    ) -> None:
        """ACTIVE|TRIAL -> CANCELED, opening the grace window unless told not to."""
        if not can_cancel(subscription):
            self._reject(
                subscription, SubscriptionStatus.CANCELED, "only active or trial can be canceled"
            )
        self._move(subscription, SubscriptionStatus.CANCELED)
        subscription.grace_ends_at = (
            self.grace_end_for(subscription.ends_at) if start_grace else None
        )

    def resume(self, subscription: Lifecycle, now: datetime | None = None) -> None:
        """CANCELED -> ACTIVE while the paid period or grace window is still valid."""
        if subscription.status is not SubscriptionStatus.CANCELED:
            self._reject(subscription, SubscriptionStatus.ACTIVE, "only canceled can be resumed")
        if not has_valid_period(subscription, now):
            self._reject(subscription, SubscriptionStatus.ACTIVE, "paid period has lapsed")
        self._move(subscription, SubscriptionStatus.ACTIVE)
        subscription.grace_ends_at = None

    def extend(self, subscription: Lifecycle, days: int, now: datetime | None = None) -> None:
        """Push ``ends_at`` forward, continuing from it while it is still in the future."""
        now = now or utcnow()
        if subscription.ends_at is not None and subscription.ends_at > now:
            subscription.ends_at = subscription.ends_at + timedelta(days=days)
        else:
            subscription.ends_at = now + timedelta(days=days)

    def renew(
        self,
        subscription: Lifecycle,
        duration_days: int | None,
        now: datetime | None = None,
    ) -> None:
        """
        ACTIVE|EXPIRED|INACTIVE -> ACTIVE for another pricing period.

        A zero or missing duration turns the subscription into a lifetime one.
        """
        if not can_renew(subscription):
            self._reject(
                subscription,
                SubscriptionStatus.ACTIVE,
                "only active, expired or inactive can be renewed",
            )
        now = now or utcnow()
        if duration_days:
            self.extend(subscription, duration_days, now)
        else:
            subscription.ends_at = None
        if subscription.status is not SubscriptionStatus.ACTIVE:
            self._move(subscription, SubscriptionStatus.ACTIVE)
        subscription.grace_ends_at = self.grace_end_for(subscription.ends_at)

    def expire(self, subscription: Lifecycle, now: datetime | None = None) -> None:
        """Force EXPIRED. Not from CANCELED, and lifetime only from inside grace."""
        if subscription.status is SubscriptionStatus.CANCELED:
            self._reject(subscription, SubscriptionStatus.EXPIRED, "resume before expiring")
        if subscription.status is SubscriptionStatus.EXPIRED:
            self._reject(subscription, SubscriptionStatus.EXPIRED, "already expired")
        if not can_expire(subscription, now):
            self._reject(subscription, SubscriptionStatus.EXPIRED, "lifetime subscription")
        self._move(subscription, SubscriptionStatus.EXPIRED)

    def deactivate(self, subscription: Lifecycle) -> None:
        """ACTIVE -> INACTIVE (suspension without ending the paid period)."""
        if subscription.status is not SubscriptionStatus.ACTIVE:
            self._reject(subscription, SubscriptionStatus.INACTIVE, "only active can be suspended")
        self._move(subscription, SubscriptionStatus.INACTIVE)
