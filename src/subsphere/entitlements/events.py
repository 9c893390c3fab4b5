"""
Subscription lifecycle event types and emission helpers.

Every event carries the subscriber reference in its metadata and a
snapshot of the subscription in its payload, plus operation-specific
fields (change summary, automatic renewal flag, remaining usage, ...).
"""

from typing import TYPE_CHECKING, Any

import structlog

from subsphere.events import EventPriority, get_event_bus

if TYPE_CHECKING:
    from subsphere.entitlements.models import Subscription
    from subsphere.events import EventBus

logger = structlog.get_logger(__name__)

SOURCE = "subsphere"

# Sentinel for "no limit" in FeatureUsed payloads
UNLIMITED = -1


class SubscriptionEvents:
    """Lifecycle event type constants."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_STARTED = "subscription.started"
    TRIAL_STARTED = "subscription.trial_started"
    SUBSCRIPTION_CHANGED = "subscription.changed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_RENEWAL_FAILED = "subscription.renewal_failed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    FEATURE_USED = "feature.used"
    FEATURE_USAGE_RESET = "feature.usage_reset"


def subscription_snapshot(subscription: "Subscription") -> dict[str, Any]:
    """JSON-friendly copy of the subscription's lifecycle fields."""

    def iso(value: Any) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        "id": subscription.id,
        "subscriber_type": subscription.subscriber_type,
        "subscriber_id": subscription.subscriber_id,
        "plan_id": subscription.plan_id,
        "plan_pricing_id": subscription.plan_pricing_id,
        "status": subscription.status.value,
        "starts_at": iso(subscription.starts_at),
        "ends_at": iso(subscription.ends_at),
        "trial_ends_at": iso(subscription.trial_ends_at),
        "grace_ends_at": iso(subscription.grace_ends_at),
        "is_auto_renewal": subscription.is_auto_renewal,
    }


async def _publish(
    event_type: str,
    snapshot: dict[str, Any],
    event_bus: "EventBus | None",
    priority: EventPriority = EventPriority.NORMAL,
    **payload: Any,
) -> None:
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=event_type,
        payload={"subscription": snapshot, **payload},
        metadata={
            "source": SOURCE,
            "subscriber_type": snapshot["subscriber_type"],
            "subscriber_id": snapshot["subscriber_id"],
        },
        priority=priority,
    )

    logger.info(
        "Lifecycle event emitted",
        event_type=event_type,
        subscription_id=snapshot["id"],
    )


async def emit_subscription_created(
    snapshot: dict[str, Any],
    action: str,
    event_bus: "EventBus | None" = None,
    **details: Any,
) -> None:
    """
    Emit subscription created event.

    Args:
        snapshot: Subscription snapshot
        action: What created it (subscribe, trial, change_plan, duplicate)
        event_bus: Event bus instance (injected, optional - will use global if not provided)
        **details: Additional details
    """
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_CREATED,
        snapshot,
        event_bus,
        details={"action": action, **details},
    )


async def emit_subscription_started(
    snapshot: dict[str, Any], event_bus: "EventBus | None" = None
) -> None:
    await _publish(SubscriptionEvents.SUBSCRIPTION_STARTED, snapshot, event_bus)


async def emit_trial_started(
    snapshot: dict[str, Any], trial_days: int, event_bus: "EventBus | None" = None
) -> None:
    await _publish(
        SubscriptionEvents.TRIAL_STARTED,
        snapshot,
        event_bus,
        trial_days=trial_days,
        trial_ends_at=snapshot["trial_ends_at"],
    )


async def emit_subscription_changed(
    snapshot: dict[str, Any],
    previous: dict[str, Any],
    change_summary: dict[str, Any],
    event_bus: "EventBus | None" = None,
) -> None:
    """
    Emit subscription changed event.

    Args:
        snapshot: The new subscription
        previous: The replaced (now canceled) subscription
        change_summary: change_type, old/new plan and pricing ids, labels, prices
        event_bus: Event bus instance (injected, optional - will use global if not provided)
    """
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_CHANGED,
        snapshot,
        event_bus,
        EventPriority.HIGH,
        previous_subscription=previous,
        change_summary=change_summary,
    )


async def emit_subscription_canceled(
    snapshot: dict[str, Any], event_bus: "EventBus | None" = None
) -> None:
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_CANCELED,
        snapshot,
        event_bus,
        EventPriority.HIGH,
        grace_ends_at=snapshot["grace_ends_at"],
    )


async def emit_subscription_renewed(
    snapshot: dict[str, Any], automatic: bool, event_bus: "EventBus | None" = None
) -> None:
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_RENEWED,
        snapshot,
        event_bus,
        automatic=automatic,
    )


async def emit_subscription_renewal_failed(
    snapshot: dict[str, Any],
    reason: str,
    context: dict[str, Any] | None = None,
    event_bus: "EventBus | None" = None,
) -> None:
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_RENEWAL_FAILED,
        snapshot,
        event_bus,
        EventPriority.HIGH,
        reason=reason,
        context=context or {},
    )


async def emit_subscription_expired(
    snapshot: dict[str, Any], was_in_grace_period: bool, event_bus: "EventBus | None" = None
) -> None:
    await _publish(
        SubscriptionEvents.SUBSCRIPTION_EXPIRED,
        snapshot,
        event_bus,
        EventPriority.HIGH,
        was_in_grace_period=was_in_grace_period,
    )


async def emit_feature_used(
    snapshot: dict[str, Any],
    feature_key: str,
    amount: int,
    remaining: int | float | None,
    event_bus: "EventBus | None" = None,
) -> None:
    """Emit feature used event. ``remaining`` of None is sent as -1 (unlimited)."""
    await _publish(
        SubscriptionEvents.FEATURE_USED,
        snapshot,
        event_bus,
        feature_key=feature_key,
        amount=amount,
        remaining=UNLIMITED if remaining is None else remaining,
    )


async def emit_feature_usage_reset(
    snapshot: dict[str, Any],
    feature_key: str,
    old_used: int,
    new_used: int = 0,
    reason: str = "manual",
    event_bus: "EventBus | None" = None,
) -> None:
    await _publish(
        SubscriptionEvents.FEATURE_USAGE_RESET,
        snapshot,
        event_bus,
        feature_key=feature_key,
        old_used=old_used,
        new_used=new_used,
        reason=reason,
    )
