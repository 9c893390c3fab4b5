"""
Plans, subscriptions and metered feature entitlements.

Provides:
- Plan catalogue models with localized, typed feature values
- Subscription lifecycle (trial, active, canceled, grace, expired)
- Per-feature usage metering with periodic resets
- SubscriptionService as the transactional entry point
"""

from subsphere.entitlements.enums import FeatureResetPeriod, PlanChangeType, SubscriptionStatus
from subsphere.entitlements.events import SubscriptionEvents
from subsphere.entitlements.interfaces import (
    FeatureAccess,
    Subscribable,
    SubscriberRef,
    SubscriptionActions,
    SubscriptionQueries,
    SubscriptionValidation,
)
from subsphere.entitlements.metering import ConsumptionResult, FeatureUsageSummary, UsageMeter
from subsphere.entitlements.models import (
    Plan,
    PlanFeature,
    PlanPrice,
    PlanPricing,
    Subscription,
    SubscriptionUsage,
)
from subsphere.entitlements.service import (
    BatchItem,
    BatchResult,
    PlanChangeResult,
    PlanChangeSummary,
    SubscriptionService,
)
from subsphere.entitlements.state_machine import SubscriptionStateMachine

__all__ = [
    # Enums
    "FeatureResetPeriod",
    "PlanChangeType",
    "SubscriptionStatus",
    # Models
    "Plan",
    "PlanFeature",
    "PlanPrice",
    "PlanPricing",
    "Subscription",
    "SubscriptionUsage",
    # Interfaces
    "FeatureAccess",
    "Subscribable",
    "SubscriberRef",
    "SubscriptionActions",
    "SubscriptionQueries",
    "SubscriptionValidation",
    # Engine
    "ConsumptionResult",
    "FeatureUsageSummary",
    "SubscriptionStateMachine",
    "UsageMeter",
    # Service
    "BatchItem",
    "BatchResult",
    "PlanChangeResult",
    "PlanChangeSummary",
    "SubscriptionEvents",
    "SubscriptionService",
]
