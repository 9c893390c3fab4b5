"""Business rule checks run before any lifecycle write."""

import re

import structlog

from subsphere.entitlements.enums import PlanChangeType, SubscriptionStatus
from subsphere.entitlements.metering import numeric_limit, validate_amount
from subsphere.entitlements.models import Plan, PlanPricing, Subscription
from subsphere.entitlements.repositories import PlanRepository, SubscriptionRepository
from subsphere.exceptions import (
    AlreadySubscribedError,
    InvalidFeatureKeyError,
    InvalidTrialDurationError,
    PlanChangeNotAllowedError,
    PlanNotAvailableError,
    PlanNotFoundError,
    PricingNotFoundError,
    TrialNotAllowedError,
)
from subsphere.settings import LocaleSettings, SubscriptionSettings

logger = structlog.get_logger(__name__)

FEATURE_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def determine_change_type(old_pricing: PlanPricing, new_pricing: PlanPricing) -> PlanChangeType:
    """Compare base prices: more expensive is an upgrade, cheaper a downgrade."""
    if new_pricing.price > old_pricing.price:
        return PlanChangeType.UPGRADE
    if new_pricing.price < old_pricing.price:
        return PlanChangeType.DOWNGRADE
    return PlanChangeType.LATERAL


class SubscriptionValidator:
    """Raises a typed validation error for every rule a request breaks."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        plans: PlanRepository,
        config: SubscriptionSettings,
        locale: LocaleSettings,
    ) -> None:
        self.subscriptions = subscriptions
        self.plans = plans
        self.config = config
        self.locale = locale

    def validate_feature_key(self, key: str) -> None:
        if not isinstance(key, str) or not key.strip():
            raise InvalidFeatureKeyError("Feature key cannot be empty", feature_key=key)
        if not FEATURE_KEY_PATTERN.match(key):
            raise InvalidFeatureKeyError(
                f"Feature key {key!r} contains invalid characters", feature_key=key
            )

    def validate_amount(self, amount: int) -> None:
        validate_amount(amount)

    def validate_trial_duration(self, days: int) -> None:
        if not self.config.trial_min_days <= days <= self.config.trial_max_days:
            raise InvalidTrialDurationError(
                f"Trial duration of {days} days is outside the allowed range",
                days=days,
                min_days=self.config.trial_min_days,
                max_days=self.config.trial_max_days,
            )

    async def validate_trial_eligibility(
        self, subscriber_type: str, subscriber_id: str, plan_id: int
    ) -> None:
        if self.config.allow_multiple_trials_per_plan:
            return
        if await self.subscriptions.has_used_trial_for_plan(subscriber_type, subscriber_id, plan_id):
            raise TrialNotAllowedError(
                "Subscriber has already used a trial for this plan", plan_id=plan_id
            )

    async def get_available_plan(self, plan_id: int) -> Plan:
        """Load the plan and make sure it is open for new subscriptions."""
        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        self.validate_plan_availability(plan)
        return plan

    def validate_plan_availability(self, plan: Plan) -> None:
        if plan.is_deleted:
            raise PlanNotAvailableError(f"Plan {plan.slug} has been removed", plan_id=plan.id)
        if not plan.is_active:
            raise PlanNotAvailableError(f"Plan {plan.slug} is not active", plan_id=plan.id)

    async def get_pricing_for_plan(self, plan: Plan, pricing_id: int) -> PlanPricing:
        pricing = await self.plans.get_pricing_for_plan(plan.id, pricing_id)
        if pricing is None:
            raise PricingNotFoundError(
                f"Pricing {pricing_id} does not belong to plan {plan.slug}",
                plan_id=plan.id,
                pricing_id=pricing_id,
            )
        return pricing

    async def validate_no_active_subscription(self, subscriber_type: str, subscriber_id: str) -> None:
        existing = await self.subscriptions.get_active_for_subscriber(
            subscriber_type, subscriber_id, for_update=True
        )
        if existing is not None:
            raise AlreadySubscribedError(
                "Subscriber already has an active subscription",
                subscriber_type=subscriber_type,
                subscriber_id=subscriber_id,
            )

    async def validate_plan_change(
        self,
        current: Subscription,
        new_plan: Plan,
        new_pricing: PlanPricing,
        carry_usage: bool,
    ) -> PlanChangeType:
        """
        Check a plan change against policy and return its direction.

        Excess usage only matters when counters are carried over to the
        new subscription.
        """
        if current.plan_id == new_plan.id and current.plan_pricing_id == new_pricing.id:
            raise PlanChangeNotAllowedError(
                "Subscription is already on this plan and pricing", reason="same_plan"
            )

        if current.status is SubscriptionStatus.TRIAL and not self.config.allow_plan_change_during_trial:
            raise PlanChangeNotAllowedError(
                "Plan changes are not allowed during a trial", reason="trial"
            )

        change_type = determine_change_type(current.pricing, new_pricing)

        if change_type is PlanChangeType.DOWNGRADE and not self.config.allow_downgrades:
            raise PlanChangeNotAllowedError(
                "Downgrades are not allowed", reason="downgrade_disabled"
            )

        if (
            change_type is PlanChangeType.DOWNGRADE
            and carry_usage
            and self.config.prevent_downgrade_with_excess_usage
        ):
            await self._validate_usage_fits(current, new_plan)

        return change_type

    async def _validate_usage_fits(self, current: Subscription, new_plan: Plan) -> None:
        usages = await self.subscriptions.get_usages(current.id)
        for usage in usages:
            feature = new_plan.get_feature(usage.key)
            if feature is None:
                continue
            limit = numeric_limit(
                feature.get_value(self.locale.default_locale, self.locale.fallback_locale)
            )
            if limit is not None and usage.used > limit:
                logger.info(
                    "Downgrade rejected for excess usage",
                    subscription_id=current.id,
                    feature_key=usage.key,
                    used=usage.used,
                    limit=limit,
                )
                raise PlanChangeNotAllowedError(
                    f"Usage of {usage.key} ({usage.used}) exceeds the new plan limit ({limit})",
                    reason="excess_usage",
                    feature_key=usage.key,
                    used=usage.used,
                    limit=limit,
                )

