"""
Entitlement engine exceptions.

Every error carries a machine-readable code, an HTTP-style status code,
structured context and a recovery hint so that host applications can
surface them without knowing the engine's internals.
"""

from typing import Any


class EntitlementError(Exception):
    """
    Base entitlement engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "ENTITLEMENT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(EntitlementError):
    """Input or business rule validation failed."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        recovery_hint: str | None = None,
    ):
        context: dict[str, Any] = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = value

        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint or "Check the input values and try again",
        )


class InvalidFeatureKeyError(ValidationError):
    """Feature key is empty or contains unsupported characters."""

    def __init__(self, message: str, feature_key: str | None = None) -> None:
        super().__init__(
            message,
            field="feature_key",
            value=feature_key,
            recovery_hint="Use letters, digits, underscores and dashes only",
        )
        self.error_code = "INVALID_FEATURE_KEY"


class InvalidUsageAmountError(ValidationError):
    """Consumption amount must be positive."""

    def __init__(self, message: str, amount: int | None = None) -> None:
        super().__init__(
            message,
            field="amount",
            value=amount,
            recovery_hint="Consume a positive whole number of units",
        )
        self.error_code = "INVALID_USAGE_AMOUNT"


class InvalidTrialDurationError(ValidationError):
    """Trial duration outside the configured bounds."""

    def __init__(self, message: str, days: int, min_days: int, max_days: int) -> None:
        super().__init__(
            message,
            field="trial_days",
            value=days,
            recovery_hint=f"Choose a trial length between {min_days} and {max_days} days",
        )
        self.context.update({"min_days": min_days, "max_days": max_days})
        self.error_code = "INVALID_TRIAL_DURATION"


class InvalidFeatureValueError(ValidationError):
    """A feature value cannot be represented by the flexible value codec."""

    def __init__(self, message: str, value_type: str | None = None) -> None:
        super().__init__(
            message,
            field="value",
            value=value_type,
            recovery_hint="Use int, float, bool, str, list, dict or None",
        )
        self.error_code = "INVALID_FEATURE_VALUE"


class PlanError(EntitlementError):
    """Plan-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PLAN_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class PlanNotFoundError(PlanError):
    """Plan not found error."""

    def __init__(self, message: str, plan_id: int | None = None) -> None:
        context = {"plan_id": plan_id} if plan_id is not None else {}
        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure the plan exists",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class PlanNotAvailableError(PlanError):
    """Plan exists but cannot be subscribed to (inactive or soft-deleted)."""

    def __init__(self, message: str, plan_id: int | None = None) -> None:
        context = {"plan_id": plan_id} if plan_id is not None else {}
        super().__init__(
            message,
            context=context,
            recovery_hint="Choose an active plan",
        )
        self.error_code = "PLAN_NOT_AVAILABLE"
        self.status_code = 409


class PricingNotFoundError(PlanError):
    """Pricing missing or not attached to the requested plan."""

    def __init__(
        self, message: str, plan_id: int | None = None, pricing_id: int | None = None
    ) -> None:
        context: dict[str, Any] = {}
        if plan_id is not None:
            context["plan_id"] = plan_id
        if pricing_id is not None:
            context["pricing_id"] = pricing_id
        super().__init__(
            message,
            context=context,
            recovery_hint="Use a pricing that belongs to the selected plan",
        )
        self.error_code = "PRICING_NOT_FOUND"
        self.status_code = 404


class SubscriptionError(EntitlementError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(
        self,
        message: str,
        subscription_id: int | None = None,
        subscriber_type: str | None = None,
        subscriber_id: str | None = None,
    ):
        context: dict[str, Any] = {}
        if subscription_id is not None:
            context["subscription_id"] = subscription_id
        if subscriber_type:
            context["subscriber_type"] = subscriber_type
        if subscriber_id:
            context["subscriber_id"] = subscriber_id
        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID or subscribe first",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class AlreadySubscribedError(SubscriptionError):
    """Subscriber already holds an active or trial subscription."""

    def __init__(self, message: str, subscriber_type: str, subscriber_id: str) -> None:
        super().__init__(
            message,
            context={"subscriber_type": subscriber_type, "subscriber_id": subscriber_id},
            recovery_hint="Cancel or change the existing subscription instead",
        )
        self.error_code = "ALREADY_SUBSCRIBED"
        self.status_code = 409


class TrialNotAllowedError(SubscriptionError):
    """Subscriber is not eligible for a trial of this plan."""

    def __init__(self, message: str, plan_id: int | None = None) -> None:
        super().__init__(
            message,
            context={"plan_id": plan_id} if plan_id is not None else {},
            recovery_hint="Subscribe to a paid pricing instead",
        )
        self.error_code = "TRIAL_NOT_ALLOWED"
        self.status_code = 409


class InvalidStateTransitionError(SubscriptionError):
    """Requested status change is not a legal edge of the state machine."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        requested_state: str | None = None,
        subscription_id: int | None = None,
    ):
        context: dict[str, Any] = {}
        if current_state:
            context["current_state"] = current_state
        if requested_state:
            context["requested_state"] = requested_state
        if subscription_id is not None:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            context=context,
            recovery_hint="Check the subscription status before requesting this change",
        )
        self.error_code = "INVALID_STATE_TRANSITION"
        self.status_code = 409


class PlanChangeNotAllowedError(SubscriptionError):
    """Plan change rejected by policy."""

    def __init__(self, message: str, reason: str, **context: Any) -> None:
        super().__init__(
            message,
            context={"reason": reason, **context},
            recovery_hint="Review the plan change policy or choose another plan",
        )
        self.error_code = "PLAN_CHANGE_NOT_ALLOWED"
        self.status_code = 409


class DataIntegrityError(EntitlementError):
    """Subscription dates violate lifecycle invariants."""

    def __init__(self, message: str, subscription_id: int | None = None, **context: Any) -> None:
        if subscription_id is not None:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            "DATA_INTEGRITY_ERROR",
            status_code=422,
            context=context,
            recovery_hint="Correct the subscription dates before saving",
        )


__all__ = [
    "EntitlementError",
    "ValidationError",
    "InvalidFeatureKeyError",
    "InvalidUsageAmountError",
    "InvalidTrialDurationError",
    "InvalidFeatureValueError",
    "PlanError",
    "PlanNotFoundError",
    "PlanNotAvailableError",
    "PricingNotFoundError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "AlreadySubscribedError",
    "TrialNotAllowedError",
    "InvalidStateTransitionError",
    "PlanChangeNotAllowedError",
    "DataIntegrityError",
]
