"""
Entitlement model: plans, pricings, features, subscriptions and usage.

Plans and their children are read models for the engine; subscriptions and
usage rows are the mutable lifecycle state.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subsphere.db import Base, SoftDeleteMixin, TimestampMixin, UTCDateTime
from subsphere.entitlements import flexible_value
from subsphere.entitlements.enums import FeatureResetPeriod, SubscriptionStatus


def _enum_column(enum_cls: type, length: int = 20) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
    )


def _localized(value: Any, locale: str, fallback_locale: str | None) -> Any:
    if value is None:
        return None
    return flexible_value.resolve_localized(flexible_value.encode(value), locale, fallback_locale)


class Plan(Base, TimestampMixin, SoftDeleteMixin):
    """A sellable tier."""

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    # Display text, either a plain string or {locale: text}
    name: Mapped[Any] = mapped_column(JSON, nullable=False)
    description: Mapped[Any | None] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    pricings: Mapped[list["PlanPricing"]] = relationship(
        back_populates="plan",
        order_by="PlanPricing.id",
        lazy="selectin",
    )
    features: Mapped[list["PlanFeature"]] = relationship(
        back_populates="plan",
        order_by="PlanFeature.id",
        lazy="selectin",
    )

    __table_args__ = (Index("ix_plans_active_sort", "is_active", "sort_order"),)

    @property
    def is_available(self) -> bool:
        """Open for new subscriptions."""
        return self.is_active and not self.is_deleted

    def get_name(self, locale: str, fallback_locale: str | None = None) -> Any:
        return _localized(self.name, locale, fallback_locale)

    def get_description(self, locale: str, fallback_locale: str | None = None) -> Any:
        return _localized(self.description, locale, fallback_locale)

    def get_feature(self, key: str) -> "PlanFeature | None":
        for feature in self.features:
            if feature.key == key:
                return feature
        return None

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, slug={self.slug!r})>"


class PlanPricing(Base, TimestampMixin):
    """One purchasable duration/price combination of a plan."""

    __tablename__ = "plan_pricings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[Any] = mapped_column(JSON, nullable=False)

    # 0 or NULL means lifetime
    duration_in_days: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    is_best_offer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    plan: Mapped[Plan] = relationship(back_populates="pricings", lazy="selectin")
    prices: Mapped[list["PlanPrice"]] = relationship(
        back_populates="pricing",
        order_by="PlanPrice.currency",
        lazy="selectin",
    )

    @property
    def is_lifetime(self) -> bool:
        return not self.duration_in_days

    def get_label(self, locale: str, fallback_locale: str | None = None) -> Any:
        return _localized(self.label, locale, fallback_locale)

    def get_price_in_currency(
        self,
        currency: str,
        default_currency: str | None = None,
        fallback_to_default: bool = True,
    ) -> Decimal | None:
        """
        Amount for ``currency``.

        Uses the matching PlanPrice row, then the base price when the
        currency is the default one or ``fallback_to_default`` is set.
        """
        code = currency.upper()
        for price in self.prices:
            if price.currency.upper() == code:
                return price.amount
        if default_currency and code == default_currency.upper():
            return self.price
        if fallback_to_default:
            return self.price
        return None

    def __repr__(self) -> str:
        return f"<PlanPricing(id={self.id}, plan_id={self.plan_id}, days={self.duration_in_days})>"


class PlanPrice(Base, TimestampMixin):
    """Currency-specific amount for a pricing."""

    __tablename__ = "plan_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_pricing_id: Mapped[int] = mapped_column(
        ForeignKey("plan_pricings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    pricing: Mapped[PlanPricing] = relationship(back_populates="prices")

    __table_args__ = (
        UniqueConstraint("plan_pricing_id", "currency", name="uq_plan_prices_pricing_currency"),
    )


class PlanFeature(Base, TimestampMixin):
    """
    A named entitlement attached to a plan.

    ``value`` holds the decoded native value; the column stores the tagged
    wire structure produced by the flexible value codec. ``key`` joins
    against SubscriptionUsage and must not change once referenced.
    """

    __tablename__ = "plan_features"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    description: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    wire_value: Mapped[Any | None] = mapped_column("value", JSON, nullable=True)
    reset_period: Mapped[FeatureResetPeriod] = mapped_column(
        _enum_column(FeatureResetPeriod),
        nullable=False,
        default=FeatureResetPeriod.NEVER,
    )

    plan: Mapped[Plan] = relationship(back_populates="features")

    __table_args__ = (UniqueConstraint("plan_id", "key", name="uq_plan_features_plan_key"),)

    @property
    def value(self) -> Any:
        """Decoded value. Translatable values come back as ``{locale: value}``."""
        return flexible_value.decode(self.wire_value)

    @value.setter
    def value(self, value: Any) -> None:
        self.wire_value = flexible_value.encode(value)

    @property
    def is_translatable(self) -> bool:
        return flexible_value.is_translatable_wire(self.wire_value)

    def get_value(self, locale: str, fallback_locale: str | None = None) -> Any:
        """Value for one locale (plain values ignore the locale)."""
        return flexible_value.resolve_localized(self.wire_value, locale, fallback_locale)

    def get_name(self, locale: str, fallback_locale: str | None = None) -> Any:
        return _localized(self.name, locale, fallback_locale)

    def __repr__(self) -> str:
        return f"<PlanFeature(plan_id={self.plan_id}, key={self.key!r})>"


class Subscription(Base, TimestampMixin):
    """
    A subscriber's subscription to one plan pricing.

    The subscriber is referenced by ``(subscriber_type, subscriber_id)`` so
    any host entity can own subscriptions. Rows are never deleted; EXPIRED
    and CANCELED rows stay as history.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String(255), nullable=False)

    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"), nullable=False, index=True)
    plan_pricing_id: Mapped[int] = mapped_column(
        ForeignKey("plan_pricings.id"), nullable=False, index=True
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )

    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    is_auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    plan: Mapped[Plan] = relationship(lazy="selectin")
    pricing: Mapped[PlanPricing] = relationship(lazy="selectin")
    usages: Mapped[list["SubscriptionUsage"]] = relationship(
        back_populates="subscription",
        order_by="SubscriptionUsage.key",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_subscriptions_subscriber", "subscriber_type", "subscriber_id"),
        Index("ix_subscriptions_status_ends", "status", "ends_at"),
        # At most one active-family subscription per subscriber
        Index(
            "uq_subscriptions_one_active_per_subscriber",
            "subscriber_type",
            "subscriber_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'trial')"),
            postgresql_where=text("status IN ('active', 'trial')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, subscriber={self.subscriber_type}:{self.subscriber_id}, "
            f"status={self.status.value if self.status else None})>"
        )


class SubscriptionUsage(Base, TimestampMixin):
    """Consumption counter for one feature key of one subscription."""

    __tablename__ = "subscription_usages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    subscription: Mapped[Subscription] = relationship(back_populates="usages")

    __table_args__ = (
        UniqueConstraint("subscription_id", "key", name="uq_subscription_usages_subscription_key"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionUsage(subscription_id={self.subscription_id}, key={self.key!r}, used={self.used})>"


__all__ = [
    "Plan",
    "PlanPricing",
    "PlanPrice",
    "PlanFeature",
    "Subscription",
    "SubscriptionUsage",
]
