"""Plan, Bundle, BundlePlan and PlanLimit models — the priceable catalog."""

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint, false, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from toolhub.database import Base, SoftDeleteMixin, TimestampMixin, UUIDPrimaryKeyMixin
from toolhub.models.enums import FeatureResetPeriod, PriceInterval


class Plan(UUIDPrimaryKeyMixin, TimestampMixin, SoftDeleteMixin, Base):
    """A single priceable offering tied to one tool."""

    __tablename__ = "plans"

    tool_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[str] = mapped_column(String(50), nullable=False, default="basic")  # basic, premium, platinum, diamond
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units, e.g. 2900 = $29.00
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default=PriceInterval.MONTHLY.value)

    # Stripe identifiers
    stripe_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_price_id_monthly: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_price_id_yearly: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    is_trial_plan: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())

    # Relationships
    tool: Mapped["Tool"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    limits: Mapped[list["PlanLimit"]] = relationship(back_populates="plan", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name!r}, price={self.price}, trial={self.is_trial_plan})>"


class Bundle(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A priceable grouping of plans sold together."""

    __tablename__ = "bundles"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # overrides member plan prices
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default=PriceInterval.MONTHLY.value)

    stripe_price_id_monthly: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_price_id_yearly: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())

    def __repr__(self) -> str:
        return f"<Bundle(id={self.id}, slug={self.slug!r}, price={self.price})>"


class BundlePlan(TimestampMixin, Base):
    """Join table: which plans a bundle contains."""

    __tablename__ = "bundle_plans"

    bundle_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bundles.id", ondelete="CASCADE"),
        primary_key=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"),
        primary_key=True,
    )


class PlanLimit(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Default limit and reset cadence of one feature within one plan."""

    __tablename__ = "plan_limits"
    __table_args__ = (UniqueConstraint("plan_id", "feature_id", name="uq_plan_limits_plan_feature"),)

    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False,
    )
    default_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    reset_period: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FeatureResetPeriod.MONTHLY.value
    )

    # Relationships
    plan: Mapped["Plan"] = relationship(back_populates="limits")
    feature: Mapped["Feature"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<PlanLimit(plan_id={self.plan_id}, feature_id={self.feature_id}, default_limit={self.default_limit})>"
