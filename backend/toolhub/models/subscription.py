"""Subscription model — Stripe billing state per organization."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from toolhub.database import Base, SoftDeleteMixin, TimestampMixin, UUIDPrimaryKeyMixin
from toolhub.models.enums import SubscriptionStatus


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, SoftDeleteMixin, Base):
    """Links an organization to a plan OR a bundle through Stripe."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "stripe_subscription_id",
            "organization_id",
            name="uq_subscriptions_stripe_sub_org",
        ),
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # What is subscribed to: at most one of plan_id / bundle_id is set
    plan_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("plans.id"), nullable=True, index=True)
    bundle_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("bundles.id"), nullable=True)

    # Pending downgrade target, cleared whenever a webhook confirms actual state
    upcoming_plan_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("plans.id"), nullable=True)
    upcoming_bundle_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("bundles.id"), nullable=True)

    # Stripe identifiers (null for card-less local-only trials)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionStatus.INCOMPLETE.value, index=True
    )

    # Billing period & trial window
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    # Abuse detection & dunning
    card_fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_payment_failure_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    plan: Mapped["Plan | None"] = relationship(foreign_keys=[plan_id], lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    bundle: Mapped["Bundle | None"] = relationship(foreign_keys=[bundle_id], lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, organization_id={self.organization_id}, "
            f"plan_id={self.plan_id}, bundle_id={self.bundle_id}, status={self.status})>"
        )
