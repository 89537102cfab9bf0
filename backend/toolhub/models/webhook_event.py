"""WebhookEvent model — idempotency ledger for inbound Stripe events."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from toolhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from toolhub.models.enums import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per Stripe event ID, ever."""

    __tablename__ = "webhook_events"

    # UNIQUE is the sole concurrency guard for idempotent processing
    stripe_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.PENDING.value, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent(stripe_event_id={self.stripe_event_id!r}, type={self.type!r}, status={self.status})>"
