"""OrganizationEntitlement model — effective limit and usage per feature."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from toolhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class OrganizationEntitlement(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Current limit/usage state for one (organization, feature) pair."""

    __tablename__ = "organization_entitlements"
    __table_args__ = (
        UniqueConstraint("organization_id", "feature_id", name="uq_org_entitlements_org_feature"),
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tool_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tools.id", ondelete="CASCADE"), nullable=False)
    feature_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("features.id", ondelete="CASCADE"), nullable=False)

    limit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    usage_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reset_period: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_reset_at: Mapped[datetime] = mapped_column(server_default=func.now())

    # Relationships
    feature: Mapped["Feature"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<OrganizationEntitlement(organization_id={self.organization_id}, feature_id={self.feature_id}, "
            f"usage={self.usage_amount}/{self.limit_amount})>"
        )
