"""Tool and Feature models — what a plan unlocks."""

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, true
from sqlalchemy.orm import Mapped, mapped_column

from toolhub.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Tool(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A product sold through one or more plans."""

    __tablename__ = "tools"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)  # e.g. image-generator
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    trial_days: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    def __repr__(self) -> str:
        return f"<Tool(id={self.id}, slug={self.slug!r}, trial_days={self.trial_days})>"


class Feature(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A metered or boolean capability of a tool."""

    __tablename__ = "features"

    tool_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)  # e.g. img_gen_count
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Feature(id={self.id}, slug={self.slug!r})>"
