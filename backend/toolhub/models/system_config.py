"""SystemConfig model — runtime-tunable key/value settings."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from toolhub.database import Base, TimestampMixin


class SystemConfig(TimestampMixin, Base):
    """Admin-editable configuration, e.g. ``payment_grace_period_days``."""

    __tablename__ = "system_configs"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")  # payment, general, email

    def __repr__(self) -> str:
        return f"<SystemConfig(key={self.key!r}, value={self.value!r})>"
