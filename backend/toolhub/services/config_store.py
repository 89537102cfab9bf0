"""Read access to runtime-tunable SystemConfig values."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.models.system_config import SystemConfig

logger = logging.getLogger(__name__)

PAYMENT_GRACE_PERIOD_DAYS = "payment_grace_period_days"


class SystemConfigStore:
    async def get(self, db: AsyncSession, key: str) -> str | None:
        config = await db.get(SystemConfig, key)
        return config.value if config is not None else None

    async def get_int(self, db: AsyncSession, key: str, default: int) -> int:
        """Integer config value; ``default`` when missing or not a number."""
        raw = await self.get(db, key)
        if raw is None:
            return default
        try:
            return int(raw.strip())
        except ValueError:
            logger.warning("SystemConfig %s=%r is not an integer, using default %d", key, raw, default)
            return default
