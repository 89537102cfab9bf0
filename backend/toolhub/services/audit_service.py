"""Audit log writer — best-effort, never fails the caller."""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolhub.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Writes AuditLog rows in a session of its own.

    A failed audit write is logged and swallowed, and because it never shares
    the caller's transaction it cannot roll back the caller's work either.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def log(
        self,
        action: str,
        entity_type: str,
        entity_id: str | uuid.UUID,
        details: dict[str, Any] | None = None,
        actor_id: uuid.UUID | None = None,
        ip_address: str | None = None,
    ) -> None:
        try:
            async with self.session_factory() as db:
                db.add(
                    AuditLog(
                        actor_id=actor_id,
                        action=action,
                        entity_type=entity_type,
                        entity_id=str(entity_id),
                        details=details,
                        ip_address=ip_address,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("Failed to write audit log %s for %s %s", action, entity_type, entity_id)
