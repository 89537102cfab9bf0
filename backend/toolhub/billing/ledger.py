"""Webhook event ledger: idempotency and dead-letter record for Stripe events."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.database import insert_for
from toolhub.models.enums import WebhookEventStatus
from toolhub.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerDecision:
    should_process: bool
    record: WebhookEvent
    reason: str  # new, retry, already_processed, processing


class WebhookLedger:
    """Tracks every Stripe event id exactly once.

    ``record_or_skip`` decides whether the caller may run the handlers for an
    event. The caller is expected to commit right after, so concurrent
    deliveries of the same event see the PENDING row.
    """

    async def record_or_skip(self, db: AsyncSession, event_id: str, event_type: str) -> LedgerDecision:
        stmt = (
            insert_for(db, WebhookEvent)
            .values(
                stripe_event_id=event_id,
                type=event_type,
                status=WebhookEventStatus.PENDING.value,
            )
            .on_conflict_do_nothing(index_elements=[WebhookEvent.stripe_event_id])
            .returning(WebhookEvent.id)
        )
        inserted_id = (await db.execute(stmt)).scalar_one_or_none()
        record = await self._get(db, event_id)

        if inserted_id is not None:
            logger.info("Recorded new webhook event %s (%s)", event_id, event_type)
            return LedgerDecision(True, record, "new")

        if record.status == WebhookEventStatus.PROCESSED:
            logger.info("Webhook event %s already processed, skipping", event_id)
            return LedgerDecision(False, record, "already_processed")

        if record.status == WebhookEventStatus.PENDING:
            logger.warning("Webhook event %s is being processed by another request, skipping", event_id)
            return LedgerDecision(False, record, "processing")

        # FAILED: only the request that flips it back to PENDING retries
        result = await db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == record.id,
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
            )
            .values(status=WebhookEventStatus.PENDING.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        record = await self._get(db, event_id)
        if result.rowcount == 1:
            logger.info("Retrying previously failed webhook event %s", event_id)
            return LedgerDecision(True, record, "retry")

        logger.warning("Webhook event %s retry already claimed by another request, skipping", event_id)
        return LedgerDecision(False, record, "processing")

    async def mark_processed(self, db: AsyncSession, event_id: str) -> None:
        await self._set_status(db, event_id, WebhookEventStatus.PROCESSED, None)

    async def mark_failed(self, db: AsyncSession, event_id: str, message: str) -> None:
        logger.warning("Webhook event %s failed: %s", event_id, message)
        await self._set_status(db, event_id, WebhookEventStatus.FAILED, message or "Unknown error")

    async def prune(self, db: AsyncSession, older_than: datetime) -> int:
        """Delete PROCESSED events last touched before ``older_than``.

        FAILED and PENDING rows are kept as the dead-letter record.
        """
        result = await db.execute(
            delete(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.PROCESSED.value,
                WebhookEvent.updated_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("Pruned %d processed webhook events older than %s", result.rowcount, older_than)
        return result.rowcount

    async def _get(self, db: AsyncSession, event_id: str) -> WebhookEvent:
        result = await db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.stripe_event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _set_status(
        self,
        db: AsyncSession,
        event_id: str,
        status: WebhookEventStatus,
        error_message: str | None,
    ) -> None:
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.stripe_event_id == event_id)
            .values(status=status.value, error_message=error_message, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
