"""Stripe webhook processing: ledger bookkeeping around event handlers."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolhub.billing.events import BillingEvent, UnhandledEvent, parse_event
from toolhub.billing.ledger import WebhookLedger
from toolhub.billing.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, BillingEvent], Awaitable[None]]


class WebhookProcessor:
    """Runs a verified Stripe event through the ledger and the reconciler.

    The ledger row is committed before any handler runs, and the outcome
    (PROCESSED or FAILED) is committed after. A handler exception rolls back
    the handler's writes, leaves the event FAILED and is re-raised so the
    endpoint answers 500 and Stripe redelivers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: WebhookLedger,
        reconciler: SubscriptionReconciler,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.reconciler = reconciler

        # Map event types to handler coroutines
        self.event_handlers: dict[str, Handler] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_updated,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    async def process(self, event: Any) -> str:
        """Process one event (a ``stripe.Event`` or its dict form).

        Returns processed, ignored, already_processed or processing.
        """
        payload = parse_event(event)
        event_id = payload.event_id
        event_type = payload.event_type
        if not event_id:
            raise ValueError("Stripe event has no id")

        async with self.session_factory() as db:
            decision = await self.ledger.record_or_skip(db, event_id, event_type)
            await db.commit()
            if not decision.should_process:
                return decision.reason

            handler = None if isinstance(payload, UnhandledEvent) else self.event_handlers.get(event_type)
            logger.info("Processing webhook event: %s (id=%s)", event_type, event_id)
            try:
                if handler is None:
                    logger.info("Unhandled webhook event type: %s", event_type)
                else:
                    await handler(db, payload)
                await self.ledger.mark_processed(db, event_id)
                await db.commit()
            except Exception as exc:
                logger.exception("Error processing webhook event %s", event_id)
                await db.rollback()
                await self.ledger.mark_failed(db, event_id, str(exc) or exc.__class__.__name__)
                await db.commit()
                raise

        return "ignored" if handler is None else "processed"

    # --- Handlers ----------------------------------------------------------

    async def _handle_checkout_completed(self, db: AsyncSession, payload) -> None:
        await self.reconciler.sync_checkout_customer(db, payload)

    async def _handle_subscription_updated(self, db: AsyncSession, payload) -> None:
        await self.reconciler.reconcile(db, payload)

    async def _handle_subscription_deleted(self, db: AsyncSession, payload) -> None:
        await self.reconciler.mark_deleted(db, payload.id)

    async def _handle_invoice_paid(self, db: AsyncSession, payload) -> None:
        await self.reconciler.record_payment_succeeded(db, payload)

    async def _handle_invoice_payment_failed(self, db: AsyncSession, payload) -> None:
        await self.reconciler.record_payment_failed(db, payload)
