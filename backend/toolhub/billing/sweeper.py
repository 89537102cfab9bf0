"""Daily billing maintenance jobs: grace-period cancellation, usage resets, ledger pruning."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from redis.asyncio import Redis
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.ledger import WebhookLedger
from toolhub.billing.stripe_client import StripeGateway
from toolhub.config import settings
from toolhub.database import utcnow
from toolhub.models.enums import CancellationReason, SubscriptionStatus
from toolhub.models.subscription import Subscription
from toolhub.services.audit_service import AuditService
from toolhub.services.config_store import PAYMENT_GRACE_PERIOD_DAYS, SystemConfigStore

logger = logging.getLogger(__name__)

CRON_ACTOR = "system_cron"


class CronLock:
    """Cross-instance mutex for scheduled jobs (Redis ``SET NX EX``).

    The lock is never released explicitly; it expires after ``ttl`` seconds,
    which also stops a second instance from re-running a job that just finished.
    """

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def acquire(self, name: str, ttl: int) -> bool:
        acquired = await self.redis.set(f"cron:lock:{name}", "locked", nx=True, ex=ttl)
        return bool(acquired)


@dataclass
class SweepResult:
    skipped: bool = False
    grace_period_days: int | None = None
    cancelled: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)


class GracePeriodSweeper:
    """Cancels subscriptions whose payment has been failing for longer than the grace period."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        audit: AuditService,
        lock: CronLock,
        config_store: SystemConfigStore | None = None,
        provisioner: EntitlementProvisioner | None = None,
        ledger: WebhookLedger | None = None,
        lock_ttl: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.audit = audit
        self.lock = lock
        self.config_store = config_store or SystemConfigStore()
        self.provisioner = provisioner or EntitlementProvisioner()
        self.ledger = ledger or WebhookLedger()
        self.lock_ttl = lock_ttl or settings.cron_lock_ttl_seconds

    async def check_and_cancel_past_due_subscriptions(self, now: datetime | None = None) -> SweepResult:
        if not await self.lock.acquire("check_and_cancel_past_due_subscriptions", self.lock_ttl):
            logger.info("Past-due sweep is already running or ran recently, skipping")
            return SweepResult(skipped=True)

        now = now or utcnow()
        async with self.session_factory() as db:
            grace_days = await self.config_store.get_int(
                db, PAYMENT_GRACE_PERIOD_DAYS, settings.default_payment_grace_period_days
            )
            cutoff = now - timedelta(days=grace_days)
            logger.info(
                "Checking for subscriptions past due before %s (grace period: %d days)",
                cutoff.isoformat(),
                grace_days,
            )
            result = await db.execute(
                select(
                    Subscription.id,
                    Subscription.stripe_subscription_id,
                    Subscription.last_payment_failure_at,
                ).where(
                    Subscription.status == SubscriptionStatus.PAST_DUE.value,
                    Subscription.last_payment_failure_at.is_not(None),
                    Subscription.last_payment_failure_at < cutoff,
                    Subscription.deleted_at.is_(None),
                )
            )
            overdue = result.all()

        sweep = SweepResult(grace_period_days=grace_days)
        if not overdue:
            logger.info("No overdue subscriptions found")
            return sweep

        logger.info("Found %d overdue subscriptions to cancel", len(overdue))
        for row in overdue:
            try:
                await self._cancel_overdue(row.id, row.stripe_subscription_id, row.last_payment_failure_at, grace_days)
                sweep.cancelled.append(row.id)
            except Exception:
                logger.exception("Error cancelling overdue subscription %s", row.id)
                sweep.failed.append(row.id)

        logger.info(
            "Past-due sweep finished: %d cancelled, %d failed",
            len(sweep.cancelled),
            len(sweep.failed),
        )
        return sweep

    async def _cancel_overdue(
        self,
        subscription_id: uuid.UUID,
        stripe_subscription_id: str | None,
        last_payment_failure_at: datetime,
        grace_days: int,
    ) -> None:
        if stripe_subscription_id:
            try:
                await self.gateway.cancel_subscription_immediately(stripe_subscription_id)
            except Exception:
                # Local cancellation still revokes access
                logger.exception("Failed to cancel Stripe subscription %s", stripe_subscription_id)

        async with self.session_factory() as db:
            await db.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id)
                .values(
                    status=SubscriptionStatus.CANCELED.value,
                    cancellation_reason=CancellationReason.AUTO_CANCEL_PAST_DUE.value,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        await self.audit.log(
            action="AUTO_CANCEL_SUBSCRIPTION",
            entity_type="Subscription",
            entity_id=subscription_id,
            details={
                "actor": CRON_ACTOR,
                "reason": "Payment grace period exceeded",
                "gracePeriodDays": grace_days,
                "last_payment_failure": last_payment_failure_at.isoformat(),
                "stripe_subscription_id": stripe_subscription_id,
            },
        )
        logger.info("Cancelled overdue subscription %s", subscription_id)

    async def reset_entitlement_usage(self, now: datetime | None = None) -> int:
        if not await self.lock.acquire("reset_entitlement_usage", self.lock_ttl):
            logger.info("Entitlement reset is already running or ran recently, skipping")
            return 0

        now = now or utcnow()
        async with self.session_factory() as db:
            count = await self.provisioner.reset_usage(db, now)
            await db.commit()

        if count:
            await self.audit.log(
                action="ENTITLEMENTS_RESET",
                entity_type="System",
                entity_id="cron",
                details={"actor": CRON_ACTOR, "count": count},
            )
        return count

    async def prune_webhook_events(self, now: datetime | None = None) -> int:
        if not await self.lock.acquire("prune_webhook_events", self.lock_ttl):
            logger.info("Webhook ledger prune is already running or ran recently, skipping")
            return 0

        now = now or utcnow()
        cutoff = now - timedelta(days=settings.webhook_event_retention_days)
        async with self.session_factory() as db:
            count = await self.ledger.prune(db, cutoff)
            await db.commit()
        return count
