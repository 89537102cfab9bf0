"""APScheduler wiring for the daily billing jobs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from redis.asyncio import Redis

from toolhub.billing.stripe_client import get_stripe_gateway
from toolhub.billing.sweeper import CronLock, GracePeriodSweeper
from toolhub.config import settings
from toolhub.database import async_session_factory
from toolhub.services.audit_service import AuditService

logger = logging.getLogger(__name__)


def build_sweeper(redis: Redis) -> GracePeriodSweeper:
    """Sweeper wired to the process-wide session factory and Stripe gateway."""
    return GracePeriodSweeper(
        session_factory=async_session_factory,
        gateway=get_stripe_gateway(),
        audit=AuditService(async_session_factory),
        lock=CronLock(redis),
    )


def build_scheduler(sweeper: GracePeriodSweeper) -> AsyncIOScheduler:
    """Create (but do not start) the scheduler with the billing jobs registered."""
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    # Past-due cancellation daily at 00:00
    scheduler.add_job(
        sweeper.check_and_cancel_past_due_subscriptions,
        CronTrigger(hour=0, minute=0, timezone=settings.scheduler_timezone),
        id="check_and_cancel_past_due_subscriptions",
        name="Cancel subscriptions past the payment grace period",
        replace_existing=True,
    )

    # Entitlement usage reset daily at 01:00
    scheduler.add_job(
        sweeper.reset_entitlement_usage,
        CronTrigger(hour=1, minute=0, timezone=settings.scheduler_timezone),
        id="reset_entitlement_usage",
        name="Reset monthly/yearly entitlement usage",
        replace_existing=True,
    )

    # Webhook ledger pruning daily at 02:00
    scheduler.add_job(
        sweeper.prune_webhook_events,
        CronTrigger(hour=2, minute=0, timezone=settings.scheduler_timezone),
        id="prune_webhook_events",
        name="Prune processed webhook events",
        replace_existing=True,
    )

    logger.info("Billing jobs scheduled: %s", ", ".join(job.id for job in scheduler.get_jobs()))
    return scheduler
