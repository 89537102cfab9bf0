"""Reconcile local subscription state with Stripe."""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing import catalog
from toolhub.billing.abuse import TrialAbuseDetector
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.errors import InvalidBillingOperationError
from toolhub.billing.events import CheckoutSessionPayload, InvoicePayload, SubscriptionPayload
from toolhub.billing.stripe_client import StripeGateway
from toolhub.database import insert_for, utcnow
from toolhub.models.enums import ENTITLED_STATUSES, PAYMENT_FAILED_STATUSES, SubscriptionStatus
from toolhub.models.organization import Organization
from toolhub.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Columns the upsert never overwrites on conflict
_UPSERT_KEYS = ("organization_id", "stripe_subscription_id")


class SubscriptionReconciler:
    """Applies Stripe subscription/invoice/checkout state to the local database.

    Every write is keyed by Stripe identifiers and is safe to repeat, so a
    redelivered or retried event converges on the same rows.
    """

    def __init__(
        self,
        gateway: StripeGateway,
        abuse_detector: TrialAbuseDetector,
        provisioner: EntitlementProvisioner,
    ) -> None:
        self.gateway = gateway
        self.abuse_detector = abuse_detector
        self.provisioner = provisioner

    async def reconcile(self, db: AsyncSession, payload: SubscriptionPayload) -> Subscription | None:
        """Upsert the local row for a subscription created/updated at Stripe."""
        if payload.organization_id is None:
            logger.info("Subscription %s carries no organization metadata, ignoring", payload.id)
            return None

        status = payload.local_status
        logger.info(
            "Reconciling subscription %s for org %s (status=%s)",
            payload.id,
            payload.organization_id,
            status.value,
        )

        resolution = await catalog.resolve_line_items(db, payload.price_ids)
        if not resolution.resolved:
            logger.warning(
                "Subscription %s prices %s match no plan or bundle; storing without one",
                payload.id,
                list(payload.price_ids),
            )

        fingerprint = None
        if status in ENTITLED_STATUSES and resolution.plan_id is not None:
            plan = await catalog.get_plan(db, resolution.plan_id)
            if plan is not None and plan.is_trial_plan:
                fingerprint = await self.abuse_detector.resolve_fingerprint(payload)

        values = {
            "organization_id": payload.organization_id,
            "stripe_subscription_id": payload.id,
            "plan_id": resolution.plan_id,
            "bundle_id": resolution.bundle_id,
            "status": status.value,
            "current_period_start": payload.current_period_start,
            "current_period_end": payload.current_period_end,
            "trial_start": payload.trial_start,
            "trial_end": payload.trial_end,
            "cancel_at_period_end": payload.cancel_at_period_end,
            "upcoming_plan_id": None,
            "upcoming_bundle_id": None,
        }
        if fingerprint:
            values["card_fingerprint"] = fingerprint
        if status != SubscriptionStatus.CANCELED:
            values["cancellation_reason"] = None

        stmt = insert_for(db, Subscription).values(**values)
        set_ = {key: stmt.excluded[key] for key in values if key not in _UPSERT_KEYS}
        set_["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.stripe_subscription_id, Subscription.organization_id],
            set_=set_,
        ).returning(Subscription)
        result = await db.execute(stmt, execution_options={"populate_existing": True})
        subscription = result.scalar_one()

        if fingerprint:
            await self.abuse_detector.check_and_enforce(
                db,
                subscription,
                payload.id,
                resolution.plan_id or subscription.plan_id,
                fingerprint,
            )

        if subscription.status in ENTITLED_STATUSES and resolution.resolved:
            await self.provisioner.provision_for_subscription(db, subscription)

        if (
            payload.auto_cancel_trial
            and status == SubscriptionStatus.TRIALING
            and not payload.cancel_at_period_end
            and subscription.status == SubscriptionStatus.TRIALING
        ):
            logger.info("Free trial %s will cancel at period end", payload.id)
            await self.gateway.cancel_subscription_at_period_end(payload.id)

        return subscription

    async def mark_deleted(self, db: AsyncSession, stripe_subscription_id: str) -> int:
        """Cancel every local row backed by a subscription Stripe deleted."""
        result = await db.execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .values(status=SubscriptionStatus.CANCELED.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Subscription %s deleted at Stripe; cancelled %d local row(s)", stripe_subscription_id, result.rowcount
        )
        return result.rowcount

    async def record_payment_failed(
        self,
        db: AsyncSession,
        invoice: InvoicePayload,
        now: datetime | None = None,
    ) -> int:
        """Move the invoice's subscription to PAST_DUE and start the grace clock."""
        if not invoice.subscription_id:
            logger.warning("No subscription id found on failed invoice %s", invoice.id)
            return 0

        result = await db.execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == invoice.subscription_id)
            .values(
                status=SubscriptionStatus.PAST_DUE.value,
                last_payment_failure_at=now or utcnow(),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Subscription %s not found for failed invoice %s",
                invoice.subscription_id,
                invoice.id,
            )
        else:
            logger.info("Subscription %s is past due after invoice %s failed", invoice.subscription_id, invoice.id)
        return result.rowcount

    async def record_payment_succeeded(self, db: AsyncSession, invoice: InvoicePayload) -> int:
        if not invoice.subscription_id:
            logger.info("Paid invoice %s has no subscription, nothing to do", invoice.id)
            return 0

        result = await db.execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == invoice.subscription_id)
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                last_payment_failure_at=None,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Subscription %s active after invoice %s paid", invoice.subscription_id, invoice.id)
        return result.rowcount

    async def sync_checkout_customer(self, db: AsyncSession, checkout: CheckoutSessionPayload) -> bool:
        """Point the organization at the Stripe customer that actually paid."""
        logger.info(
            "Checkout %s completed for org %s (subscription %s)",
            checkout.id,
            checkout.organization_id,
            checkout.subscription_id,
        )
        if checkout.organization_id is None or not checkout.customer_id:
            return False

        organization = await db.get(Organization, checkout.organization_id)
        if organization is None or organization.stripe_customer_id == checkout.customer_id:
            return False

        logger.info(
            "Syncing Stripe customer for org %s: %s -> %s",
            organization.id,
            organization.stripe_customer_id,
            checkout.customer_id,
        )
        organization.stripe_customer_id = checkout.customer_id
        await db.flush()
        return True

    async def sync_organization(self, db: AsyncSession, organization: Organization) -> int:
        """Pull every Stripe subscription of the org's customer and refresh matching rows.

        Returns the number of local subscriptions updated.
        """
        if not organization.stripe_customer_id:
            raise InvalidBillingOperationError("Organization is not linked to Stripe")

        logger.info("Manual billing sync for org %s (customer %s)", organization.id, organization.stripe_customer_id)
        stripe_subscriptions = await self.gateway.list_customer_subscriptions(organization.stripe_customer_id)

        updated = 0
        for stripe_sub in stripe_subscriptions:
            payload = SubscriptionPayload.from_stripe(stripe_sub)
            local = (
                await db.execute(
                    select(Subscription).where(
                        Subscription.stripe_subscription_id == payload.id,
                        Subscription.organization_id == organization.id,
                    )
                )
            ).scalar_one_or_none()
            if local is None:
                continue

            status = payload.local_status
            local.status = status.value
            local.current_period_start = payload.current_period_start
            local.current_period_end = payload.current_period_end
            local.cancel_at_period_end = payload.cancel_at_period_end
            if status not in PAYMENT_FAILED_STATUSES:
                local.last_payment_failure_at = None
            if status != SubscriptionStatus.CANCELED:
                local.cancellation_reason = None

            fingerprint = local.card_fingerprint
            if not fingerprint and status in ENTITLED_STATUSES:
                fingerprint = await self.abuse_detector.resolve_fingerprint(payload)
                if fingerprint:
                    local.card_fingerprint = fingerprint
            await db.flush()

            if fingerprint:
                await self.abuse_detector.check_and_enforce(db, local, payload.id, local.plan_id, fingerprint)
            updated += 1

        logger.info("Manual billing sync for org %s updated %d subscription(s)", organization.id, updated)
        return updated
