"""Trial-abuse detection by payment-card fingerprint."""

import logging
import uuid

import stripe
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing import catalog
from toolhub.billing.events import SubscriptionPayload, as_dict, dig, id_of
from toolhub.billing.stripe_client import StripeGateway
from toolhub.models.enums import ENTITLED_STATUSES, CancellationReason, SubscriptionStatus
from toolhub.models.organization import OrganizationMember
from toolhub.models.plan import Plan
from toolhub.models.subscription import Subscription

logger = logging.getLogger(__name__)


class TrialAbuseDetector:
    """Blocks a second trial of the same tool paid for with the same card."""

    def __init__(self, gateway: StripeGateway) -> None:
        self.gateway = gateway

    async def resolve_fingerprint(self, payload: SubscriptionPayload) -> str | None:
        """Card fingerprint of the subscription's (or the customer's) default payment method."""
        try:
            payment_method_id = payload.default_payment_method_id
            if not payment_method_id and payload.customer_id:
                customer = as_dict(await self.gateway.get_customer(payload.customer_id))
                if not customer.get("deleted"):
                    payment_method_id = id_of(dig(customer, "invoice_settings", "default_payment_method"))

            if not payment_method_id:
                return None

            payment_method = await self.gateway.retrieve_payment_method(payment_method_id)
            return dig(payment_method, "card", "fingerprint")
        except stripe.StripeError:
            logger.warning("Failed to fetch card fingerprint for subscription %s", payload.id, exc_info=True)
            return None

    async def check_and_enforce(
        self,
        db: AsyncSession,
        subscription: Subscription,
        stripe_subscription_id: str | None,
        plan_id: uuid.UUID | None,
        fingerprint: str | None,
    ) -> bool:
        """Cancel ``subscription`` if the card already backed another subscription of the same tool.

        Returns True when the subscription was cancelled.
        """
        if not fingerprint or subscription.status not in ENTITLED_STATUSES or plan_id is None:
            return False

        plan = await catalog.get_plan(db, plan_id)
        if plan is None:
            return False

        # A paying customer is no longer on a trial
        if subscription.status == SubscriptionStatus.ACTIVE and plan.price > 0:
            return False

        tool_plan_ids = await catalog.get_tool_plan_ids(db, plan.tool_id)
        duplicate_id = await db.scalar(
            select(Subscription.id)
            .where(
                Subscription.card_fingerprint == fingerprint,
                Subscription.plan_id.in_(tool_plan_ids),
                Subscription.id != subscription.id,
                # Rows this check already cancelled are the copies, not the original
                Subscription.cancellation_reason.is_distinct_from(CancellationReason.DUPLICATE_CARD.value),
            )
            .limit(1)
        )
        if duplicate_id is None:
            return False

        logger.warning(
            "Duplicate card detected (fingerprint %s): subscription %s matches existing %s, cancelling",
            fingerprint,
            subscription.id,
            duplicate_id,
        )

        if stripe_subscription_id:
            try:
                await self.gateway.cancel_subscription_immediately(stripe_subscription_id)
            except Exception:
                logger.exception("Failed to cancel Stripe subscription %s after duplicate card", stripe_subscription_id)

        await db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                cancellation_reason=CancellationReason.DUPLICATE_CARD.value,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.refresh(subscription)
        return True

    async def is_trial_eligible(
        self,
        db: AsyncSession,
        tool_id: uuid.UUID,
        organization_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> bool:
        """True when neither the organization nor any org of the user ever subscribed to the tool."""
        organization_ids = {organization_id}
        if user_id is not None:
            result = await db.execute(
                select(OrganizationMember.organization_id).where(OrganizationMember.user_id == user_id)
            )
            organization_ids.update(result.scalars().all())

        # Soft-deleted subscriptions count too
        existing = await db.scalar(
            select(Subscription.id)
            .join(Plan, Plan.id == Subscription.plan_id)
            .where(
                Subscription.organization_id.in_(organization_ids),
                Plan.tool_id == tool_id,
            )
            .limit(1)
        )
        return existing is None
