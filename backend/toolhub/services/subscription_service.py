"""Subscription service — checkout, plan changes, cancellation and trials."""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing import catalog
from toolhub.billing.abuse import TrialAbuseDetector
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.errors import (
    CatalogItemNotFoundError,
    InvalidBillingOperationError,
    SubscriptionNotFoundError,
    TrialNotAvailableError,
)
from toolhub.billing.stripe_client import StripeGateway
from toolhub.config import settings
from toolhub.database import insert_for, utcnow
from toolhub.models.enums import SubscriptionStatus
from toolhub.models.organization import Organization
from toolhub.models.subscription import Subscription
from toolhub.schemas.billing import CatalogItemRef
from toolhub.services.organization_service import ensure_stripe_customer

logger = logging.getLogger(__name__)


async def get_current_subscription(db: AsyncSession, organization_id: uuid.UUID) -> Subscription | None:
    """Most recently created live subscription of an organization."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.organization_id == organization_id,
            Subscription.deleted_at.is_(None),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _get_org_subscription(
    db: AsyncSession,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> Subscription:
    result = await db.execute(
        select(Subscription).where(
            Subscription.id == subscription_id,
            Subscription.organization_id == organization_id,
            Subscription.deleted_at.is_(None),
        )
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError("Subscription not found")
    return subscription


def _require_stripe_id(subscription: Subscription) -> str:
    if not subscription.stripe_subscription_id:
        raise InvalidBillingOperationError("No Stripe subscription linked")
    return subscription.stripe_subscription_id


async def create_checkout_session(
    db: AsyncSession,
    gateway: StripeGateway,
    detector: TrialAbuseDetector,
    organization: Organization,
    items: Sequence[CatalogItemRef],
    email: str | None = None,
    user_id: uuid.UUID | None = None,
    ui_mode: str = "hosted",
) -> stripe.checkout.Session:
    """Create a Stripe Checkout session for one or more plans/bundles.

    A trial is attached when a selected trial plan's tool offers one and the
    organization (and user) never had it. Trials without any paid item are
    flagged ``auto_cancel_trial`` so they end instead of converting.
    """
    if not items:
        raise InvalidBillingOperationError("No items provided")
    interval = items[0].interval
    if any(item.interval != interval for item in items):
        raise InvalidBillingOperationError("All items must have the same billing interval")

    customer_id = await ensure_stripe_customer(db, gateway, organization, email=email)

    line_items: list[dict] = []
    trial_days = 0
    has_paid_component = False

    for item in items:
        if item.type == "plan":
            plan = await catalog.get_plan(db, item.id)
            if plan is None:
                continue
            price_id = catalog.price_id_for(plan, item.interval)
            if plan.price > 0:
                has_paid_component = True
            if plan.is_trial_plan and trial_days == 0:
                tool = await catalog.get_tool(db, plan.tool_id)
                if tool is not None and tool.trial_days > 0:
                    if await detector.is_trial_eligible(db, plan.tool_id, organization.id, user_id):
                        trial_days = tool.trial_days
                    else:
                        logger.info("Org %s is not eligible for a trial of tool %s", organization.id, plan.tool_id)
        else:
            bundle = await catalog.get_bundle(db, item.id)
            if bundle is None:
                continue
            price_id = catalog.price_id_for(bundle, item.interval)
            if bundle.price > 0:
                has_paid_component = True

        if price_id:
            line_items.append({"price": price_id, "quantity": 1})

    if not line_items:
        raise InvalidBillingOperationError("No valid price IDs found for selected items")

    subscription_data: dict = {"metadata": {"organizationId": str(organization.id)}}
    if trial_days > 0:
        subscription_data["trial_period_days"] = trial_days
        if not has_paid_component:
            subscription_data["metadata"]["auto_cancel_trial"] = "true"

    params: dict = {
        "customer": customer_id,
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "metadata": {"organizationId": str(organization.id), "interval": interval},
        "subscription_data": subscription_data,
    }
    return_url = f"{settings.frontend_url}/billing?success=true&session_id={{CHECKOUT_SESSION_ID}}"
    if ui_mode == "embedded":
        params["ui_mode"] = "embedded"
        params["return_url"] = return_url
    else:
        params["success_url"] = return_url
        params["cancel_url"] = f"{settings.frontend_url}/billing?canceled=true"

    return await gateway.create_checkout_session(params)


async def change_subscription(
    db: AsyncSession,
    gateway: StripeGateway,
    provisioner: EntitlementProvisioner,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    target: CatalogItemRef,
) -> str:
    """Switch a subscription to another plan or bundle.

    Cheaper targets are scheduled for the end of the billing period and
    recorded as ``upcoming_*``. Anything else takes effect immediately.
    Returns ``"downgrade_scheduled"`` or ``"updated"``.
    """
    subscription = await _get_org_subscription(db, organization_id, subscription_id)
    stripe_subscription_id = _require_stripe_id(subscription)

    target_plan_id: uuid.UUID | None = None
    target_bundle_id: uuid.UUID | None = None
    if target.type == "plan":
        plan = await catalog.get_plan(db, target.id)
        if plan is None:
            raise CatalogItemNotFoundError("Target plan not found")
        target_item = plan
        target_plan_id = plan.id
    else:
        bundle = await catalog.get_bundle(db, target.id)
        if bundle is None:
            raise CatalogItemNotFoundError("Target bundle not found")
        target_item = bundle
        target_bundle_id = bundle.id

    target_price_id = catalog.price_id_for(target_item, target.interval)
    if not target_price_id:
        raise InvalidBillingOperationError("Target price not found")

    current_price = 0
    if subscription.plan_id is not None:
        current_plan = await catalog.get_plan(db, subscription.plan_id)
        current_price = current_plan.price if current_plan else 0
    elif subscription.bundle_id is not None:
        current_bundle = await catalog.get_bundle(db, subscription.bundle_id)
        current_price = current_bundle.price if current_bundle else 0

    if target_item.price < current_price:
        logger.info("Downgrading subscription %s to %s %s", stripe_subscription_id, target.type, target.id)
        await gateway.schedule_downgrade(stripe_subscription_id, target_price_id)
        subscription.upcoming_plan_id = target_plan_id
        subscription.upcoming_bundle_id = target_bundle_id
        await db.flush()
        return "downgrade_scheduled"

    logger.info("Upgrading subscription %s to %s %s", stripe_subscription_id, target.type, target.id)
    await gateway.update_subscription_price(stripe_subscription_id, target_price_id)
    subscription.plan_id = target_plan_id
    subscription.bundle_id = target_bundle_id
    subscription.upcoming_plan_id = None
    subscription.upcoming_bundle_id = None
    await db.flush()
    if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        await provisioner.provision_for_subscription(db, subscription)
    return "updated"


async def cancel_scheduled_downgrade(
    db: AsyncSession,
    gateway: StripeGateway,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> Subscription:
    subscription = await _get_org_subscription(db, organization_id, subscription_id)
    if subscription.upcoming_plan_id is None and subscription.upcoming_bundle_id is None:
        raise InvalidBillingOperationError("No pending downgrade to cancel")
    stripe_subscription_id = _require_stripe_id(subscription)

    await gateway.release_scheduled_downgrade(stripe_subscription_id)
    subscription.upcoming_plan_id = None
    subscription.upcoming_bundle_id = None
    await db.flush()
    return subscription


async def cancel_at_period_end(
    db: AsyncSession,
    gateway: StripeGateway,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> Subscription:
    subscription = await _get_org_subscription(db, organization_id, subscription_id)
    await gateway.cancel_subscription_at_period_end(_require_stripe_id(subscription))
    subscription.cancel_at_period_end = True
    await db.flush()
    return subscription


async def resume(
    db: AsyncSession,
    gateway: StripeGateway,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> Subscription:
    subscription = await _get_org_subscription(db, organization_id, subscription_id)
    await gateway.resume_subscription(_require_stripe_id(subscription))
    subscription.cancel_at_period_end = False
    await db.flush()
    return subscription


async def start_trial(
    db: AsyncSession,
    gateway: StripeGateway,
    detector: TrialAbuseDetector,
    provisioner: EntitlementProvisioner,
    organization: Organization,
    tool_id: uuid.UUID,
    user_id: uuid.UUID | None = None,
    email: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Start a card-collecting trial of a tool's trial plan."""
    trial_plan = await catalog.get_trial_plan(db, tool_id)
    tool = await catalog.get_tool(db, tool_id)
    if trial_plan is None or tool is None or tool.trial_days <= 0:
        raise TrialNotAvailableError("No free trial available for this tool")

    if not await detector.is_trial_eligible(db, tool_id, organization.id, user_id):
        raise TrialNotAvailableError("Organization or user has already used a trial or subscription for this tool")

    price_id = trial_plan.stripe_price_id_monthly or trial_plan.stripe_price_id_yearly
    if not price_id:
        raise InvalidBillingOperationError("Trial plan has no price configured")

    trial_days = tool.trial_days
    now = now or utcnow()
    trial_end = now + timedelta(days=trial_days)

    customer_id = await ensure_stripe_customer(db, gateway, organization, email=email)

    metadata = {
        "organizationId": str(organization.id),
        "org_id": str(organization.id),
        "plan_id": str(trial_plan.id),
        "tool_id": str(tool_id),
    }
    if trial_plan.price == 0:
        metadata["auto_cancel_trial"] = "true"

    stripe_sub = await gateway.create_trial_subscription(customer_id, price_id, trial_days, metadata)

    # The subscription.created webhook may already have written this row
    await db.execute(
        insert_for(db, Subscription)
        .values(
            organization_id=organization.id,
            plan_id=trial_plan.id,
            stripe_subscription_id=stripe_sub.id,
            status=SubscriptionStatus.TRIALING.value,
            trial_start=now,
            trial_end=trial_end,
            current_period_start=now,
            current_period_end=trial_end,
            cancel_at_period_end=False,
        )
        .on_conflict_do_nothing(index_elements=[Subscription.stripe_subscription_id, Subscription.organization_id])
    )
    subscription = (
        await db.execute(
            select(Subscription)
            .where(
                Subscription.stripe_subscription_id == stripe_sub.id,
                Subscription.organization_id == organization.id,
            )
            .execution_options(populate_existing=True)
        )
    ).scalar_one()

    await provisioner.provision_for_plan(db, organization.id, trial_plan.id, now=now)
    logger.info("Started %d-day trial %s for org %s", trial_days, stripe_sub.id, organization.id)
    return subscription


async def cancel_trial(
    db: AsyncSession,
    gateway: StripeGateway,
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> Subscription:
    result = await db.execute(
        select(Subscription).where(
            Subscription.id == subscription_id,
            Subscription.organization_id == organization_id,
            Subscription.status == SubscriptionStatus.TRIALING.value,
        )
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError("Active trial not found")

    if subscription.stripe_subscription_id:
        try:
            await gateway.cancel_subscription_immediately(subscription.stripe_subscription_id)
        except Exception:
            logger.exception("Failed to cancel Stripe trial subscription %s", subscription.stripe_subscription_id)

    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.cancel_at_period_end = False
    await db.flush()
    logger.info("Cancelled trial %s for org %s", subscription.id, organization_id)
    return subscription
