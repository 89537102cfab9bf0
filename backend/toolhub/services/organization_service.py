"""Organization service — tenant lookups and Stripe customer linkage."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing.stripe_client import StripeGateway
from toolhub.database import utcnow
from toolhub.models.organization import Organization
from toolhub.models.subscription import Subscription

logger = logging.getLogger(__name__)


async def get_organization(db: AsyncSession, organization_id: uuid.UUID) -> Organization | None:
    """Look up a live (not soft-deleted) organization."""
    result = await db.execute(
        select(Organization).where(
            Organization.id == organization_id,
            Organization.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def ensure_stripe_customer(
    db: AsyncSession,
    gateway: StripeGateway,
    organization: Organization,
    email: str | None = None,
) -> str:
    """Ensure the organization has a Stripe customer ID. Create one if missing."""
    if organization.stripe_customer_id:
        return organization.stripe_customer_id

    customer = await gateway.create_customer(
        email=organization.billing_email or email,
        name=organization.name,
        organization_id=str(organization.id),
    )
    organization.stripe_customer_id = customer.id
    await db.flush()
    logger.info("Linked Stripe customer %s to organization %s", customer.id, organization.id)
    return customer.id


async def soft_delete_organization(
    db: AsyncSession,
    organization_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Soft-delete an organization together with its subscriptions.

    Both updates run in the caller's transaction. Subscriptions keep their
    card fingerprints so trial-abuse checks still see them.
    """
    organization = await get_organization(db, organization_id)
    if organization is None:
        return False

    now = now or utcnow()
    organization.deleted_at = now
    await db.execute(
        update(Subscription)
        .where(
            Subscription.organization_id == organization_id,
            Subscription.deleted_at.is_(None),
        )
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    logger.info("Soft-deleted organization %s and its subscriptions", organization_id)
    return True
