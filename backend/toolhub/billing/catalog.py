"""Read-only lookups over the plan/bundle catalog."""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.models.enums import PriceInterval
from toolhub.models.plan import Bundle, BundlePlan, Plan
from toolhub.models.tool import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceResolution:
    """What a Stripe price id maps to. At most one field is set."""

    plan_id: uuid.UUID | None = None
    bundle_id: uuid.UUID | None = None

    @property
    def resolved(self) -> bool:
        return self.plan_id is not None or self.bundle_id is not None


async def resolve_price(db: AsyncSession, price_id: str) -> PriceResolution:
    """Map a Stripe price id to a plan (checked first) or a bundle."""
    plan_id = await db.scalar(
        select(Plan.id)
        .where(or_(Plan.stripe_price_id_monthly == price_id, Plan.stripe_price_id_yearly == price_id))
        .limit(1)
    )
    if plan_id is not None:
        return PriceResolution(plan_id=plan_id)

    bundle_id = await db.scalar(
        select(Bundle.id)
        .where(or_(Bundle.stripe_price_id_monthly == price_id, Bundle.stripe_price_id_yearly == price_id))
        .limit(1)
    )
    if bundle_id is not None:
        return PriceResolution(bundle_id=bundle_id)

    return PriceResolution()


async def resolve_line_items(db: AsyncSession, price_ids: Iterable[str]) -> PriceResolution:
    """Resolve a subscription's line items. The first price that resolves wins."""
    price_ids = list(price_ids)
    for index, price_id in enumerate(price_ids):
        resolution = await resolve_price(db, price_id)
        if resolution.resolved:
            if index < len(price_ids) - 1:
                logger.info(
                    "Subscription has %d line items; ignoring %s after resolving %s",
                    len(price_ids),
                    price_ids[index + 1 :],
                    price_id,
                )
            return resolution
        logger.warning("Stripe price %s matches no plan or bundle", price_id)
    return PriceResolution()


async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> Plan | None:
    return await db.get(Plan, plan_id)


async def get_bundle(db: AsyncSession, bundle_id: uuid.UUID) -> Bundle | None:
    return await db.get(Bundle, bundle_id)


async def get_tool(db: AsyncSession, tool_id: uuid.UUID) -> Tool | None:
    return await db.get(Tool, tool_id)


async def get_bundle_plan_ids(db: AsyncSession, bundle_id: uuid.UUID) -> list[uuid.UUID]:
    result = await db.execute(select(BundlePlan.plan_id).where(BundlePlan.bundle_id == bundle_id))
    return list(result.scalars().all())


async def get_tool_plan_ids(db: AsyncSession, tool_id: uuid.UUID) -> list[uuid.UUID]:
    """All plan ids of a tool, soft-deleted plans included."""
    result = await db.execute(select(Plan.id).where(Plan.tool_id == tool_id))
    return list(result.scalars().all())


async def get_trial_plan(db: AsyncSession, tool_id: uuid.UUID) -> Plan | None:
    """The active trial plan of a tool."""
    result = await db.execute(
        select(Plan)
        .where(
            Plan.tool_id == tool_id,
            Plan.is_trial_plan.is_(True),
            Plan.active.is_(True),
            Plan.deleted_at.is_(None),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


def price_id_for(item: Plan | Bundle, interval: str) -> str | None:
    """Pick the Stripe price id of a plan/bundle for a billing interval."""
    if interval == PriceInterval.YEARLY:
        return item.stripe_price_id_yearly
    return item.stripe_price_id_monthly
