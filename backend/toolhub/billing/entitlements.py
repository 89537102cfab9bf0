"""Entitlement provisioning, metering and periodic usage resets."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing import catalog
from toolhub.database import insert_for, utcnow
from toolhub.models.enums import FeatureResetPeriod
from toolhub.models.organization_entitlement import OrganizationEntitlement
from toolhub.models.plan import PlanLimit
from toolhub.models.subscription import Subscription
from toolhub.models.tool import Feature

logger = logging.getLogger(__name__)

RESET_WINDOWS: dict[FeatureResetPeriod, timedelta] = {
    FeatureResetPeriod.MONTHLY: timedelta(days=30),
    FeatureResetPeriod.YEARLY: timedelta(days=365),
}


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    reason: str | None = None  # no_entitlement, limit_exceeded
    usage_amount: int | None = None
    limit_amount: int | None = None


class EntitlementProvisioner:
    """Materializes plan limits into per-organization entitlement rows.

    Provisioning only ever touches ``limit_amount`` and ``reset_period`` of an
    existing row, so re-provisioning after a plan change never resets usage.
    """

    async def provision_for_plan(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        plan_id: uuid.UUID,
        now: datetime | None = None,
    ) -> int:
        """Upsert one entitlement per plan limit. Returns the number of features provisioned."""
        now = now or utcnow()
        try:
            logger.info("Provisioning entitlements for org %s from plan %s", organization_id, plan_id)
            result = await db.execute(
                select(PlanLimit, Feature)
                .join(Feature, Feature.id == PlanLimit.feature_id)
                .where(PlanLimit.plan_id == plan_id)
            )
            rows = result.all()
            if not rows:
                logger.info("Plan %s has no limits, nothing to provision", plan_id)
                return 0

            for limit, feature in rows:
                stmt = insert_for(db, OrganizationEntitlement).values(
                    organization_id=organization_id,
                    tool_id=feature.tool_id,
                    feature_id=feature.id,
                    limit_amount=limit.default_limit,
                    usage_amount=0,
                    reset_period=limit.reset_period,
                    last_reset_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[OrganizationEntitlement.organization_id, OrganizationEntitlement.feature_id],
                    set_={
                        "limit_amount": stmt.excluded.limit_amount,
                        "reset_period": stmt.excluded.reset_period,
                        "updated_at": func.now(),
                    },
                )
                await db.execute(stmt)
                logger.debug(
                    "Entitlement %s for org %s set to limit %s (%s)",
                    feature.slug,
                    organization_id,
                    limit.default_limit,
                    limit.reset_period,
                )
            return len(rows)
        except Exception:
            logger.exception("Failed to provision entitlements for org %s from plan %s", organization_id, plan_id)
            raise

    async def provision_for_bundle(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        bundle_id: uuid.UUID,
        now: datetime | None = None,
    ) -> int:
        """Provision every member plan of a bundle. Later plans win per feature."""
        try:
            logger.info("Provisioning entitlements for org %s from bundle %s", organization_id, bundle_id)
            plan_ids = await catalog.get_bundle_plan_ids(db, bundle_id)
            if not plan_ids:
                logger.info("Bundle %s has no plans, nothing to provision", bundle_id)
                return 0
            total = 0
            for plan_id in plan_ids:
                total += await self.provision_for_plan(db, organization_id, plan_id, now=now)
            return total
        except Exception:
            logger.exception(
                "Failed to provision entitlements for org %s from bundle %s", organization_id, bundle_id
            )
            raise

    async def provision_for_subscription(self, db: AsyncSession, subscription: Subscription) -> int:
        if subscription.plan_id is not None:
            return await self.provision_for_plan(db, subscription.organization_id, subscription.plan_id)
        if subscription.bundle_id is not None:
            return await self.provision_for_bundle(db, subscription.organization_id, subscription.bundle_id)
        return 0

    async def reset_usage(self, db: AsyncSession, now: datetime) -> int:
        """Zero usage of entitlements whose reset window has elapsed."""
        due = or_(
            *(
                and_(
                    OrganizationEntitlement.reset_period == period.value,
                    OrganizationEntitlement.last_reset_at < now - window,
                )
                for period, window in RESET_WINDOWS.items()
            )
        )
        result = await db.execute(
            update(OrganizationEntitlement)
            .where(due, OrganizationEntitlement.usage_amount > 0)
            .values(usage_amount=0, last_reset_at=now, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        logger.info("Reset usage on %d entitlements", result.rowcount)
        return result.rowcount

    async def consume(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        feature_slug: str,
        amount: int = 1,
    ) -> ConsumeResult:
        """Meter ``amount`` units of a feature against the organization's limit."""
        entitlement = (
            await db.execute(
                select(OrganizationEntitlement)
                .join(Feature, Feature.id == OrganizationEntitlement.feature_id)
                .where(
                    OrganizationEntitlement.organization_id == organization_id,
                    Feature.slug == feature_slug,
                )
            )
        ).scalar_one_or_none()
        if entitlement is None:
            return ConsumeResult(allowed=False, reason="no_entitlement")

        # Guarded increment: concurrent consumers cannot push usage past the limit
        result = await db.execute(
            update(OrganizationEntitlement)
            .where(
                OrganizationEntitlement.id == entitlement.id,
                or_(
                    OrganizationEntitlement.limit_amount.is_(None),
                    OrganizationEntitlement.usage_amount + amount <= OrganizationEntitlement.limit_amount,
                ),
            )
            .values(usage_amount=OrganizationEntitlement.usage_amount + amount, updated_at=func.now())
            .returning(OrganizationEntitlement.usage_amount, OrganizationEntitlement.limit_amount)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            await db.refresh(entitlement)
            logger.info(
                "Org %s exceeded %s: %s + %s > %s",
                organization_id,
                feature_slug,
                entitlement.usage_amount,
                amount,
                entitlement.limit_amount,
            )
            return ConsumeResult(
                allowed=False,
                reason="limit_exceeded",
                usage_amount=entitlement.usage_amount,
                limit_amount=entitlement.limit_amount,
            )
        return ConsumeResult(allowed=True, usage_amount=row.usage_amount, limit_amount=row.limit_amount)
