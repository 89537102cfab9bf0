"""Tests for entitlement provisioning, metering and resets."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.models.organization_entitlement import OrganizationEntitlement
from toolhub.models.plan import Plan


async def _entitlements(db: AsyncSession, organization_id) -> dict:
    result = await db.execute(
        select(OrganizationEntitlement)
        .where(OrganizationEntitlement.organization_id == organization_id)
        .execution_options(populate_existing=True)
    )
    return {row.feature_id: row for row in result.scalars().all()}


class TestProvisionForPlan:
    async def test_creates_one_row_per_limit(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        count = await provisioner.provision_for_plan(db_session, organization.id, catalog.pro.id)
        await db_session.commit()

        assert count == 2
        rows = await _entitlements(db_session, organization.id)
        assert rows[catalog.img_count.id].limit_amount == 1000
        assert rows[catalog.img_count.id].usage_amount == 0
        assert rows[catalog.img_count.id].tool_id == catalog.image.id
        # NULL default limit means unlimited
        assert rows[catalog.img_export.id].limit_amount is None
        assert rows[catalog.img_export.id].reset_period == "yearly"

    async def test_reprovisioning_preserves_usage(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_plan(db_session, organization.id, catalog.basic.id)
        await db_session.commit()

        reset_at = datetime(2026, 1, 1)
        await db_session.execute(
            update(OrganizationEntitlement)
            .where(OrganizationEntitlement.organization_id == organization.id)
            .values(usage_amount=42, last_reset_at=reset_at)
        )
        await db_session.commit()

        # Upgrade basic -> pro
        await provisioner.provision_for_plan(db_session, organization.id, catalog.pro.id)
        await db_session.commit()

        row = (await _entitlements(db_session, organization.id))[catalog.img_count.id]
        assert row.limit_amount == 1000
        assert row.usage_amount == 42
        assert row.last_reset_at == reset_at

    async def test_plan_without_limits_is_noop(self, db_session, catalog, organization):
        bare = Plan(tool_id=catalog.video.id, name="Video Free", tier="basic", price=0)
        db_session.add(bare)
        await db_session.commit()

        count = await EntitlementProvisioner().provision_for_plan(db_session, organization.id, bare.id)
        assert count == 0
        assert await _entitlements(db_session, organization.id) == {}


class TestProvisionForBundle:
    async def test_provisions_every_member_plan(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        count = await provisioner.provision_for_bundle(db_session, organization.id, catalog.bundle.id)
        await db_session.commit()

        assert count == 3
        rows = await _entitlements(db_session, organization.id)
        assert set(rows) == {catalog.img_count.id, catalog.img_export.id, catalog.vid_minutes.id}
        assert rows[catalog.vid_minutes.id].limit_amount == 60
        assert rows[catalog.vid_minutes.id].tool_id == catalog.video.id


class TestResetUsage:
    async def test_resets_only_elapsed_windows_with_usage(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_bundle(db_session, organization.id, catalog.bundle.id)
        await db_session.commit()

        now = datetime(2026, 6, 1)
        seeded = {
            # monthly, 31 days old, used -> reset
            catalog.img_count.id: (5, now - timedelta(days=31)),
            # yearly, 200 days old -> kept
            catalog.img_export.id: (3, now - timedelta(days=200)),
            # monthly, old but unused -> untouched
            catalog.vid_minutes.id: (0, now - timedelta(days=45)),
        }
        for feature_id, (usage, last_reset) in seeded.items():
            await db_session.execute(
                update(OrganizationEntitlement)
                .where(OrganizationEntitlement.feature_id == feature_id)
                .values(usage_amount=usage, last_reset_at=last_reset)
            )
        await db_session.commit()

        count = await provisioner.reset_usage(db_session, now)
        await db_session.commit()

        assert count == 1
        rows = await _entitlements(db_session, organization.id)
        assert rows[catalog.img_count.id].usage_amount == 0
        assert rows[catalog.img_count.id].last_reset_at == now
        assert rows[catalog.img_export.id].usage_amount == 3
        assert rows[catalog.vid_minutes.id].last_reset_at == now - timedelta(days=45)

    async def test_yearly_reset_after_365_days(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_plan(db_session, organization.id, catalog.pro.id)
        now = datetime(2026, 6, 1)
        await db_session.execute(
            update(OrganizationEntitlement)
            .where(OrganizationEntitlement.feature_id == catalog.img_export.id)
            .values(usage_amount=7, last_reset_at=now - timedelta(days=366))
        )
        await db_session.commit()

        assert await provisioner.reset_usage(db_session, now) == 1


class TestConsume:
    async def test_no_entitlement(self, db_session, catalog, organization):
        result = await EntitlementProvisioner().consume(db_session, organization.id, "img_gen_count")
        assert result.allowed is False
        assert result.reason == "no_entitlement"

    async def test_increments_within_limit(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_plan(db_session, organization.id, catalog.trial.id)
        await db_session.commit()

        result = await provisioner.consume(db_session, organization.id, "img_gen_count", amount=4)
        await db_session.commit()

        assert result.allowed is True
        assert result.usage_amount == 4
        assert result.limit_amount == 10

    async def test_limit_exceeded_does_not_increment(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_plan(db_session, organization.id, catalog.trial.id)
        await provisioner.consume(db_session, organization.id, "img_gen_count", amount=9)
        await db_session.commit()

        result = await provisioner.consume(db_session, organization.id, "img_gen_count", amount=2)
        assert result.allowed is False
        assert result.reason == "limit_exceeded"
        assert result.usage_amount == 9
        assert result.limit_amount == 10

    async def test_unlimited_feature(self, db_session, catalog, organization):
        provisioner = EntitlementProvisioner()
        await provisioner.provision_for_plan(db_session, organization.id, catalog.pro.id)
        await db_session.commit()

        result = await provisioner.consume(db_session, organization.id, "img_hd_export", amount=10_000)
        assert result.allowed is True
        assert result.limit_amount is None
