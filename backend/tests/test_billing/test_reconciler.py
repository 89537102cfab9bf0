"""Tests for SubscriptionReconciler: upserts, dunning state and manual sync."""

import uuid
from datetime import datetime

import pytest
import pytest_asyncio
import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.billing.abuse import TrialAbuseDetector
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.errors import InvalidBillingOperationError
from toolhub.billing.events import CheckoutSessionPayload, InvoicePayload, SubscriptionPayload
from toolhub.billing.reconciler import SubscriptionReconciler
from toolhub.models.organization import Organization
from toolhub.models.organization_entitlement import OrganizationEntitlement
from toolhub.models.subscription import Subscription


@pytest.fixture
def reconciler(stripe_gateway) -> SubscriptionReconciler:
    return SubscriptionReconciler(stripe_gateway, TrialAbuseDetector(stripe_gateway), EntitlementProvisioner())


@pytest_asyncio.fixture
async def existing(db_session: AsyncSession, catalog, organization) -> Subscription:
    """A committed local row for ``sub_existing`` on the basic plan."""
    subscription = Subscription(
        organization_id=organization.id,
        plan_id=catalog.basic.id,
        stripe_subscription_id="sub_existing",
        status="active",
    )
    db_session.add(subscription)
    await db_session.commit()
    return subscription


async def _subscription_rows(db: AsyncSession, stripe_subscription_id: str) -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _entitlement_count(db: AsyncSession, organization_id: uuid.UUID) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(OrganizationEntitlement)
        .where(OrganizationEntitlement.organization_id == organization_id)
    )


def _invoice(subscription_id: str | None, event_type: str = "invoice.payment_failed") -> InvoicePayload:
    return InvoicePayload(event_type=event_type, id="in_test", subscription_id=subscription_id)


class TestReconcile:
    async def test_creates_subscription_and_provisions(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(stripe_subscription("sub_new", organization.id))

        subscription = await reconciler.reconcile(db_session, payload)
        await db_session.commit()

        assert subscription is not None
        assert subscription.plan_id == catalog.pro.id
        assert subscription.bundle_id is None
        assert subscription.status == "active"
        assert subscription.current_period_end > subscription.current_period_start
        assert await _entitlement_count(db_session, organization.id) == 2

    async def test_repeated_delivery_updates_single_row(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        await reconciler.reconcile(
            db_session, SubscriptionPayload.from_stripe(stripe_subscription("sub_repeat", organization.id))
        )
        await reconciler.reconcile(
            db_session,
            SubscriptionPayload.from_stripe(
                stripe_subscription("sub_repeat", organization.id, cancel_at_period_end=True)
            ),
        )
        await db_session.commit()

        rows = await _subscription_rows(db_session, "sub_repeat")
        assert len(rows) == 1
        assert rows[0].cancel_at_period_end is True

    async def test_plan_and_bundle_are_mutually_exclusive(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        bundle_payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_switch", organization.id, price_id="price_creator_m")
        )
        subscription = await reconciler.reconcile(db_session, bundle_payload)
        assert subscription.bundle_id == catalog.bundle.id
        assert subscription.plan_id is None
        assert await _entitlement_count(db_session, organization.id) == 3

        plan_payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_switch", organization.id, price_id="price_img_basic_y")
        )
        subscription = await reconciler.reconcile(db_session, plan_payload)
        assert subscription.plan_id == catalog.basic.id
        assert subscription.bundle_id is None

    async def test_confirmed_state_clears_pending_downgrade(
        self, db_session, catalog, organization, existing, reconciler, stripe_subscription
    ):
        existing.upcoming_plan_id = catalog.trial.id
        await db_session.commit()

        payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_existing", organization.id, price_id="price_img_basic_m")
        )
        await reconciler.reconcile(db_session, payload)
        await db_session.commit()

        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.upcoming_plan_id is None
        assert row.upcoming_bundle_id is None

    async def test_missing_organization_metadata_is_ignored(
        self, db_session, catalog, reconciler, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(stripe_subscription("sub_orphan", None))

        assert await reconciler.reconcile(db_session, payload) is None
        assert await _subscription_rows(db_session, "sub_orphan") == []

    async def test_unknown_price_stores_row_without_entitlements(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_unknown", organization.id, price_id="price_nobody_sells")
        )

        subscription = await reconciler.reconcile(db_session, payload)

        assert subscription.plan_id is None
        assert subscription.bundle_id is None
        assert await _entitlement_count(db_session, organization.id) == 0

    async def test_non_entitled_status_is_not_provisioned(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_incomplete", organization.id, status="incomplete")
        )

        subscription = await reconciler.reconcile(db_session, payload)

        assert subscription.status == "incomplete"
        assert await _entitlement_count(db_session, organization.id) == 0

    async def test_duplicate_card_cancels_second_trial_only(
        self, db_session, catalog, org_factory, reconciler, stripe_gateway, stripe_subscription
    ):
        first_org = await org_factory()
        second_org = await org_factory()
        first_payload = SubscriptionPayload.from_stripe(
            stripe_subscription(
                "sub_first_trial",
                first_org.id,
                price_id="price_img_trial",
                status="trialing",
                default_payment_method="pm_card",
            )
        )
        second_payload = SubscriptionPayload.from_stripe(
            stripe_subscription(
                "sub_second_trial",
                second_org.id,
                price_id="price_img_trial",
                status="trialing",
                default_payment_method="pm_reused",
            )
        )

        first = await reconciler.reconcile(db_session, first_payload)
        assert first.status == "trialing"

        second = await reconciler.reconcile(db_session, second_payload)
        assert second.status == "canceled"
        assert second.cancellation_reason == "duplicate_card"
        assert second.card_fingerprint == "fp_test"
        assert await _entitlement_count(db_session, second_org.id) == 0

        # A later update of the first trial leaves it running
        first = await reconciler.reconcile(db_session, first_payload)
        assert first.status == "trialing"
        assert first.cancellation_reason is None
        stripe_gateway.cancel_subscription_immediately.assert_awaited_once_with("sub_second_trial")
        assert await _entitlement_count(db_session, first_org.id) > 0

    async def test_reactivated_subscription_drops_cancellation_reason(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        db_session.add(
            Subscription(
                organization_id=organization.id,
                plan_id=catalog.pro.id,
                stripe_subscription_id="sub_back",
                status="canceled",
                cancellation_reason="auto_cancel_past_due",
            )
        )
        await db_session.commit()

        subscription = await reconciler.reconcile(
            db_session, SubscriptionPayload.from_stripe(stripe_subscription("sub_back", organization.id))
        )

        assert subscription.status == "active"
        assert subscription.cancellation_reason is None

    async def test_canceled_update_keeps_cancellation_reason(
        self, db_session, catalog, organization, reconciler, stripe_subscription
    ):
        db_session.add(
            Subscription(
                organization_id=organization.id,
                plan_id=catalog.pro.id,
                stripe_subscription_id="sub_gone",
                status="canceled",
                cancellation_reason="auto_cancel_past_due",
            )
        )
        await db_session.commit()

        subscription = await reconciler.reconcile(
            db_session,
            SubscriptionPayload.from_stripe(stripe_subscription("sub_gone", organization.id, status="canceled")),
        )

        assert subscription.cancellation_reason == "auto_cancel_past_due"

    async def test_paid_plan_skips_fingerprint_lookup(
        self, db_session, catalog, organization, reconciler, stripe_gateway, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(
            stripe_subscription("sub_paid", organization.id, default_payment_method="pm_card")
        )

        subscription = await reconciler.reconcile(db_session, payload)

        assert subscription.card_fingerprint is None
        stripe_gateway.retrieve_payment_method.assert_not_awaited()

    async def test_free_trial_is_set_to_cancel_at_period_end(
        self, db_session, catalog, organization, reconciler, stripe_gateway, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(
            stripe_subscription(
                "sub_free_trial",
                organization.id,
                price_id="price_img_trial",
                status="trialing",
                metadata={"organizationId": str(organization.id), "auto_cancel_trial": "true"},
            )
        )

        await reconciler.reconcile(db_session, payload)

        stripe_gateway.cancel_subscription_at_period_end.assert_awaited_once_with("sub_free_trial")

    async def test_free_trial_already_cancelling_is_left_alone(
        self, db_session, catalog, organization, reconciler, stripe_gateway, stripe_subscription
    ):
        payload = SubscriptionPayload.from_stripe(
            stripe_subscription(
                "sub_free_trial",
                organization.id,
                price_id="price_img_trial",
                status="trialing",
                cancel_at_period_end=True,
                metadata={"organizationId": str(organization.id), "auto_cancel_trial": "true"},
            )
        )

        await reconciler.reconcile(db_session, payload)

        stripe_gateway.cancel_subscription_at_period_end.assert_not_awaited()


class TestMarkDeleted:
    async def test_cancels_local_row(self, db_session, existing, reconciler):
        assert await reconciler.mark_deleted(db_session, "sub_existing") == 1
        await db_session.commit()

        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.status == "canceled"

    async def test_unknown_subscription_is_noop(self, db_session, catalog, reconciler):
        assert await reconciler.mark_deleted(db_session, "sub_missing") == 0


class TestInvoices:
    async def test_payment_failed_starts_grace_clock(self, db_session, existing, reconciler):
        failed_at = datetime(2026, 5, 1, 12, 0)

        assert await reconciler.record_payment_failed(db_session, _invoice("sub_existing"), now=failed_at) == 1
        await db_session.commit()

        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.status == "past_due"
        assert row.last_payment_failure_at == failed_at

    async def test_payment_failed_without_subscription(self, db_session, catalog, reconciler):
        assert await reconciler.record_payment_failed(db_session, _invoice(None)) == 0
        assert await reconciler.record_payment_failed(db_session, _invoice("sub_missing")) == 0

    async def test_payment_succeeded_restores_active(self, db_session, existing, reconciler):
        existing.status = "past_due"
        existing.last_payment_failure_at = datetime(2026, 5, 1)
        await db_session.commit()

        updated = await reconciler.record_payment_succeeded(db_session, _invoice("sub_existing", "invoice.paid"))
        await db_session.commit()

        assert updated == 1
        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.status == "active"
        assert row.last_payment_failure_at is None


class TestCheckoutCustomer:
    def _checkout(self, organization_id, customer_id="cus_paid") -> CheckoutSessionPayload:
        return CheckoutSessionPayload(
            event_type="checkout.session.completed",
            id="cs_test",
            mode="subscription",
            customer_id=customer_id,
            subscription_id="sub_checkout",
            organization_id=organization_id,
        )

    async def test_updates_customer_id(self, db_session, organization, reconciler):
        assert await reconciler.sync_checkout_customer(db_session, self._checkout(organization.id)) is True
        await db_session.commit()

        refreshed = await db_session.get(Organization, organization.id, populate_existing=True)
        assert refreshed.stripe_customer_id == "cus_paid"

    async def test_same_customer_is_noop(self, db_session, organization, reconciler):
        checkout = self._checkout(organization.id, customer_id="cus_test")
        assert await reconciler.sync_checkout_customer(db_session, checkout) is False

    async def test_unknown_organization_is_noop(self, db_session, reconciler):
        assert await reconciler.sync_checkout_customer(db_session, self._checkout(uuid.uuid4())) is False


class TestSyncOrganization:
    async def test_requires_stripe_customer(self, db_session, org_factory, reconciler):
        unlinked = await org_factory()
        with pytest.raises(InvalidBillingOperationError):
            await reconciler.sync_organization(db_session, unlinked)

    async def test_refreshes_known_subscriptions_only(
        self, db_session, organization, existing, reconciler, stripe_gateway, stripe_subscription
    ):
        existing.status = "past_due"
        existing.last_payment_failure_at = datetime(2026, 5, 1)
        await db_session.commit()
        stripe_gateway.list_customer_subscriptions.return_value = [
            stripe.Subscription.construct_from(
                stripe_subscription("sub_existing", organization.id, price_id="price_img_basic_m", status="active"),
                "sk_test",
            ),
            stripe.Subscription.construct_from(stripe_subscription("sub_not_ours", organization.id), "sk_test"),
        ]

        updated = await reconciler.sync_organization(db_session, organization)
        await db_session.commit()

        assert updated == 1
        stripe_gateway.list_customer_subscriptions.assert_awaited_once_with("cus_test")
        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.status == "active"
        assert row.last_payment_failure_at is None
        assert row.current_period_end is not None
        assert await _subscription_rows(db_session, "sub_not_ours") == []

    async def test_keeps_failure_time_while_still_unpaid(
        self, db_session, organization, existing, reconciler, stripe_gateway, stripe_subscription
    ):
        failed_at = datetime(2026, 5, 1)
        existing.status = "past_due"
        existing.last_payment_failure_at = failed_at
        await db_session.commit()
        stripe_gateway.list_customer_subscriptions.return_value = [
            stripe_subscription("sub_existing", organization.id, status="unpaid"),
        ]

        await reconciler.sync_organization(db_session, organization)
        await db_session.commit()

        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.status == "unpaid"
        assert row.last_payment_failure_at == failed_at

    async def test_backfills_card_fingerprint(
        self, db_session, organization, existing, reconciler, stripe_gateway, stripe_subscription
    ):
        stripe_gateway.list_customer_subscriptions.return_value = [
            stripe_subscription("sub_existing", organization.id, default_payment_method={"id": "pm_expanded"}),
        ]

        await reconciler.sync_organization(db_session, organization)
        await db_session.commit()

        (row,) = await _subscription_rows(db_session, "sub_existing")
        assert row.card_fingerprint == "fp_test"
        stripe_gateway.retrieve_payment_method.assert_awaited_once_with("pm_expanded")
