"""Async Stripe API wrapper for Toolhub billing."""

import logging
from functools import lru_cache

import stripe
from stripe import StripeClient

from toolhub.billing.events import as_dict, dig, id_of
from toolhub.config import settings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin async facade over ``StripeClient`` used by the billing core.

    Everything the reconciler, sweeper and services need from Stripe goes
    through here, so tests can swap the whole gateway for an ``AsyncMock``.
    """

    def __init__(self, client: StripeClient, webhook_secret: str) -> None:
        self.client = client
        self.webhook_secret = webhook_secret

    # --- Customers ---------------------------------------------------------

    async def create_customer(self, email: str | None, name: str, organization_id: str) -> stripe.Customer:
        """Create a Stripe customer linked to a Toolhub organization."""
        logger.info("Creating Stripe customer for organization %s (%s)", organization_id, email)
        customer = await self.client.v1.customers.create_async(
            params={
                "email": email or "",
                "name": name,
                "metadata": {"organizationId": organization_id},
            }
        )
        logger.info("Created Stripe customer %s for organization %s", customer.id, organization_id)
        return customer

    async def get_customer(self, customer_id: str) -> stripe.Customer:
        return await self.client.v1.customers.retrieve_async(customer_id)

    # --- Checkout ----------------------------------------------------------

    async def create_checkout_session(self, params: dict) -> stripe.checkout.Session:
        """Create a Stripe Checkout Session in subscription mode."""
        logger.info(
            "Creating checkout session for customer %s with %d line item(s)",
            params.get("customer"),
            len(params.get("line_items", [])),
        )
        return await self.client.v1.checkout.sessions.create_async(params=params)

    # --- Subscriptions -----------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Retrieve a Stripe subscription by ID."""
        return await self.client.v1.subscriptions.retrieve_async(subscription_id)

    async def list_customer_subscriptions(self, customer_id: str) -> list[stripe.Subscription]:
        """All subscriptions of a customer, any status, payment method expanded."""
        result = await self.client.v1.subscriptions.list_async(
            params={
                "customer": customer_id,
                "status": "all",
                "expand": ["data.default_payment_method"],
            }
        )
        return list(result.data)

    async def cancel_subscription_immediately(self, subscription_id: str) -> stripe.Subscription:
        logger.info("Cancelling Stripe subscription %s immediately", subscription_id)
        return await self.client.v1.subscriptions.cancel_async(subscription_id)

    async def cancel_subscription_at_period_end(self, subscription_id: str) -> stripe.Subscription:
        logger.info("Scheduling Stripe subscription %s to cancel at period end", subscription_id)
        return await self.client.v1.subscriptions.update_async(
            subscription_id, params={"cancel_at_period_end": True}
        )

    async def resume_subscription(self, subscription_id: str) -> stripe.Subscription:
        logger.info("Resuming Stripe subscription %s", subscription_id)
        return await self.client.v1.subscriptions.update_async(
            subscription_id, params={"cancel_at_period_end": False}
        )

    async def update_subscription_price(self, subscription_id: str, price_id: str) -> stripe.Subscription:
        """Swap the subscription's (single) item to a new price, invoicing the proration now."""
        subscription = await self.get_subscription(subscription_id)
        items = dig(subscription, "items", "data") or []
        if not items:
            raise ValueError(f"Stripe subscription {subscription_id} has no items")
        item_id = id_of(items[0])
        logger.info("Switching Stripe subscription %s to price %s", subscription_id, price_id)
        return await self.client.v1.subscriptions.update_async(
            subscription_id,
            params={
                "proration_behavior": "always_invoice",
                "items": [{"id": item_id, "price": price_id}],
            },
        )

    async def schedule_downgrade(self, subscription_id: str, price_id: str) -> stripe.SubscriptionSchedule:
        """Append a phase that moves the subscription to ``price_id`` at period end."""
        subscription = await self.get_subscription(subscription_id)
        schedule_id = id_of(dig(subscription, "schedule"))
        if not schedule_id:
            created = await self.client.v1.subscription_schedules.create_async(
                params={"from_subscription": subscription_id}
            )
            schedule_id = created.id

        schedule = await self.client.v1.subscription_schedules.retrieve_async(schedule_id)
        phases = dig(schedule, "phases") or []
        if not phases:
            raise ValueError(f"Subscription schedule {schedule_id} has no phases")
        current_phase = as_dict(phases[-1])
        current_items = [
            {
                "price": id_of(dig(item, "price")),
                "quantity": dig(item, "quantity") or 1,
            }
            for item in current_phase.get("items") or []
        ]

        logger.info(
            "Scheduling downgrade of Stripe subscription %s to price %s at %s",
            subscription_id,
            price_id,
            current_phase.get("end_date"),
        )
        return await self.client.v1.subscription_schedules.update_async(
            schedule_id,
            params={
                "end_behavior": "release",
                "phases": [
                    {
                        "items": current_items,
                        "start_date": current_phase.get("start_date"),
                        "end_date": current_phase.get("end_date"),
                    },
                    {
                        "items": [{"price": price_id, "quantity": 1}],
                        "start_date": current_phase.get("end_date"),
                    },
                ],
            },
        )

    async def release_scheduled_downgrade(self, subscription_id: str) -> stripe.SubscriptionSchedule:
        """Release the subscription's schedule; it continues on its current price."""
        subscription = await self.get_subscription(subscription_id)
        schedule_id = id_of(dig(subscription, "schedule"))
        if not schedule_id:
            raise ValueError(f"Stripe subscription {subscription_id} has no schedule to release")
        logger.info("Releasing schedule %s of Stripe subscription %s", schedule_id, subscription_id)
        return await self.client.v1.subscription_schedules.release_async(schedule_id)

    async def create_trial_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
        metadata: dict[str, str] | None = None,
    ) -> stripe.Subscription:
        logger.info(
            "Creating %d-day trial subscription for customer %s on price %s",
            trial_days,
            customer_id,
            price_id,
        )
        return await self.client.v1.subscriptions.create_async(
            params={
                "customer": customer_id,
                "items": [{"price": price_id}],
                "trial_period_days": trial_days,
                "payment_behavior": "default_incomplete",
                "payment_settings": {"save_default_payment_method": "on_subscription"},
                "metadata": metadata or {},
            }
        )

    # --- Payment methods ---------------------------------------------------

    async def retrieve_payment_method(self, payment_method_id: str) -> stripe.PaymentMethod:
        return await self.client.v1.payment_methods.retrieve_async(payment_method_id)

    # --- Webhooks ----------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous)."""
        return self.client.construct_event(payload, sig_header, self.webhook_secret)


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    """Process-wide gateway, used as a FastAPI dependency."""
    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )
    return StripeGateway(client, settings.stripe_webhook_secret)
