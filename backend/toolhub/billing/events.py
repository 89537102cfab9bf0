"""Normalize Stripe webhook payloads into typed billing events.

Stripe has moved fields around between API versions (billing period from the
subscription root to its items, invoice subscription id under
``parent.subscription_details``). All of that shape probing lives here so the
reconciler only ever sees one of the dataclasses below.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from toolhub.models.enums import SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_EVENT_TYPES = frozenset(
    {
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    }
)
CHECKOUT_COMPLETED = "checkout.session.completed"

_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}


def map_stripe_status(raw: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status to the local enum. Unknown → INCOMPLETE."""
    status = _STATUS_MAP.get(raw or "")
    if status is None:
        logger.warning("Unrecognized Stripe subscription status %r, treating as incomplete", raw)
        return SubscriptionStatus.INCOMPLETE
    return status


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to a naive UTC datetime."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def as_dict(obj: Any) -> dict:
    """Plain ``dict`` view of a Stripe object.

    ``StripeObject`` is no longer a ``dict`` subclass (stripe 15+), so objects
    from ``StripeClient`` are converted with ``to_dict()`` before any lookup.
    Plain dicts pass through.
    """
    if obj is None or isinstance(obj, str):
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else {}


def dig(obj: Any, *path: str) -> Any:
    """Follow ``path`` through nested Stripe objects or dicts, None when any hop is missing."""
    for key in path:
        if obj is None:
            return None
        obj = as_dict(obj).get(key)
    return obj


def id_of(value: Any) -> str | None:
    """Expandable Stripe fields arrive either as an ID string or as an object."""
    if isinstance(value, str):
        return value or None
    return as_dict(value).get("id")


def _parse_uuid(raw: Any) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("Ignoring malformed organization id %r in Stripe metadata", raw)
        return None


def _items(obj: Any) -> list[dict]:
    # Key lookup: ``items`` collides with dict.items() on older StripeObject
    data = dig(obj, "items", "data")
    return [as_dict(item) for item in data] if data else []


@dataclass(frozen=True)
class SubscriptionPayload:
    """A Stripe Subscription object, flattened."""

    event_type: str
    id: str
    customer_id: str | None
    status: str
    organization_id: uuid.UUID | None
    user_id: str | None
    price_ids: tuple[str, ...]
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    default_payment_method_id: str | None
    auto_cancel_trial: bool
    event_id: str | None = None

    @property
    def local_status(self) -> SubscriptionStatus:
        return map_stripe_status(self.status)

    @classmethod
    def from_stripe(
        cls,
        obj: Any,
        event_type: str = "customer.subscription.updated",
        event_id: str | None = None,
    ) -> "SubscriptionPayload":
        obj = as_dict(obj)
        metadata = as_dict(obj.get("metadata"))
        items = _items(obj)
        first_item = items[0] if items else {}

        # Root-level period first (older API versions), then the first item
        period_start = obj.get("current_period_start") or first_item.get("current_period_start")
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        price_ids = tuple(pid for pid in (id_of(item.get("price")) for item in items) if pid)

        return cls(
            event_type=event_type,
            id=obj["id"],
            customer_id=id_of(obj.get("customer")),
            status=obj.get("status") or "",
            organization_id=_parse_uuid(metadata.get("organizationId") or metadata.get("org_id")),
            user_id=metadata.get("userId"),
            price_ids=price_ids,
            current_period_start=ts_to_naive(period_start),
            current_period_end=ts_to_naive(period_end),
            trial_start=ts_to_naive(obj.get("trial_start")),
            trial_end=ts_to_naive(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            default_payment_method_id=id_of(obj.get("default_payment_method")),
            auto_cancel_trial=metadata.get("auto_cancel_trial") == "true",
            event_id=event_id,
        )


@dataclass(frozen=True)
class InvoicePayload:
    """A Stripe Invoice, reduced to what dunning needs."""

    event_type: str
    id: str
    subscription_id: str | None
    event_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.event_type != "invoice.payment_failed"

    @classmethod
    def from_stripe(cls, obj: Any, event_type: str, event_id: str | None = None) -> "InvoicePayload":
        obj = as_dict(obj)
        subscription_id = id_of(obj.get("subscription"))
        if subscription_id is None:
            subscription_id = id_of(dig(obj, "parent", "subscription_details", "subscription"))
        return cls(event_type=event_type, id=obj["id"], subscription_id=subscription_id, event_id=event_id)


@dataclass(frozen=True)
class CheckoutSessionPayload:
    """A completed Stripe Checkout Session."""

    event_type: str
    id: str
    mode: str | None
    customer_id: str | None
    subscription_id: str | None
    organization_id: uuid.UUID | None
    event_id: str | None = None

    @classmethod
    def from_stripe(cls, obj: Any, event_id: str | None = None) -> "CheckoutSessionPayload":
        obj = as_dict(obj)
        metadata = as_dict(obj.get("metadata"))
        return cls(
            event_type=CHECKOUT_COMPLETED,
            id=obj["id"],
            mode=obj.get("mode"),
            customer_id=id_of(obj.get("customer")),
            subscription_id=id_of(obj.get("subscription")),
            organization_id=_parse_uuid(metadata.get("organizationId")),
            event_id=event_id,
        )


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str
    event_id: str | None = None


BillingEvent = Union[SubscriptionPayload, InvoicePayload, CheckoutSessionPayload, UnhandledEvent]


def parse_event(event: Any) -> BillingEvent:
    """Turn a verified Stripe Event into one of the typed payload variants."""
    event = as_dict(event)
    event_type = event.get("type") or ""
    event_id = event.get("id")
    obj = dig(event, "data", "object") or {}

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return SubscriptionPayload.from_stripe(obj, event_type=event_type, event_id=event_id)
    if event_type in INVOICE_EVENT_TYPES:
        return InvoicePayload.from_stripe(obj, event_type=event_type, event_id=event_id)
    if event_type == CHECKOUT_COMPLETED:
        return CheckoutSessionPayload.from_stripe(obj, event_id=event_id)
    return UnhandledEvent(event_type=event_type, event_id=event_id)
