"""Subscription management API — checkout, plan changes, cancellation and trials.

Called by the tool front-ends' backends with the shared service key; the
caller has already authorized the end user against the organization.
"""

import logging
import uuid

import stripe
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.api.deps import get_db, get_stripe_gateway, require_service_key
from toolhub.billing.abuse import TrialAbuseDetector
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.errors import (
    BillingError,
    CatalogItemNotFoundError,
    SubscriptionNotFoundError,
)
from toolhub.billing.events import as_dict
from toolhub.billing.stripe_client import StripeGateway
from toolhub.models.organization import Organization
from toolhub.schemas.billing import (
    CatalogItemRef,
    ChangeSubscriptionResponse,
    CheckoutRequest,
    CheckoutResponse,
    StartTrialRequest,
    SubscriptionResponse,
)
from toolhub.services import subscription_service
from toolhub.services.organization_service import get_organization, soft_delete_organization

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/internal/organizations",
    tags=["subscriptions"],
    dependencies=[Depends(require_service_key)],
)


def _billing_http_error(e: BillingError) -> HTTPException:
    if isinstance(e, (SubscriptionNotFoundError, CatalogItemNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _stripe_http_error(e: stripe.StripeError) -> HTTPException:
    logger.error("Stripe error: %s", e)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Payment service error. Please try again.",
    )


async def _require_organization(db: AsyncSession, organization_id: uuid.UUID) -> Organization:
    organization = await get_organization(db, organization_id)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return organization


@router.post("/{organization_id}/checkout", response_model=CheckoutResponse)
async def create_checkout(
    organization_id: uuid.UUID,
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for one or more plans/bundles."""
    organization = await _require_organization(db, organization_id)
    try:
        session = await subscription_service.create_checkout_session(
            db,
            gateway,
            TrialAbuseDetector(gateway),
            organization,
            body.items,
            email=body.email,
            user_id=body.user_id,
            ui_mode=body.ui_mode,
        )
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    # The Stripe customer may have just been linked
    await db.commit()

    checkout = as_dict(session)
    return CheckoutResponse(
        session_id=checkout["id"],
        url=checkout.get("url"),
        client_secret=checkout.get("client_secret"),
    )


@router.post(
    "/{organization_id}/subscriptions/{subscription_id}/change",
    response_model=ChangeSubscriptionResponse,
)
async def change_subscription(
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    target: CatalogItemRef,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> ChangeSubscriptionResponse:
    """Upgrade now, or schedule a downgrade for the end of the period."""
    try:
        result = await subscription_service.change_subscription(
            db, gateway, EntitlementProvisioner(), organization_id, subscription_id, target
        )
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    await db.commit()
    return ChangeSubscriptionResponse(result=result)


@router.post(
    "/{organization_id}/subscriptions/{subscription_id}/cancel-downgrade",
    response_model=SubscriptionResponse,
)
async def cancel_scheduled_downgrade(
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    try:
        subscription = await subscription_service.cancel_scheduled_downgrade(
            db, gateway, organization_id, subscription_id
        )
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{organization_id}/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
)
async def cancel_subscription(
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    """Cancel at the end of the current billing period."""
    try:
        subscription = await subscription_service.cancel_at_period_end(db, gateway, organization_id, subscription_id)
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{organization_id}/subscriptions/{subscription_id}/resume",
    response_model=SubscriptionResponse,
)
async def resume_subscription(
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    try:
        subscription = await subscription_service.resume(db, gateway, organization_id, subscription_id)
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{organization_id}/trials",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_trial(
    organization_id: uuid.UUID,
    body: StartTrialRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    """Start a card-collecting trial of a tool."""
    organization = await _require_organization(db, organization_id)
    try:
        subscription = await subscription_service.start_trial(
            db,
            gateway,
            TrialAbuseDetector(gateway),
            EntitlementProvisioner(),
            organization,
            body.tool_id,
            user_id=body.user_id,
            email=body.email,
        )
    except BillingError as e:
        raise _billing_http_error(e) from e
    except stripe.StripeError as e:
        raise _stripe_http_error(e) from e

    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{organization_id}/trials/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
)
async def cancel_trial(
    organization_id: uuid.UUID,
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    try:
        subscription = await subscription_service.cancel_trial(db, gateway, organization_id, subscription_id)
    except BillingError as e:
        raise _billing_http_error(e) from e

    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.delete("/{organization_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_organization(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Soft-delete an organization and its subscriptions."""
    if not await soft_delete_organization(db, organization_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
