"""Internal service API — called by tools with a shared service key, not by end users."""

import logging
import uuid

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from toolhub.api.deps import get_db, get_reconciler, require_service_key
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.errors import InvalidBillingOperationError
from toolhub.billing.reconciler import SubscriptionReconciler
from toolhub.models.organization_entitlement import OrganizationEntitlement
from toolhub.schemas.billing import (
    ConsumeRequest,
    ConsumeResponse,
    EntitlementResponse,
    SubscriptionResponse,
    SyncResponse,
)
from toolhub.services.organization_service import get_organization
from toolhub.services.subscription_service import get_current_subscription

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/internal/organizations",
    tags=["internal"],
    dependencies=[Depends(require_service_key)],
)


@router.get("/{organization_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    subscription = await get_current_subscription(db, organization_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")
    return SubscriptionResponse.model_validate(subscription)


@router.get("/{organization_id}/entitlements", response_model=list[EntitlementResponse])
async def get_entitlements(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[EntitlementResponse]:
    result = await db.execute(
        select(OrganizationEntitlement).where(OrganizationEntitlement.organization_id == organization_id)
    )
    return [EntitlementResponse.model_validate(row) for row in result.scalars().all()]


@router.post("/{organization_id}/entitlements/consume", response_model=ConsumeResponse)
async def consume_entitlement(
    organization_id: uuid.UUID,
    body: ConsumeRequest,
    db: AsyncSession = Depends(get_db),
) -> ConsumeResponse:
    """Check and meter usage of a feature. Always 200; ``allowed`` carries the verdict."""
    result = await EntitlementProvisioner().consume(db, organization_id, body.feature_slug, body.amount)
    await db.commit()
    return ConsumeResponse(
        allowed=result.allowed,
        reason=result.reason,
        usage_amount=result.usage_amount,
        limit_amount=result.limit_amount,
    )


@router.post("/{organization_id}/billing/sync", response_model=SyncResponse)
async def sync_billing(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> SyncResponse:
    """Admin manual sync: pull the organization's subscriptions from Stripe."""
    organization = await get_organization(db, organization_id)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    try:
        updated = await reconciler.sync_organization(db, organization)
        await db.commit()
    except InvalidBillingOperationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except stripe.StripeError as e:
        logger.error("Stripe error during manual sync of org %s: %s", organization_id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment service error. Please try again.",
        ) from e

    return SyncResponse(updated=updated)
