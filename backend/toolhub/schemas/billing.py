"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class CatalogItemRef(BaseModel):
    """A plan or bundle selected for checkout or a plan change."""

    type: Literal["plan", "bundle"]
    id: uuid.UUID
    interval: Literal["monthly", "yearly"] = "monthly"


class CheckoutRequest(BaseModel):
    """Start a Stripe Checkout for an organization."""

    items: list[CatalogItemRef] = Field(min_length=1)
    email: str | None = None
    user_id: uuid.UUID | None = None  # lets trial eligibility follow the user across orgs
    ui_mode: Literal["hosted", "embedded"] = "hosted"


class StartTrialRequest(BaseModel):
    tool_id: uuid.UUID
    user_id: uuid.UUID | None = None
    email: str | None = None


class ConsumeRequest(BaseModel):
    """Meter usage of a feature on behalf of an organization."""

    feature_slug: str = Field(min_length=1)
    amount: int = Field(default=1, ge=1)


# --- Response schemas ---


class WebhookResponse(BaseModel):
    received: bool = True
    status: str  # processed, ignored, already_processed, processing


class PlanSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    tier: str
    price: int
    is_trial_plan: bool


class BundleSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    price: int


class SubscriptionResponse(BaseModel):
    """Current subscription of an organization."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    status: str
    stripe_subscription_id: str | None
    plan: PlanSummary | None
    bundle: BundleSummary | None
    upcoming_plan_id: uuid.UUID | None
    upcoming_bundle_id: uuid.UUID | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    cancellation_reason: str | None


class FeatureSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    description: str | None


class EntitlementResponse(BaseModel):
    """Effective limit and usage of one feature."""

    model_config = ConfigDict(from_attributes=True)

    tool_id: uuid.UUID
    feature: FeatureSummary
    limit_amount: int | None  # None = unlimited
    usage_amount: int
    reset_period: str | None
    last_reset_at: datetime


class ConsumeResponse(BaseModel):
    allowed: bool
    reason: str | None = None  # no_entitlement, limit_exceeded
    usage_amount: int | None = None
    limit_amount: int | None = None


class SyncResponse(BaseModel):
    """Result of a manual Stripe sync."""

    message: str = "Sync complete"
    updated: int


class CheckoutResponse(BaseModel):
    session_id: str
    url: str | None = None  # hosted mode
    client_secret: str | None = None  # embedded mode


class ChangeSubscriptionResponse(BaseModel):
    result: Literal["updated", "downgrade_scheduled"]
