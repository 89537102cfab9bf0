"""SQLAlchemy models for Toolhub billing.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from toolhub.models.audit_log import AuditLog
from toolhub.models.organization import Organization, OrganizationMember
from toolhub.models.organization_entitlement import OrganizationEntitlement
from toolhub.models.plan import Bundle, BundlePlan, Plan, PlanLimit
from toolhub.models.subscription import Subscription
from toolhub.models.system_config import SystemConfig
from toolhub.models.tool import Feature, Tool
from toolhub.models.webhook_event import WebhookEvent

__all__ = [
    "AuditLog",
    "Bundle",
    "BundlePlan",
    "Feature",
    "Organization",
    "OrganizationEntitlement",
    "OrganizationMember",
    "Plan",
    "PlanLimit",
    "Subscription",
    "SystemConfig",
    "Tool",
    "WebhookEvent",
]
