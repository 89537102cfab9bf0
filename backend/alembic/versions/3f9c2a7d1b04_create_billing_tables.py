"""create_billing_tables

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-02-23 13:05:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1b04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Tenants
    op.create_table(
        "organizations",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("billing_email", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True, unique=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organizations_slug", "organizations", ["slug"])

    op.create_table(
        "organization_members",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("organization_id", sa.UUID(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_org_members_org_user"),
    )
    op.create_index("ix_organization_members_organization_id", "organization_members", ["organization_id"])
    op.create_index("ix_organization_members_user_id", "organization_members", ["user_id"])

    # Catalog
    op.create_table(
        "tools",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("trial_days", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "features",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("tool_id", sa.UUID(), sa.ForeignKey("tools.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_features_tool_id", "features", ["tool_id"])

    op.create_table(
        "plans",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("tool_id", sa.UUID(), sa.ForeignKey("tools.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tier", sa.String(50), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("interval", sa.String(20), nullable=False),
        sa.Column("stripe_product_id", sa.String(255), nullable=True),
        sa.Column("stripe_price_id_monthly", sa.String(255), nullable=True),
        sa.Column("stripe_price_id_yearly", sa.String(255), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_trial_plan", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_plans_tool_id", "plans", ["tool_id"])
    op.create_index("ix_plans_stripe_price_id_monthly", "plans", ["stripe_price_id_monthly"])
    op.create_index("ix_plans_stripe_price_id_yearly", "plans", ["stripe_price_id_yearly"])

    op.create_table(
        "bundles",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("interval", sa.String(20), nullable=False),
        sa.Column("stripe_price_id_monthly", sa.String(255), nullable=True),
        sa.Column("stripe_price_id_yearly", sa.String(255), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_bundles_stripe_price_id_monthly", "bundles", ["stripe_price_id_monthly"])
    op.create_index("ix_bundles_stripe_price_id_yearly", "bundles", ["stripe_price_id_yearly"])

    op.create_table(
        "bundle_plans",
        sa.Column("bundle_id", sa.UUID(), sa.ForeignKey("bundles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("plan_id", sa.UUID(), sa.ForeignKey("plans.id", ondelete="CASCADE"), primary_key=True),
        *_timestamps(),
    )

    op.create_table(
        "plan_limits",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("plan_id", sa.UUID(), sa.ForeignKey("plans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("feature_id", sa.UUID(), sa.ForeignKey("features.id", ondelete="CASCADE"), nullable=False),
        sa.Column("default_limit", sa.Integer(), nullable=True),
        sa.Column("reset_period", sa.String(20), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "feature_id", name="uq_plan_limits_plan_feature"),
    )
    op.create_index("ix_plan_limits_plan_id", "plan_limits", ["plan_id"])

    # Billing state
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("organization_id", sa.UUID(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.UUID(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("bundle_id", sa.UUID(), sa.ForeignKey("bundles.id"), nullable=True),
        sa.Column("upcoming_plan_id", sa.UUID(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("upcoming_bundle_id", sa.UUID(), sa.ForeignKey("bundles.id"), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("card_fingerprint", sa.String(255), nullable=True),
        sa.Column("cancellation_reason", sa.String(100), nullable=True),
        sa.Column("last_payment_failure_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("stripe_subscription_id", "organization_id", name="uq_subscriptions_stripe_sub_org"),
    )
    op.create_index("ix_subscriptions_organization_id", "subscriptions", ["organization_id"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index("ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_card_fingerprint", "subscriptions", ["card_fingerprint"])

    op.create_table(
        "organization_entitlements",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("organization_id", sa.UUID(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tool_id", sa.UUID(), sa.ForeignKey("tools.id", ondelete="CASCADE"), nullable=False),
        sa.Column("feature_id", sa.UUID(), sa.ForeignKey("features.id", ondelete="CASCADE"), nullable=False),
        sa.Column("limit_amount", sa.Integer(), nullable=True),
        sa.Column("usage_amount", sa.Integer(), server_default="0", nullable=False),
        sa.Column("reset_period", sa.String(20), nullable=True),
        sa.Column("last_reset_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "feature_id", name="uq_org_entitlements_org_feature"),
    )
    op.create_index(
        "ix_organization_entitlements_organization_id", "organization_entitlements", ["organization_id"]
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("stripe_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])

    # Operations
    system_configs = op.create_table(
        "system_configs",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("category", sa.String(50), nullable=False),
        *_timestamps(),
    )
    op.bulk_insert(
        system_configs,
        [
            {
                "key": "payment_grace_period_days",
                "value": "3",
                "description": "Days a past-due subscription keeps access before it is cancelled",
                "category": "payment",
            },
        ],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("actor_id", sa.UUID(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("system_configs")
    op.drop_table("webhook_events")
    op.drop_table("organization_entitlements")
    op.drop_table("subscriptions")
    op.drop_table("plan_limits")
    op.drop_table("bundle_plans")
    op.drop_table("bundles")
    op.drop_table("plans")
    op.drop_table("features")
    op.drop_table("tools")
    op.drop_table("organization_members")
    op.drop_table("organizations")
