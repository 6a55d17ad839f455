"""tenant billing schema

Revision ID: 001_billing
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_billing"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


plan_type = _enum("plantype", "trial", "monthly", "yearly")
billing_cycle = _enum("billingcycle", "one_time", "monthly", "yearly")
subscription_status = _enum(
    "subscriptionstatus", "trial", "pending", "active", "expired", "canceled"
)
payment_method = _enum(
    "paymentmethod", "evc_plus", "cash", "bank_transfer", "mobile_money", "free", "other"
)
payment_channel = _enum("paymentchannel", "gateway", "offline", "internal")
payment_context = _enum("paymentcontext", "subscription", "pos", "debt")
payment_status = _enum(
    "paymentstatus", "pending", "confirmed", "failed", "refunded", "partially_refunded"
)
integration_status = _enum(
    "integrationstatus",
    "not_applicable",
    "requested",
    "processing",
    "success",
    "failed",
    "timed_out",
)
verification_outcome = _enum("verificationoutcome", "successful", "failed", "pending")
discount_type = _enum("discounttype", "fixed", "percentage")
cancel_reason = _enum(
    "cancelreason", "cost", "features", "competitor", "usability", "support", "other"
)
history_action = _enum(
    "historyaction",
    "created",
    "activated",
    "renewed",
    "updated",
    "payment_failed",
    "payment_succeeded",
    "canceled",
    "expired",
    "plan_changed",
    "trial_started",
    "trial_ended",
    "trial_converted",
)
callback_status = _enum("callbackstatus", "pending", "processed", "ignored", "failed")
account_role = _enum("accountrole", "owner", "admin", "employee")

ENUMS = (
    plan_type,
    billing_cycle,
    subscription_status,
    payment_method,
    payment_channel,
    payment_context,
    payment_status,
    integration_status,
    verification_outcome,
    discount_type,
    cancel_reason,
    history_action,
    callback_status,
    account_role,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("business_name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "tenant_accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.UUID(), nullable=False),
        sa.Column("full_name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("role", account_role, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_tenant_accounts_tenant_id", "tenant_accounts", ["tenant_id"])

    # Plan catalog
    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("plan_type", plan_type, nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_cycle", billing_cycle, nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("limits", sa.JSON(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_type"),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.UUID(), nullable=False),
        sa.Column("plan_type", plan_type, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_cycle", billing_cycle, nullable=False),
        sa.Column("discount_code", sa.String(length=40), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_retention_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", payment_method, nullable=True),
        sa.Column("payment_verified", sa.Boolean(), nullable=False),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False),
        sa.Column("payer_phone", sa.String(length=40), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("reminder_sent", sa.Boolean(), nullable=False),
        sa.Column("renewal_attempted_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", cancel_reason, nullable=True),
        sa.Column("cancel_feedback", sa.Text(), nullable=True),
        sa.Column("canceled_by", sa.String(length=80), nullable=True),
        sa.Column("previous_plans", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])
    op.create_index(
        "uq_subscriptions_open_per_tenant",
        "subscriptions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('trial', 'pending', 'active')"),
    )
    op.create_table(
        "subscription_history",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", history_action, nullable=False),
        sa.Column("from_status", subscription_status, nullable=True),
        sa.Column("to_status", subscription_status, nullable=False),
        sa.Column("payment_id", sa.UUID(), nullable=True),
        sa.Column("actor_id", sa.String(length=80), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_history_subscription_id", "subscription_history", ["subscription_id"]
    )

    # Payment ledger
    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.UUID(), nullable=False),
        sa.Column("context", payment_context, nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column("pos_order_id", sa.String(length=80), nullable=True),
        sa.Column("debt_id", sa.String(length=80), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("original_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("method", payment_method, nullable=False),
        sa.Column("channel", payment_channel, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("integration_status", integration_status, nullable=False),
        sa.Column("plan_type", plan_type, nullable=True),
        sa.Column("payer_phone", sa.String(length=40), nullable=True),
        sa.Column("payer_name", sa.String(length=160), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=120), nullable=True),
        sa.Column("gateway_response_code", sa.String(length=20), nullable=True),
        sa.Column("gateway_response_message", sa.Text(), nullable=True),
        sa.Column("discount_id", sa.UUID(), nullable=True),
        sa.Column("discount_code", sa.String(length=40), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("proof_reference", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("confirmed_by", sa.String(length=80), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_by", sa.String(length=80), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_tenant_id", "payments", ["tenant_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_gateway_transaction_id", "payments", ["gateway_transaction_id"])
    op.create_table(
        "payment_verification_attempts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("payment_id", sa.UUID(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("attempted_by", sa.String(length=80), nullable=True),
        sa.Column("outcome", verification_outcome, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_payment_verification_attempts_payment_id",
        "payment_verification_attempts",
        ["payment_id"],
    )

    # Discounts
    op.create_table(
        "discount_codes",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("code", sa.String(length=40), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", discount_type, nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("minimum_purchase", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("per_user_limit", sa.Integer(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("applicable_for", sa.JSON(), nullable=False),
        sa.Column("tenant_id", sa.UUID(), nullable=True),
        sa.Column("created_by", sa.String(length=80), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )
    op.create_index("ix_discount_codes_tenant_id", "discount_codes", ["tenant_id"])
    op.create_table(
        "discount_redemptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("discount_id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.UUID(), nullable=False),
        sa.Column("payment_id", sa.UUID(), nullable=True),
        sa.Column("context", payment_context, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["discount_id"], ["discount_codes.id"]),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discount_redemptions_discount_id", "discount_redemptions", ["discount_id"])
    op.create_index("ix_discount_redemptions_tenant_id", "discount_redemptions", ["tenant_id"])
    op.create_index("ix_discount_redemptions_payment_id", "discount_redemptions", ["payment_id"])

    # Gateway callbacks
    op.create_table(
        "gateway_callbacks",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("reference", sa.String(length=80), nullable=True),
        sa.Column("transaction_id", sa.String(length=120), nullable=True),
        sa.Column("result_code", sa.String(length=20), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", callback_status, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_gateway_callbacks_reference", "gateway_callbacks", ["reference"])


def downgrade() -> None:
    op.drop_table("gateway_callbacks")
    op.drop_table("discount_redemptions")
    op.drop_table("discount_codes")
    op.drop_table("payment_verification_attempts")
    op.drop_table("payments")
    op.drop_table("subscription_history")
    op.drop_table("subscriptions")
    op.drop_table("pricing_plans")
    op.drop_table("tenant_accounts")
    op.drop_table("tenants")
    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
