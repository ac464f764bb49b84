"""Initial schema: agents, services, orders, deliverables, events, settlements.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = sa.JSON().with_variant(JSONB(), "postgresql")
_ts = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "provider_agents",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("owner_wallet", sa.String(42)),
        sa.Column("payout_wallet", sa.String(42)),
        sa.Column("endpoint_url", sa.Text()),
        sa.Column("created_at", _ts, nullable=False),
    )
    op.create_table(
        "services",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "agent_id",
            sa.Uuid(),
            sa.ForeignKey("provider_agents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("price_usd", sa.Numeric(18, 2)),
        sa.Column("price_type", sa.String(10), nullable=False),
        sa.Column("quota_limit", sa.Integer(), nullable=False),
        sa.Column("billing_period", sa.String(10), nullable=False),
        sa.Column("provider_key", sa.String(20)),
        sa.Column("provider_model", sa.String(50)),
        sa.Column("system_prompt", sa.Text()),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", _ts, nullable=False),
        sa.CheckConstraint("quota_limit >= 0", name="ck_service_quota_nonnegative"),
        sa.CheckConstraint(
            "price_type IN ('fixed', 'quote')", name="ck_service_valid_price_type"
        ),
    )
    op.create_index("idx_service_agent", "services", ["agent_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("service_id", sa.Uuid(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column(
            "provider_agent_id",
            sa.Uuid(),
            sa.ForeignKey("provider_agents.id"),
            nullable=False,
        ),
        sa.Column("client_agent_id", sa.String(64)),
        sa.Column("client_wallet", sa.String(42)),
        sa.Column("brief", sa.Text(), nullable=False),
        sa.Column("reference_urls", _json),
        sa.Column("quoted_price_usd", sa.Numeric(18, 2)),
        sa.Column("platform_fee_usd", sa.Numeric(18, 2)),
        sa.Column("payment_method", sa.String(20)),
        sa.Column("escrow_tx_hash", sa.String(66)),
        sa.Column("payout_tx_hash", sa.String(66)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("deliverable_url", sa.Text()),
        sa.Column("deliverable_media_type", sa.String(10)),
        sa.Column("quota_total", sa.Integer(), nullable=False),
        sa.Column("quota_used", sa.Integer(), nullable=False),
        sa.Column("workspace_expires_at", _ts),
        sa.Column("fulfillment_attempts", sa.Integer(), nullable=False),
        sa.Column("fulfillment_started_at", _ts),
        sa.Column("last_fulfillment_error", sa.Text()),
        sa.Column("created_at", _ts, nullable=False),
        sa.Column("updated_at", _ts, nullable=False),
        sa.Column("paid_at", _ts),
        sa.Column("delivered_at", _ts),
        sa.Column("review_deadline", _ts),
        sa.Column("completed_at", _ts),
        sa.CheckConstraint(
            "status IN ('pending_quote', 'quoted', 'accepted', 'paid', 'in_progress', "
            "'delivered', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        sa.CheckConstraint(
            "quota_used >= 0 AND quota_used <= quota_total",
            name="ck_order_quota_bounds",
        ),
        sa.CheckConstraint("fulfillment_attempts >= 0", name="ck_order_attempts_nonnegative"),
    )
    op.create_index(
        "uq_orders_escrow_tx_hash",
        "orders",
        ["escrow_tx_hash"],
        unique=True,
        postgresql_where=sa.text("escrow_tx_hash IS NOT NULL"),
        sqlite_where=sa.text("escrow_tx_hash IS NOT NULL"),
    )
    op.create_index("idx_order_status", "orders", ["status"])
    op.create_index("idx_order_client_wallet", "orders", ["client_wallet"])
    op.create_index("idx_order_provider", "orders", ["provider_agent_id"])
    op.create_index("idx_order_created_at", "orders", ["created_at"])

    op.create_table(
        "order_deliverables",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id", sa.Uuid(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("deliverable_url", sa.Text()),
        sa.Column("deliverable_media_type", sa.String(10)),
        sa.Column("status", sa.String(12), nullable=False),
        sa.Column("error", sa.Text()),
        sa.Column("created_at", _ts, nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_deliverable_valid_status",
        ),
    )
    op.create_index("idx_deliverable_order", "order_deliverables", ["order_id"])

    op.create_table(
        "order_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id", sa.Uuid(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20)),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", _json),
        sa.Column("created_at", _ts, nullable=False),
    )
    op.create_index("idx_event_order", "order_events", ["order_id"])
    op.create_index("idx_event_type", "order_events", ["event_type"])

    op.create_table(
        "settlements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id", sa.Uuid(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("recipient_wallet", sa.String(42), nullable=False),
        sa.Column("amount_usdc", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(12), nullable=False),
        sa.Column("tx_hash", sa.String(66), unique=True),
        sa.Column("error", sa.Text()),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", _ts, nullable=False),
        sa.Column("settled_at", _ts),
        sa.CheckConstraint("kind IN ('payout', 'refund')", name="ck_settlement_valid_kind"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'unconfirmed', 'failed')",
            name="ck_settlement_valid_status",
        ),
        sa.CheckConstraint("amount_usdc > 0", name="ck_settlement_positive_amount"),
    )
    op.create_index("idx_settlement_order", "settlements", ["order_id"])
    op.create_index("idx_settlement_status", "settlements", ["status"])


def downgrade() -> None:
    op.drop_table("settlements")
    op.drop_table("order_events")
    op.drop_table("order_deliverables")
    op.drop_table("orders")
    op.drop_table("services")
    op.drop_table("provider_agents")
