"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("external_id", sa.String(128), unique=True),
        sa.Column("billing_phone", sa.String(32)),
        sa.Column("phone_key", sa.String(11)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("device_id", sa.String(256)),
        sa.Column("user_agent", sa.Text),
        sa.Column("first_name", sa.String(128)),
        sa.Column("last_name", sa.String(128)),
        sa.Column("address_1", sa.String(255)),
        sa.Column("address_2", sa.String(255)),
        sa.Column("city", sa.String(128)),
        sa.Column("postcode", sa.String(32)),
        sa.Column("address_key", sa.String(512)),
        sa.Column("status", sa.String(32)),
        sa.Column("total", sa.Float),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_orders_phone_key_created", "orders", ["phone_key", "created_at"])
    op.create_index("ix_orders_billing_phone_created", "orders", ["billing_phone", "created_at"])
    op.create_index("ix_orders_ip_created", "orders", ["ip_address", "created_at"])
    op.create_index("ix_orders_address_key_created", "orders", ["address_key", "created_at"])
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "order_scores",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "order_id", sa.String(36),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("percentage", sa.Integer, nullable=False),
        sa.Column("signals", sa.JSON),
        sa.Column("reason", sa.Text),
        sa.Column("scored_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "block_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("value", sa.String(256), nullable=False),
        sa.Column("note", sa.Text),
        sa.Column("created_by", sa.String(128)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("type", "value", name="uq_block_entries_type_value"),
    )

    op.create_table(
        "blocked_attempts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("phone", sa.String(32)),
        sa.Column("name", sa.String(256)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.Text),
        sa.Column("detail", sa.Text),
        sa.Column("extra", sa.JSON),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_blocked_attempts_created", "blocked_attempts", ["created_at"])
    op.create_index("ix_blocked_attempts_type_created", "blocked_attempts", ["type", "created_at"])


def downgrade():
    op.drop_table("blocked_attempts")
    op.drop_table("block_entries")
    op.drop_table("order_scores")
    op.drop_table("orders")
