"""
Initial schema: snapshots, throttle ledger, metadata, subscriptions,
polling tasks and the dispatch outbox.

Revision ID: 001
Revises: None
Create Date: 2026-10-02

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-11: Add dispatch_outbox (STORY-109)

TODO:
- None
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = True, now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if now else None,
    )


def upgrade() -> None:
    """Create every ChargeWatch table and index.

    The active-subscription unique index uses NULLS NOT DISTINCT
    (PostgreSQL 15+) so two "any port" watches for the same endpoint and
    station collide like numbered ports do.
    """
    op.create_table(
        "station_snapshots",
        sa.Column("station_id", sa.Integer(), primary_key=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("port1_status", sa.Text(), nullable=True),
        sa.Column("port1_power_kw", sa.Double(), nullable=True),
        sa.Column("port1_price_kwh", sa.Double(), nullable=True),
        _timestamp("port1_update_date"),
        _timestamp("port1_status_changed_at"),
        sa.Column("port2_status", sa.Text(), nullable=True),
        sa.Column("port2_power_kw", sa.Double(), nullable=True),
        sa.Column("port2_price_kwh", sa.Double(), nullable=True),
        _timestamp("port2_update_date"),
        _timestamp("port2_status_changed_at"),
        sa.Column("overall_status", sa.Text(), nullable=True),
        sa.Column(
            "emergency_stop_pressed", sa.Boolean(), nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("situation_code", sa.Text(), nullable=True),
        _timestamp("observed_at", nullable=False),
        sa.Column("payload_hash", sa.Text(), nullable=False),
        _timestamp("created_at", nullable=False, now=True),
    )

    op.create_table(
        "snapshot_throttle",
        sa.Column("station_id", sa.Integer(), primary_key=True),
        sa.Column("last_payload_hash", sa.Text(), nullable=False),
        _timestamp("last_snapshot_at", nullable=False),
    )

    op.create_table(
        "station_metadata",
        sa.Column("station_id", sa.Integer(), primary_key=True),
        sa.Column("cupr_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Numeric(9, 6), nullable=True),
        sa.Column("longitude", sa.Numeric(9, 6), nullable=True),
        sa.Column("address_full", sa.Text(), nullable=True),
        _timestamp("updated_at", nullable=False, now=True),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("station_id", sa.Integer(), nullable=False),
        sa.Column("port_number", sa.SmallInteger(), nullable=True),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column(
            "target_status", sa.Text(), nullable=False, server_default="AVAILABLE",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("last_notified_at"),
        sa.Column("delivery_failures", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at", nullable=False, now=True),
        sa.CheckConstraint(
            "port_number IS NULL OR port_number IN (1, 2)",
            name="subscriptions_port_number_check",
        ),
    )
    op.create_index(
        "subscriptions_unique_active",
        "subscriptions",
        ["station_id", "port_number", "endpoint"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        postgresql_nulls_not_distinct=True,
    )
    op.create_index(
        "idx_subscriptions_station_port_active",
        "subscriptions",
        ["station_id", "port_number"],
        postgresql_where=sa.text("is_active"),
    )
    op.create_index("idx_subscriptions_endpoint", "subscriptions", ["endpoint"])

    op.create_table(
        "polling_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id"),
            nullable=False,
        ),
        sa.Column("station_id", sa.Integer(), nullable=False),
        sa.Column("target_port", sa.SmallInteger(), nullable=True),
        sa.Column(
            "target_status", sa.Text(), nullable=False, server_default="AVAILABLE",
        ),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("poll_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_polls", sa.Integer(), nullable=False),
        sa.Column(
            "consecutive_available", sa.Integer(), nullable=False, server_default="0",
        ),
        _timestamp("last_seen_port_update_at"),
        sa.Column("last_seen_status", sa.Text(), nullable=True),
        _timestamp("expires_at", nullable=False),
        _timestamp("last_checked_at"),
        _timestamp("claimed_at"),
        _timestamp("completed_at"),
        _timestamp("created_at", nullable=False, now=True),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'dispatching', "
            "'completed', 'cancelled', 'expired')",
            name="polling_tasks_status_check",
        ),
    )
    op.create_index(
        "idx_polling_tasks_active",
        "polling_tasks",
        ["status"],
        postgresql_where=sa.text("status IN ('pending', 'running', 'dispatching')"),
    )
    op.create_index(
        "idx_polling_tasks_subscription_id", "polling_tasks", ["subscription_id"],
    )

    op.create_table(
        "dispatch_outbox",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("station_id", sa.Integer(), nullable=False),
        sa.Column("port_number", sa.SmallInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("available_at", nullable=False, now=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False, now=True),
    )
    op.create_index(
        "idx_dispatch_outbox_pending",
        "dispatch_outbox",
        ["available_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    """Drop every ChargeWatch table (indexes go with them)."""
    op.drop_table("dispatch_outbox")
    op.drop_table("polling_tasks")
    op.drop_table("subscriptions")
    op.drop_table("station_metadata")
    op.drop_table("snapshot_throttle")
    op.drop_table("station_snapshots")
