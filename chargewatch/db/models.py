"""
SQLAlchemy ORM models for the ChargeWatch database.

Defines the latest-snapshot store, the snapshot throttle ledger, station
reference metadata, push subscriptions, polling tasks, and the dispatch
outbox. Every table is keyed so writes can be expressed as PostgreSQL
upserts or conditional updates.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-06: Add PollingTask debounce columns (STORY-104)
- 2026-10-09: Add Subscription.delivery_failures (STORY-107)
- 2026-10-11: Add DispatchOutbox (STORY-109)

TODO:
- None
"""

import datetime
import uuid
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ChargeWatch ORM models."""

    pass


class PortStatus(StrEnum):
    """Normalized upstream port status values."""

    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    BUSY = "BUSY"
    CLOSED = "CLOSED"


# Statuses that count as "in use" for occupied -> available transitions.
OCCUPIED_STATUSES = frozenset({PortStatus.OCCUPIED, PortStatus.BUSY})


class TaskStatus(StrEnum):
    """Polling task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)
NON_TERMINAL_TASK_STATUSES = (
    TaskStatus.PENDING,
    TaskStatus.RUNNING,
    TaskStatus.DISPATCHING,
)


class OutboxStatus(StrEnum):
    """Dispatch outbox job states."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class StationSnapshot(Base):
    """Latest observed state of a charging station.

    Exactly one row per station; every accepted ingestion replaces it
    through an upsert keyed by ``station_id``.

    Attributes:
        station_id: Upstream charge point identifier.
        source: Which client flow produced the snapshot.
        portN_status: Normalized port status, or None when unknown.
        portN_power_kw: Port power in kW.
        portN_price_kwh: Port price per kWh.
        portN_update_date: When upstream last reported this port.
        portN_status_changed_at: When the port status last differed from
            the previous snapshot.
        overall_status: Station-level status.
        emergency_stop_pressed: Emergency stop flag.
        situation_code: OPER / MAINT / OOS.
        observed_at: When this state was stored.
        payload_hash: Deterministic digest used for deduplication.
        created_at: Row creation timestamp.
    """

    __tablename__ = "station_snapshots"

    station_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    port1_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    port1_power_kw: Mapped[float | None] = mapped_column(Double, nullable=True)
    port1_price_kwh: Mapped[float | None] = mapped_column(Double, nullable=True)
    port1_update_date: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    port1_status_changed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    port2_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    port2_power_kw: Mapped[float | None] = mapped_column(Double, nullable=True)
    port2_price_kwh: Mapped[float | None] = mapped_column(Double, nullable=True)
    port2_update_date: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    port2_status_changed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    overall_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    emergency_stop_pressed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    situation_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    observed_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    payload_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    def port_status(self, port: int) -> str | None:
        """Return the status of *port* (1 or 2)."""
        return getattr(self, f"port{port}_status")

    def port_update_date(self, port: int) -> datetime.datetime | None:
        """Return the upstream update date of *port* (1 or 2)."""
        return getattr(self, f"port{port}_update_date")

    def __repr__(self) -> str:
        """Return string representation of the StationSnapshot."""
        return (
            f"StationSnapshot(station_id={self.station_id!r}, "
            f"port1_status={self.port1_status!r}, "
            f"port2_status={self.port2_status!r})"
        )


class SnapshotThrottle(Base):
    """Throttle ledger entry: the last snapshot actually stored per station."""

    __tablename__ = "snapshot_throttle"

    station_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_payload_hash: Mapped[str] = mapped_column(Text, nullable=False)
    last_snapshot_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )


class StationMetadata(Base):
    """Lightweight station reference data refreshed on every ingestion."""

    __tablename__ = "station_metadata"

    station_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cupr_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Numeric(9, 6), nullable=True)
    longitude: Mapped[float | None] = mapped_column(Numeric(9, 6), nullable=True)
    address_full: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class Subscription(Base):
    """A browser push endpoint watching one station port.

    At most one *active* row exists per (station, port, endpoint); this is
    enforced by a partial unique index so subscribe can upsert on it.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "subscriptions_unique_active",
            "station_id",
            "port_number",
            "endpoint",
            unique=True,
            postgresql_where=text("is_active"),
            postgresql_nulls_not_distinct=True,
        ),
        Index(
            "idx_subscriptions_station_port_active",
            "station_id",
            "port_number",
            postgresql_where=text("is_active"),
        ),
        Index("idx_subscriptions_endpoint", "endpoint"),
        CheckConstraint(
            "port_number IS NULL OR port_number IN (1, 2)",
            name="subscriptions_port_number_check",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    station_id: Mapped[int] = mapped_column(Integer, nullable=False)
    port_number: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    target_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=PortStatus.AVAILABLE.value,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_notified_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    delivery_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    def __repr__(self) -> str:
        """Return string representation of the Subscription."""
        return (
            f"Subscription(id={self.id!r}, station_id={self.station_id!r}, "
            f"port_number={self.port_number!r}, is_active={self.is_active!r})"
        )


class PollingTask(Base):
    """Background watch: poll a station until a port reaches the target status."""

    __tablename__ = "polling_tasks"
    __table_args__ = (
        Index(
            "idx_polling_tasks_active",
            "status",
            postgresql_where=text("status IN ('pending', 'running', 'dispatching')"),
        ),
        Index("idx_polling_tasks_subscription_id", "subscription_id"),
        CheckConstraint(
            "status IN ('pending', 'running', 'dispatching', "
            "'completed', 'cancelled', 'expired')",
            name="polling_tasks_status_check",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False,
    )
    station_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_port: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    target_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=PortStatus.AVAILABLE.value,
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=TaskStatus.PENDING.value,
    )
    poll_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_polls: Mapped[int] = mapped_column(Integer, nullable=False)
    consecutive_available: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    last_seen_port_update_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_seen_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    last_checked_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    claimed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    def __repr__(self) -> str:
        """Return string representation of the PollingTask."""
        return (
            f"PollingTask(id={self.id!r}, station_id={self.station_id!r}, "
            f"status={self.status!r}, poll_count={self.poll_count!r})"
        )


class DispatchOutbox(Base):
    """Pending reactive dispatch for a port that just became available."""

    __tablename__ = "dispatch_outbox"
    __table_args__ = (
        Index(
            "idx_dispatch_outbox_pending",
            "available_at",
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    station_id: Mapped[int] = mapped_column(Integer, nullable=False)
    port_number: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=OutboxStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
