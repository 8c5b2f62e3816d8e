"""
Snapshot store: the single latest observed state per station.

Writes replace the station's row through ``INSERT ... ON CONFLICT
(station_id) DO UPDATE`` so there is never more than one snapshot per
station. Also owns the station reference metadata and the scraper
freshness check.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)
- 2026-10-05: Track per-port status change timestamps (STORY-103)
- 2026-10-12: Add freshness check (STORY-110)
- 2026-10-16: Newest observation across stations for /health (STORY-115)

TODO:
- None
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.db.models import (
    OCCUPIED_STATUSES,
    PortStatus,
    StationMetadata,
    StationSnapshot,
)

PORTS = (1, 2)

# Columns copied verbatim from the normalized report into the snapshot row.
SNAPSHOT_FIELDS = (
    "port1_status",
    "port1_power_kw",
    "port1_price_kwh",
    "port1_update_date",
    "port2_status",
    "port2_power_kw",
    "port2_price_kwh",
    "port2_update_date",
    "overall_status",
    "emergency_stop_pressed",
    "situation_code",
)


@dataclass(frozen=True)
class Freshness:
    """Result of a scraper freshness check for one station."""

    station_id: int
    last_observed_at: datetime
    age_minutes: float
    is_healthy: bool


async def get_snapshot(session: AsyncSession, station_id: int) -> StationSnapshot | None:
    """Return the latest snapshot for *station_id*, or None."""
    result = await session.execute(
        select(StationSnapshot).where(StationSnapshot.station_id == station_id)
    )
    return result.scalar_one_or_none()


async def get_snapshots(
    session: AsyncSession, station_ids: Iterable[int],
) -> dict[int, StationSnapshot]:
    """Return the latest snapshots for several stations keyed by station id."""
    ids = sorted(set(station_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(StationSnapshot).where(StationSnapshot.station_id.in_(ids))
    )
    return {snap.station_id: snap for snap in result.scalars().all()}


def status_changed_at(
    previous: StationSnapshot | None,
    port: int,
    new_status: str | None,
    now: datetime,
) -> datetime | None:
    """Compute the status-change timestamp for *port* after a write.

    A first snapshot stamps every known port. Afterwards the timestamp only
    moves when the port's status differs from the previous snapshot.
    """
    if previous is None:
        return now if new_status is not None else None
    if previous.port_status(port) != new_status:
        return now
    return getattr(previous, f"port{port}_status_changed_at")


def available_transitions(
    previous: StationSnapshot | None, fields: dict[str, Any],
) -> list[int]:
    """Return the ports that flipped from occupied to available.

    Args:
        previous: Snapshot before the write (None on first observation).
        fields: Normalized fields of the snapshot being written.

    Returns:
        list[int]: Port numbers whose status went OCCUPIED/BUSY -> AVAILABLE.
    """
    if previous is None:
        return []
    ports = []
    for port in PORTS:
        before = previous.port_status(port)
        after = fields.get(f"port{port}_status")
        if before in OCCUPIED_STATUSES and after == PortStatus.AVAILABLE:
            ports.append(port)
    return ports


async def upsert_snapshot(
    session: AsyncSession,
    *,
    station_id: int,
    source: str,
    fields: dict[str, Any],
    payload_hash: str,
    observed_at: datetime,
    previous: StationSnapshot | None,
) -> None:
    """Replace the station's snapshot row with the given state.

    Does not commit: the ingestion pipeline commits the snapshot together
    with its throttle ledger entry.

    Args:
        session: Async SQLAlchemy session.
        station_id: Station the snapshot belongs to.
        source: Client flow that produced the report.
        fields: Normalized snapshot fields (see ``SNAPSHOT_FIELDS``).
        payload_hash: Deterministic hash of *fields*.
        observed_at: Time the snapshot is stored.
        previous: Current row before the write, used for change tracking.
    """
    row: dict[str, Any] = {field: fields.get(field) for field in SNAPSHOT_FIELDS}
    row["emergency_stop_pressed"] = bool(row["emergency_stop_pressed"])
    for port in PORTS:
        row[f"port{port}_status_changed_at"] = status_changed_at(
            previous, port, row[f"port{port}_status"], observed_at,
        )
    row.update(
        station_id=station_id,
        source=source,
        payload_hash=payload_hash,
        observed_at=observed_at,
    )

    stmt = insert(StationSnapshot).values(**row)
    replaced = {key: stmt.excluded[key] for key in row if key != "station_id"}
    replaced["created_at"] = func.now()
    stmt = stmt.on_conflict_do_update(
        index_elements=[StationSnapshot.station_id],
        set_=replaced,
    )
    await session.execute(stmt)


async def upsert_station_metadata(
    session: AsyncSession,
    *,
    station_id: int,
    cupr_id: int | None,
    metadata: dict[str, Any],
) -> None:
    """Insert or refresh station reference data.

    Only keys with a non-None value overwrite existing columns, so a
    partial report never erases known coordinates or addresses.
    """
    values = {
        key: metadata.get(key)
        for key in ("name", "latitude", "longitude", "address_full")
        if metadata.get(key) is not None
    }
    if cupr_id is not None:
        values["cupr_id"] = cupr_id

    stmt = insert(StationMetadata).values(station_id=station_id, **values)
    updates: dict[str, Any] = {key: stmt.excluded[key] for key in values}
    updates["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(
        index_elements=[StationMetadata.station_id],
        set_=updates,
    )
    await session.execute(stmt)


async def get_station_metadata(
    session: AsyncSession, station_id: int,
) -> StationMetadata | None:
    """Return station reference data for *station_id*, or None."""
    result = await session.execute(
        select(StationMetadata).where(StationMetadata.station_id == station_id)
    )
    return result.scalar_one_or_none()


def evaluate_freshness(
    station_id: int,
    last_observed_at: datetime,
    now: datetime,
    max_age_minutes: int,
) -> Freshness:
    """Classify a snapshot's age against *max_age_minutes*."""
    age = now - last_observed_at
    return Freshness(
        station_id=station_id,
        last_observed_at=last_observed_at,
        age_minutes=round(age.total_seconds() / 60.0, 2),
        is_healthy=age < timedelta(minutes=max_age_minutes),
    )


async def latest_observed_at(session: AsyncSession) -> datetime | None:
    """Return when any station was last observed; None before the first report."""
    result = await session.execute(select(func.max(StationSnapshot.observed_at)))
    return result.scalar_one_or_none()


async def check_freshness(
    session: AsyncSession,
    station_id: int,
    now: datetime,
    max_age_minutes: int,
) -> Freshness | None:
    """Report how fresh the scraper data for *station_id* is.

    Returns:
        Freshness, or None when the station has never been observed.
    """
    snapshot = await get_snapshot(session, station_id)
    if snapshot is None:
        return None
    return evaluate_freshness(station_id, snapshot.observed_at, now, max_age_minutes)


def snapshot_to_dict(snapshot: StationSnapshot) -> dict[str, Any]:
    """Serialize a snapshot for JSON responses and the Redis cache."""
    data: dict[str, Any] = {"station_id": snapshot.station_id}
    for field in (*SNAPSHOT_FIELDS, "port1_status_changed_at", "port2_status_changed_at"):
        data[field] = getattr(snapshot, field)
    data["observed_at"] = snapshot.observed_at
    data["payload_hash"] = snapshot.payload_hash
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data
