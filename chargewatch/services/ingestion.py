"""
Ingestion pipeline for upstream station-status reports.

Validates and normalizes a report, hashes it, asks the throttle ledger
whether it may be stored, and if so replaces the station snapshot and
updates the ledger in a single transaction. Ports that flipped from
occupied to available enqueue a reactive dispatch job in the same
transaction (outbox) instead of sending pushes inline.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)
- 2026-10-05: Best-effort station metadata upsert (STORY-103)
- 2026-10-11: Enqueue reactive dispatch jobs in the outbox (STORY-109)
- 2026-10-16: Reject non-string statuses and non-boolean flags (STORY-115)

TODO:
- None
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.db.models import PortStatus
from chargewatch.errors import ValidationFailed
from chargewatch.services.hashing import (
    compute_snapshot_hash,
    normalize_number,
    normalize_status,
)
from chargewatch.services.outbox import enqueue_dispatch
from chargewatch.services.snapshots import (
    PORTS,
    available_transitions,
    get_snapshot,
    upsert_snapshot,
    upsert_station_metadata,
)
from chargewatch.services.throttle import (
    DEFAULT_COOLDOWN_MINUTES,
    get_throttle_record,
    record_stored_snapshot,
    should_store,
)

logger = logging.getLogger(__name__)

ALLOWED_SOURCES = frozenset({"user_nearby", "user_station", "scraper"})
SITUATION_CODES = frozenset({"OPER", "MAINT", "OOS"})
_VALID_STATUSES = frozenset(status.value for status in PortStatus)
_FLAG_STRINGS = {"true": True, "false": False}


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingestion.

    Attributes:
        stored: Whether the snapshot was written (False = throttled).
        payload_hash: Hash of the normalized report.
        available_ports: Ports that flipped occupied -> available.
        enqueued: Number of reactive dispatch jobs enqueued.
    """

    stored: bool
    payload_hash: str
    available_ports: list[int] = field(default_factory=list)
    enqueued: int = 0


def normalize_timestamp(key: str, value: Any) -> datetime | None:
    """Parse an upstream timestamp (datetime or ISO 8601 string) as UTC-aware."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationFailed(f"{key} is not an ISO 8601 timestamp") from exc
    if not isinstance(value, datetime):
        raise ValidationFailed(f"{key} must be a timestamp")
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _text_field(port_data: dict[str, Any], key: str) -> str | None:
    """Normalize a status-like field; anything but a string or None is rejected."""
    value = port_data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationFailed(f"{key} must be a string")
    return normalize_status(value)


def _flag_field(port_data: dict[str, Any], key: str) -> bool:
    """Read a boolean flag; accepts a bool, None, or "true"/"false"."""
    value = port_data.get(key)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _FLAG_STRINGS:
        return _FLAG_STRINGS[value.strip().lower()]
    raise ValidationFailed(f"{key} must be a boolean")


def normalize_port_data(port_data: dict[str, Any]) -> dict[str, Any]:
    """Validate and normalize the raw ``portData`` of a report.

    Statuses must be strings; they are upper-cased and must be one of
    :class:`PortStatus`. Numeric fields must be finite numbers and
    ``emergency_stop_pressed`` a boolean. ``None`` is preserved.

    Args:
        port_data: Raw report fields from the upstream collaborator.

    Returns:
        dict: Normalized fields ready for hashing and storage.

    Raises:
        ValidationFailed: If a status, flag or numeric field is invalid.
    """
    fields: dict[str, Any] = {}
    for port in PORTS:
        status = _text_field(port_data, f"port{port}_status")
        if status is not None and status not in _VALID_STATUSES:
            raise ValidationFailed(f"port{port}_status has unknown value {status!r}")
        fields[f"port{port}_status"] = status
        for name in ("power_kw", "price_kwh"):
            key = f"port{port}_{name}"
            try:
                canonical = normalize_number(port_data.get(key))
            except ValueError as exc:
                raise ValidationFailed(f"{key}: {exc}") from exc
            fields[key] = float(canonical) if canonical is not None else None
        key = f"port{port}_update_date"
        fields[key] = normalize_timestamp(key, port_data.get(key))

    fields["overall_status"] = _text_field(port_data, "overall_status")
    fields["emergency_stop_pressed"] = _flag_field(port_data, "emergency_stop_pressed")

    situation = _text_field(port_data, "situation_code")
    if situation is not None and situation not in SITUATION_CODES:
        raise ValidationFailed(f"situation_code has unknown value {situation!r}")
    fields["situation_code"] = situation
    return fields


def _validate_identity(station_id: Any, source: Any) -> None:
    if not isinstance(station_id, int) or isinstance(station_id, bool) or station_id <= 0:
        raise ValidationFailed("station_id must be a positive integer")
    if source not in ALLOWED_SOURCES:
        raise ValidationFailed(
            f"source must be one of {sorted(ALLOWED_SOURCES)}, got {source!r}"
        )


async def _refresh_metadata(
    session: AsyncSession,
    station_id: int,
    cupr_id: int | None,
    port_data: dict[str, Any],
) -> None:
    """Upsert station reference data; failures are logged, never raised."""
    try:
        await upsert_station_metadata(
            session, station_id=station_id, cupr_id=cupr_id, metadata=port_data,
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.warning(
            "Station metadata upsert failed for station %s",
            station_id,
            exc_info=True,
            extra={"station_id": station_id, "operation": "ingest"},
        )


async def ingest_snapshot(
    session: AsyncSession,
    *,
    station_id: int,
    cupr_id: int | None,
    source: str,
    port_data: dict[str, Any],
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
    reactive_dispatch: bool = True,
    now: datetime | None = None,
) -> IngestResult:
    """Ingest one station-status report.

    Steps:
        1. Validate identity fields and normalize ``port_data``.
        2. Compute the deterministic payload hash.
        3. Refresh station metadata (independent of the throttle).
        4. Consult the throttle ledger; a denial returns ``stored=False``.
        5. Replace the snapshot, update the ledger and enqueue reactive
           dispatch jobs, then commit all of it at once.

    Args:
        session: Async SQLAlchemy session.
        station_id: Upstream charge point identifier.
        cupr_id: Upstream location identifier (reference metadata).
        source: Client flow producing the report.
        port_data: Raw report fields.
        cooldown_minutes: Throttle window for unchanged payloads.
        reactive_dispatch: Enqueue outbox jobs for occupied -> available.
        now: Override for the current time (tests).

    Returns:
        IngestResult: Whether the report was stored, and what it triggered.

    Raises:
        ValidationFailed: On malformed input; nothing is written.
        SQLAlchemyError: When the snapshot transaction fails; it is rolled
            back so the ledger is never updated without the snapshot.
    """
    _validate_identity(station_id, source)
    fields = normalize_port_data(port_data)
    payload_hash = compute_snapshot_hash(fields)
    now = now or datetime.now(tz=UTC)

    await _refresh_metadata(session, station_id, cupr_id, port_data)

    record = await get_throttle_record(session, station_id)
    if not should_store(record, payload_hash, now, cooldown_minutes):
        logger.debug("Snapshot for station %s throttled (hash unchanged)", station_id)
        return IngestResult(stored=False, payload_hash=payload_hash)

    try:
        previous = await get_snapshot(session, station_id)
        ports = available_transitions(previous, fields)
        await upsert_snapshot(
            session,
            station_id=station_id,
            source=source,
            fields=fields,
            payload_hash=payload_hash,
            observed_at=now,
            previous=previous,
        )
        await record_stored_snapshot(session, station_id, payload_hash, now)
        enqueued = 0
        if reactive_dispatch:
            for port in ports:
                await enqueue_dispatch(session, station_id, port, now)
                enqueued += 1
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error(
            "Snapshot write failed for station %s",
            station_id,
            exc_info=True,
            extra={"station_id": station_id, "operation": "ingest"},
        )
        raise

    logger.info(
        "Stored snapshot for station %s (available ports: %s, jobs enqueued: %d)",
        station_id,
        ports,
        enqueued,
    )
    return IngestResult(
        stored=True,
        payload_hash=payload_hash,
        available_ports=ports,
        enqueued=enqueued,
    )
