"""
Throttle ledger: per-station admission decision for new snapshots.

The decision itself (:func:`should_store`) is a pure function over the
current ledger entry so it can never block or retry. Reading and writing
the ledger are separate calls; the ingestion pipeline writes the ledger
in the same transaction as the snapshot so a failed snapshot write never
leaves the ledger updated.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.db.models import SnapshotThrottle

DEFAULT_COOLDOWN_MINUTES = 5


def should_store(
    record: SnapshotThrottle | None,
    candidate_hash: str,
    now: datetime,
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
) -> bool:
    """Decide whether a snapshot with *candidate_hash* may be stored.

    Decision order (first match wins):
        1. No ledger entry for the station: allow.
        2. Hash differs from the last stored hash: allow.
        3. Same hash and the cooldown has elapsed: allow (periodic refresh).
        4. Otherwise: deny.

    Args:
        record: Current ledger entry, or None for a first observation.
        candidate_hash: Payload hash of the incoming snapshot.
        now: Current time (timezone-aware).
        cooldown_minutes: Refresh window for unchanged payloads.

    Returns:
        bool: True when the snapshot should be stored.
    """
    if record is None:
        return True
    if candidate_hash != record.last_payload_hash:
        return True
    return now - record.last_snapshot_at >= timedelta(minutes=cooldown_minutes)


def seconds_until_refresh(
    record: SnapshotThrottle | None,
    now: datetime,
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
) -> int:
    """Seconds until an unchanged snapshot would be admitted again (>= 0)."""
    if record is None:
        return 0
    remaining = record.last_snapshot_at + timedelta(minutes=cooldown_minutes) - now
    return max(0, int(remaining.total_seconds()))


async def get_throttle_record(
    session: AsyncSession, station_id: int,
) -> SnapshotThrottle | None:
    """Load the ledger entry for *station_id*, if any."""
    result = await session.execute(
        select(SnapshotThrottle).where(SnapshotThrottle.station_id == station_id)
    )
    return result.scalar_one_or_none()


async def record_stored_snapshot(
    session: AsyncSession,
    station_id: int,
    payload_hash: str,
    stored_at: datetime,
) -> None:
    """Upsert the ledger entry after a snapshot write.

    Does not commit: the caller commits together with the snapshot write.

    Args:
        session: Async SQLAlchemy session.
        station_id: Station whose ledger entry to update.
        payload_hash: Hash of the snapshot that was stored.
        stored_at: Time the snapshot was stored.
    """
    stmt = insert(SnapshotThrottle).values(
        station_id=station_id,
        last_payload_hash=payload_hash,
        last_snapshot_at=stored_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SnapshotThrottle.station_id],
        set_={
            "last_payload_hash": stmt.excluded.last_payload_hash,
            "last_snapshot_at": stmt.excluded.last_snapshot_at,
        },
    )
    await session.execute(stmt)
