"""
Database package for SQLAlchemy models and session management.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-11: Export DispatchOutbox (STORY-109)

TODO:
- None
"""

from chargewatch.db.models import (
    Base,
    DispatchOutbox,
    PollingTask,
    SnapshotThrottle,
    StationMetadata,
    StationSnapshot,
    Subscription,
)
from chargewatch.db.session import (
    create_engine,
    create_session_factory,
    get_async_session,
    init_engine,
    session_scope,
)

__all__ = [
    "Base",
    "DispatchOutbox",
    "PollingTask",
    "SnapshotThrottle",
    "StationMetadata",
    "StationSnapshot",
    "Subscription",
    "create_engine",
    "create_session_factory",
    "get_async_session",
    "init_engine",
    "session_scope",
]
