"""
Snapshot normalization and deterministic payload hashing.

The payload hash is the dedup key for the throttle ledger, so two
semantically identical station reports must always produce the same
digest: statuses are compared case-insensitively, numeric power and
price values are reduced to a canonical decimal string (``7.40`` and
``7.4`` are equal), and ``None`` stays distinct from ``0``.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

import hashlib
import json
from decimal import Decimal, InvalidOperation
from typing import Any

# Fields that participate in the hash. Update dates, coordinates and
# metadata are deliberately excluded: they change without the port state
# changing.
HASHED_FIELDS = (
    "port1_status",
    "port1_power_kw",
    "port1_price_kwh",
    "port2_status",
    "port2_power_kw",
    "port2_price_kwh",
    "overall_status",
    "emergency_stop_pressed",
    "situation_code",
)

_NUMERIC_FIELDS = frozenset(
    {"port1_power_kw", "port1_price_kwh", "port2_power_kw", "port2_price_kwh"}
)
_TEXT_FIELDS = frozenset(
    {"port1_status", "port2_status", "overall_status", "situation_code"}
)


def normalize_status(value: str | None) -> str | None:
    """Upper-case and strip a status string; blank becomes None."""
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


def normalize_number(value: float | int | str | Decimal | None) -> str | None:
    """Reduce a numeric value to a canonical decimal string.

    Args:
        value: Number (or numeric string) to normalize.

    Returns:
        Canonical string such as ``"7.4"`` or ``"0"``, or None for None.

    Raises:
        ValueError: If *value* is not a finite number.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        number = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    if number.is_zero():
        return "0"
    return format(number.normalize(), "f")


def canonical_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Project *data* onto the hashed fields in normalized form."""
    payload: dict[str, Any] = {}
    for field in HASHED_FIELDS:
        value = data.get(field)
        if field in _NUMERIC_FIELDS:
            payload[field] = normalize_number(value)
        elif field in _TEXT_FIELDS:
            payload[field] = normalize_status(value)
        else:
            payload[field] = bool(value)
    return payload


def compute_snapshot_hash(data: dict[str, Any]) -> str:
    """Compute the deterministic payload hash of a station report.

    Key order of *data* is irrelevant: the canonical payload is serialized
    with sorted keys and compact separators before hashing.

    Args:
        data: Snapshot fields (extra keys are ignored).

    Returns:
        Hex-encoded SHA-256 digest.
    """
    encoded = json.dumps(
        canonical_payload(data), sort_keys=True, separators=(",", ":"),
    ).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
