"""Shared service-layer helper functions."""

from __future__ import annotations

from datetime import UTC, datetime


def now_iso() -> str:
    """Current UTC time as standard ISO 8601 (settings records, journals)."""
    return datetime.now(UTC).isoformat()


def session_id_from(moment: datetime | None = None) -> str:
    """Timestamp-derived session id, unique to the microsecond.

    Examples:
        >>> session_id_from(datetime(2026, 3, 1, 12, 30, 5, 42, tzinfo=UTC))
        'S-20260301T123005000042'
    """
    moment = moment or datetime.now(UTC)
    return "S-" + moment.strftime("%Y%m%dT%H%M%S%f")
