"""
UTC timestamp helpers (stdlib-only).

The ledger stores ``applied_at`` as ISO 8601 text in UTC so that plain
string ordering matches chronological ordering.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string (UTC, microsecond precision)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime; naive values are taken as UTC."""
    if s is None:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt
