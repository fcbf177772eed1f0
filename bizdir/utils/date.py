from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def utcnow_db() -> str:
    """
    Naive UTC timestamp string for TIMESTAMP columns.

    Both PostgreSQL and SQLite accept the ISO text form, which keeps the raw
    SQL free of dialect-specific casts.
    """
    return utcnow().replace(tzinfo=None).isoformat(sep=" ", timespec="microseconds")
