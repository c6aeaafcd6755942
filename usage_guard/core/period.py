"""
Accounting period derivation.

Usage is accumulated per UTC calendar day, not over a rolling 24-hour window.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def period_key_for(instant: datetime) -> str:
    """Return the ``YYYY-MM-DD`` UTC date containing ``instant``.

    Naive datetimes are taken to already be in UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).date().isoformat()
