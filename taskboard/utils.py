from datetime import datetime, timezone
from typing import Callable, Optional

# A clock is any zero-argument callable returning an aware UTC datetime.
Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt as an aware UTC datetime.

    SQLite hands datetimes back without tzinfo even though we only ever store
    UTC, so naive values are tagged as UTC rather than converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_to_utc(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (a trailing 'Z' is accepted) to aware UTC.

    Raises ValueError on malformed input; callers turn that into a 400.
    """
    if s is None or s == '':
        return None
    s2 = s.strip()
    if s2.endswith('Z'):
        s2 = s2[:-1] + '+00:00'
    return as_utc(datetime.fromisoformat(s2))
