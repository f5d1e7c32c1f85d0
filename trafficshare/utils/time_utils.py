import time
from datetime import datetime, timezone


def now_ms() -> int:
    """Current Unix time in whole milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso8601(ms: int) -> str:
    """Convert epoch milliseconds to an ISO-8601 UTC string. E.g. 0 -> '1970-01-01T00:00:00+00:00'."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
