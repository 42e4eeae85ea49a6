"""Clock helpers.

The eligibility checker compares poll end times (unix seconds) against "now";
tests swap in a fixed clock instead of patching ``time.time``.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]


def unix_now() -> int:
    """Return the current unix time in whole seconds."""
    return int(time.time())


def utc_iso() -> str:
    """Return the current UTC time as an ISO-8601 string (``...Z``)."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")
