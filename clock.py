"""Wall-clock helpers shared by every component."""

import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Return the current UNIX time in milliseconds."""
    return int(time.time() * 1000)
