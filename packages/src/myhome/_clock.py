"""Monotonic clock port and system adapter.

The rate limiter and the heartbeat measure elapsed time through
:class:`ClockPort` so tests can substitute a deterministic clock.
``time.monotonic()`` is immune to NTP steps; only differences between
two ``now()`` readings are meaningful.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for timing measurements."""

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        return time.monotonic()
