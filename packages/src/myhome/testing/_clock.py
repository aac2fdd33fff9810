"""Deterministic fake clock for testing.

Satisfies :class:`~myhome._clock.ClockPort` structurally with a manually
controlled time value.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class FakeClock:
    """Test double for ClockPort.

    Example::

        clock = FakeClock(42.0)
        assert clock.now() == 42.0
        clock.advance(0.25)
        assert clock.now() == 42.25
    """

    _time: float = 0.0

    def now(self) -> float:
        return self._time

    def advance(self, seconds: float) -> None:
        self._time += seconds
