"""Per-device rate limiter.

Spacing is measured from command start to command start.  Waiters on
one device are served in call order (``asyncio.Lock`` is FIFO); distinct
devices never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from myhome._clock import ClockPort, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class RateLimitSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_started_at: float | None = None


@dataclass
class RateLimiter:
    """Gate outgoing commands so one device sees at most one per *min_interval*.

    A ``min_interval`` of 0 turns :meth:`wait` into a no-op.
    """

    min_interval: float = 0.0
    clock: ClockPort = field(default_factory=SystemClock)
    _slots: dict[str, RateLimitSlot] = field(default_factory=dict, init=False, repr=False)

    async def wait(self, device_id: str) -> None:
        """Block until a new command may start on *device_id*.

        Cancellation while sleeping propagates and leaves the slot's
        timestamp untouched.
        """
        if self.min_interval <= 0:
            return

        slot = self._slots.setdefault(device_id, RateLimitSlot())
        async with slot.lock:
            if slot.last_started_at is not None:
                residue = self.min_interval - (self.clock.now() - slot.last_started_at)
                if residue > 0:
                    logger.debug(
                        "Rate limiting %s for %.3fs",
                        device_id,
                        residue,
                        extra={"device": device_id},
                    )
                    await asyncio.sleep(residue)
            slot.last_started_at = self.clock.now()

    def forget(self, device_id: str) -> None:
        self._slots.pop(device_id, None)

    def last_started_at(self, device_id: str) -> float | None:
        slot = self._slots.get(device_id)
        return slot.last_started_at if slot is not None else None
