"""Follow rules: make one Shelly mirror or react to another.

A follower device reads its rules from KVS.  The rule for a followed
device lives under ``follow/status/<followed_id>`` as::

    {"switch_id": "switch:0", "follow_id": "input:1"}

``switch_id`` names the follower's local switch; ``follow_id`` the
followed device's component (``switch:X`` mirrors its state,
``input:X`` toggles on button press).
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from myhome.components import kvs

if TYPE_CHECKING:
    from myhome._device import Device
    from myhome._registry import DeviceOutcome, DeviceRegistry

logger = logging.getLogger(__name__)

KVS_PREFIX = "follow/status/"


def kvs_key(followed_id: str) -> str:
    return f"{KVS_PREFIX}{followed_id}"


class FollowService:
    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry

    async def follow(
        self,
        follower: str,
        followed: str,
        switch_id: str = "switch:0",
        follow_id: str = "switch:0",
    ) -> dict[str, DeviceOutcome]:
        """Write the rule for *followed* to every device matching *follower*."""
        target = self.registry.get(followed)
        value = json.dumps({"switch_id": switch_id, "follow_id": follow_id})
        logger.info("%s follows %s (%s -> %s)", follower, target.id, follow_id, switch_id)
        return await self.registry.run_each(
            self.registry.resolve(follower),
            _set_rule,
            kvs_key(target.id),
            value,
        )

    async def unfollow(self, follower: str, followed: str) -> dict[str, DeviceOutcome]:
        target = self.registry.get(followed)
        return await self.registry.run_each(
            self.registry.resolve(follower),
            _delete_rule,
            kvs_key(target.id),
        )


async def _set_rule(device: Device, key: str, value: str) -> Any:
    return await kvs.set_value(device, key, value)


async def _delete_rule(device: Device, key: str) -> Any:
    return await kvs.delete_value(device, key)
