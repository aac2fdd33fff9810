"""Shelly Gen2 component catalogue.

Each module declares the result models of one component and a
``register(registry)`` function.  :func:`build_method_registry` runs all
of them and seals the registry.
"""

from __future__ import annotations

from myhome._methods import MethodRegistry
from myhome.components import (
    ble,
    http,
    input,
    kvs,
    mqtt,
    schedule,
    script,
    shelly,
    switch,
    system,
    wifi,
)

COMPONENTS = (shelly, system, switch, input, kvs, schedule, script, ble, mqtt, http, wifi)


def build_method_registry() -> MethodRegistry:
    """Return a sealed registry holding every known device method."""
    registry = MethodRegistry()
    for component in COMPONENTS:
        component.register(registry)
    registry.seal()
    return registry


__all__ = ["COMPONENTS", "build_method_registry"]
