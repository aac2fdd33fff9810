"""Public test-support utilities for myhome.

Re-exports test doubles and factories so that test suites can import
everything from a single ``myhome.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`HomeHarness` — Home wired to the doubles below.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`FakeClock` — deterministic clock for timing tests.
- :class:`FakeShelly` — Shelly device answering over the mock broker
  or an ``httpx.MockTransport``.
- :func:`make_settings` — ``Settings`` without environment or ``.env``.
"""

from myhome._mqtt import MockMqttClient
from myhome.testing._clock import FakeClock
from myhome.testing._harness import HomeHarness
from myhome.testing._settings import make_settings
from myhome.testing._shelly import FakeRpcError, FakeShelly

__all__ = [
    "FakeClock",
    "FakeRpcError",
    "FakeShelly",
    "HomeHarness",
    "MockMqttClient",
    "make_settings",
]
