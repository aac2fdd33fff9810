"""myhome.

Home-automation control plane: dispatches Shelly Gen2 RPCs over HTTP or
MQTT, keeps a device registry fed by mDNS, and serves group, switch,
temperature and follow methods to CLIs and UIs.
"""

from myhome._api import create_api
from myhome._app import Home, run_async
from myhome._clock import ClockPort, SystemClock
from myhome._correlator import MqttChannel, PendingCall
from myhome._device import Channel, Device, Dispatcher
from myhome._discovery import DeviceCandidate, Discovery, DiscoveryLoop
from myhome._errors import (
    BadRequestError,
    CallCancelledError,
    ErrorPayload,
    ErrorPublisher,
    InternalError,
    MethodUnknownError,
    MyHomeError,
    NotFoundError,
    RegistrationError,
    RemoteError,
    RpcTimeoutError,
    TransportError,
    UnreachableError,
    build_error_payload,
)
from myhome._health import HealthReporter, HeartbeatPayload, build_will_config
from myhome._http import HttpChannel
from myhome._logging import JsonFormatter, configure_logging
from myhome._methods import HttpVerb, MethodDescriptor, MethodRegistry
from myhome._mqtt import MessageCallback, MockMqttClient, MqttClient, MqttPort, WillConfig
from myhome._ratelimit import RateLimiter
from myhome._registry import DeviceOutcome, DeviceRegistry
from myhome._server import RpcServer
from myhome._settings import LoggingSettings, MqttSettings, Settings
from myhome._storage import Storage
from myhome._version import __version__
from myhome.components import build_method_registry

__all__ = [
    # Version
    "__version__",
    # App
    "Home",
    "run_async",
    "create_api",
    # Clock
    "ClockPort",
    "SystemClock",
    # Methods
    "HttpVerb",
    "MethodDescriptor",
    "MethodRegistry",
    "build_method_registry",
    # Transport
    "HttpChannel",
    "MessageCallback",
    "MockMqttClient",
    "MqttChannel",
    "MqttClient",
    "MqttPort",
    "PendingCall",
    "RateLimiter",
    "WillConfig",
    # Devices
    "Channel",
    "Device",
    "DeviceCandidate",
    "DeviceOutcome",
    "DeviceRegistry",
    "Discovery",
    "DiscoveryLoop",
    "Dispatcher",
    "Storage",
    # Server
    "RpcServer",
    # Errors
    "BadRequestError",
    "CallCancelledError",
    "ErrorPayload",
    "ErrorPublisher",
    "InternalError",
    "MethodUnknownError",
    "MyHomeError",
    "NotFoundError",
    "RegistrationError",
    "RemoteError",
    "RpcTimeoutError",
    "TransportError",
    "UnreachableError",
    "build_error_payload",
    # Health
    "HealthReporter",
    "HeartbeatPayload",
    "build_will_config",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
