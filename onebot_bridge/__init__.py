"""
OneBot Bridge - plugin dispatch and request correlation for OneBot gateways

Connects a process to a OneBot 11 / CoolQ-style gateway over a WebSocket
stream (commands, replies, pushed events) and an HTTP channel (status
queries), then fans every incoming event out to registered plugins.

Version: 1.0.0
Python Version: 3.12+
"""

from onebot_bridge.client import GatewayClient
from onebot_bridge.config import DEFAULT_CONFIG, ConfigLoader
from onebot_bridge.correlator import Correlator, EchoGenerator
from onebot_bridge.dispatcher import Dispatcher, DispatchOutcome
from onebot_bridge.envelopes import Event, Reply, StatusReport
from onebot_bridge.errors import (
    BridgeError,
    ConfigError,
    CorrelationTimeout,
    DecodeError,
    PluginLoadError,
    TransportError,
)
from onebot_bridge.plugins import ManifestPlugin, Plugin, PluginDiscoverer
from onebot_bridge.registry import DispatchEntry, PluginRegistry

__version__ = "1.0.0"

__all__ = [
    "BridgeError",
    "ConfigError",
    "ConfigLoader",
    "CorrelationTimeout",
    "Correlator",
    "DEFAULT_CONFIG",
    "DecodeError",
    "DispatchEntry",
    "DispatchOutcome",
    "Dispatcher",
    "EchoGenerator",
    "Event",
    "GatewayClient",
    "ManifestPlugin",
    "Plugin",
    "PluginDiscoverer",
    "PluginLoadError",
    "PluginRegistry",
    "Reply",
    "StatusReport",
    "TransportError",
]
