"""
Exception taxonomy for the bridge.

None of these terminate the process on their own: the component that catches
one logs it and carries on. Only the entry point treats a ConfigError or an
unreachable gateway at startup as fatal.
"""


class BridgeError(Exception):
    """Base class for every error raised by onebot_bridge."""


class PluginLoadError(BridgeError):
    """A plugin's Load() step failed; the plugin is excluded from dispatch."""

    def __init__(self, pluginName: str, reason: BaseException):
        self.pluginName = pluginName
        self.reason = reason
        super().__init__(f"Plugin {pluginName} can't be loaded, reason: {reason}")


class DecodeError(BridgeError):
    """Malformed bytes or an unexpected payload shape on either channel."""


class TransportError(BridgeError):
    """Connection-level failure reported by a WebSocket or HTTP channel."""


class CorrelationTimeout(BridgeError):
    """A tracked command received no reply within the timeout threshold."""

    def __init__(self, echo: int, timeoutSeconds: float):
        self.echo = echo
        self.timeoutSeconds = timeoutSeconds
        super().__init__(f"(echo) id = {echo} response time out ({timeoutSeconds:g}s)")


class ConfigError(BridgeError):
    """The configuration file is unreadable or not valid JSON."""
