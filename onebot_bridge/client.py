"""
Gateway client.

Owns the two WebSocket connections (`/api` for commands and replies, `/event`
for pushed events) and the HTTP channel, and wires them to the registry,
dispatcher and correlator:

    /event frame -> EventDecoder -> Dispatcher.Dispatch -> plugin handlers
    command      -> echo from Correlator -> Track -> /api frame
    /api frame   -> ReplyDecoder -> Correlator.Resolve

Every collaborator can be injected, which is how the tests substitute the
network and the clock.
"""

import json
import logging
from concurrent.futures import Future
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from onebot_bridge.config import DEFAULT_CONFIG
from onebot_bridge.correlator import Correlator
from onebot_bridge.dispatcher import Dispatcher
from onebot_bridge.envelopes import (
    ACTION_GET_STATUS,
    ACTION_SEND_GROUP_MSG,
    ACTION_SEND_PRIVATE_MSG,
    ACTION_SET_GROUP_BAN,
    ACTION_SET_GROUP_KICK,
    ACTION_SET_GROUP_WHOLE_BAN,
    CommandConstructor,
    Event,
    EventDecoder,
    ReplyDecoder,
    StatusDecoder,
    StatusReport,
    TextSegmentConstructor,
)
from onebot_bridge.errors import BridgeError, DecodeError
from onebot_bridge.plugins import Plugin
from onebot_bridge.registry import DispatchEntry, PluginRegistry
from onebot_bridge.transport import AuthorizationHeaderConstructor, HTTPChannel, WSChannel


class GatewayClient:
    """
    Connection to one OneBot gateway plus the plugins listening to it.

    Args:
        config: Nested configuration dict, see onebot_bridge.config
        apiConn / eventConn: WebSocket channels; built from config when omitted
        httpConn: HTTP channel; built from config when omitted
        registry / dispatcher / correlator: Core components; built from config
                                            when omitted
    """

    def __init__(self, config: Optional[Mapping[str, Mapping[str, Any]]] = None,
                 apiConn: Optional[WSChannel] = None,
                 eventConn: Optional[WSChannel] = None,
                 httpConn: Optional[HTTPChannel] = None,
                 registry: Optional[PluginRegistry] = None,
                 dispatcher: Optional[Dispatcher] = None,
                 correlator: Optional[Correlator] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config or DEFAULT_CONFIG
        self._logger = logger or logging.getLogger(__name__)

        gatewayConfig = self.config['GATEWAY']
        headers = AuthorizationHeaderConstructor(gatewayConfig['access_token'], gatewayConfig['auth_scheme'])
        reconnectInterval = gatewayConfig['reconnect_interval_seconds']

        self.apiConn = apiConn or WSChannel("onebot api conn", headers, reconnectInterval)
        self.eventConn = eventConn or WSChannel("onebot event conn", headers, reconnectInterval)
        self.httpConn = httpConn or HTTPChannel(
            headers=headers,
            timeout=self.config['HTTP']['timeout_seconds'],
            maxRetries=self.config['HTTP']['max_retries'],
        )

        self.registry = registry or PluginRegistry()
        self.registry.Bind(self)
        self.dispatcher = dispatcher or Dispatcher(self.registry, self.config['DISPATCH']['max_workers'])
        self.dispatcher.SetResponder(self.ResponseSender)
        self.correlator = correlator or Correlator(
            timeout=self.config['ECHO']['timeout_seconds'],
            sweepInterval=self.config['ECHO']['sweep_interval_seconds'],
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def Initialize(self) -> None:
        """Install channel callbacks and start the echo sweeper."""
        for conn in (self.apiConn, self.eventConn):
            conn.OnConnect = self._ConnectHandler
            conn.OnError = self._ErrorHandlerConstructor(conn)
        self.apiConn.OnMessage = self.HandleReplyPayload
        self.eventConn.OnMessage = self.HandleEventPayload
        self.correlator.Start()

    def RegisterAllPlugins(self, plugins: Iterable[Plugin]) -> List[DispatchEntry]:
        return self.registry.RegisterAll(plugins)

    def Connect(self, wsURL: Optional[str] = None, httpURL: Optional[str] = None) -> None:
        """
        Dial both stream connections and remember the HTTP base URL.

        Args:
            wsURL: ws://host:port or wss://host:port; "/api" and "/event" are appended
            httpURL: http://host:port of the HTTP API
        """
        wsURL = (wsURL or self.config['GATEWAY']['ws_url']).rstrip("/")
        httpURL = httpURL if httpURL is not None else self.config['GATEWAY']['http_url']
        self.apiConn.Dial(f"{wsURL}/api")
        self.eventConn.Dial(f"{wsURL}/event")
        self.httpConn.baseUrl = (httpURL or "").rstrip("/")

    def IsAPIOk(self) -> bool:
        return self.apiConn.IsConnected()

    def IsEventOk(self) -> bool:
        return self.eventConn.IsConnected()

    def Close(self) -> None:
        self.correlator.Stop(timeout=1)
        self.apiConn.Close()
        self.eventConn.Close()
        self.httpConn.Close()
        self.dispatcher.Shutdown(wait=False)

    def _ConnectHandler(self, conn: WSChannel) -> None:
        if conn.IsConnected():
            self._logger.info(f"{conn.Name} has been connected successfully!")

    def _ErrorHandlerConstructor(self, conn: WSChannel):
        def ErrorHandler(exception: BaseException) -> None:
            self._logger.error(f"[{conn.Name}] {exception}")
        return ErrorHandler

    # ========================================================================
    # INBOUND
    # ========================================================================

    def HandleReplyPayload(self, raw: Union[str, bytes]) -> None:
        """API stream callback: resolve the pending command the reply answers."""
        try:
            reply = ReplyDecoder(raw)
        except DecodeError as e:
            self._logger.error(f"[{self.apiConn.Name}] on message error {e}")
            return
        if reply.echo is None:
            return
        if not reply.ok:
            self._logger.warning(f"(echo) id = {reply.echo} failed with retcode {reply.retcode}")
        self.correlator.Resolve(reply.echo, reply)

    def HandleEventPayload(self, raw: Union[str, bytes]) -> Optional[Event]:
        """
        Event stream and webhook callback: decode and dispatch one event.

        Returns:
            Optional[Event]: The dispatched event, None if it failed to decode
        """
        try:
            event = EventDecoder(raw)
        except DecodeError as e:
            self._logger.error(f"[{self.eventConn.Name}] on message error {e}")
            return None
        self.dispatcher.Dispatch(event)
        return event

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    def APISendJSON(self, data: Any) -> bool:
        """Send a JSON frame on the API stream; silently dropped when disconnected."""
        if not self.IsAPIOk():
            return False
        return self.apiConn.Send(json.dumps(data, ensure_ascii=False))

    def SendCommand(self, action: str, params: Mapping[str, Any]) -> Optional[Future]:
        """
        Send an action with a fresh echo and track it.

        Returns:
            Optional[Future]: Completed with the Reply, or failed with
                              CorrelationTimeout; None if the command was
                              dropped because the API stream is down
        """
        if not self.IsAPIOk():
            self._logger.debug(f"API connection is down, dropping {action}")
            return None

        echo = self.correlator.NextEcho()
        future = self.correlator.Track(echo)
        if not self.APISendJSON(CommandConstructor(action, params, echo)):
            self.correlator.Discard(echo)
            return None
        return future

    def SendGroupMsg(self, groupID: int, message: Any) -> Optional[Future]:
        return self.SendCommand(ACTION_SEND_GROUP_MSG, {"group_id": groupID, "message": message})

    def SendPrivateMsg(self, userID: int, message: Any) -> Optional[Future]:
        return self.SendCommand(ACTION_SEND_PRIVATE_MSG, {"user_id": userID, "message": message})

    def SetGroupKick(self, groupID: int, userID: int, reject: bool = False) -> Optional[Future]:
        """Remove a member; `reject` also refuses their future join requests."""
        return self.SendCommand(ACTION_SET_GROUP_KICK, {
            "group_id": groupID,
            "user_id": userID,
            "reject_add_request": reject,
        })

    def SetGroupBan(self, groupID: int, userID: int, duration: int) -> Optional[Future]:
        """Mute one member for `duration` seconds; 0 lifts the mute."""
        return self.SendCommand(ACTION_SET_GROUP_BAN, {
            "group_id": groupID,
            "user_id": userID,
            "duration": duration,
        })

    def SetGroupWholeBan(self, groupID: int, enable: bool) -> Optional[Future]:
        return self.SendCommand(ACTION_SET_GROUP_WHOLE_BAN, {"group_id": groupID, "enable": enable})

    def GetStatus(self) -> Optional[StatusReport]:
        """
        Query the gateway's health flags over the HTTP channel.

        Returns:
            Optional[StatusReport]: None when no HTTP url is set, the request
                                    fails or the payload is malformed
        """
        if not self.httpConn.baseUrl:
            self._logger.warning("Try to request a http api url, but no http api url was set.")
            return None
        try:
            payload = self.httpConn.Call(ACTION_GET_STATUS, timeout=self.config['HTTP']['status_check_timeout'])
            return StatusDecoder(ReplyDecoder(payload))
        except BridgeError as e:
            self._logger.error(f"http method getStatus error: {e}")
            return None

    # ========================================================================
    # PLUGIN RESPONSES
    # ========================================================================

    def ResponseSender(self, pluginResponse: Any, event: Event) -> List[Future]:
        """
        Turn a handler's return value into commands.

        - str: text reply to the private chat or group the event came from
        - dict: {"action": str, "params": dict}, sent as-is
        - list: each item handled as above

        Returns:
            List[Future]: Futures of the commands actually sent
        """
        if isinstance(pluginResponse, list):
            futures_ = []
            for item in pluginResponse:
                futures_.extend(self.ResponseSender(item, event))
            return futures_

        command = self._ResponseParser(pluginResponse, event)
        if command is None:
            return []
        future = self.SendCommand(*command)
        return [future] if future is not None else []

    def _ResponseParser(self, pluginResponse: Any, event: Event) -> Optional[Tuple[str, Mapping[str, Any]]]:
        if isinstance(pluginResponse, str):
            if event.postType != "message":
                self._logger.warning("Plugin returned string response for non-message event")
                return None
            match event.Get("message_type"):
                case "private":
                    return ACTION_SEND_PRIVATE_MSG, {
                        "user_id": event.Get("user_id"),
                        "message": TextSegmentConstructor(pluginResponse),
                    }
                case "group":
                    return ACTION_SEND_GROUP_MSG, {
                        "group_id": event.Get("group_id"),
                        "message": TextSegmentConstructor(pluginResponse),
                    }
                case messageType:
                    self._logger.warning(f"Unknown message_type '{messageType}' for string response")
                    return None

        if isinstance(pluginResponse, dict):
            action = pluginResponse.get("action")
            params = pluginResponse.get("params", {})
            if not isinstance(action, str) or not isinstance(params, dict):
                self._logger.warning("Plugin dict response needs a string 'action' and a dict 'params'")
                return None
            return action, params

        self._logger.warning(f"Invalid plugin response type: {type(pluginResponse)}")
        return None
