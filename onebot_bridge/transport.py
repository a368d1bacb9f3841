"""
Transport channels to the gateway.

WSChannel keeps one WebSocket connection open on a reader thread, redialing
after a delay whenever it drops, and reports through three callback slots:
OnConnect(channel), OnError(exception) and OnMessage(raw).

HTTPChannel performs single request/response calls with the same retry rules
NapCat senders use: timeouts and 5xx responses are retried, 4xx are not.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

import requests
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from onebot_bridge.errors import DecodeError, TransportError


def AuthorizationHeaderConstructor(token: str, scheme: str = "Token") -> Dict[str, str]:
    """Headers carrying the access token, empty when no token is configured."""
    if not token:
        return {}
    return {"Authorization": f"{scheme} {token}"}

# ============================================================================
# WEBSOCKET CHANNEL
# ============================================================================

class WSChannel:
    """
    One WebSocket connection with automatic redial.

    Args:
        name: Label used in log lines ("onebot api conn")
        headers: Sent with every handshake
        reconnectInterval: Seconds to wait before redialing after a drop
        connector: Opens a connection; websockets.sync.client.connect by default
    """

    def __init__(self, name: str, headers: Optional[Mapping[str, str]] = None,
                 reconnectInterval: float = 5,
                 connector: Callable[..., Any] = connect,
                 logger: Optional[logging.Logger] = None):
        self.Name = name
        self.url: Optional[str] = None
        self.headers = dict(headers or {})
        self.reconnectInterval = reconnectInterval
        self.OnConnect: Optional[Callable[["WSChannel"], Any]] = None
        self.OnError: Optional[Callable[[BaseException], Any]] = None
        self.OnMessage: Optional[Callable[[Union[str, bytes]], Any]] = None
        self._connector = connector
        self._logger = logger or logging.getLogger(__name__)
        self._connection = None
        self._sendLock = threading.Lock()
        self._closed = threading.Event()
        self._readerThread: Optional[threading.Thread] = None

    def Dial(self, url: str) -> None:
        """Start connecting to `url` in the background. Does nothing while already running."""
        if self._readerThread is not None and self._readerThread.is_alive():
            return
        self.url = url
        self._closed.clear()
        self._readerThread = threading.Thread(target=self._ReadLooper, daemon=True, name=f"ws-{self.Name}")
        self._readerThread.start()

    def IsConnected(self) -> bool:
        return self._connection is not None

    def Send(self, message: Union[str, bytes]) -> bool:
        """
        Send one frame. Dropped silently when not connected.

        Returns:
            bool: True if the frame was handed to the connection
        """
        connection = self._connection
        if connection is None:
            self._logger.debug(f"{self.Name} is not connected, dropping outgoing message")
            return False
        try:
            with self._sendLock:
                connection.send(message)
        except (WebSocketException, OSError) as exception:
            self._ErrorReporter(TransportError(f"{self.Name} send failed: {exception}"))
            return False
        return True

    def Close(self) -> None:
        self._closed.set()
        connection = self._connection
        if connection is not None:
            connection.close()
        if self._readerThread is not None and self._readerThread is not threading.current_thread():
            self._readerThread.join(timeout=5)

    def _ReadLooper(self) -> None:
        while not self._closed.is_set():
            try:
                with self._connector(self.url, additional_headers=self.headers) as connection:
                    self._connection = connection
                    if self.OnConnect is not None:
                        self.OnConnect(self)
                    for raw in connection:
                        if self.OnMessage is not None:
                            self._MessageDeliverer(raw)
            except (WebSocketException, OSError) as exception:
                if not self._closed.is_set():
                    self._ErrorReporter(TransportError(f"{self.Name} connection to {self.url} failed: {exception}"))
            finally:
                self._connection = None

            if self._closed.wait(self.reconnectInterval):
                break
            self._logger.info(f"{self.Name} redialing {self.url}")

    def _MessageDeliverer(self, raw: Union[str, bytes]) -> None:
        try:
            self.OnMessage(raw)
        except Exception as exception:
            self._logger.error(f"{self.Name} message handler failed, frame dropped", exc_info=True)
            self._ErrorReporter(exception)

    def _ErrorReporter(self, exception: BaseException) -> None:
        if self.OnError is not None:
            self.OnError(exception)
        else:
            self._logger.error(str(exception))

# ============================================================================
# HTTP CHANNEL
# ============================================================================

class HTTPChannel:
    """
    Request/response calls against the gateway's HTTP API.

    Args:
        baseUrl: e.g. http://127.0.0.1:5700; actions are appended as a path
        headers: Sent with every request
        timeout: Seconds per attempt
        maxRetries: Attempts for timeouts and 5xx responses
        retryDelay: Seconds between attempts
        session: requests.Session to use; a new one by default
    """

    def __init__(self, baseUrl: str = "", headers: Optional[Mapping[str, str]] = None,
                 timeout: float = 10, maxRetries: int = 3, retryDelay: float = 1,
                 session: Optional[requests.Session] = None,
                 logger: Optional[logging.Logger] = None):
        self.baseUrl = baseUrl.rstrip("/")
        self.timeout = timeout
        self.maxRetries = maxRetries
        self.retryDelay = retryDelay
        self._session = session or requests.Session()
        self._session.headers.update(headers or {})
        self._logger = logger or logging.getLogger(__name__)

    def ApiUrlConstructor(self, action: str) -> str:
        return f"{self.baseUrl}/{action}"

    def Call(self, action: str, params: Optional[Mapping[str, Any]] = None,
             timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Perform one API call: GET without params, POST with a JSON body otherwise.

        Returns:
            Dict[str, Any]: The decoded JSON response body

        Raises:
            TransportError: no base URL, network failure, 4xx, or retries exhausted
            DecodeError: the body is not a JSON object
        """
        if not self.baseUrl:
            raise TransportError(f"Tried to call {action} but no HTTP API url was set")

        fullUrl = self.ApiUrlConstructor(action)
        timeout = self.timeout if timeout is None else timeout
        lastErrorInfo = "Unknown error"

        for attempt in range(self.maxRetries):
            try:
                if params is None:
                    response = self._session.get(fullUrl, timeout=timeout)
                else:
                    response = self._session.post(fullUrl, json=dict(params), timeout=timeout)
            except requests.exceptions.Timeout:
                lastErrorInfo = "timeout"
                self._logger.warning(f"Timeout for {action}, attempt {attempt + 1}/{self.maxRetries}")
            except requests.exceptions.RequestException as exception:
                raise TransportError(f"Request error for {action}: {exception}") from exception
            else:
                if 400 <= response.status_code < 500:
                    raise TransportError(f"Client error {response.status_code} for {action}")

                if response.status_code == 200:
                    try:
                        payload = response.json()
                    except (ValueError, RecursionError) as exception:
                        raise DecodeError(f"Invalid JSON response from {action}: {exception}") from exception
                    if not isinstance(payload, dict):
                        raise DecodeError(f"Response from {action} is not a JSON object")
                    return payload

                lastErrorInfo = f"HTTP {response.status_code}"
                self._logger.warning(f"HTTP {response.status_code} from {action}, attempt {attempt + 1}/{self.maxRetries}")

            if attempt < self.maxRetries - 1:
                time.sleep(self.retryDelay)

        raise TransportError(f"Failed to call {action} after {self.maxRetries} attempts. Last error: {lastErrorInfo}")

    def Close(self) -> None:
        self._session.close()
