"""Test fixtures for onebot_bridge tests."""

import copy
import queue
import threading

import pytest

from onebot_bridge.config import DEFAULT_CONFIG
from onebot_bridge.correlator import Correlator
from onebot_bridge.envelopes import Event
from onebot_bridge.plugins import Plugin


class FakeClock:
    """Manually advanced clock for the correlator."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def Advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingPlugin(Plugin):
    """Plugin built from plain dicts that records its lifecycle calls."""

    def __init__(self, name, filters=None, handlers=None, loadError=None):
        super().__init__()
        self.name = name
        self._filters = filters or {}
        self._handlers = handlers or {}
        self._loadError = loadError
        self.loadCalls = 0
        self.loadedCalls = 0
        self.loadedEvent = threading.Event()

    def Load(self, context):
        self.loadCalls += 1
        super().Load(context)
        if self._loadError is not None:
            raise self._loadError

    def Filters(self):
        return self._filters

    def Handlers(self):
        return self._handlers

    def Loaded(self):
        self.loadedCalls += 1
        self.loadedEvent.set()


class CallRecorder:
    """Thread-safe handler/filter double that counts calls."""

    def __init__(self, result=None):
        self.result = result
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.calls.append(event)
        return self.result

    @property
    def count(self):
        with self._lock:
            return len(self.calls)


class FakeChannel:
    """Stands in for WSChannel without any network."""

    def __init__(self, name, connected=True):
        self.Name = name
        self.url = None
        self.connected = connected
        self.sent = []
        self.closed = False
        self.OnConnect = None
        self.OnError = None
        self.OnMessage = None

    def Dial(self, url):
        self.url = url

    def IsConnected(self):
        return self.connected

    def Send(self, message):
        if not self.connected:
            return False
        self.sent.append(message)
        return True

    def Close(self):
        self.closed = True


class FakeHTTPChannel:
    """Stands in for HTTPChannel; returns a canned payload or raises."""

    def __init__(self, baseUrl="http://gateway.test", payload=None, error=None):
        self.baseUrl = baseUrl
        self.payload = payload
        self.error = error
        self.calls = []
        self.closed = False

    def Call(self, action, params=None, timeout=None):
        self.calls.append((action, params))
        if self.error is not None:
            raise self.error
        return self.payload

    def Close(self):
        self.closed = True


class FakeConnection:
    """Context-managed connection yielding queued frames until closed."""

    _SENTINEL = object()

    def __init__(self, frames=()):
        self._frames = queue.Queue()
        for frame in frames:
            self._frames.put(frame)
        self.sent = []
        self.closed = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *excInfo):
        self.close()
        return False

    def __iter__(self):
        while True:
            frame = self._frames.get()
            if frame is self._SENTINEL:
                return
            yield frame

    def send(self, message):
        self.sent.append(message)

    def close(self):
        if not self.closed.is_set():
            self.closed.set()
            self._frames.put(self._SENTINEL)


@pytest.fixture
def config():
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def correlator(clock):
    echoes = iter(range(1, 10_000))
    return Correlator(timeout=30, sweepInterval=30, clock=clock, idGenerator=lambda: next(echoes))


@pytest.fixture
def group_message():
    """Factory for group message events."""
    def _make(text: str, groupId: int = 5000, userId: int = 42) -> Event:
        return Event({
            "post_type": "message",
            "message_type": "group",
            "group_id": groupId,
            "user_id": userId,
            "message": [{"type": "text", "data": {"text": text}}],
        })
    return _make
