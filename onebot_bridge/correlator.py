"""
Request/reply correlation by echo id.

Every command sent on the API stream carries an integer echo. The correlator
remembers each echo until the matching reply arrives or a background sweep
finds it older than the timeout. Three threads touch the pending map (the
sender, the API reader and the sweeper), so every access happens under one
lock. Futures are completed and log lines written after the lock is released.
"""

import itertools
import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError
from typing import Callable, Dict, List, Optional

from onebot_bridge.envelopes import Reply
from onebot_bridge.errors import CorrelationTimeout

TIME_FOR_WAIT = 30


class EchoGenerator:
    """
    Thread-safe source of unique echo ids.

    Ids start at the current Unix second and increase by one per call, so
    they still read like timestamps but two commands sent within the same
    second never share one.
    """

    def __init__(self, start: Optional[int] = None):
        self._counter = itertools.count(int(time.time()) if start is None else start)
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return next(self._counter)


class PendingRequest:
    __slots__ = ("echo", "createdAt", "future")

    def __init__(self, echo: int, createdAt: float):
        self.echo = echo
        self.createdAt = createdAt
        self.future: Future = Future()


class Correlator:
    """
    Tracks in-flight commands.

    Args:
        timeout: Seconds a command may stay unanswered before the sweep evicts it
        sweepInterval: Seconds between sweeps of the background thread
        clock: Returns the current time in seconds; injectable for tests
        idGenerator: Returns a fresh echo id per call
    """

    def __init__(self, timeout: float = TIME_FOR_WAIT, sweepInterval: float = TIME_FOR_WAIT,
                 clock: Callable[[], float] = time.monotonic,
                 idGenerator: Optional[Callable[[], int]] = None,
                 logger: Optional[logging.Logger] = None):
        self.timeout = timeout
        self.sweepInterval = sweepInterval
        self._clock = clock
        self._idGenerator = idGenerator or EchoGenerator()
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._pending: Dict[int, PendingRequest] = {}
        self._stopEvent = threading.Event()
        self._sweeperThread: Optional[threading.Thread] = None

    def NextEcho(self) -> int:
        return self._idGenerator()

    def Track(self, echo: int) -> Future:
        """
        Record `echo` as pending.

        Returns:
            Future: Completed with the Reply by Resolve(), or failed with
                    CorrelationTimeout by the sweep. Nobody has to wait on it.

        Raises:
            ValueError: `echo` is already in flight
        """
        request = PendingRequest(echo, self._clock())
        with self._lock:
            if echo in self._pending:
                raise ValueError(f"echo {echo} is already in flight")
            self._pending[echo] = request
        return request.future

    def Resolve(self, echo: Optional[int], reply: Optional[Reply] = None) -> bool:
        """
        Complete a pending echo. Unknown or already-finished echoes are ignored.

        Returns:
            bool: True if `echo` was pending
        """
        with self._lock:
            request = self._pending.pop(echo, None)
        if request is None:
            return False
        # The caller may have cancelled the future it was handed
        try:
            request.future.set_result(reply)
        except InvalidStateError:
            pass
        return True

    def Discard(self, echo: int) -> bool:
        """Stop tracking `echo` without completing its future, e.g. when sending it failed."""
        with self._lock:
            request = self._pending.pop(echo, None)
        if request is None:
            return False
        request.future.cancel()
        return True

    def IsPending(self, echo: int) -> bool:
        with self._lock:
            return echo in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def Sweep(self) -> List[int]:
        """
        Evict every echo older than the timeout.

        Each eviction is logged as a time out and its future fails with
        CorrelationTimeout.

        Returns:
            List[int]: The evicted echoes
        """
        now = self._clock()
        with self._lock:
            expired_ = [request for request in self._pending.values() if now - request.createdAt > self.timeout]
            for request in expired_:
                del self._pending[request.echo]

        for request in expired_:
            self._logger.error(f"(echo) id = {request.echo} response time out ({self.timeout:g}s)")
            try:
                request.future.set_exception(CorrelationTimeout(request.echo, self.timeout))
            except InvalidStateError:
                pass
        return [request.echo for request in expired_]

    # ------------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------------

    def Start(self) -> None:
        """Start the sweeper thread. Calling it again while running does nothing."""
        if self._sweeperThread is not None and self._sweeperThread.is_alive():
            return
        self._stopEvent.clear()
        self._sweeperThread = threading.Thread(target=self._SweepLooper, daemon=True, name="echo-sweeper")
        self._sweeperThread.start()

    def Stop(self, timeout: Optional[float] = None) -> None:
        self._stopEvent.set()
        if self._sweeperThread is not None:
            self._sweeperThread.join(timeout)
            self._sweeperThread = None

    def _SweepLooper(self) -> None:
        while not self._stopEvent.wait(self.sweepInterval):
            try:
                self.Sweep()
            except Exception:
                self._logger.exception("Echo sweep failed")
