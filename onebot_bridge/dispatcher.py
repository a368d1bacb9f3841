"""
Event fan-out.

Dispatch() submits, for every registered plugin, one unit running the
plugin's catch-all and one unit per filtered key. Units run on a bounded
thread pool with no ordering between them; Dispatch() returns as soon as they
are queued.

Each unit is isolated. A filter or handler that raises is logged with its
traceback and reported to the error hook, and sibling units are unaffected.
A raising filter counts as "no match".
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, List, NamedTuple, Optional

from onebot_bridge.envelopes import Event
from onebot_bridge.plugins import Filter, Handler
from onebot_bridge.registry import DispatchEntry, PluginRegistry

# errorReporter(pluginName, key, exception)
ErrorReporter = Callable[[str, str, BaseException], Any]
# responder(response, event), called with every non-None handler return value
Responder = Callable[[Any, Event], Any]


class DispatchOutcome(NamedTuple):
    """Units of one event that finished, and those still running at the deadline."""
    done: int
    pending: int


class Dispatcher:
    """
    Concurrent fan-out of events to registered plugins.

    Args:
        registry: Source of dispatch entries, read on every Dispatch()
        maxWorkers: Upper bound on handlers running at the same time. Extra
                    units wait in the pool's queue.
        errorReporter: Optional hook told about every failing filter/handler
        responder: Optional hook given every non-None handler return value
    """

    def __init__(self, registry: PluginRegistry, maxWorkers: int = 32,
                 errorReporter: Optional[ErrorReporter] = None,
                 responder: Optional[Responder] = None,
                 logger: Optional[logging.Logger] = None):
        self._registry = registry
        self._errorReporter = errorReporter
        self._responder = responder
        self._logger = logger or logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(max_workers=maxWorkers, thread_name_prefix="dispatch")

    def SetResponder(self, responder: Optional[Responder]) -> None:
        self._responder = responder

    def SetErrorReporter(self, errorReporter: Optional[ErrorReporter]) -> None:
        self._errorReporter = errorReporter

    def Dispatch(self, event: Event) -> List[Future]:
        """
        Queue every unit for `event` and return without waiting.

        Returns:
            List[Future]: One future per unit. Callers are free to ignore them.
        """
        futures_ = []
        for entry in self._registry.Entries().values():
            futures_.append(self._executor.submit(self._CatchAllRunner, entry, event))
            for key in entry.keys:
                futures_.append(self._executor.submit(
                    self._PairRunner, entry.name, key, entry.filters[key], entry.handlers[key], event))
        return futures_

    def DispatchAndWait(self, event: Event, timeout: Optional[float] = None) -> DispatchOutcome:
        """
        Dispatch `event` and block until all of its units finish or `timeout`
        seconds pass. Units still running at the deadline keep running; they
        are only logged.
        """
        futures_ = self.Dispatch(event)
        done, pending = wait(futures_, timeout=timeout)
        if pending:
            self._logger.warning(f"{len(pending)} of {len(futures_)} handlers for {event!r} "
                                 f"still running after {timeout}s")
        return DispatchOutcome(done=len(done), pending=len(pending))

    def Shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------------

    def _CatchAllRunner(self, entry: DispatchEntry, event: Event) -> None:
        entry.CatchAll(event, lambda key, handler, evt: self.HandlerCaller(entry.name, key, handler, evt))

    def _PairRunner(self, pluginName: str, key: str, filterFunction: Filter, handler: Handler, event: Event) -> None:
        try:
            accepted = filterFunction(event)
        except Exception as e:
            self._FailureReporter(pluginName, key, e, "filter")
            return
        if accepted:
            self.HandlerCaller(pluginName, key, handler, event)

    def HandlerCaller(self, pluginName: str, key: str, handler: Handler, event: Event) -> Any:
        """
        Call one handler with failure isolation.

        Returns:
            Any: The handler's return value, or None if it raised. A non-None
                 value is also passed to the responder.
        """
        try:
            response = handler(event)
        except Exception as e:
            self._FailureReporter(pluginName, key, e, "handler")
            return None

        if response is not None and self._responder is not None:
            try:
                self._responder(response, event)
            except Exception:
                self._logger.exception(f"Failed to send the response of plugin {pluginName} handler {key!r}")
        return response

    def _FailureReporter(self, pluginName: str, key: str, exception: BaseException, role: str) -> None:
        self._logger.error(f"Plugin {pluginName} {role} {key!r} failed: {exception}", exc_info=exception)
        if self._errorReporter is None:
            return
        try:
            self._errorReporter(pluginName, key, exception)
        except Exception:
            self._logger.exception("Error reporter failed")
