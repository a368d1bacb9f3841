"""
Plugin registration.

RegisterAll() turns a batch of plugins into one immutable DispatchEntry per
plugin in three phases:

1. Load: call every plugin's Load(). A failure is logged and only that plugin
   is dropped.
2. Pair: every filter key must have a handler under the same key. A filter
   without one is logged as unused and dropped. Handlers whose key never
   appears among the filters are folded into the entry's catch-all.
3. Notify: once all entries are published, each loaded plugin's Loaded()
   hook runs once on its own thread.

The name -> entry mapping is published copy-on-write: a registration builds a
new dict and swaps it in under the lock, so a dispatch iterating the previous
snapshot never sees it change.
"""

import logging
import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from onebot_bridge.envelopes import Event
from onebot_bridge.errors import PluginLoadError
from onebot_bridge.plugins import Filter, Handler, Plugin

# Invoked once per unfiltered handler by DispatchEntry.CatchAll
HandlerCaller = Callable[[str, Handler, Event], Any]


class DispatchEntry:
    """
    Immutable per-plugin dispatch table.

    Attributes:
        name: Plugin name
        keys: Keys that have both a filter and a handler, in filter order
        filters: key -> filter, read-only, same keys as `keys`
        handlers: key -> handler, read-only, same keys as `keys`
        unfiltered: (key, handler) pairs with no filter, run by CatchAll()
    """

    __slots__ = ("name", "keys", "filters", "handlers", "unfiltered")

    def __init__(self, name: str, keys: Iterable[str], filters: Mapping[str, Filter],
                 handlers: Mapping[str, Handler], unfiltered: Iterable[Tuple[str, Handler]]):
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "keys", tuple(keys))
        object.__setattr__(self, "filters", MappingProxyType(dict(filters)))
        object.__setattr__(self, "handlers", MappingProxyType(dict(handlers)))
        object.__setattr__(self, "unfiltered", tuple(unfiltered))

    def __setattr__(self, name, value):
        raise AttributeError("DispatchEntry is immutable")

    def __delattr__(self, name):
        raise AttributeError("DispatchEntry is immutable")

    def CatchAll(self, event: Event, caller: Optional[HandlerCaller] = None) -> None:
        """
        Run every unfiltered handler on `event`, one after another.

        `caller(key, handler, event)` performs each call; the dispatcher
        passes one that isolates failures so a raising handler does not stop
        the ones after it. Without a caller handlers are called directly.
        """
        for key, handler in self.unfiltered:
            if caller is None:
                handler(event)
            else:
                caller(key, handler, event)

    def __repr__(self) -> str:
        return f"DispatchEntry(name={self.name!r}, keys={self.keys!r}, unfiltered={len(self.unfiltered)})"


class PluginRegistry:
    """Process-wide plugin name -> DispatchEntry mapping."""

    def __init__(self, context: Any = None, logger: Optional[logging.Logger] = None):
        self._context = context
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._entries: Mapping[str, DispatchEntry] = MappingProxyType({})
        self._failures: Dict[str, PluginLoadError] = {}

    def Bind(self, context: Any) -> None:
        """Set the object passed to every plugin's Load()."""
        self._context = context

    def Entries(self) -> Mapping[str, DispatchEntry]:
        """Current read-only snapshot. Safe to iterate without locking."""
        return self._entries

    def Failures(self) -> Mapping[str, PluginLoadError]:
        """Plugins whose Load() failed, by name."""
        with self._lock:
            return dict(self._failures)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def RegisterAll(self, plugins: Iterable[Plugin]) -> List[DispatchEntry]:
        """
        Load, pair and publish a batch of plugins.

        Never raises for a misbehaving plugin; see the module docstring for
        the phases.

        Returns:
            List[DispatchEntry]: Entries installed by this call
        """
        with self._lock:
            loaded_ = self._PluginLoader(plugins)

            installed_ = []
            entries = dict(self._entries)
            for plugin, filters, handlers in loaded_:
                entry = self._EntryConstructor(plugin.Name(), filters, handlers)
                if entry.name in entries:
                    self._logger.warning(f"Plugin {entry.name} was already registered, replacing it")
                entries[entry.name] = entry
                installed_.append(entry)
            self._entries = MappingProxyType(entries)

        self._logger.info(f"Plugin registration complete. {len(installed_)} plugins installed, "
                          f"{len(self._entries)} registered in total")
        for entry in installed_:
            self._logger.info(f"  {entry.name}: {len(entry.keys)} filtered handlers, "
                              f"{len(entry.unfiltered)} unfiltered handlers")

        for plugin, _, _ in loaded_:
            loadedThread = threading.Thread(
                target=self._LoadedNotifier,
                args=(plugin,),
                daemon=True,
                name=f"loaded-{plugin.Name()}",
            )
            loadedThread.start()

        return installed_

    def _PluginLoader(self, plugins: Iterable[Plugin]) -> List[Tuple[Plugin, Mapping, Mapping]]:
        loaded_ = []
        for plugin in plugins:
            try:
                pluginName = plugin.Name()
            except Exception as e:
                self._logger.error(f"Plugin {plugin!r} can't report its name, reason: {e}")
                continue

            try:
                plugin.Load(self._context)
                filters = plugin.Filters()
                handlers = plugin.Handlers()
                if not isinstance(filters, Mapping) or not isinstance(handlers, Mapping):
                    raise TypeError("Filters() and Handlers() must return mappings")
            except Exception as e:
                failure = PluginLoadError(pluginName, e)
                self._failures[pluginName] = failure
                self._logger.error(str(failure))
                continue

            self._failures.pop(pluginName, None)
            loaded_.append((plugin, filters, handlers))
        return loaded_

    def _EntryConstructor(self, pluginName: str, pluginFilters: Mapping[str, Filter],
                          pluginHandlers: Mapping[str, Handler]) -> DispatchEntry:
        keys_ = []
        filters = {}
        handlers = {}
        for key, filterFunction in pluginFilters.items():
            handler = pluginHandlers.get(key)
            if handler is None:
                self._logger.warning(f"Plugin {pluginName} has an unused filter key: {key!r}")
                continue
            keys_.append(key)
            filters[key] = filterFunction
            handlers[key] = handler

        unfiltered_ = [(key, handler) for key, handler in pluginHandlers.items()
                       if key not in pluginFilters]

        return DispatchEntry(pluginName, keys_, filters, handlers, unfiltered_)

    def _LoadedNotifier(self, plugin: Plugin) -> None:
        try:
            plugin.Loaded()
        except Exception:
            self._logger.exception(f"Plugin {plugin.Name()} failed in its Loaded hook")
