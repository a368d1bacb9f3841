"""
Plugin contract and plugin discovery.

A plugin exposes two keyed mappings:
    Filters():  {key: predicate(Event) -> bool}
    Handlers(): {key: action(Event)}

A handler runs when the filter stored under the same key accepts the event.
A handler whose key has no filter runs for every event. A handler may return
a response (str, {"action", "params"} dict, or a list of those) and the
gateway client turns it into outbound commands.

Plugin files live in the plugins directory and export either a PLUGIN object
or a MANIFEST dict:

    MANIFEST = {
        "name": "echo",
        "filters": {"cmd": "IsEchoCommand"},
        "handlers": {"cmd": "EchoReplier", "": "EventCounter"},
    }

MANIFEST values may be callables or names of functions in the same module.
"""

import importlib.util
import logging
import os
import sys
from typing import Any, Callable, Dict, List, Mapping, Optional

from onebot_bridge.envelopes import Event

Filter = Callable[[Event], bool]
Handler = Callable[[Event], Any]

logger = logging.getLogger(__name__)

# ============================================================================
# PLUGIN CONTRACT
# ============================================================================

class Plugin:
    """
    Base class for bridge plugins.

    Subclasses set `name` and override Filters() and Handlers(). Load() may
    raise to keep the plugin out of dispatch; Loaded() runs once on its own
    thread after every plugin has been registered.
    """

    name: str = ""

    def __init__(self):
        self.context = None

    def Name(self) -> str:
        return self.name or type(self).__name__

    def Load(self, context: Any) -> None:
        """Prepare the plugin. `context` is usually the GatewayClient."""
        self.context = context

    def Filters(self) -> Mapping[str, Filter]:
        return {}

    def Handlers(self) -> Mapping[str, Handler]:
        return {}

    def Loaded(self) -> None:
        pass


class ManifestPlugin(Plugin):
    """Adapts a plugin module that declares a MANIFEST dict."""

    def __init__(self, name: str, filters: Mapping[str, Filter], handlers: Mapping[str, Handler],
                 onLoaded: Optional[Callable[[], Any]] = None):
        super().__init__()
        self.name = name
        self._filters = dict(filters)
        self._handlers = dict(handlers)
        self._onLoaded = onLoaded

    def Filters(self) -> Mapping[str, Filter]:
        return self._filters

    def Handlers(self) -> Mapping[str, Handler]:
        return self._handlers

    def Loaded(self) -> None:
        if self._onLoaded is not None:
            self._onLoaded()

    @classmethod
    def FromModule(cls, module, defaultName: Optional[str] = None) -> "ManifestPlugin":
        """
        Build a plugin from a module's MANIFEST.

        Raises:
            ValueError: MANIFEST is not a dict, or references something that
                        is neither callable nor the name of a module function
        """
        manifest = getattr(module, "MANIFEST")
        if not isinstance(manifest, dict):
            raise ValueError(f"Plugin {module.__name__} MANIFEST is not a dict")

        def Resolve(section: str) -> Dict[str, Callable]:
            entries = manifest.get(section, {})
            if not isinstance(entries, dict):
                raise ValueError(f"Plugin {module.__name__} MANIFEST['{section}'] is not a dict")
            resolved = {}
            for key, target in entries.items():
                function = getattr(module, target, None) if isinstance(target, str) else target
                if not callable(function):
                    raise ValueError(f"Plugin {module.__name__} declares {section[:-1]} '{key}' -> {target!r} but it is not callable")
                resolved[key] = function
            return resolved

        onLoaded = manifest.get("loaded")
        if isinstance(onLoaded, str):
            onLoaded = getattr(module, onLoaded, None)

        return cls(
            name=manifest.get("name", defaultName or module.__name__),
            filters=Resolve("filters"),
            handlers=Resolve("handlers"),
            onLoaded=onLoaded if callable(onLoaded) else None,
        )

# ============================================================================
# DISCOVERY
# ============================================================================

def PluginDiscoverer(pluginsDir: str) -> List[Plugin]:
    """
    Import every plugin file in pluginsDir and collect its plugin object.

    Files starting with "__" are skipped. Failures in one file (syntax
    errors, import errors, a bad MANIFEST) are logged and do not affect the
    others. A missing directory is created and yields no plugins.

    Returns:
        List[Plugin]: Plugins in file-name order, not yet loaded
    """
    if not os.path.exists(pluginsDir):
        os.makedirs(pluginsDir)
        logger.info(f"Created plugins directory: {pluginsDir}")
        return []

    if not os.path.isdir(pluginsDir):
        logger.error(f"Plugins path is not a directory: {pluginsDir}")
        return []

    pluginFiles_ = sorted(f for f in os.listdir(pluginsDir) if f.endswith('.py') and not f.startswith('__'))
    if not pluginFiles_:
        logger.warning(f"No plugin files found in {pluginsDir}")
        return []

    logger.info(f"Found {len(pluginFiles_)} plugin files: {pluginFiles_}")

    plugins_ = []
    for pluginFile in pluginFiles_:
        moduleName = f"onebot_plugin_{pluginFile[:-3]}"
        try:
            spec = importlib.util.spec_from_file_location(moduleName, os.path.join(pluginsDir, pluginFile))
            pluginModule = importlib.util.module_from_spec(spec)
            sys.modules[moduleName] = pluginModule
            spec.loader.exec_module(pluginModule)

            if isinstance(getattr(pluginModule, "PLUGIN", None), Plugin):
                plugins_.append(pluginModule.PLUGIN)
            elif hasattr(pluginModule, "MANIFEST"):
                plugins_.append(ManifestPlugin.FromModule(pluginModule, pluginFile[:-3]))
            else:
                logger.warning(f"Plugin file {pluginFile} exports neither PLUGIN nor MANIFEST, skipping")
                continue
            logger.info(f"Discovered plugin {plugins_[-1].Name()} in {pluginFile}")

        except Exception as e:
            sys.modules.pop(moduleName, None)
            logger.error(f"Failed to import plugin file {pluginFile}: {e}")

    return plugins_
