"""Tests for plugin registration and dispatch entries."""

import logging
import threading
import time

import pytest

from conftest import CallRecorder, RecordingPlugin
from onebot_bridge.errors import PluginLoadError
from onebot_bridge.registry import DispatchEntry, PluginRegistry


def always(event):
    return True


class TestPairing:
    """Filters and handlers are paired by key."""

    def test_paired_keys_keep_filter_order(self):
        plugin = RecordingPlugin(
            "pairs",
            filters={"b": always, "a": always},
            handlers={"a": CallRecorder(), "b": CallRecorder()},
        )
        registry = PluginRegistry()

        (entry,) = registry.RegisterAll([plugin])

        assert entry.keys == ("b", "a")
        assert set(entry.filters) == {"a", "b"}
        assert set(entry.handlers) == {"a", "b"}
        assert entry.unfiltered == ()

    def test_unused_filter_key_is_dropped_with_warning(self, caplog):
        plugin = RecordingPlugin("lonely", filters={"orphan": always}, handlers={})
        registry = PluginRegistry()

        with caplog.at_level(logging.WARNING):
            (entry,) = registry.RegisterAll([plugin])

        assert entry.keys == ()
        assert "orphan" not in entry.filters
        assert any("unused filter key" in record.message and "orphan" in record.message
                   for record in caplog.records)

    def test_handlers_without_filter_go_to_catch_all(self):
        gated = CallRecorder()
        everything = CallRecorder()
        plugin = RecordingPlugin(
            "mixed",
            filters={"cmd": always},
            handlers={"cmd": gated, "": everything},
        )

        (entry,) = PluginRegistry().RegisterAll([plugin])

        assert entry.keys == ("cmd",)
        assert entry.unfiltered == (("", everything),)
        assert "" not in entry.handlers

    def test_catch_all_runs_every_unfiltered_handler_in_order(self):
        order = []
        plugin = RecordingPlugin(
            "ordered",
            handlers={"x": lambda e: order.append("x"), "y": lambda e: order.append("y")},
        )
        (entry,) = PluginRegistry().RegisterAll([plugin])

        entry.CatchAll(object())

        assert order == ["x", "y"]

    def test_catch_all_uses_supplied_caller(self):
        seen = []
        handler = CallRecorder()
        plugin = RecordingPlugin("called", handlers={"k": handler})
        (entry,) = PluginRegistry().RegisterAll([plugin])

        entry.CatchAll("evt", lambda key, h, evt: seen.append((key, h, evt)))

        assert seen == [("k", handler, "evt")]
        assert handler.count == 0


class TestLoading:
    """Load failures are local to the failing plugin."""

    def test_load_failure_excludes_only_that_plugin(self, caplog):
        broken = RecordingPlugin("broken", handlers={"": CallRecorder()}, loadError=RuntimeError("no token"))
        healthy = RecordingPlugin("healthy", handlers={"": CallRecorder()})
        registry = PluginRegistry()

        with caplog.at_level(logging.ERROR):
            installed = registry.RegisterAll([broken, healthy])

        assert [entry.name for entry in installed] == ["healthy"]
        assert "broken" not in registry
        assert "healthy" in registry
        failure = registry.Failures()["broken"]
        assert isinstance(failure, PluginLoadError)
        assert isinstance(failure.reason, RuntimeError)
        assert any("broken" in record.message for record in caplog.records)

    def test_non_mapping_filters_count_as_load_failure(self):
        plugin = RecordingPlugin("weird")
        plugin.Filters = lambda: ["not", "a", "mapping"]
        registry = PluginRegistry()

        assert registry.RegisterAll([plugin]) == []
        assert "weird" in registry.Failures()

    def test_context_is_passed_to_load(self):
        plugin = RecordingPlugin("ctx")
        registry = PluginRegistry(context="the-client")

        registry.RegisterAll([plugin])

        assert plugin.context == "the-client"
        assert plugin.loadCalls == 1

    def test_loaded_hook_runs_once_for_loaded_plugins_only(self):
        good = RecordingPlugin("good")
        bad = RecordingPlugin("bad", loadError=ValueError("nope"))

        PluginRegistry().RegisterAll([good, bad])

        assert good.loadedEvent.wait(timeout=5)
        assert good.loadedCalls == 1
        assert not bad.loadedEvent.wait(timeout=0.2)
        assert bad.loadedCalls == 0

    def test_failing_loaded_hook_is_logged(self, caplog):
        done = threading.Event()

        class Grumpy(RecordingPlugin):
            def Loaded(self):
                done.set()
                raise RuntimeError("loaded exploded")

        with caplog.at_level(logging.ERROR):
            PluginRegistry().RegisterAll([Grumpy("grumpy")])
            assert done.wait(timeout=5)
            for _ in range(50):
                if any("Loaded hook" in r.message for r in caplog.records):
                    break
                time.sleep(0.02)

        assert any("grumpy" in r.message and "Loaded hook" in r.message for r in caplog.records)


class TestPublication:
    """The published mapping is an immutable snapshot."""

    def test_entry_is_immutable(self):
        (entry,) = PluginRegistry().RegisterAll([RecordingPlugin("frozen", filters={"k": always},
                                                                 handlers={"k": CallRecorder()})])

        with pytest.raises(AttributeError):
            entry.keys = ("other",)
        with pytest.raises(TypeError):
            entry.filters["new"] = always
        with pytest.raises(TypeError):
            entry.handlers["new"] = always

    def test_snapshot_is_unaffected_by_later_registration(self):
        registry = PluginRegistry()
        registry.RegisterAll([RecordingPlugin("first")])
        snapshot = registry.Entries()

        registry.RegisterAll([RecordingPlugin("second")])

        assert list(snapshot) == ["first"]
        assert set(registry.Entries()) == {"first", "second"}
        with pytest.raises(TypeError):
            snapshot["third"] = None

    def test_duplicate_name_replaces_previous_entry(self, caplog):
        registry = PluginRegistry()
        registry.RegisterAll([RecordingPlugin("dup", handlers={"a": CallRecorder()})])

        with caplog.at_level(logging.WARNING):
            registry.RegisterAll([RecordingPlugin("dup", handlers={"b": CallRecorder()})])

        assert [key for key, _ in registry.Entries()["dup"].unfiltered] == ["b"]
        assert any("already registered" in r.message for r in caplog.records)

    def test_concurrent_registration_keeps_every_plugin(self):
        registry = PluginRegistry()
        barrier = threading.Barrier(8)

        def Register(index):
            barrier.wait()
            registry.RegisterAll([RecordingPlugin(f"p{index}-{n}") for n in range(5)])

        threads = [threading.Thread(target=Register, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registry) == 40
        assert all(isinstance(entry, DispatchEntry) for entry in registry.Entries().values())
