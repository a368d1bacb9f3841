"""Tests for echo tracking and expiry."""

import logging
import threading
import time
from concurrent.futures import InvalidStateError

import pytest

from conftest import FakeClock
from onebot_bridge.correlator import Correlator, EchoGenerator
from onebot_bridge.envelopes import Reply
from onebot_bridge.errors import CorrelationTimeout


class TestTrackResolve:
    """Round trip of an echo through the pending set."""

    def test_resolve_removes_pending_echo(self, correlator):
        reply = Reply(status="ok", retcode=0, data=None, echo=7)
        future = correlator.Track(7)

        assert correlator.IsPending(7)
        assert correlator.Resolve(7, reply) is True
        assert not correlator.IsPending(7)
        assert future.result(timeout=0) is reply

    def test_resolving_untracked_echo_is_a_noop(self, correlator):
        correlator.Track(1)

        assert correlator.Resolve(99) is False
        assert len(correlator) == 1

    def test_second_resolve_is_a_noop(self, correlator):
        correlator.Track(5)
        correlator.Resolve(5)

        assert correlator.Resolve(5) is False

    def test_duplicate_in_flight_echo_is_rejected(self, correlator):
        correlator.Track(3)

        with pytest.raises(ValueError):
            correlator.Track(3)

    def test_echo_can_be_reused_after_resolution(self, correlator):
        correlator.Track(3)
        correlator.Resolve(3)

        correlator.Track(3)
        assert correlator.IsPending(3)

    def test_resolve_after_caller_cancelled(self, correlator):
        future = correlator.Track(4)
        future.cancel()

        assert correlator.Resolve(4) is True
        assert not correlator.IsPending(4)

    def test_resolve_survives_cancel_racing_completion(self, correlator):
        future = correlator.Track(6)

        def CancelledMeanwhile(result):
            raise InvalidStateError("CANCELLED")

        future.set_result = CancelledMeanwhile

        assert correlator.Resolve(6) is True
        assert not correlator.IsPending(6)

    def test_discard_cancels_without_resolving(self, correlator):
        future = correlator.Track(8)

        assert correlator.Discard(8) is True
        assert future.cancelled()
        assert correlator.Discard(8) is False

    def test_next_echo_uses_injected_generator(self, correlator):
        assert [correlator.NextEcho() for _ in range(3)] == [1, 2, 3]


class TestSweep:
    """Entries older than the timeout are evicted."""

    def test_expired_echo_is_evicted_and_logged(self, correlator, clock, caplog):
        future = correlator.Track(11)
        clock.Advance(31)

        with caplog.at_level(logging.ERROR):
            evicted = correlator.Sweep()

        assert evicted == [11]
        assert not correlator.IsPending(11)
        assert correlator.Resolve(11) is False
        assert any("(echo) id = 11 response time out" in r.message for r in caplog.records)
        with pytest.raises(CorrelationTimeout):
            future.result(timeout=0)

    def test_entry_at_exactly_the_threshold_survives(self, correlator, clock):
        correlator.Track(12)
        clock.Advance(30)

        assert correlator.Sweep() == []
        assert correlator.IsPending(12)

    def test_only_stale_entries_are_evicted(self, correlator, clock):
        correlator.Track(1)
        clock.Advance(20)
        correlator.Track(2)
        clock.Advance(15)

        assert correlator.Sweep() == [1]
        assert correlator.IsPending(2)


    def test_sweep_survives_cancel_racing_timeout(self, correlator, clock, caplog):
        raced = correlator.Track(1)
        other = correlator.Track(2)

        def CancelledMeanwhile(exception):
            raise InvalidStateError("CANCELLED")

        raced.set_exception = CancelledMeanwhile
        clock.Advance(31)

        with caplog.at_level(logging.ERROR):
            assert correlator.Sweep() == [1, 2]

        assert any("(echo) id = 2 response time out" in r.message for r in caplog.records)
        with pytest.raises(CorrelationTimeout):
            other.result(timeout=0)


class TestBackgroundSweeper:
    """The sweeper thread runs Sweep() periodically."""

    def test_sweeper_evicts_without_explicit_call(self):
        clock = FakeClock()
        correlator = Correlator(timeout=30, sweepInterval=0.01, clock=clock, idGenerator=lambda: 1)
        future = correlator.Track(1)
        clock.Advance(60)

        correlator.Start()
        try:
            with pytest.raises(CorrelationTimeout):
                future.result(timeout=5)
        finally:
            correlator.Stop(timeout=5)

        assert len(correlator) == 0

    def test_start_twice_keeps_one_thread(self):
        correlator = Correlator(sweepInterval=10)
        correlator.Start()
        first = correlator._sweeperThread
        correlator.Start()

        assert correlator._sweeperThread is first
        correlator.Stop(timeout=5)
        assert not first.is_alive()


class TestEchoGenerator:
    """Default id strategy."""

    def test_ids_start_at_given_value_and_increase(self):
        generator = EchoGenerator(start=100)

        assert [generator() for _ in range(3)] == [100, 101, 102]

    def test_default_start_is_current_unix_second(self):
        before = int(time.time())
        first = EchoGenerator()()

        assert before <= first <= int(time.time())

    def test_ids_are_unique_across_threads(self):
        generator = EchoGenerator(start=0)
        results = []
        lock = threading.Lock()

        def Draw():
            drawn = [generator() for _ in range(500)]
            with lock:
                results.extend(drawn)

        threads = [threading.Thread(target=Draw) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == len(set(results)) == 4000
