"""Tests for the periodic sweep task."""

import asyncio

import pytest

from carebridge.service.runtime import Runtime
from carebridge.service.sweeper import PeriodicSweeper


class TestRunOnce:
    def test_returns_removed_count(self):
        sweeper = PeriodicSweeper("test", lambda: 3, 60)
        assert sweeper.run_once() == 3
        assert sweeper.runs == 1

    def test_errors_are_logged_and_swallowed(self):
        def broken():
            raise RuntimeError("store unavailable")

        sweeper = PeriodicSweeper("test", broken, 60)
        assert sweeper.run_once() == 0
        assert sweeper.run_once() == 0
        assert sweeper.failures == 2

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicSweeper("test", lambda: 0, 0)


class TestLoop:
    async def test_start_runs_periodically_and_stop_cancels(self):
        calls = []

        def sweep():
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("transient")
            return 0

        sweeper = PeriodicSweeper("test", sweep, 0.01)
        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.1)
        await sweeper.stop()
        assert not sweeper.running
        # the failing pass did not end the loop
        assert len(calls) >= 3
        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count

    async def test_double_start_is_ignored(self):
        sweeper = PeriodicSweeper("test", lambda: 0, 60)
        await sweeper.start()
        first_task = sweeper._task
        await sweeper.start()
        assert sweeper._task is first_task
        await sweeper.stop()


class TestRuntimeSweepers:
    def test_runtime_sweeps_every_store(self, settings, clock):
        runtime = Runtime(settings, clock=clock)
        runtime.bruteforce.record_failure("1.2.3.4")
        runtime.rate_limiter.allow("1.2.3.4")
        runtime.mfa.create_session("u", "totp")
        runtime.csrf.issue()

        clock.advance(25 * 60 * 60 * 1000)
        removed = runtime.sweep_all()
        assert removed == {"bruteforce": 1, "rate_limit": 1, "mfa": 1, "csrf": 1}

    async def test_start_and_stop_all(self, settings):
        runtime = Runtime(settings)
        await runtime.start_sweepers()
        assert all(s.running for s in runtime.sweepers)
        await runtime.stop_sweepers()
        assert not any(s.running for s in runtime.sweepers)
