"""Tests for named timers and liveness watchdogs."""

import asyncio

import pytest

from src.build_engine.supervision import LivenessSupervisor, Scheduler


class TestScheduler:
    @pytest.mark.asyncio
    async def test_callback_runs_after_delay(self):
        scheduler = Scheduler()
        fired = []

        async def callback():
            fired.append("autosave")

        scheduler.schedule("autosave", 0.01, callback)
        assert scheduler.pending("autosave")
        await asyncio.sleep(0.05)
        assert fired == ["autosave"]
        assert not scheduler.pending("autosave")

    @pytest.mark.asyncio
    async def test_same_name_replaces_timer(self):
        scheduler = Scheduler()
        fired = []

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        scheduler.schedule("autosave", 0.01, first)
        scheduler.schedule("autosave", 0.01, second)
        await asyncio.sleep(0.05)
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        scheduler = Scheduler()
        fired = []

        async def callback():
            fired.append(True)

        scheduler.schedule("auto-advance", 0.01, callback)
        assert scheduler.cancel("auto-advance") is True
        assert scheduler.cancel("auto-advance") is False
        await asyncio.sleep(0.03)
        assert fired == []

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_scheduler(self):
        scheduler = Scheduler()
        fired = []

        async def boom():
            raise RuntimeError("boom")

        async def ok():
            fired.append(True)

        scheduler.schedule("a", 0.0, boom)
        scheduler.schedule("b", 0.01, ok)
        await asyncio.sleep(0.05)
        assert fired == [True]


class TestLivenessSupervisor:
    @pytest.mark.asyncio
    async def test_watchdog_expires(self, watchdog_scheduler):
        supervisor = LivenessSupervisor(watchdog_scheduler)
        expired = []

        async def on_expire():
            expired.append("generation:users")

        supervisor.watch("generation:users", 45, on_expire)
        assert supervisor.watching("generation:users")
        assert 0 < supervisor.active()["generation:users"] <= 45

        await watchdog_scheduler.fire("watchdog:generation:users")
        assert expired == ["generation:users"]
        assert supervisor.expired == ["generation:users"]
        assert not supervisor.watching("generation:users")

    def test_clear(self, watchdog_scheduler):
        supervisor = LivenessSupervisor(watchdog_scheduler)

        async def on_expire():
            pass

        supervisor.watch("generation:users", 45, on_expire)
        supervisor.watch("generation:features", 45, on_expire)
        assert supervisor.clear("generation:users") is True
        assert watchdog_scheduler.pending_names() == ["watchdog:generation:features"]
        supervisor.clear_all()
        assert supervisor.active() == {}
        assert watchdog_scheduler.pending_names() == []
