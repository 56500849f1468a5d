import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest

from connector_plane.domain.patch import PolicyPatch
from connector_plane.workers.handlers.deps import WorkerDeps
from connector_plane.workers.handlers.factory import WORKER_STAGES, build_tick_handler
from connector_plane.workers.loop import WorkerLoop
from connector_plane.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)
from tests.unit.builders import NOW, FakeClock, Services, build_services


def _worker_deps(services: Services) -> WorkerDeps:
    return WorkerDeps(
        delivery_store=services.delivery_store,
        policy_store=services.policy_store,
        pump=services.pump,
        guardian=services.guardian,
        lifecycle=services.lifecycle,
        pump_defaults=services.config.pump,
    )


@pytest.mark.unit
def test_worker_runtime_settings_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "50")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "100")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "150")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings(poll_interval_ms=50, idle_backoff_ms=100, error_backoff_ms=150)


@pytest.mark.unit
def test_worker_runtime_settings_fall_back_on_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "abc")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "0")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "-10")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings()


@pytest.mark.unit
def test_factory_rejects_unknown_worker_role() -> None:
    services = build_services()

    with pytest.raises(ValueError, match="No worker handler"):
        build_tick_handler("worker-unknown", _worker_deps(services))
    assert set(WORKER_STAGES) == {"worker-pump", "worker-guardian", "worker-drafts"}


@pytest.mark.unit
def test_pump_worker_loop_drains_due_deliveries() -> None:
    async def _run() -> None:
        services = build_services()
        for index in range(3):
            await services.pump.enqueue(project_id="proj-1", connector_type="webhook", payload={"n": index}, now=NOW)
        await services.pump.enqueue(project_id="proj-2", connector_type="slack", payload={"n": 0}, now=NOW)
        loop = WorkerLoop(
            role="worker-pump",
            stage=WORKER_STAGES["worker-pump"],
            tick=build_tick_handler("worker-pump", _worker_deps(services)),
            clock=FakeClock(NOW),
        )

        assert await loop.run_once() is True
        assert loop.processed_total == 4
        assert await loop.run_once() is False
        assert len(services.dispatcher.sends) == 4

    asyncio.run(_run())


@pytest.mark.unit
def test_drafts_worker_activates_only_ready_drafts() -> None:
    async def _run() -> None:
        services = build_services()
        clock = FakeClock(NOW)
        await services.lifecycle.upsert_draft(
            project_id="proj-1",
            patch=PolicyPatch(max_due_now=15),
            actor="alice",
            now=NOW,
            activate_at=NOW + timedelta(minutes=30),
        )
        await services.lifecycle.record_approval(project_id="proj-1", actor="bob", now=NOW)
        await services.lifecycle.upsert_draft(
            project_id="proj-2",
            patch=PolicyPatch(max_due_now=15),
            actor="alice",
            now=NOW,
            required_approvals=2,
        )
        loop = WorkerLoop(
            role="worker-drafts",
            stage=WORKER_STAGES["worker-drafts"],
            tick=build_tick_handler("worker-drafts", _worker_deps(services)),
            clock=clock,
        )

        assert await loop.run_once() is False
        clock.advance(minutes=31)
        assert await loop.run_once() is True

        assert (await services.lifecycle.live_policy(project_id="proj-1")).max_due_now == 15
        assert (await services.lifecycle.live_policy(project_id="proj-2")).max_due_now == 100
        assert await services.policy_store.list_draft_project_ids() == ["proj-2"]

    asyncio.run(_run())


@pytest.mark.unit
def test_guardian_worker_counts_executed_actions() -> None:
    async def _run() -> None:
        services = build_services()
        for index in range(4):
            await services.pump.enqueue(project_id="proj-1", connector_type="db", payload={"n": index}, now=NOW)
        tick = build_tick_handler("worker-guardian", _worker_deps(services))

        assert await tick(NOW + timedelta(minutes=1)) == 1

    asyncio.run(_run())


@dataclass
class _FlakyLoop:
    calls: int = 0

    @property
    def stage(self) -> str:
        return "pump"

    async def run_once(self) -> bool:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("boom")
        return False


@pytest.mark.unit
def test_runner_survives_errors_and_continues() -> None:
    flaky_loop = _FlakyLoop()
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(poll_interval_ms=1, idle_backoff_ms=1, error_backoff_ms=1)
    state = WorkerRuntimeState()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=flaky_loop,  # pyright: ignore[reportArgumentType]
                role="worker-pump",
                run_id="run-1",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.02)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert flaky_loop.calls >= 2
    assert state.started is True
    assert state.stopped is True
    assert state.ticks_total >= 2
    assert state.errors_total >= 1


@pytest.mark.unit
def test_runner_passes_clock_time_to_tick() -> None:
    seen: list[datetime] = []

    async def _tick(now: datetime) -> int:
        seen.append(now)
        return 0

    loop = WorkerLoop(role="worker-pump", stage="pump", tick=_tick, clock=FakeClock(NOW))
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(poll_interval_ms=1, idle_backoff_ms=1, error_backoff_ms=1)

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=loop,
                role="worker-pump",
                run_id="run-clock",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
            )
        )
        await asyncio.sleep(0.01)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert seen
    assert set(seen) == {NOW}


@pytest.mark.unit
def test_error_backoff_doubles_per_failure_up_to_cap() -> None:
    settings = WorkerRuntimeSettings(
        poll_interval_ms=10,
        idle_backoff_ms=50,
        error_backoff_ms=100,
        max_error_backoff_ms=350,
    )
    state = WorkerRuntimeState()

    delays = []
    for _ in range(4):
        state.record_error()
        delays.append(settings.delay_ms(did_work=False, consecutive_errors=state.consecutive_errors))
    assert delays == [100, 200, 350, 350]

    state.record_tick(did_work=True)
    assert state.consecutive_errors == 0
    assert settings.delay_ms(did_work=True, consecutive_errors=state.consecutive_errors) == 10
    assert settings.delay_ms(did_work=False, consecutive_errors=0) == 50
    assert (state.ticks_total, state.errors_total, state.busy_ticks_total) == (5, 4, 1)


@pytest.mark.unit
def test_max_error_backoff_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_MAX_ERROR_BACKOFF_MS", "5000")

    assert worker_runtime_settings_from_env().max_error_backoff_ms == 5000
