from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields
import logging
import os

from connector_plane.workers.loop import WorkerLoop

# Environment overrides, keyed by WorkerRuntimeSettings field.
SETTINGS_ENV = {
    "poll_interval_ms": "WORKER_POLL_INTERVAL_MS",
    "idle_backoff_ms": "WORKER_IDLE_BACKOFF_MS",
    "error_backoff_ms": "WORKER_ERROR_BACKOFF_MS",
    "max_error_backoff_ms": "WORKER_MAX_ERROR_BACKOFF_MS",
}


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    """Pause between stage ticks.

    A busy tick is followed by `poll_interval_ms`, an idle one by
    `idle_backoff_ms`. Failed ticks start at `error_backoff_ms` and double per
    consecutive failure, capped at `max_error_backoff_ms`.
    """

    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    max_error_backoff_ms: int = 30_000

    def delay_ms(self, *, did_work: bool, consecutive_errors: int) -> int:
        if consecutive_errors > 0:
            cap = max(self.max_error_backoff_ms, self.error_backoff_ms)
            return min(self.error_backoff_ms * 2 ** (consecutive_errors - 1), cap)
        return self.poll_interval_ms if did_work else self.idle_backoff_ms


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    busy_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    consecutive_errors: int = 0

    def record_tick(self, *, did_work: bool) -> None:
        self.ticks_total += 1
        self.consecutive_errors = 0
        if did_work:
            self.busy_ticks_total += 1
        else:
            self.idle_ticks_total += 1

    def record_error(self) -> None:
        self.ticks_total += 1
        self.errors_total += 1
        self.consecutive_errors += 1


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    defaults = WorkerRuntimeSettings()
    return WorkerRuntimeSettings(
        **{
            item.name: _positive_env_int(SETTINGS_ENV[item.name], getattr(defaults, item.name))
            for item in fields(WorkerRuntimeSettings)
        }
    )


def _positive_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    """Tick one control-loop stage until `stop_event` is set.

    A failing tick is logged with its traceback and retried after backoff;
    it never stops the stage.
    """
    if state is None:
        state = WorkerRuntimeState()
    state.started = True
    context = {"role": role, "run_id": run_id, "stage": worker_loop.stage}
    logger.info("worker stage started", extra=context)

    while not stop_event.is_set():
        did_work = False
        try:
            did_work = await worker_loop.run_once()
        except Exception:
            state.record_error()
            logger.exception(
                "worker stage tick failed",
                extra={**context, "consecutive_errors": state.consecutive_errors},
            )
        else:
            state.record_tick(did_work=did_work)
            logger.debug("worker stage tick finished", extra={**context, "did_work": did_work})

        delay_ms = settings.delay_ms(did_work=did_work, consecutive_errors=state.consecutive_errors)
        if await _stop_requested_within(stop_event, delay_ms):
            break

    state.stopped = True
    logger.info(
        "worker stage stopped",
        extra={**context, "ticks_total": state.ticks_total, "errors_total": state.errors_total},
    )


async def _stop_requested_within(stop_event: asyncio.Event, delay_ms: int) -> bool:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
    except TimeoutError:
        return False
    return True
