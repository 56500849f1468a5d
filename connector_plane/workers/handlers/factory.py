from __future__ import annotations

from datetime import datetime

from connector_plane.workers.handlers import drafts, guardian, pump
from connector_plane.workers.handlers.deps import WorkerDeps
from connector_plane.workers.loop import TickHandler

WORKER_STAGES: dict[str, str] = {
    "worker-pump": "pump",
    "worker-guardian": "guardian",
    "worker-drafts": "drafts",
}


def build_tick_handler(role: str, deps: WorkerDeps) -> TickHandler:
    async def _pump(now: datetime) -> int:
        return await pump.run_tick(deps, now=now)

    async def _guardian(now: datetime) -> int:
        return await guardian.run_tick(deps, now=now)

    async def _drafts(now: datetime) -> int:
        return await drafts.run_tick(deps, now=now)

    handlers: dict[str, TickHandler] = {
        "worker-pump": _pump,
        "worker-guardian": _guardian,
        "worker-drafts": _drafts,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler
