from __future__ import annotations

from datetime import datetime

from connector_plane.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.guardian.run_tick"


async def run_tick(deps: WorkerDeps, *, now: datetime) -> int:
    results = await deps.guardian.run_all(now=now)
    return sum(len(result.executed) for result in results)
