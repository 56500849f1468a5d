from __future__ import annotations

from datetime import datetime

from connector_plane.domain.connectors import SUPPORTED_CONNECTOR_TYPES
from connector_plane.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.pump.run_tick"


async def run_tick(deps: WorkerDeps, *, now: datetime) -> int:
    """Drain every project/connector pair once; returns attempts made."""
    attempted = 0
    for project_id in await deps.delivery_store.list_project_ids():
        for connector_type in SUPPORTED_CONNECTOR_TYPES:
            result = await deps.pump.drain(
                project_id=project_id,
                connector_type=connector_type,
                requested_limit=deps.pump_defaults.requested_limit,
                now=now,
                actor="worker-pump",
            )
            attempted += result.attempted
    return attempted
