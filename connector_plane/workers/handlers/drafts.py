from __future__ import annotations

from datetime import datetime
import logging

from connector_plane.domain.validation import ACTIVATION_BATCH_LIMIT_BOUNDS
from connector_plane.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.drafts.run_tick"
ACTOR = "worker-drafts"

logger = logging.getLogger("runtime")


async def run_tick(deps: WorkerDeps, *, now: datetime) -> int:
    """Activate every draft whose activation time and approvals allow it."""
    batch = await deps.lifecycle.activate_ready_drafts(
        actor=ACTOR,
        now=now,
        limit=ACTIVATION_BATCH_LIMIT_BOUNDS.maximum,
    )
    if batch.limited:
        logger.info(
            "draft activation backlog remains",
            extra={"actor": ACTOR, "total": batch.total_draft_count, "scanned": batch.scanned},
        )
    return batch.count("applied")
