from __future__ import annotations

from collections.abc import Mapping

from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.api.handlers.views import guardian_policy_response
from connector_plane.api.schemas import (
    ExecutedActionResponse,
    GuardianActionResponse,
    GuardianPolicyResponse,
    GuardianRunResponse,
    SkippedActionResponse,
)

COMPONENT_ID = "api.connectors.guardian"


async def get_guardian_policy_handler(deps: ApiDeps, *, project_id: str) -> GuardianPolicyResponse:
    return guardian_policy_response(await deps.guardian.get_policy(project_id=project_id))


async def update_guardian_policy_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    updates: Mapping[str, object],
    actor: str,
) -> GuardianPolicyResponse:
    policy = await deps.guardian.update_policy(
        project_id=project_id,
        updates=updates,
        actor=actor,
        now=deps.clock(),
    )
    return guardian_policy_response(policy)


async def run_guardian_handler(deps: ApiDeps, *, project_id: str, dry_run: bool, actor: str) -> GuardianRunResponse:
    result = await deps.guardian.run_project(project_id=project_id, now=deps.clock(), dry_run=dry_run, actor=actor)
    return GuardianRunResponse(
        project_id=result.project_id,
        dry_run=result.dry_run,
        skipped=result.skipped,
        reason=result.reason,
        planned=[
            GuardianActionResponse(
                connector_type=item.connector_type,
                action=item.action,
                risk_score=item.risk_score,
                risk_reasons=list(item.risk_reasons),
            )
            for item in result.planned
        ],
        cooldown_skipped=[
            SkippedActionResponse(
                connector_type=item.connector_type,
                action=item.action,
                risk_score=item.risk_score,
                risk_reasons=list(item.risk_reasons),
                reason=item.reason,
                last_action_at=item.last_action_at,
                retry_after_seconds=item.retry_after_seconds,
            )
            for item in result.cooldown_skipped
        ],
        executed=[
            ExecutedActionResponse(
                connector_type=item.connector_type,
                action=item.action,
                risk_score=item.risk_score,
                ok=item.ok,
                processed=item.processed,
                error=item.error,
            )
            for item in result.executed
        ],
        failures=result.failures,
    )
