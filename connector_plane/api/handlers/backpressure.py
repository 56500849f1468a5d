from __future__ import annotations

from datetime import datetime
from typing import Any

from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.api.handlers.views import activation_response, draft_response, policy_response
from connector_plane.api.schemas import (
    ActivateDraftsResponse,
    ApproveDraftResponse,
    BackpressureDecisionResponse,
    ConnectorSimulationResponse,
    ConnectorSuggestionResponse,
    DiscardDraftResponse,
    DraftActivationItemResponse,
    DraftResponse,
    PolicyResponse,
    RecommendationResponse,
    SimulationResponse,
    TuningRecommendationResponse,
)
from connector_plane.domain.connectors import SUPPORTED_CONNECTOR_TYPES, require_connector_types
from connector_plane.domain.errors import ValidationError
from connector_plane.domain.patch import UNSET, PolicyPatch, Unset, policy_patch_from_json
from connector_plane.domain.use_cases.backpressure import (
    BackpressureDecision,
    build_candidate_policy,
    validate_policy_patch,
)
from connector_plane.domain.use_cases.simulation import simulate
from connector_plane.domain.use_cases.tuning import TuningRecommendation, suggest

COMPONENT_ID = "api.connectors.backpressure"


async def get_policy_handler(deps: ApiDeps, *, project_id: str) -> PolicyResponse:
    return policy_response(await deps.lifecycle.live_policy(project_id=project_id))


async def get_draft_handler(deps: ApiDeps, *, project_id: str) -> DraftResponse:
    draft = await deps.lifecycle.get_draft(project_id=project_id)
    return draft_response(draft, now=deps.clock())


async def upsert_draft_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    actor: str,
    policy: dict[str, Any],
    required_approvals: int | None,
    activate_at: datetime | None | Unset = UNSET,
) -> DraftResponse:
    now = deps.clock()
    draft = await deps.lifecycle.upsert_draft(
        project_id=project_id,
        patch=_parse_patch(policy),
        actor=actor,
        now=now,
        required_approvals=required_approvals,
        activate_at=activate_at,
    )
    return draft_response(draft, now=now)


async def approve_draft_handler(deps: ApiDeps, *, project_id: str, actor: str) -> ApproveDraftResponse:
    now = deps.clock()
    result = await deps.lifecycle.record_approval(project_id=project_id, actor=actor, now=now)
    return ApproveDraftResponse(counted=result.counted, draft=draft_response(result.draft, now=now))


async def apply_draft_handler(deps: ApiDeps, *, project_id: str, actor: str) -> PolicyResponse:
    """Activate the draft; refuses while it is time- or approval-gated."""
    policy = await deps.lifecycle.activate_draft(project_id=project_id, actor=actor, now=deps.clock())
    return policy_response(policy)


async def discard_draft_handler(deps: ApiDeps, *, project_id: str, actor: str) -> DiscardDraftResponse:
    await deps.lifecycle.discard_draft(project_id=project_id, actor=actor)
    return DiscardDraftResponse(project_id=project_id, discarded=True)


async def activate_drafts_handler(
    deps: ApiDeps,
    *,
    actor: str,
    dry_run: bool,
    project_ids: list[str] | None,
    limit: int,
) -> ActivateDraftsResponse:
    batch = await deps.lifecycle.activate_ready_drafts(
        actor=actor,
        now=deps.clock(),
        dry_run=dry_run,
        project_ids=project_ids,
        limit=limit,
    )
    return ActivateDraftsResponse(
        dry_run=batch.dry_run,
        total_draft_count=batch.total_draft_count,
        scanned=batch.scanned,
        limited=batch.limited,
        ready=batch.count("ready"),
        blocked=batch.count("blocked"),
        applied=batch.count("applied"),
        failed=batch.count("failed"),
        items=[
            DraftActivationItemResponse(
                project_id=item.project_id,
                status=item.status,
                reason=item.reason,
                message=item.message,
                activation=activation_response(item.activation),
                policy=policy_response(item.policy) if item.policy is not None else None,
            )
            for item in batch.outcomes
        ],
    )


async def simulate_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    policy: dict[str, Any] | None,
    connector_types: list[str] | None,
    requested_limit: int | None,
) -> SimulationResponse:
    resolved_types = require_connector_types(connector_types)
    limit = deps.config.pump.requested_limit if requested_limit is None else requested_limit
    now = deps.clock()

    if policy is not None:
        patch = _parse_patch(policy)
        candidate_source = "request"
    else:
        draft = await deps.policy_store.get_draft(project_id=project_id)
        if draft is None:
            raise ValidationError("nothing to simulate: pass a policy patch or create a draft first")
        patch = draft.proposed
        candidate_source = "draft"

    live = await deps.lifecycle.live_policy(project_id=project_id)
    candidate = build_candidate_policy(live, validate_policy_patch(patch))
    summaries = await deps.reporting.summaries(project_id=project_id, connector_types=resolved_types, now=now)
    simulation = simulate(
        connector_types=resolved_types,
        requested_limit=limit,
        summaries_by_connector=summaries,
        current_policy=live,
        candidate_policy=candidate,
    )
    return SimulationResponse(
        project_id=project_id,
        candidate_source=candidate_source,
        candidate_policy=policy_response(candidate),
        requested_limit=simulation.requested_limit,
        connector_count=simulation.connector_count,
        drained_before=simulation.drained_before,
        drained_after=simulation.drained_after,
        drained_delta=simulation.drained_delta,
        throttled_before=simulation.throttled_before,
        throttled_after=simulation.throttled_after,
        throttled_delta=simulation.throttled_delta,
        items=[
            ConnectorSimulationResponse(
                connector_type=item.connector_type,
                due_now=item.summary.due_now,
                retrying=item.summary.retrying,
                current=_decision_response(item.current),
                candidate=_decision_response(item.candidate),
                effective_limit_delta=item.effective_limit_delta,
                throttled_changed=item.throttled_changed,
            )
            for item in simulation.per_connector
        ],
    )


async def get_recommendation_handler(deps: ApiDeps, *, project_id: str) -> RecommendationResponse:
    summaries = await deps.reporting.summaries(
        project_id=project_id,
        connector_types=SUPPORTED_CONNECTOR_TYPES,
        now=deps.clock(),
    )
    # Connectors that never carried traffic say nothing about the right caps.
    active = {connector_type: summary for connector_type, summary in summaries.items() if summary.total > 0}
    suggestions = suggest(active)
    return RecommendationResponse(
        project_id=project_id,
        recommendation=_recommendation_response(suggestions.recommendation),
        patch=suggestions.recommendation.as_patch().to_json(),
        by_connector=[
            ConnectorSuggestionResponse(
                connector_type=item.connector_type,
                pressure_tier=item.pressure_tier,
                retrying=item.summary.retrying,
                due_now=item.summary.due_now,
                outstanding=item.summary.outstanding,
                recommendation=_recommendation_response(item.recommendation),
            )
            for item in suggestions.by_connector
        ],
    )


def _parse_patch(raw: dict[str, Any]) -> PolicyPatch:
    try:
        return policy_patch_from_json(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(str(exc)) from exc


def _decision_response(decision: BackpressureDecision) -> BackpressureDecisionResponse:
    resolved = decision.resolved
    return BackpressureDecisionResponse(
        effective_limit=decision.effective_limit,
        queue_depth=decision.queue_depth,
        throttled=decision.throttled,
        reason=decision.reason,
        source=resolved.source,
        is_enabled=resolved.is_enabled,
        max_retrying=resolved.max_retrying,
        max_due_now=resolved.max_due_now,
        min_limit=resolved.min_limit,
    )


def _recommendation_response(recommendation: TuningRecommendation) -> TuningRecommendationResponse:
    return TuningRecommendationResponse(
        enabled=recommendation.enabled,
        max_retrying=recommendation.max_retrying,
        max_due_now=recommendation.max_due_now,
        min_limit=recommendation.min_limit,
    )
