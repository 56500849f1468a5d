from __future__ import annotations

from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.api.handlers.views import insights_response, summary_response
from connector_plane.api.schemas import (
    OutcomeDeltaResponse,
    OutcomesResponse,
    OutcomeWindowResponse,
    PolicyUpdateResponse,
    RankedConnectorResponse,
    ReliabilityResponse,
    RiskBreakdownResponse,
)
from connector_plane.domain.connectors import require_connector_type, require_connector_types
from connector_plane.domain.events import BACKPRESSURE_POLICY_UPDATED
from connector_plane.domain.use_cases.outcomes import OutcomeWindow, policy_update_feed
from connector_plane.domain.use_cases.reliability import rank, resolve_risk_trend
from connector_plane.domain.validation import LOOKBACK_HOURS_BOUNDS, require_int

COMPONENT_ID = "api.connectors.reliability"

POLICY_FEED_LIMIT = 20


async def get_reliability_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_types: list[str] | None,
    lookback_hours: int | None,
) -> ReliabilityResponse:
    """Rank connectors by risk and compare each score with the previous window."""
    resolved_types = require_connector_types(connector_types)
    lookback = _lookback(deps, lookback_hours)
    now = deps.clock()

    ranked = rank(
        await deps.reporting.reliability_records(
            project_id=project_id,
            connector_types=resolved_types,
            lookback_hours=lookback,
            now=now,
        )
    )
    baseline_scores = {
        item.connector_type: item.risk_score
        for item in rank(
            await deps.reporting.baseline_records(
                project_id=project_id,
                connector_types=resolved_types,
                lookback_hours=lookback,
                now=now,
            )
        )
    }

    items = []
    for item in ranked:
        trend = resolve_risk_trend(
            risk_score=item.risk_score,
            baseline_risk_score=baseline_scores.get(item.connector_type, 0.0),
        )
        breakdown = item.risk_breakdown
        items.append(
            RankedConnectorResponse(
                connector_type=item.connector_type,
                risk_score=item.risk_score,
                recommendation=item.recommendation,
                risk_reasons=list(item.risk_reasons),
                risk_breakdown=RiskBreakdownResponse(
                    dead_letter_pressure=breakdown.dead_letter_pressure,
                    due_now_pressure=breakdown.due_now_pressure,
                    retry_pressure=breakdown.retry_pressure,
                    queued_pressure=breakdown.queued_pressure,
                    max_attempt_pressure=breakdown.max_attempt_pressure,
                    delivery_failure_pressure=breakdown.delivery_failure_pressure,
                    attempt_failure_pressure=breakdown.attempt_failure_pressure,
                    error_pressure=breakdown.error_pressure,
                    total=breakdown.total,
                ),
                baseline_risk_score=trend.baseline_risk_score,
                risk_delta=trend.risk_delta,
                risk_trend=trend.risk_trend,
                summary=summary_response(item.summary),
                insights=insights_response(
                    connector_type=item.connector_type,
                    lookback_hours=lookback,
                    insights=item.insights,
                ),
            )
        )
    return ReliabilityResponse(project_id=project_id, lookback_hours=lookback, generated_at=now, items=items)


async def get_outcomes_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str | None,
    lookback_hours: int | None,
) -> OutcomesResponse:
    resolved_type = require_connector_type(connector_type) if connector_type else None
    lookback = _lookback(deps, lookback_hours)
    trend = await deps.reporting.outcomes(
        project_id=project_id,
        connector_type=resolved_type,
        lookback_hours=lookback,
        now=deps.clock(),
    )
    events = await deps.audit_log.list_events(
        limit=POLICY_FEED_LIMIT,
        project_id=project_id,
        event_types=(BACKPRESSURE_POLICY_UPDATED,),
    )
    delta = trend.delta
    return OutcomesResponse(
        project_id=project_id,
        connector_type=resolved_type,
        current=_window_response(trend.current),
        baseline=_window_response(trend.baseline),
        delta=OutcomeDeltaResponse(
            total_deliveries=delta.total_deliveries,
            delivered=delta.delivered,
            dead_lettered=delta.dead_lettered,
            retrying=delta.retrying,
            queued=delta.queued,
            delivery_success_rate=delta.delivery_success_rate,
            dead_letter_rate=delta.dead_letter_rate,
        ),
        policy_updates=[
            PolicyUpdateResponse(
                event_id=entry.event_id,
                actor=entry.actor,
                created_at=entry.created_at,
                applied_patch=entry.applied_patch,
                policy=entry.policy,
                approvers=list(entry.approvers),
            )
            for entry in policy_update_feed(events, limit=POLICY_FEED_LIMIT)
        ],
    )


def _lookback(deps: ApiDeps, lookback_hours: int | None) -> int:
    lookback = deps.config.pump.insights_lookback_hours if lookback_hours is None else lookback_hours
    return require_int("lookback_hours", lookback, LOOKBACK_HOURS_BOUNDS)


def _window_response(window: OutcomeWindow) -> OutcomeWindowResponse:
    return OutcomeWindowResponse(
        window_start=window.window_start,
        window_end=window.window_end,
        lookback_hours=window.lookback_hours,
        total_deliveries=window.total_deliveries,
        delivered=window.delivered,
        dead_lettered=window.dead_lettered,
        retrying=window.retrying,
        queued=window.queued,
        delivery_success_rate=window.delivery_success_rate,
        dead_letter_rate=window.dead_letter_rate,
    )
