from __future__ import annotations

from typing import Any, Literal

from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.api.handlers.views import delivery_response, insights_response
from connector_plane.api.schemas import (
    ActionTimelineResponse,
    ConnectorActionResponse,
    DeliveryListResponse,
    DrainResponse,
    EnqueueDeliveryResponse,
    InsightsResponse,
    ProcessConnectorsResponse,
    RedriveItemResponse,
    RedriveResponse,
    TimelineConnectorSummaryResponse,
    TimelineEntryResponse,
    TimelineSummaryResponse,
)
from connector_plane.domain.connectors import require_connector_type, require_connector_types
from connector_plane.domain.models import DeliveryStatus
from connector_plane.domain.use_cases.timeline import (
    TIMELINE_EVENT_TYPES,
    build_action_timeline,
    require_timeline_event_type,
    timeline_scan_limit,
)
from connector_plane.domain.validation import (
    ACTION_LIMIT_BOUNDS,
    LOOKBACK_HOURS_BOUNDS,
    TIMELINE_LIMIT_BOUNDS,
    require_actor,
    require_int,
)
from connector_plane.services.pump import DrainResult, RedriveResult

COMPONENT_ID = "api.connectors.deliveries"


async def enqueue_delivery_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str,
    payload: dict[str, Any],
    idempotency_key: str | None,
    max_attempts: int | None,
    actor: str,
) -> EnqueueDeliveryResponse:
    result = await deps.pump.enqueue(
        project_id=project_id,
        connector_type=connector_type,
        payload=payload,
        idempotency_key=idempotency_key,
        max_attempts=max_attempts,
        actor=require_actor(actor),
        now=deps.clock(),
    )
    return EnqueueDeliveryResponse(delivery=delivery_response(result.delivery), duplicate=result.duplicate)


async def list_deliveries_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str,
    status: DeliveryStatus | None,
    limit: int,
) -> DeliveryListResponse:
    items = await deps.delivery_store.list_deliveries(
        project_id=project_id,
        connector_type=require_connector_type(connector_type),
        status=status,
        limit=limit,
    )
    return DeliveryListResponse(items=[delivery_response(item) for item in items])


async def get_insights_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str,
    lookback_hours: int | None,
) -> InsightsResponse:
    connector_type = require_connector_type(connector_type)
    lookback = deps.config.pump.insights_lookback_hours if lookback_hours is None else lookback_hours
    require_int("lookback_hours", lookback, LOOKBACK_HOURS_BOUNDS)
    insights = await deps.reporting.insights(
        project_id=project_id,
        connector_type=connector_type,
        lookback_hours=lookback,
        now=deps.clock(),
    )
    return insights_response(connector_type=connector_type, lookback_hours=lookback, insights=insights)


async def process_connectors_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_types: list[str] | None,
    limit: int | None,
    actor: str,
) -> ProcessConnectorsResponse:
    """Drain each requested connector once under the live backpressure policy."""
    resolved_types = require_connector_types(connector_types)
    requested_limit = deps.config.pump.requested_limit if limit is None else limit
    actor = require_actor(actor)
    now = deps.clock()

    items = []
    for connector_type in resolved_types:
        result = await deps.pump.drain(
            project_id=project_id,
            connector_type=connector_type,
            requested_limit=requested_limit,
            now=now,
            actor=actor,
        )
        items.append(_drain_response(result, requested_limit=requested_limit))
    return ProcessConnectorsResponse(
        project_id=project_id,
        attempted=sum(item.attempted for item in items),
        items=items,
    )


async def redrive_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_types: list[str] | None,
    limit: int,
    min_dead_letter_minutes: int,
    actor: str,
    process_after_redrive: bool = False,
) -> RedriveResponse:
    resolved_types = require_connector_types(connector_types)
    actor = require_actor(actor)
    now = deps.clock()

    items = []
    for connector_type in resolved_types:
        result = await deps.pump.redrive(
            project_id=project_id,
            connector_type=connector_type,
            limit=limit,
            min_dead_letter_minutes=min_dead_letter_minutes,
            now=now,
            actor=actor,
            trigger="manual",
            process_after=process_after_redrive,
        )
        items.append(_redrive_response(result))
    return RedriveResponse(
        project_id=project_id,
        redriven_total=sum(len(item.redriven) for item in items),
        items=items,
    )


async def connector_action_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str,
    action: Literal["process_queue", "redrive_dead_letters"],
    limit: int,
    min_dead_letter_minutes: int,
    process_after_redrive: bool,
    actor: str,
) -> ConnectorActionResponse:
    """One manual action on a single connector, sized by the operator's `limit`."""
    connector_type = require_connector_type(connector_type)
    require_int("limit", limit, ACTION_LIMIT_BOUNDS)
    actor = require_actor(actor)
    now = deps.clock()

    if action == "process_queue":
        drained = await deps.pump.drain(
            project_id=project_id,
            connector_type=connector_type,
            requested_limit=limit,
            now=now,
            actor=actor,
        )
        return ConnectorActionResponse(
            project_id=project_id,
            connector_type=connector_type,
            action=action,
            processed_count=drained.attempted,
            delivery_ids=[item.delivery_id for item in drained.attempts],
            drain=_drain_response(drained, requested_limit=limit),
        )

    redriven = await deps.pump.redrive(
        project_id=project_id,
        connector_type=connector_type,
        limit=limit,
        min_dead_letter_minutes=min_dead_letter_minutes,
        now=now,
        actor=actor,
        trigger="manual",
        process_after=process_after_redrive,
    )
    redrive_item = _redrive_response(redriven)
    return ConnectorActionResponse(
        project_id=project_id,
        connector_type=connector_type,
        action=action,
        processed_count=0 if redriven.processed is None else redriven.processed.attempted,
        delivery_ids=list(redriven.redriven),
        drain=redrive_item.processed,
        redrive=redrive_item,
    )


async def action_timeline_handler(
    deps: ApiDeps,
    *,
    project_id: str,
    connector_type: str | None,
    event_type: str | None,
    redrive_only: bool,
    limit: int,
) -> ActionTimelineResponse:
    if connector_type is not None:
        connector_type = require_connector_type(connector_type)
    require_int("limit", limit, TIMELINE_LIMIT_BOUNDS)
    event_type = require_timeline_event_type(event_type)
    events = await deps.audit_log.list_events(
        limit=timeline_scan_limit(limit),
        project_id=project_id,
        event_types=(event_type,) if event_type is not None else TIMELINE_EVENT_TYPES,
    )
    timeline = build_action_timeline(
        events,
        connector_type=connector_type,
        event_type=event_type,
        redrive_only=redrive_only,
        limit=limit,
    )
    summary = timeline.summary
    return ActionTimelineResponse(
        project_id=project_id,
        connector_type=connector_type,
        event_type=event_type,
        redrive_only=redrive_only,
        limit=limit,
        summary=TimelineSummaryResponse(
            total=summary.total,
            queued=summary.queued,
            attempted=summary.attempted,
            delivered=summary.delivered,
            dead_lettered=summary.dead_lettered,
            redrive_queued=summary.redrive_queued,
            by_connector=[
                TimelineConnectorSummaryResponse(
                    connector_type=item.connector_type,
                    total=item.total,
                    delivered=item.delivered,
                    dead_lettered=item.dead_lettered,
                )
                for item in summary.by_connector
            ],
        ),
        events=[
            TimelineEntryResponse(
                id=entry.event_id,
                event_type=entry.event_type,
                actor=entry.actor,
                created_at=entry.created_at,
                connector_type=entry.connector_type,
                delivery_id=entry.delivery_id,
                attempt_number=entry.attempt_number,
                success=entry.success,
                status_code=entry.status_code,
                reason=entry.reason,
                redrive=entry.redrive,
                trigger=entry.trigger,
            )
            for entry in timeline.entries
        ],
    )


def _redrive_response(result: RedriveResult) -> RedriveItemResponse:
    processed = None
    if result.processed is not None:
        processed = _drain_response(result.processed, requested_limit=len(result.redriven))
    return RedriveItemResponse(
        connector_type=result.connector_type,
        eligible=result.eligible,
        redriven=list(result.redriven),
        conflicts=result.conflicts,
        processed=processed,
    )


def _drain_response(result: DrainResult, *, requested_limit: int) -> DrainResponse:
    if result.decision is None:
        return DrainResponse(
            connector_type=result.connector_type,
            skipped=result.skipped,
            reason=result.reason,
            requested_limit=requested_limit,
        )
    decision = result.decision
    return DrainResponse(
        connector_type=result.connector_type,
        skipped=result.skipped,
        reason=result.reason,
        requested_limit=requested_limit,
        effective_limit=decision.effective_limit,
        queue_depth=decision.queue_depth,
        throttled=decision.throttled,
        throttle_reason=decision.reason,
        policy_source=decision.resolved.source,
        attempted=result.attempted,
        delivered=result.count(DeliveryStatus.DELIVERED),
        retrying=result.count(DeliveryStatus.RETRYING),
        dead_lettered=result.count(DeliveryStatus.DEAD_LETTERED),
        conflicts=result.conflicts,
    )
