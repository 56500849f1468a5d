from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from connector_plane.domain.errors import ValidationError
from connector_plane.domain.events import (
    DEAD_LETTERED,
    DELIVERED,
    DELIVERY_ATTEMPTED,
    DELIVERY_QUEUED,
    DELIVERY_REDRIVEN,
    AuditEvent,
    DeadLetteredPayload,
    DeliveredPayload,
    DeliveryAttemptedPayload,
    DeliveryQueuedPayload,
    DeliveryRedrivenPayload,
)
from connector_plane.domain.validation import TIMELINE_LIMIT_BOUNDS, require_int

TIMELINE_EVENT_TYPES: tuple[str, ...] = (
    DELIVERY_QUEUED,
    DELIVERY_REDRIVEN,
    DELIVERY_ATTEMPTED,
    DELIVERED,
    DEAD_LETTERED,
)
TIMELINE_DEFAULT_LIMIT = 100
# Events read per requested entry; filters are applied after the read.
TIMELINE_SCAN_FACTOR = 6
TIMELINE_MIN_SCAN = 300


@dataclass(frozen=True)
class TimelineEntry:
    event_id: str
    event_type: str
    actor: str
    created_at: datetime
    project_id: str
    connector_type: str
    delivery_id: str
    attempt_number: int | None = None
    success: bool | None = None
    status_code: int | None = None
    reason: str | None = None
    redrive: bool = False
    trigger: Literal["manual", "guardian"] | None = None


@dataclass(frozen=True)
class ConnectorTimelineCounts:
    connector_type: str
    total: int
    delivered: int
    dead_lettered: int


@dataclass(frozen=True)
class TimelineSummary:
    total: int
    queued: int
    attempted: int
    delivered: int
    dead_lettered: int
    redrive_queued: int
    by_connector: tuple[ConnectorTimelineCounts, ...]


@dataclass(frozen=True)
class ActionTimeline:
    entries: tuple[TimelineEntry, ...]
    summary: TimelineSummary


def require_timeline_event_type(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in TIMELINE_EVENT_TYPES:
        raise ValidationError(f"event_type must be one of {', '.join(TIMELINE_EVENT_TYPES)}")
    return value


def timeline_scan_limit(limit: int) -> int:
    return max(limit * TIMELINE_SCAN_FACTOR, TIMELINE_MIN_SCAN)


def to_timeline_entry(event: AuditEvent) -> TimelineEntry | None:
    """Flatten a delivery lifecycle event; None for every other event type."""
    payload = event.payload
    common = {
        "event_id": event.id,
        "event_type": event.event_type,
        "actor": event.actor,
        "created_at": event.created_at,
    }
    if isinstance(payload, DeliveryQueuedPayload):
        return TimelineEntry(
            **common,
            project_id=payload.project_id,
            connector_type=payload.connector_type,
            delivery_id=payload.delivery_id,
        )
    if isinstance(payload, DeliveryRedrivenPayload):
        return TimelineEntry(
            **common,
            project_id=payload.project_id,
            connector_type=payload.connector_type,
            delivery_id=payload.delivery_id,
            redrive=True,
            trigger=payload.trigger,
        )
    if isinstance(payload, DeliveryAttemptedPayload):
        return TimelineEntry(
            **common,
            project_id=payload.project_id,
            connector_type=payload.connector_type,
            delivery_id=payload.delivery_id,
            attempt_number=payload.attempt_number,
            success=payload.success,
            status_code=payload.status_code,
            reason=payload.error_code,
        )
    if isinstance(payload, DeliveredPayload):
        return TimelineEntry(
            **common,
            project_id=payload.project_id,
            connector_type=payload.connector_type,
            delivery_id=payload.delivery_id,
            attempt_number=payload.attempt_count,
            success=True,
        )
    if isinstance(payload, DeadLetteredPayload):
        return TimelineEntry(
            **common,
            project_id=payload.project_id,
            connector_type=payload.connector_type,
            delivery_id=payload.delivery_id,
            attempt_number=payload.attempt_count,
            success=False,
            reason=payload.dead_letter_reason,
        )
    return None


def build_action_timeline(
    events: Iterable[AuditEvent],
    *,
    connector_type: str | None = None,
    event_type: str | None = None,
    redrive_only: bool = False,
    limit: int = TIMELINE_DEFAULT_LIMIT,
) -> ActionTimeline:
    """Newest-first delivery actions for one project, filtered and capped at `limit`.

    The summary covers the returned entries only.
    """
    require_int("limit", limit, TIMELINE_LIMIT_BOUNDS)
    event_type = require_timeline_event_type(event_type)

    entries: list[TimelineEntry] = []
    for event in events:
        entry = to_timeline_entry(event)
        if entry is None:
            continue
        if connector_type is not None and entry.connector_type != connector_type:
            continue
        if event_type is not None and entry.event_type != event_type:
            continue
        if redrive_only and not entry.redrive:
            continue
        entries.append(entry)
    # Stable sort keeps the log order for events sharing a timestamp.
    entries.sort(key=lambda item: item.created_at, reverse=True)
    kept = tuple(entries[:limit])
    return ActionTimeline(entries=kept, summary=summarize_timeline(kept))


def summarize_timeline(entries: Iterable[TimelineEntry]) -> TimelineSummary:
    counts = {event_type: 0 for event_type in TIMELINE_EVENT_TYPES}
    per_connector: dict[str, dict[str, int]] = {}
    for entry in entries:
        counts[entry.event_type] += 1
        bucket = per_connector.setdefault(entry.connector_type, {"total": 0, "delivered": 0, "dead_lettered": 0})
        bucket["total"] += 1
        if entry.event_type == DELIVERED:
            bucket["delivered"] += 1
        elif entry.event_type == DEAD_LETTERED:
            bucket["dead_lettered"] += 1

    by_connector = sorted(
        (ConnectorTimelineCounts(connector_type=name, **bucket) for name, bucket in per_connector.items()),
        key=lambda item: (-item.total, item.connector_type),
    )
    return TimelineSummary(
        total=sum(counts.values()),
        queued=counts[DELIVERY_QUEUED],
        attempted=counts[DELIVERY_ATTEMPTED],
        delivered=counts[DELIVERED],
        dead_lettered=counts[DEAD_LETTERED],
        redrive_queued=counts[DELIVERY_REDRIVEN],
        by_connector=tuple(by_connector),
    )
