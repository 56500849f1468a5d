from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from connector_plane.domain.events import AuditEvent, BackpressurePolicyUpdatedPayload
from connector_plane.domain.models import ConnectorDelivery, DeliveryStatus

RATE_DECIMALS = 4


@dataclass(frozen=True)
class OutcomeWindow:
    window_start: datetime
    window_end: datetime
    lookback_hours: int
    total_deliveries: int
    delivered: int
    dead_lettered: int
    retrying: int
    queued: int
    delivery_success_rate: float
    dead_letter_rate: float


@dataclass(frozen=True)
class OutcomeDelta:
    total_deliveries: int
    delivered: int
    dead_lettered: int
    retrying: int
    queued: int
    delivery_success_rate: float
    dead_letter_rate: float


@dataclass(frozen=True)
class OutcomeTrend:
    current: OutcomeWindow
    baseline: OutcomeWindow
    delta: OutcomeDelta


@dataclass(frozen=True)
class PolicyUpdateEntry:
    event_id: str
    actor: str
    created_at: datetime
    applied_patch: dict[str, object]
    policy: dict[str, object]
    approvers: tuple[str, ...]


def summarize_outcomes(
    *,
    deliveries: Iterable[ConnectorDelivery],
    lookback_hours: int,
    now: datetime,
) -> OutcomeTrend:
    """Compare the last `lookback_hours` against the equal window right before it.

    Windows are half-open and keyed on delivery creation time, so a delivery
    lands in exactly one of them no matter how often it was retried.
    """
    span = timedelta(hours=lookback_hours)
    current_start = now - span
    baseline_start = current_start - span
    items = list(deliveries)

    current = _summarize_window(items, start=current_start, end=now, lookback_hours=lookback_hours)
    baseline = _summarize_window(items, start=baseline_start, end=current_start, lookback_hours=lookback_hours)
    return OutcomeTrend(
        current=current,
        baseline=baseline,
        delta=OutcomeDelta(
            total_deliveries=current.total_deliveries - baseline.total_deliveries,
            delivered=current.delivered - baseline.delivered,
            dead_lettered=current.dead_lettered - baseline.dead_lettered,
            retrying=current.retrying - baseline.retrying,
            queued=current.queued - baseline.queued,
            # Differences of the published (rounded) window rates; round() only drops float noise.
            delivery_success_rate=round(current.delivery_success_rate - baseline.delivery_success_rate, RATE_DECIMALS),
            dead_letter_rate=round(current.dead_letter_rate - baseline.dead_letter_rate, RATE_DECIMALS),
        ),
    )


def policy_update_feed(events: Iterable[AuditEvent], *, limit: int = 20) -> list[PolicyUpdateEntry]:
    """Applied backpressure policy changes, newest first."""
    entries: list[PolicyUpdateEntry] = []
    for event in events:
        payload = event.payload
        if not isinstance(payload, BackpressurePolicyUpdatedPayload):
            continue
        entries.append(
            PolicyUpdateEntry(
                event_id=event.id,
                actor=event.actor,
                created_at=event.created_at,
                applied_patch=dict(payload.applied_patch),
                policy=dict(payload.policy),
                approvers=tuple(payload.approvers),
            )
        )
    entries.sort(key=lambda entry: entry.created_at, reverse=True)
    return entries[:limit]


def _summarize_window(
    deliveries: list[ConnectorDelivery],
    *,
    start: datetime,
    end: datetime,
    lookback_hours: int,
) -> OutcomeWindow:
    counts = {status: 0 for status in DeliveryStatus}
    total = 0
    for delivery in deliveries:
        if start <= delivery.created_at < end:
            total += 1
            counts[delivery.status] += 1

    return OutcomeWindow(
        window_start=start,
        window_end=end,
        lookback_hours=lookback_hours,
        total_deliveries=total,
        delivered=counts[DeliveryStatus.DELIVERED],
        dead_lettered=counts[DeliveryStatus.DEAD_LETTERED],
        retrying=counts[DeliveryStatus.RETRYING],
        queued=counts[DeliveryStatus.QUEUED],
        delivery_success_rate=_rate(counts[DeliveryStatus.DELIVERED], total),
        dead_letter_rate=_rate(counts[DeliveryStatus.DEAD_LETTERED], total),
    )


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, RATE_DECIMALS)
