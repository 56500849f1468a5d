from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from connector_plane.domain.models import ConnectorDelivery, ConnectorDeliveryAttempt, DeliveryStatus

TOP_ERRORS_LIMIT = 5
RATE_DECIMALS = 4


@dataclass(frozen=True)
class TopError:
    message: str
    count: int


@dataclass(frozen=True)
class StatusCounts:
    queued: int = 0
    retrying: int = 0
    delivered: int = 0
    dead_lettered: int = 0


@dataclass(frozen=True)
class ConnectorInsights:
    window_start: datetime
    delivery_count: int
    status_counts: StatusCounts
    delivery_success_rate: float
    attempt_success_rate: float
    avg_attempts_per_delivery: float
    max_attempts_observed: int
    attempt_count: int = 0
    top_errors: tuple[TopError, ...] = field(default_factory=tuple)

    @property
    def error_volume(self) -> int:
        return sum(item.count for item in self.top_errors)


def compute_insights(
    *,
    deliveries: Iterable[ConnectorDelivery],
    attempts_by_delivery: Mapping[str, Sequence[ConnectorDeliveryAttempt]],
    lookback_hours: int,
    now: datetime,
) -> ConnectorInsights:
    """Reliability figures for deliveries created in [now - lookback, now)."""
    window_start = now - timedelta(hours=max(lookback_hours, 1))
    scoped = [item for item in deliveries if window_start <= item.created_at < now]

    counts = {status: 0 for status in DeliveryStatus}
    # dict preserves insertion order, which is the first-seen tie-break below.
    error_counts: dict[str, int] = {}
    attempts_total = 0
    max_attempts_observed = 0
    successful_attempts = 0
    attempt_count = 0

    for delivery in scoped:
        counts[delivery.status] += 1
        attempts_total += delivery.attempt_count
        max_attempts_observed = max(max_attempts_observed, delivery.attempt_count)
        _count_error(error_counts, delivery.last_error)

        for attempt in attempts_by_delivery.get(delivery.id, ()):
            attempt_count += 1
            if attempt.success:
                successful_attempts += 1
            else:
                _count_error(error_counts, attempt.error)

    delivery_count = len(scoped)
    ranked_errors = sorted(enumerate(error_counts.items()), key=lambda item: (-item[1][1], item[0]))
    top_errors = tuple(TopError(message=message, count=count) for _, (message, count) in ranked_errors)

    return ConnectorInsights(
        window_start=window_start,
        delivery_count=delivery_count,
        status_counts=StatusCounts(
            queued=counts[DeliveryStatus.QUEUED],
            retrying=counts[DeliveryStatus.RETRYING],
            delivered=counts[DeliveryStatus.DELIVERED],
            dead_lettered=counts[DeliveryStatus.DEAD_LETTERED],
        ),
        delivery_success_rate=_rate(counts[DeliveryStatus.DELIVERED], delivery_count),
        attempt_success_rate=_rate(successful_attempts, attempt_count),
        avg_attempts_per_delivery=_rate(attempts_total, delivery_count),
        max_attempts_observed=max_attempts_observed,
        attempt_count=attempt_count,
        top_errors=top_errors[:TOP_ERRORS_LIMIT],
    )


def _count_error(error_counts: dict[str, int], message: str | None) -> None:
    if not message:
        return
    normalized = message.strip()
    if normalized:
        error_counts[normalized] = error_counts.get(normalized, 0) + 1


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, RATE_DECIMALS)
