from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from connector_plane.domain.models import DeliverySummary, Recommendation
from connector_plane.domain.use_cases.insights import ConnectorInsights

RiskReason = Literal[
    "dead_letters_present",
    "retries_due_now",
    "queue_backlog",
    "low_delivery_success",
    "low_attempt_success",
    "high_error_volume",
    "high_attempt_count",
]
RiskTrend = Literal["improving", "worsening", "stable"]

DEAD_LETTER_WEIGHT = 10.0
DUE_NOW_WEIGHT = 6.0
RETRY_WEIGHT = 4.0
QUEUED_WEIGHT = 2.0
EXTRA_ATTEMPT_WEIGHT = 1.5
DELIVERY_FAILURE_WEIGHT = 40.0
ATTEMPT_FAILURE_WEIGHT = 20.0
ERROR_WEIGHT = 0.5
ERROR_VOLUME_CAP = 50

LOW_DELIVERY_SUCCESS = 0.95
LOW_ATTEMPT_SUCCESS = 0.9
HIGH_ERROR_VOLUME = 5
HIGH_ATTEMPT_COUNT = 3
STABLE_RISK_DELTA = 3.0


@dataclass(frozen=True)
class ReliabilityRecord:
    connector_type: str
    summary: DeliverySummary
    insights: ConnectorInsights


@dataclass(frozen=True)
class RiskBreakdown:
    dead_letter_pressure: float
    due_now_pressure: float
    retry_pressure: float
    queued_pressure: float
    max_attempt_pressure: float
    delivery_failure_pressure: float
    attempt_failure_pressure: float
    error_pressure: float
    total: float


@dataclass(frozen=True)
class RankedConnector:
    connector_type: str
    risk_score: float
    recommendation: Recommendation
    risk_reasons: tuple[RiskReason, ...]
    risk_breakdown: RiskBreakdown
    summary: DeliverySummary
    insights: ConnectorInsights


@dataclass(frozen=True)
class RiskTrendComparison:
    baseline_risk_score: float
    risk_delta: float
    risk_trend: RiskTrend


def rank(records: Iterable[ReliabilityRecord]) -> list[RankedConnector]:
    """Score every connector and order them riskiest first (ties by connector type)."""
    ranked = []
    for record in records:
        breakdown = compute_risk_breakdown(record)
        ranked.append(
            RankedConnector(
                connector_type=record.connector_type,
                risk_score=breakdown.total,
                recommendation=recommend_action(record.summary),
                risk_reasons=compute_risk_reasons(record),
                risk_breakdown=breakdown,
                summary=record.summary,
                insights=record.insights,
            )
        )
    ranked.sort(key=lambda item: (-item.risk_score, item.connector_type))
    return ranked


def recommend_action(summary: DeliverySummary) -> Recommendation:
    if summary.dead_lettered > 0:
        return Recommendation.REDRIVE_DEAD_LETTERS
    if summary.retrying > 0 or summary.queued > 0 or summary.due_now > 0:
        return Recommendation.PROCESS_QUEUE
    return Recommendation.HEALTHY


def compute_risk_breakdown(record: ReliabilityRecord) -> RiskBreakdown:
    summary = record.summary
    insights = record.insights
    # An empty window has no evidence of failure.
    delivery_failure = 1.0 - insights.delivery_success_rate if insights.delivery_count > 0 else 0.0
    attempt_failure = 1.0 - insights.attempt_success_rate if insights.attempt_count > 0 else 0.0
    # Only attempts beyond the first signal trouble.
    extra_attempts = max(insights.max_attempts_observed - 1, 0)

    parts = {
        "dead_letter_pressure": round(summary.dead_lettered * DEAD_LETTER_WEIGHT, 2),
        "due_now_pressure": round(summary.due_now * DUE_NOW_WEIGHT, 2),
        "retry_pressure": round(summary.retrying * RETRY_WEIGHT, 2),
        "queued_pressure": round(summary.queued * QUEUED_WEIGHT, 2),
        "max_attempt_pressure": round(extra_attempts * EXTRA_ATTEMPT_WEIGHT, 2),
        "delivery_failure_pressure": round(delivery_failure * DELIVERY_FAILURE_WEIGHT, 2),
        "attempt_failure_pressure": round(attempt_failure * ATTEMPT_FAILURE_WEIGHT, 2),
        "error_pressure": round(min(insights.error_volume, ERROR_VOLUME_CAP) * ERROR_WEIGHT, 2),
    }
    return RiskBreakdown(**parts, total=round(max(0.0, sum(parts.values())), 2))


def compute_risk_reasons(record: ReliabilityRecord) -> tuple[RiskReason, ...]:
    summary = record.summary
    insights = record.insights
    reasons: list[RiskReason] = []
    if summary.dead_lettered > 0:
        reasons.append("dead_letters_present")
    if summary.due_now > 0 or summary.retrying > 0:
        reasons.append("retries_due_now")
    if summary.queued > 0:
        reasons.append("queue_backlog")
    if insights.delivery_count > 0 and insights.delivery_success_rate < LOW_DELIVERY_SUCCESS:
        reasons.append("low_delivery_success")
    if insights.attempt_count > 0 and insights.attempt_success_rate < LOW_ATTEMPT_SUCCESS:
        reasons.append("low_attempt_success")
    if insights.error_volume >= HIGH_ERROR_VOLUME:
        reasons.append("high_error_volume")
    if insights.max_attempts_observed >= HIGH_ATTEMPT_COUNT:
        reasons.append("high_attempt_count")
    return tuple(reasons)


def resolve_risk_trend(
    *,
    risk_score: float,
    baseline_risk_score: float,
    stable_delta: float = STABLE_RISK_DELTA,
) -> RiskTrendComparison:
    threshold = max(0.0, stable_delta)
    delta = round(risk_score - baseline_risk_score, 2)
    trend: RiskTrend = "stable"
    if delta > threshold:
        trend = "worsening"
    elif delta < -threshold:
        trend = "improving"
    return RiskTrendComparison(
        baseline_risk_score=round(max(0.0, baseline_risk_score), 2),
        risk_delta=delta,
        risk_trend=trend,
    )
