from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from connector_plane.domain.models import BackpressurePolicy, DeliverySummary
from connector_plane.domain.use_cases.backpressure import (
    BackpressureDecision,
    compute_effective_limit,
    resolve_backpressure,
)
from connector_plane.domain.validation import REQUESTED_LIMIT_BOUNDS, require_int


@dataclass(frozen=True)
class ConnectorSimulation:
    connector_type: str
    summary: DeliverySummary
    current: BackpressureDecision
    candidate: BackpressureDecision
    effective_limit_delta: int
    throttled_changed: bool


@dataclass(frozen=True)
class Simulation:
    requested_limit: int
    connector_count: int
    drained_before: int
    drained_after: int
    drained_delta: int
    throttled_before: int
    throttled_after: int
    throttled_delta: int
    per_connector: tuple[ConnectorSimulation, ...]


def simulate(
    *,
    connector_types: Sequence[str],
    requested_limit: int,
    summaries_by_connector: Mapping[str, DeliverySummary],
    current_policy: BackpressurePolicy,
    candidate_policy: BackpressurePolicy,
) -> Simulation:
    """Drain counts one tick would achieve under the live and the candidate policy."""
    require_int("requested_limit", requested_limit, REQUESTED_LIMIT_BOUNDS)
    per_connector: list[ConnectorSimulation] = []
    for connector_type in connector_types:
        summary = summaries_by_connector.get(connector_type, DeliverySummary())
        current = compute_effective_limit(
            requested_limit=requested_limit,
            summary=summary,
            resolved=resolve_backpressure(connector_type=connector_type, policy=current_policy),
        )
        candidate = compute_effective_limit(
            requested_limit=requested_limit,
            summary=summary,
            resolved=resolve_backpressure(connector_type=connector_type, policy=candidate_policy),
        )
        per_connector.append(
            ConnectorSimulation(
                connector_type=connector_type,
                summary=summary,
                current=current,
                candidate=candidate,
                effective_limit_delta=candidate.effective_limit - current.effective_limit,
                throttled_changed=current.throttled != candidate.throttled,
            )
        )

    drained_before = sum(item.current.effective_limit for item in per_connector)
    drained_after = sum(item.candidate.effective_limit for item in per_connector)
    throttled_before = sum(1 for item in per_connector if item.current.throttled)
    throttled_after = sum(1 for item in per_connector if item.candidate.throttled)
    return Simulation(
        requested_limit=requested_limit,
        connector_count=len(per_connector),
        drained_before=drained_before,
        drained_after=drained_after,
        drained_delta=drained_after - drained_before,
        throttled_before=throttled_before,
        throttled_after=throttled_after,
        throttled_delta=throttled_after - throttled_before,
        per_connector=tuple(per_connector),
    )
