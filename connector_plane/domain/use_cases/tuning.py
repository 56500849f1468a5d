from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from connector_plane.domain.models import DeliverySummary
from connector_plane.domain.patch import PolicyPatch

PressureTier = Literal["low", "medium", "high"]

CAP_CEILING = 10_000
BASE_MAX_RETRYING = 50
BASE_MAX_DUE_NOW = 100
TIER_RANK: dict[PressureTier, int] = {"high": 3, "medium": 2, "low": 1}
TIER_MIN_LIMIT: dict[PressureTier, int] = {"high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True)
class TuningRecommendation:
    enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int

    def as_patch(self) -> PolicyPatch:
        return PolicyPatch(
            is_enabled=self.enabled,
            max_retrying=self.max_retrying,
            max_due_now=self.max_due_now,
            min_limit=self.min_limit,
        )


DEFAULT_RECOMMENDATION = TuningRecommendation(
    enabled=True,
    max_retrying=BASE_MAX_RETRYING,
    max_due_now=BASE_MAX_DUE_NOW,
    min_limit=1,
)


@dataclass(frozen=True)
class ConnectorSuggestion:
    connector_type: str
    pressure_tier: PressureTier
    summary: DeliverySummary
    recommendation: TuningRecommendation


@dataclass(frozen=True)
class TuningSuggestions:
    recommendation: TuningRecommendation
    by_connector: tuple[ConnectorSuggestion, ...]


def pressure_tier(summary: DeliverySummary) -> PressureTier:
    if summary.retrying >= 50 or summary.due_now >= 100:
        return "high"
    if summary.retrying >= 20 or summary.due_now >= 40:
        return "medium"
    return "low"


def suggest(summaries: Mapping[str, DeliverySummary]) -> TuningSuggestions:
    if not summaries:
        return TuningSuggestions(recommendation=DEFAULT_RECOMMENDATION, by_connector=())

    suggestions = []
    for connector_type, summary in summaries.items():
        tier = pressure_tier(summary)
        suggestions.append(
            ConnectorSuggestion(
                connector_type=connector_type,
                pressure_tier=tier,
                summary=summary,
                recommendation=TuningRecommendation(
                    enabled=True,
                    max_retrying=min(max(BASE_MAX_RETRYING, summary.retrying * 2), CAP_CEILING),
                    max_due_now=min(max(BASE_MAX_DUE_NOW, summary.due_now * 2), CAP_CEILING),
                    min_limit=TIER_MIN_LIMIT[tier],
                ),
            )
        )
    suggestions.sort(key=lambda item: (-TIER_RANK[item.pressure_tier], -item.summary.outstanding, item.connector_type))

    return TuningSuggestions(
        recommendation=TuningRecommendation(
            enabled=True,
            max_retrying=max(item.recommendation.max_retrying for item in suggestions),
            max_due_now=max(item.recommendation.max_due_now for item in suggestions),
            min_limit=min(item.recommendation.min_limit for item in suggestions),
        ),
        by_connector=tuple(suggestions),
    )
