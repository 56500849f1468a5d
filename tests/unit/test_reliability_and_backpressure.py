import pytest

from connector_plane.domain.control_plane_config import BackpressureDefaults
from connector_plane.domain.errors import ValidationError
from connector_plane.domain.models import BackpressurePolicy, ConnectorOverride, DeliverySummary, Recommendation
from connector_plane.domain.patch import OverridePatch, PolicyPatch
from connector_plane.domain.use_cases.backpressure import (
    build_candidate_policy,
    compute_effective_limit,
    default_policy,
    resolve_backpressure,
    validate_policy_patch,
)
from connector_plane.domain.use_cases.insights import compute_insights
from connector_plane.domain.use_cases.reliability import ReliabilityRecord, rank, resolve_risk_trend
from connector_plane.domain.use_cases.simulation import simulate
from connector_plane.domain.use_cases.tuning import DEFAULT_RECOMMENDATION, pressure_tier, suggest
from tests.unit.builders import NOW


def _record(connector_type: str, summary: DeliverySummary) -> ReliabilityRecord:
    return ReliabilityRecord(
        connector_type=connector_type,
        summary=summary,
        insights=compute_insights(deliveries=[], attempts_by_delivery={}, lookback_hours=24, now=NOW),
    )


def _policy(**overrides: object) -> BackpressurePolicy:
    values: dict[str, object] = {
        "project_id": "proj-1",
        "is_enabled": True,
        "max_retrying": 50,
        "max_due_now": 100,
        "min_limit": 1,
    }
    values.update(overrides)
    return BackpressurePolicy(**values)  # type: ignore[arg-type]


@pytest.mark.unit
def test_rank_puts_dead_letters_ahead_of_otherwise_equal_connector() -> None:
    ranked = rank(
        [
            _record("slack", DeliverySummary(total=3, queued=1, delivered=2)),
            _record("webhook", DeliverySummary(total=4, queued=1, delivered=2, dead_lettered=1)),
        ]
    )

    assert [item.connector_type for item in ranked] == ["webhook", "slack"]
    assert ranked[0].recommendation == Recommendation.REDRIVE_DEAD_LETTERS
    assert ranked[1].recommendation == Recommendation.PROCESS_QUEUE
    assert "dead_letters_present" in ranked[0].risk_reasons
    assert ranked[0].risk_score > ranked[1].risk_score


@pytest.mark.unit
def test_rank_marks_idle_connector_healthy_with_zero_risk() -> None:
    ranked = rank([_record("jira", DeliverySummary())])

    assert ranked[0].recommendation == Recommendation.HEALTHY
    assert ranked[0].risk_score == 0.0
    assert ranked[0].risk_reasons == ()


@pytest.mark.unit
def test_rank_orders_equal_scores_by_connector_type() -> None:
    ranked = rank([_record("sqs", DeliverySummary()), _record("db", DeliverySummary())])

    assert [item.connector_type for item in ranked] == ["db", "sqs"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("current", "baseline", "expected"),
    [
        (30.0, 10.0, "worsening"),
        (10.0, 30.0, "improving"),
        (12.0, 10.0, "stable"),
    ],
)
def test_risk_trend_uses_stable_band(current: float, baseline: float, expected: str) -> None:
    comparison = resolve_risk_trend(risk_score=current, baseline_risk_score=baseline)

    assert comparison.risk_trend == expected
    assert comparison.risk_delta == round(current - baseline, 2)


@pytest.mark.unit
def test_effective_limit_clamps_to_due_now_and_caps() -> None:
    resolved = resolve_backpressure(connector_type="webhook", policy=_policy(max_retrying=5))

    decision = compute_effective_limit(
        requested_limit=25,
        summary=DeliverySummary(total=40, queued=40, due_now=40),
        resolved=resolved,
    )

    assert decision.effective_limit == 5
    assert decision.throttled is True
    assert decision.reason == "retrying_limit"
    assert decision.resolved.source == "policy_default"


@pytest.mark.unit
def test_effective_limit_is_zero_for_empty_queue() -> None:
    resolved = resolve_backpressure(connector_type="webhook", policy=_policy(min_limit=3))

    decision = compute_effective_limit(requested_limit=25, summary=DeliverySummary(), resolved=resolved)

    assert decision.effective_limit == 0
    assert decision.throttled is False
    assert decision.reason is None


@pytest.mark.unit
def test_effective_limit_raises_small_requests_to_min_limit() -> None:
    resolved = resolve_backpressure(connector_type="webhook", policy=_policy(min_limit=4))

    decision = compute_effective_limit(
        requested_limit=1,
        summary=DeliverySummary(total=10, queued=10, due_now=10),
        resolved=resolved,
    )

    assert decision.effective_limit == 4


@pytest.mark.unit
def test_disabled_connector_override_stops_draining() -> None:
    policy = _policy(
        connector_overrides={
            "slack": ConnectorOverride(is_enabled=False, max_retrying=10, max_due_now=10, min_limit=1),
        }
    )

    decision = compute_effective_limit(
        requested_limit=10,
        summary=DeliverySummary(total=3, queued=3, due_now=3),
        resolved=resolve_backpressure(connector_type="slack", policy=policy),
    )

    assert decision.effective_limit == 0
    assert decision.throttled is True
    assert decision.reason == "policy_disabled"
    assert decision.resolved.source == "policy_connector_override"


@pytest.mark.unit
def test_validate_policy_patch_rejects_out_of_range_values() -> None:
    with pytest.raises(ValidationError, match="max_retrying"):
        validate_policy_patch(PolicyPatch(max_retrying=0))

    with pytest.raises(ValidationError, match="Unsupported connector type"):
        validate_policy_patch(PolicyPatch(connector_overrides={"fax": OverridePatch(min_limit=1)}))

    with pytest.raises(ValidationError, match="is_enabled"):
        validate_policy_patch(PolicyPatch(is_enabled=1))  # type: ignore[arg-type]


@pytest.mark.unit
def test_validate_policy_patch_canonicalises_override_aliases() -> None:
    patch = validate_policy_patch(PolicyPatch(connector_overrides={"slack_webhook": OverridePatch(max_due_now=7)}))

    assert set(patch.connector_overrides) == {"slack"}  # type: ignore[arg-type]


@pytest.mark.unit
def test_candidate_policy_copies_only_present_fields() -> None:
    live = default_policy("proj-1", BackpressureDefaults(is_enabled=True, max_retrying=50, max_due_now=100, min_limit=1))

    candidate = build_candidate_policy(
        live,
        PolicyPatch(max_due_now=20, connector_overrides={"jira": OverridePatch(max_retrying=3)}),
        now=NOW,
        actor="ops",
    )

    assert candidate.max_due_now == 20
    assert candidate.max_retrying == 50
    assert candidate.connector_overrides["jira"] == ConnectorOverride(
        is_enabled=True,
        max_retrying=3,
        max_due_now=100,
        min_limit=1,
    )
    assert candidate.updated_by == "ops"
    assert live.max_due_now == 100


@pytest.mark.unit
def test_candidate_policy_removes_override_on_null() -> None:
    live = _policy(
        connector_overrides={
            "db": ConnectorOverride(is_enabled=True, max_retrying=1, max_due_now=1, min_limit=1),
        }
    )

    candidate = build_candidate_policy(live, PolicyPatch(connector_overrides={"db": None}))

    assert candidate.connector_overrides == {}


@pytest.mark.unit
def test_simulation_reports_drain_and_throttle_deltas() -> None:
    summaries = {
        "webhook": DeliverySummary(total=30, queued=30, due_now=30),
        "slack": DeliverySummary(total=2, queued=2, due_now=2),
    }

    simulation = simulate(
        connector_types=("webhook", "slack"),
        requested_limit=25,
        summaries_by_connector=summaries,
        current_policy=_policy(),
        candidate_policy=_policy(max_due_now=10),
    )

    assert simulation.drained_before == 27
    assert simulation.drained_after == 12
    assert simulation.drained_delta == -15
    assert simulation.throttled_before == 0
    assert simulation.throttled_after == 1
    assert simulation.per_connector[0].effective_limit_delta == -15
    assert simulation.per_connector[0].candidate.reason == "due_now_limit"


@pytest.mark.unit
def test_simulation_rejects_out_of_range_requested_limit() -> None:
    with pytest.raises(ValidationError, match="requested_limit"):
        simulate(
            connector_types=("webhook",),
            requested_limit=0,
            summaries_by_connector={},
            current_policy=_policy(),
            candidate_policy=_policy(),
        )


@pytest.mark.unit
def test_tuning_without_traffic_returns_exact_default() -> None:
    suggestions = suggest({})

    assert suggestions.recommendation == DEFAULT_RECOMMENDATION
    assert suggestions.by_connector == ()


@pytest.mark.unit
def test_tuning_scales_caps_with_pressure() -> None:
    suggestions = suggest(
        {
            "webhook": DeliverySummary(total=200, retrying=60, due_now=150),
            "slack": DeliverySummary(total=5, queued=5, due_now=5),
        }
    )

    assert pressure_tier(DeliverySummary(retrying=60)) == "high"
    assert suggestions.by_connector[0].connector_type == "webhook"
    assert suggestions.by_connector[0].pressure_tier == "high"
    assert suggestions.recommendation.max_retrying == 120
    assert suggestions.recommendation.max_due_now == 300
    assert suggestions.recommendation.min_limit == 1
    assert suggestions.recommendation.as_patch().to_json() == {
        "is_enabled": True,
        "max_retrying": 120,
        "max_due_now": 300,
        "min_limit": 1,
    }
