from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from connector_plane.domain.errors import ValidationError
from connector_plane.domain.events import DELIVERY_REDRIVEN, GUARDIAN_ACTION
from connector_plane.domain.models import DeliverySummary, Recommendation
from connector_plane.domain.use_cases.guardian import (
    GuardianAction,
    apply_cooldown,
    default_guardian_policy,
    select_actions,
    update_guardian_policy,
)
from connector_plane.domain.use_cases.insights import compute_insights
from connector_plane.domain.use_cases.reliability import RankedConnector, ReliabilityRecord, rank
from tests.unit.builders import NOW, Services, build_services


def _ranked(**summaries: DeliverySummary) -> list[RankedConnector]:
    empty = compute_insights(deliveries=[], attempts_by_delivery={}, lookback_hours=24, now=NOW)
    return rank(
        ReliabilityRecord(connector_type=connector_type, summary=summary, insights=empty)
        for connector_type, summary in summaries.items()
    )


async def _enqueue_backlog(services: Services, connector_type: str, count: int, *, tag: str = "") -> None:
    for index in range(count):
        await services.pump.enqueue(
            project_id="proj-1",
            connector_type=connector_type,
            payload={"n": f"{tag}{index}"},
            now=NOW,
        )


@pytest.mark.unit
def test_select_actions_filters_threshold_permissions_and_budget() -> None:
    ranked = _ranked(
        webhook=DeliverySummary(total=5, dead_lettered=5),
        slack=DeliverySummary(total=5, queued=5, due_now=5),
        jira=DeliverySummary(total=1, queued=1, due_now=1),
        db=DeliverySummary(),
    )

    actions = select_actions(
        ranked=ranked,
        risk_threshold=20,
        max_actions=5,
        allow_process_queue=True,
        allow_redrive_dead_letters=False,
    )

    assert [(item.connector_type, item.action) for item in actions] == [("slack", "process_queue")]

    capped = select_actions(
        ranked=ranked,
        risk_threshold=1,
        max_actions=1,
        allow_process_queue=True,
        allow_redrive_dead_letters=True,
    )
    assert [item.connector_type for item in capped] == ["webhook"]
    assert capped[0].action == Recommendation.REDRIVE_DEAD_LETTERS.value


@pytest.mark.unit
def test_cooldown_holds_back_recently_touched_connector() -> None:
    actions = [
        GuardianAction(connector_type="webhook", action="process_queue", risk_score=30.0, risk_reasons=()),
        GuardianAction(connector_type="slack", action="process_queue", risk_score=25.0, risk_reasons=()),
    ]

    result = apply_cooldown(
        actions=actions,
        last_action_at_by_connector={"webhook": NOW - timedelta(minutes=10), "slack": NOW - timedelta(minutes=60)},
        cooldown_minutes=60,
        now=NOW,
    )

    assert [item.connector_type for item in result.eligible] == ["slack"]
    assert result.skipped[0].connector_type == "webhook"
    assert result.skipped[0].reason == "cooldown_active"
    assert result.skipped[0].retry_after_seconds == 3000


@pytest.mark.unit
def test_zero_cooldown_never_skips() -> None:
    action = GuardianAction(connector_type="db", action="process_queue", risk_score=30.0, risk_reasons=())

    result = apply_cooldown(actions=[action], last_action_at_by_connector={"db": NOW}, cooldown_minutes=0, now=NOW)

    assert result.eligible == (action,)


@pytest.mark.unit
def test_guardian_policy_update_rejects_instead_of_clamping() -> None:
    services = build_services()
    current = default_guardian_policy("proj-1", services.config.guardian)

    with pytest.raises(ValidationError, match="risk_threshold"):
        update_guardian_policy(current, {"risk_threshold": 0}, actor="ops", now=NOW)
    with pytest.raises(ValidationError, match="action_limit"):
        update_guardian_policy(current, {"action_limit": 101}, actor="ops", now=NOW)
    with pytest.raises(ValidationError, match="unknown guardian policy fields"):
        update_guardian_policy(current, {"max_budget": 3}, actor="ops", now=NOW)

    updated = update_guardian_policy(current, {"cooldown_minutes": 0}, actor="ops", now=NOW)
    assert updated.cooldown_minutes == 0
    assert updated.updated_by == "ops"


@pytest.mark.unit
def test_guardian_run_drains_risky_connector_and_records_action() -> None:
    async def _run() -> None:
        services = build_services()
        await _enqueue_backlog(services, "webhook", 4)
        run_at = NOW + timedelta(minutes=1)

        result = await services.guardian.run_project(project_id="proj-1", now=run_at)

        assert result.skipped is False
        assert [item.connector_type for item in result.planned] == ["webhook"]
        assert result.executed[0].ok is True
        assert result.executed[0].processed == 4
        assert result.failures == 0
        summary = await services.delivery_store.summarize(project_id="proj-1", connector_type="webhook", now=run_at)
        assert summary.delivered == 4
        events = await services.audit_log.list_events(event_types=(GUARDIAN_ACTION,))
        assert len(events) == 1
        assert events[0].actor == "guardian"
        assert (await services.guardian.last_action_times(project_id="proj-1")) == {"webhook": run_at}

    asyncio.run(_run())


@pytest.mark.unit
def test_guardian_cooldown_skips_second_run() -> None:
    async def _run() -> None:
        services = build_services()
        await _enqueue_backlog(services, "webhook", 4, tag="a")
        await services.guardian.run_project(project_id="proj-1", now=NOW + timedelta(minutes=1))
        await _enqueue_backlog(services, "webhook", 4, tag="b")

        second = await services.guardian.run_project(project_id="proj-1", now=NOW + timedelta(minutes=2))

        assert second.planned == ()
        assert second.executed == ()
        assert second.cooldown_skipped[0].connector_type == "webhook"
        assert second.cooldown_skipped[0].retry_after_seconds == 540

    asyncio.run(_run())


@pytest.mark.unit
def test_guardian_dry_run_plans_without_side_effects() -> None:
    async def _run() -> None:
        services = build_services()
        await _enqueue_backlog(services, "slack", 4)

        result = await services.guardian.run_project(project_id="proj-1", now=NOW + timedelta(minutes=1), dry_run=True)

        assert result.dry_run is True
        assert [item.connector_type for item in result.planned] == ["slack"]
        assert result.executed == ()
        assert await services.audit_log.list_events(event_types=(GUARDIAN_ACTION,)) == []
        summary = await services.delivery_store.summarize(project_id="proj-1", connector_type="slack", now=NOW)
        assert summary.queued == 4

    asyncio.run(_run())


@pytest.mark.unit
def test_disabled_guardian_skips_project() -> None:
    async def _run() -> None:
        services = build_services()
        await _enqueue_backlog(services, "webhook", 4)
        await services.guardian.update_policy(
            project_id="proj-1",
            updates={"is_enabled": False},
            actor="ops",
            now=NOW,
        )

        result = await services.guardian.run_project(project_id="proj-1", now=NOW + timedelta(minutes=1))

        assert result.skipped is True
        assert result.reason == "guardian_disabled"
        assert result.planned == ()

    asyncio.run(_run())


@pytest.mark.unit
def test_guardian_redrives_dead_letters_with_guardian_trigger() -> None:
    async def _run() -> None:
        services = build_services()
        await services.guardian.update_policy(
            project_id="proj-1",
            updates={"min_dead_letter_minutes": 0, "allow_process_queue": False},
            actor="ops",
            now=NOW,
        )
        await services.pump.enqueue(
            project_id="proj-1",
            connector_type="jira",
            payload={"__simulate_always_fail": True},
            now=NOW,
            max_attempts=1,
        )
        await services.pump.drain(project_id="proj-1", connector_type="jira", requested_limit=1, now=NOW)

        results = await services.guardian.run_all(now=NOW + timedelta(minutes=1))

        assert len(results) == 1
        executed = results[0].executed
        assert [(item.connector_type, item.action, item.processed) for item in executed] == [
            ("jira", "redrive_dead_letters", 1)
        ]
        summary = await services.delivery_store.summarize(project_id="proj-1", connector_type="jira", now=NOW)
        assert summary.queued == 1
        assert summary.dead_lettered == 0
        redriven = await services.audit_log.list_events(event_types=(DELIVERY_REDRIVEN,))
        assert redriven[0].payload.trigger == "guardian"  # type: ignore[union-attr]
        assert redriven[0].actor == "guardian"

    asyncio.run(_run())
