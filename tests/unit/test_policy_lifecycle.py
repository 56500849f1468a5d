import asyncio
from dataclasses import dataclass
from datetime import timedelta

import pytest

from connector_plane.domain.errors import ConcurrencyError, DraftNotReadyError, NotFoundError, ValidationError
from connector_plane.domain.events import BACKPRESSURE_POLICY_UPDATED
from connector_plane.domain.models import BackpressurePolicy, BackpressurePolicyDraft
from connector_plane.domain.patch import OverridePatch, PolicyPatch
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle, evaluate_activation
from connector_plane.repositories.stub import InMemoryAuditLog, InMemoryPolicyStore
from tests.unit.builders import NOW, build_services


@dataclass
class FlakyPolicyStore(InMemoryPolicyStore):
    save_failures: int = 0

    async def save_draft(self, *, draft: BackpressurePolicyDraft, expected_version: int | None) -> BackpressurePolicyDraft:
        if self.save_failures > 0:
            self.save_failures -= 1
            raise ConcurrencyError("simulated lost update")
        return await super().save_draft(draft=draft, expected_version=expected_version)


def _draft(**overrides: object) -> BackpressurePolicyDraft:
    values: dict[str, object] = {
        "project_id": "proj-1",
        "proposed": PolicyPatch(max_retrying=10),
        "required_approvals": 2,
        "approvals": (),
        "activate_at": None,
        "created_by": "ops",
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return BackpressurePolicyDraft(**values)  # type: ignore[arg-type]


@pytest.mark.unit
def test_activation_time_gate_is_checked_before_approvals() -> None:
    status = evaluate_activation(_draft(activate_at=NOW + timedelta(minutes=5)), NOW)

    assert status.ready is False
    assert status.reason == "activation_time_pending"
    assert status.approvals_remaining == 2


@pytest.mark.unit
def test_activation_reports_pending_approvals_once_time_passes() -> None:
    status = evaluate_activation(_draft(activate_at=NOW - timedelta(minutes=5)), NOW)

    assert status.ready is False
    assert status.reason == "approvals_pending"
    assert status.activation_ready is True


@pytest.mark.unit
def test_apply_without_draft_raises_not_found_and_keeps_policy() -> None:
    async def _run() -> None:
        services = build_services()

        with pytest.raises(NotFoundError):
            await services.lifecycle.apply(project_id="proj-1", actor="ops", now=NOW)

        live = await services.lifecycle.live_policy(project_id="proj-1")
        assert live.max_retrying == services.config.backpressure.max_retrying
        assert services.policy_store.policies == {}
        assert services.audit_log.events == []

    asyncio.run(_run())


@pytest.mark.unit
def test_draft_approval_and_gated_activation_flow() -> None:
    async def _run() -> None:
        services = build_services()
        lifecycle = services.lifecycle

        await lifecycle.upsert_draft(
            project_id="proj-1",
            patch=PolicyPatch(max_due_now=20, connector_overrides={"slack": OverridePatch(is_enabled=False)}),
            actor="alice",
            now=NOW,
            required_approvals=2,
        )

        with pytest.raises(DraftNotReadyError) as not_ready:
            await lifecycle.activate_draft(project_id="proj-1", actor="alice", now=NOW)
        assert not_ready.value.reason == "approvals_pending"

        first = await lifecycle.record_approval(project_id="proj-1", actor="Bob", now=NOW)
        repeat = await lifecycle.record_approval(project_id="proj-1", actor=" bob ", now=NOW)
        assert first.counted is True
        assert repeat.counted is False
        assert repeat.activation.approval_count == 1

        second = await lifecycle.record_approval(project_id="proj-1", actor="carol", now=NOW)
        assert second.activation.ready is True

        policy = await lifecycle.activate_draft(project_id="proj-1", actor="alice", now=NOW)

        assert policy.max_due_now == 20
        assert policy.connector_overrides["slack"].is_enabled is False
        assert policy.updated_by == "alice"
        assert await services.policy_store.get_draft(project_id="proj-1") is None
        events = await services.audit_log.list_events(event_types=(BACKPRESSURE_POLICY_UPDATED,))
        assert events[0].payload.approvers == ["bob", "carol"]  # type: ignore[union-attr]

    asyncio.run(_run())


@pytest.mark.unit
def test_amending_draft_resets_approvals_and_merges_fields() -> None:
    async def _run() -> None:
        services = build_services()
        lifecycle = services.lifecycle

        await lifecycle.upsert_draft(project_id="proj-1", patch=PolicyPatch(max_due_now=20), actor="alice", now=NOW)
        await lifecycle.record_approval(project_id="proj-1", actor="bob", now=NOW)

        amended = await lifecycle.upsert_draft(
            project_id="proj-1",
            patch=PolicyPatch(min_limit=2),
            actor="alice",
            now=NOW + timedelta(minutes=1),
        )

        assert amended.approvals == ()
        assert amended.proposed.to_json() == {"max_due_now": 20, "min_limit": 2}
        assert amended.version == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_new_draft_requires_fields_and_valid_values() -> None:
    async def _run() -> None:
        services = build_services()

        with pytest.raises(ValidationError, match="at least one policy field"):
            await services.lifecycle.upsert_draft(project_id="proj-1", patch=PolicyPatch(), actor="alice", now=NOW)
        with pytest.raises(ValidationError, match="actor"):
            await services.lifecycle.upsert_draft(
                project_id="proj-1",
                patch=PolicyPatch(max_due_now=20),
                actor="  ",
                now=NOW,
            )
        with pytest.raises(ValidationError, match="required_approvals"):
            await services.lifecycle.upsert_draft(
                project_id="proj-1",
                patch=PolicyPatch(max_due_now=20),
                actor="alice",
                now=NOW,
                required_approvals=11,
            )
        assert services.policy_store.drafts == {}

    asyncio.run(_run())


@pytest.mark.unit
def test_discard_draft_removes_it_once() -> None:
    async def _run() -> None:
        services = build_services()
        await services.lifecycle.upsert_draft(
            project_id="proj-1",
            patch=PolicyPatch(max_due_now=20),
            actor="alice",
            now=NOW,
        )

        await services.lifecycle.discard_draft(project_id="proj-1", actor="alice")

        with pytest.raises(NotFoundError):
            await services.lifecycle.discard_draft(project_id="proj-1", actor="alice")

    asyncio.run(_run())


@pytest.mark.unit
def test_lost_draft_write_is_retried() -> None:
    async def _run() -> None:
        services = build_services()
        store = FlakyPolicyStore(save_failures=2)
        lifecycle = BackpressurePolicyLifecycle(
            policy_store=store,
            audit_log=InMemoryAuditLog(),
            backpressure_defaults=services.config.backpressure,
            draft_defaults=services.config.drafts,
        )

        draft = await lifecycle.upsert_draft(project_id="proj-1", patch=PolicyPatch(min_limit=2), actor="a", now=NOW)

        assert draft.version == 1
        assert store.save_failures == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_lost_draft_write_surfaces_after_retry_budget() -> None:
    async def _run() -> None:
        services = build_services()
        store = FlakyPolicyStore(save_failures=5)
        lifecycle = BackpressurePolicyLifecycle(
            policy_store=store,
            audit_log=InMemoryAuditLog(),
            backpressure_defaults=services.config.backpressure,
            draft_defaults=services.config.drafts,
            max_write_retries=3,
        )

        with pytest.raises(ConcurrencyError):
            await lifecycle.upsert_draft(project_id="proj-1", patch=PolicyPatch(min_limit=2), actor="a", now=NOW)
        assert store.save_failures == 2

    asyncio.run(_run())


@dataclass
class RacingApplyPolicyStore(InMemoryPolicyStore):
    async def apply_draft(self, *, policy: BackpressurePolicy, expected_version: int) -> BackpressurePolicy:
        raise ConcurrencyError("simulated concurrent apply")


async def _seed_activation_drafts(lifecycle: BackpressurePolicyLifecycle) -> None:
    # proj-z: unscheduled, unapproved. proj-a: unscheduled, approved later.
    # proj-m: due at +10m. proj-b: due at +60m.
    await lifecycle.upsert_draft(project_id="proj-z", patch=PolicyPatch(max_due_now=11), actor="ops", now=NOW)
    later = NOW + timedelta(minutes=1)
    await lifecycle.upsert_draft(project_id="proj-a", patch=PolicyPatch(max_due_now=12), actor="ops", now=later)
    await lifecycle.record_approval(project_id="proj-a", actor="bob", now=later)
    for project_id, minutes in (("proj-m", 10), ("proj-b", 60)):
        await lifecycle.upsert_draft(
            project_id=project_id,
            patch=PolicyPatch(max_due_now=13),
            actor="ops",
            now=NOW,
            activate_at=NOW + timedelta(minutes=minutes),
        )
        await lifecycle.record_approval(project_id=project_id, actor="bob", now=NOW)


@pytest.mark.unit
def test_batch_activation_dry_run_reports_without_applying() -> None:
    async def _run() -> None:
        services = build_services()
        await _seed_activation_drafts(services.lifecycle)

        batch = await services.lifecycle.activate_ready_drafts(
            actor="ops",
            now=NOW + timedelta(minutes=20),
            dry_run=True,
        )

        assert [item.project_id for item in batch.outcomes] == ["proj-z", "proj-a", "proj-m", "proj-b"]
        assert [item.status for item in batch.outcomes] == ["blocked", "ready", "ready", "blocked"]
        assert [item.reason for item in batch.outcomes] == [
            "approvals_pending",
            None,
            None,
            "activation_time_pending",
        ]
        assert batch.count("applied") == 0
        assert batch.limited is False
        assert len(await services.policy_store.list_draft_project_ids()) == 4
        assert await services.audit_log.list_events(event_types=(BACKPRESSURE_POLICY_UPDATED,)) == []

    asyncio.run(_run())


@pytest.mark.unit
def test_batch_activation_applies_ready_drafts_only() -> None:
    async def _run() -> None:
        services = build_services()
        await _seed_activation_drafts(services.lifecycle)

        batch = await services.lifecycle.activate_ready_drafts(actor="ops", now=NOW + timedelta(minutes=20))

        assert batch.count("applied") == 2
        assert batch.count("blocked") == 2
        applied = [item for item in batch.outcomes if item.status == "applied"]
        assert [item.project_id for item in applied] == ["proj-a", "proj-m"]
        assert all(item.policy is not None and item.policy.updated_by == "ops" for item in applied)
        assert (await services.lifecycle.live_policy(project_id="proj-a")).max_due_now == 12
        assert await services.policy_store.list_draft_project_ids() == ["proj-b", "proj-z"]

    asyncio.run(_run())


@pytest.mark.unit
def test_batch_activation_honours_project_filter_and_limit() -> None:
    async def _run() -> None:
        services = build_services()
        await _seed_activation_drafts(services.lifecycle)

        batch = await services.lifecycle.activate_ready_drafts(
            actor="ops",
            now=NOW + timedelta(minutes=20),
            project_ids=["proj-m", "proj-a", "proj-unknown"],
            limit=1,
        )

        assert batch.total_draft_count == 2
        assert batch.scanned == 1
        assert batch.limited is True
        assert batch.outcomes[0].project_id == "proj-a"
        assert batch.outcomes[0].status == "applied"

        with pytest.raises(ValidationError):
            await services.lifecycle.activate_ready_drafts(actor="ops", now=NOW, limit=501)

    asyncio.run(_run())


@pytest.mark.unit
def test_batch_activation_reports_failed_apply_and_keeps_draft() -> None:
    async def _run() -> None:
        services = build_services()
        store = RacingApplyPolicyStore()
        lifecycle = BackpressurePolicyLifecycle(
            policy_store=store,
            audit_log=InMemoryAuditLog(),
            backpressure_defaults=services.config.backpressure,
            draft_defaults=services.config.drafts,
        )
        await lifecycle.upsert_draft(project_id="proj-1", patch=PolicyPatch(min_limit=2), actor="ops", now=NOW)
        await lifecycle.record_approval(project_id="proj-1", actor="bob", now=NOW)

        batch = await lifecycle.activate_ready_drafts(actor="ops", now=NOW)

        assert batch.count("failed") == 1
        outcome = batch.outcomes[0]
        assert outcome.reason == "apply_failed"
        assert "concurrent" in outcome.message
        assert outcome.policy is None
        assert await store.list_draft_project_ids() == ["proj-1"]

    asyncio.run(_run())
