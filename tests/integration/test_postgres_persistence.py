from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from connector_plane.clients.stub import StubConnectorDispatcher
from connector_plane.domain.control_plane_config import load_control_plane_config
from connector_plane.domain.errors import ConcurrencyError
from connector_plane.domain.events import DELIVERY_QUEUED, DeliveryQueuedPayload, UnrecognizedPayload
from connector_plane.domain.models import DeliveryStatus, DeliveryTransition, DispatchResult
from connector_plane.domain.patch import OverridePatch, PolicyPatch
from connector_plane.domain.payloads import payload_hash
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle
from connector_plane.repositories.postgres import (
    AsyncpgPoolManager,
    PostgresAuditLog,
    PostgresDeliveryStore,
    PostgresPolicyStore,
)
from connector_plane.services.pump import DeliveryPump
from tests.integration.postgres_test_utils import apply_down, apply_up, require_postgres, reset_public_schema

NOW = datetime(2026, 2, 21, 12, 0, tzinfo=UTC)


async def _fresh_manager(dsn: str) -> AsyncpgPoolManager:
    await reset_public_schema(dsn=dsn)
    await apply_up(dsn=dsn)
    manager = AsyncpgPoolManager(dsn=dsn)
    await manager.startup()
    return manager


@pytest.mark.integration
def test_migration_up_down_up_contract() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            store = PostgresDeliveryStore(pool_manager=manager)
            assert await store.get_delivery(delivery_id="dlv_missing") is None
            assert await store.list_project_ids() == []
        finally:
            await manager.shutdown()

        await apply_down(dsn=dsn)
        await apply_up(dsn=dsn)

    asyncio.run(_run())


@pytest.mark.integration
def test_enqueue_dedup_and_retry_cycle_persist() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            config = load_control_plane_config()
            store = PostgresDeliveryStore(pool_manager=manager)
            audit_log = PostgresAuditLog(pool_manager=manager)
            pump = DeliveryPump(
                delivery_store=store,
                policy_store=PostgresPolicyStore(pool_manager=manager),
                audit_log=audit_log,
                dispatcher=StubConnectorDispatcher(),
                delivery_defaults=config.delivery,
                backpressure_defaults=config.backpressure,
            )

            payload = {"order": 1, "__simulate_failure_count": 1}
            first = await pump.enqueue(project_id="proj-pg", connector_type="webhook", payload=payload, now=NOW)
            again = await pump.enqueue(project_id="proj-pg", connector_type="webhook", payload=payload, now=NOW)
            keyed = await pump.enqueue(
                project_id="proj-pg",
                connector_type="webhook",
                payload=payload,
                now=NOW,
                idempotency_key="order-1",
            )
            assert again.duplicate is True
            assert again.delivery.id == first.delivery.id
            assert keyed.duplicate is False

            await pump.drain(project_id="proj-pg", connector_type="webhook", requested_limit=10, now=NOW)
            await pump.drain(
                project_id="proj-pg",
                connector_type="webhook",
                requested_limit=10,
                now=NOW + timedelta(seconds=1),
            )

            delivery = await store.get_delivery(delivery_id=first.delivery.id)
            assert delivery is not None
            assert delivery.status == DeliveryStatus.DELIVERED
            assert delivery.attempt_count == 2
            attempts = await store.list_attempts(delivery_id=first.delivery.id)
            assert [item.attempt_number for item in attempts] == [1, 2]
            assert attempts[0].error_code == "non_success_status"
            assert await store.get_payload(delivery_id=first.delivery.id) == payload

            summary = await store.summarize(project_id="proj-pg", connector_type="webhook", now=NOW)
            assert summary.total == 2
            queued_events = await audit_log.list_events(project_id="proj-pg", event_types=(DELIVERY_QUEUED,))
            assert len(queued_events) == 2
            assert isinstance(queued_events[0].payload, DeliveryQueuedPayload)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_record_attempt_rejects_stale_attempt_count() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            store = PostgresDeliveryStore(pool_manager=manager)
            created = await store.enqueue(
                project_id="proj-pg",
                connector_type="sqs",
                payload={"a": 1},
                payload_hash=payload_hash({"a": 1}),
                idempotency_key=None,
                max_attempts=3,
                now=NOW,
            )
            success = DispatchResult(status_code=200, latency_ms=4)
            transition = DeliveryTransition(status=DeliveryStatus.DELIVERED, delivered_at=NOW)

            outcomes = await asyncio.gather(
                *(
                    store.record_attempt(
                        delivery_id=created.delivery.id,
                        attempt_id=f"att_{index}",
                        result=success,
                        transition=transition,
                        expected_attempt_count=0,
                        now=NOW,
                    )
                    for index in range(2)
                ),
                return_exceptions=True,
            )

            assert sum(1 for item in outcomes if isinstance(item, ConcurrencyError)) == 1
            assert len(await store.list_attempts(delivery_id=created.delivery.id)) == 1
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_draft_versioning_and_apply_round_trip() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            config = load_control_plane_config()
            policy_store = PostgresPolicyStore(pool_manager=manager)
            audit_log = PostgresAuditLog(pool_manager=manager)
            lifecycle = BackpressurePolicyLifecycle(
                policy_store=policy_store,
                audit_log=audit_log,
                backpressure_defaults=config.backpressure,
                draft_defaults=config.drafts,
            )

            draft = await lifecycle.upsert_draft(
                project_id="proj-pg",
                patch=PolicyPatch(max_due_now=30, connector_overrides={"db": OverridePatch(min_limit=2)}),
                actor="alice",
                now=NOW,
            )
            with pytest.raises(ConcurrencyError):
                await policy_store.save_draft(draft=draft, expected_version=draft.version + 5)

            approval = await lifecycle.record_approval(project_id="proj-pg", actor="Bob", now=NOW)
            assert approval.activation.ready is True
            stored = await policy_store.get_draft(project_id="proj-pg")
            assert stored is not None
            assert stored.proposed == draft.proposed
            assert [item.actor for item in stored.approvals] == ["bob"]

            policy = await lifecycle.activate_draft(project_id="proj-pg", actor="alice", now=NOW)
            assert policy.max_due_now == 30
            assert policy.connector_overrides["db"].min_limit == 2
            assert await policy_store.get_draft(project_id="proj-pg") is None
            reloaded = await policy_store.get_policy(project_id="proj-pg")
            assert reloaded is not None
            assert reloaded.max_due_now == 30
            assert reloaded.updated_by == "alice"
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_unknown_audit_rows_read_back_as_unrecognized() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            audit_log = PostgresAuditLog(pool_manager=manager)
            await audit_log.append_event(
                actor="legacy",
                payload=UnrecognizedPayload(
                    raw_event_type="connector_legacy_event_v1",
                    project_id="proj-pg",
                    metadata={"project_id": "proj-pg", "note": "imported"},
                ),
                created_at=NOW,
            )

            events = await audit_log.list_events(project_id="proj-pg")

            assert events[0].event_type == "connector_legacy_event_v1"
            assert isinstance(events[0].payload, UnrecognizedPayload)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_redriven_delivery_is_attempted_again_with_next_attempt_number() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            config = load_control_plane_config()
            store = PostgresDeliveryStore(pool_manager=manager)
            pump = DeliveryPump(
                delivery_store=store,
                policy_store=PostgresPolicyStore(pool_manager=manager),
                audit_log=PostgresAuditLog(pool_manager=manager),
                dispatcher=StubConnectorDispatcher(),
                delivery_defaults=config.delivery,
                backpressure_defaults=config.backpressure,
            )
            created = await pump.enqueue(
                project_id="proj-pg",
                connector_type="jira",
                payload={"ticket": 7, "__simulate_failure_count": 1},
                now=NOW,
                max_attempts=1,
            )
            await pump.drain(project_id="proj-pg", connector_type="jira", requested_limit=1, now=NOW)
            redriven = await pump.redrive(
                project_id="proj-pg",
                connector_type="jira",
                limit=1,
                min_dead_letter_minutes=0,
                now=NOW + timedelta(minutes=1),
            )
            assert redriven.redriven == (created.delivery.id,)

            retried = await pump.drain(
                project_id="proj-pg",
                connector_type="jira",
                requested_limit=1,
                now=NOW + timedelta(minutes=2),
            )

            assert retried.conflicts == 0
            delivery = await store.get_delivery(delivery_id=created.delivery.id)
            assert delivery is not None
            assert delivery.status == DeliveryStatus.DELIVERED
            attempts = await store.list_attempts(delivery_id=created.delivery.id)
            assert [item.attempt_number for item in attempts] == [1, 2]
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_delivery_listing_pages_with_created_at_and_id_cursor() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            store = PostgresDeliveryStore(pool_manager=manager)
            for index in range(5):
                payload = {"n": index}
                await store.enqueue(
                    project_id="proj-pg",
                    connector_type="slack",
                    payload=payload,
                    payload_hash=payload_hash(payload),
                    idempotency_key=None,
                    max_attempts=3,
                    # Pairs share a timestamp so paging has to tie-break on id.
                    now=NOW + timedelta(minutes=index // 2),
                )

            everything = await store.list_deliveries(project_id="proj-pg", limit=10)
            paged = []
            before = None
            while True:
                page = await store.list_deliveries(project_id="proj-pg", limit=2, before=before)
                paged.extend(page)
                if len(page) < 2:
                    break
                before = (page[-1].created_at, page[-1].id)

            assert [item.id for item in paged] == [item.id for item in everything]
            assert len(paged) == 5
        finally:
            await manager.shutdown()

    asyncio.run(_run())
