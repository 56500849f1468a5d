from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import importlib
import json
from typing import Any

from connector_plane.domain.errors import ConcurrencyError, NotFoundError
from connector_plane.domain.error_taxonomy import resolve_attempt_error
from connector_plane.domain.events import (
    AuditEvent,
    AuditEventPayload,
    event_type_of,
    parse_event_payload,
    payload_to_json,
)
from connector_plane.domain.ids import new_delivery_id, new_event_id
from connector_plane.domain.lifecycle import PENDING_STATUSES, apply_transition
from connector_plane.domain.models import (
    BackpressurePolicy,
    BackpressurePolicyDraft,
    ConnectorDelivery,
    ConnectorDeliveryAttempt,
    ConnectorOverride,
    DeliveryStatus,
    DeliverySummary,
    DeliveryTransition,
    DispatchResult,
    DraftApproval,
    EnqueueResult,
    GuardianPolicy,
)
from connector_plane.domain.patch import policy_patch_from_json
from connector_plane.repositories.sql_loader import load_sql

asyncpg_module = importlib.import_module("asyncpg")


SQL_INSERT_DELIVERY = load_sql("insert_delivery")
SQL_FIND_BY_IDEMPOTENCY_KEY = load_sql("find_delivery_by_idempotency_key")
SQL_FIND_BY_PAYLOAD_HASH = load_sql("find_delivery_by_payload_hash")
SQL_GET_DELIVERY = load_sql("get_delivery")
SQL_LOCK_DELIVERY = load_sql("lock_delivery")
SQL_GET_DELIVERY_PAYLOAD = load_sql("get_delivery_payload")
SQL_LIST_DELIVERIES = load_sql("list_deliveries")
SQL_LIST_DUE_DELIVERIES = load_sql("list_due_deliveries")
SQL_UPDATE_DELIVERY = load_sql("update_delivery")
SQL_INSERT_ATTEMPT = load_sql("insert_attempt")
SQL_LIST_ATTEMPTS = load_sql("list_attempts")
SQL_SUMMARIZE_DELIVERIES = load_sql("summarize_deliveries")
SQL_LIST_PROJECT_IDS = load_sql("list_project_ids")
SQL_INSERT_AUDIT_EVENT = load_sql("insert_audit_event")
SQL_LIST_AUDIT_EVENTS = load_sql("list_audit_events")
SQL_GET_POLICY = load_sql("get_policy")
SQL_UPSERT_POLICY = load_sql("upsert_policy")
SQL_GET_DRAFT = load_sql("get_draft")
SQL_INSERT_DRAFT = load_sql("insert_draft")
SQL_UPDATE_DRAFT = load_sql("update_draft")
SQL_DELETE_DRAFT = load_sql("delete_draft")
SQL_DRAFT_EXISTS = load_sql("draft_exists")
SQL_LIST_DRAFT_PROJECT_IDS = load_sql("list_draft_project_ids")
SQL_GET_GUARDIAN_POLICY = load_sql("get_guardian_policy")
SQL_UPSERT_GUARDIAN_POLICY = load_sql("upsert_guardian_policy")


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=5,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    def acquire_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool


def _delivery_from_row(row: Any) -> ConnectorDelivery:
    return ConnectorDelivery(
        id=row["id"],
        project_id=row["project_id"],
        connector_type=row["connector_type"],
        idempotency_key=row["idempotency_key"],
        payload_hash=row["payload_hash"],
        status=DeliveryStatus(row["status"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        last_status_code=row["last_status_code"],
        last_error=row["last_error"],
        next_attempt_at=row["next_attempt_at"],
        dead_letter_reason=row["dead_letter_reason"],
        delivered_at=row["delivered_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _attempt_from_row(row: Any) -> ConnectorDeliveryAttempt:
    error_code = row["error_code"]
    return ConnectorDeliveryAttempt(
        id=row["id"],
        delivery_id=row["delivery_id"],
        attempt_number=row["attempt_number"],
        attempted_at=row["attempted_at"],
        status_code=row["status_code"],
        error=row["error"],
        error_code=None if error_code is None else resolve_attempt_error(error_code),
        latency_ms=row["latency_ms"],
    )


@dataclass
class PostgresDeliveryStore:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        return self.pool_manager.acquire_pool()

    async def enqueue(
        self,
        *,
        project_id: str,
        connector_type: str,
        payload: dict[str, Any],
        payload_hash: str,
        idempotency_key: str | None,
        max_attempts: int,
        now: datetime,
    ) -> EnqueueResult:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_INSERT_DELIVERY,
                new_delivery_id(),
                project_id,
                connector_type,
                idempotency_key,
                payload_hash,
                payload,
                max_attempts,
                now,
            )
            if row is not None:
                return EnqueueResult(delivery=_delivery_from_row(row), duplicate=False)

            # ON CONFLICT DO NOTHING returned no row: one of the dedup indexes matched.
            if idempotency_key is not None:
                existing = await conn.fetchrow(
                    SQL_FIND_BY_IDEMPOTENCY_KEY, project_id, connector_type, idempotency_key
                )
            else:
                existing = await conn.fetchrow(SQL_FIND_BY_PAYLOAD_HASH, project_id, connector_type, payload_hash)
            if existing is None:
                raise ConcurrencyError(f"delivery for project '{project_id}' conflicted but was not found")
            return EnqueueResult(delivery=_delivery_from_row(existing), duplicate=True)

    async def get_delivery(self, *, delivery_id: str) -> ConnectorDelivery | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_DELIVERY, delivery_id)
        return None if row is None else _delivery_from_row(row)

    async def get_payload(self, *, delivery_id: str) -> dict[str, Any]:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_DELIVERY_PAYLOAD, delivery_id)
        if row is None:
            raise NotFoundError(f"delivery not found: {delivery_id}")
        return dict(row["payload"])

    async def list_deliveries(
        self,
        *,
        project_id: str,
        connector_type: str | None = None,
        status: DeliveryStatus | None = None,
        created_after: datetime | None = None,
        limit: int = 100,
        before: tuple[datetime, str] | None = None,
    ) -> list[ConnectorDelivery]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                SQL_LIST_DELIVERIES,
                project_id,
                connector_type,
                None if status is None else status.value,
                created_after,
                limit,
                None if before is None else before[0],
                None if before is None else before[1],
            )
        return [_delivery_from_row(row) for row in rows]

    async def list_due(
        self,
        *,
        project_id: str,
        connector_type: str,
        now: datetime,
        limit: int,
    ) -> list[ConnectorDelivery]:
        if limit <= 0:
            return []
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DUE_DELIVERIES, project_id, connector_type, now, limit)
        return [_delivery_from_row(row) for row in rows]

    async def list_attempts(self, *, delivery_id: str) -> list[ConnectorDeliveryAttempt]:
        grouped = await self.list_attempts_by_delivery(delivery_ids=[delivery_id])
        return grouped[delivery_id]

    async def list_attempts_by_delivery(
        self,
        *,
        delivery_ids: list[str],
    ) -> dict[str, list[ConnectorDeliveryAttempt]]:
        grouped: dict[str, list[ConnectorDeliveryAttempt]] = {delivery_id: [] for delivery_id in delivery_ids}
        if not delivery_ids:
            return grouped
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_ATTEMPTS, delivery_ids)
        for row in rows:
            grouped[row["delivery_id"]].append(_attempt_from_row(row))
        return grouped

    async def record_attempt(
        self,
        *,
        delivery_id: str,
        attempt_id: str,
        result: DispatchResult,
        transition: DeliveryTransition,
        expected_attempt_count: int,
        now: datetime,
    ) -> tuple[ConnectorDelivery, ConnectorDeliveryAttempt]:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock(conn, delivery_id)
                if current.status not in PENDING_STATUSES or current.attempt_count != expected_attempt_count:
                    raise ConcurrencyError(f"delivery {delivery_id} changed while an attempt was in flight")
                updated = await self._write(conn, apply_transition(current, transition, now=now, result=result))
                try:
                    attempt_row = await conn.fetchrow(
                        SQL_INSERT_ATTEMPT,
                        attempt_id,
                        delivery_id,
                        now,
                        result.status_code,
                        result.error,
                        result.error_code,
                        result.latency_ms,
                    )
                except Exception as exc:
                    if _is_unique_violation(exc):
                        raise ConcurrencyError(f"attempt for delivery {delivery_id} already recorded") from exc
                    raise
        return updated, _attempt_from_row(attempt_row)

    async def transition_delivery(
        self,
        *,
        delivery_id: str,
        transition: DeliveryTransition,
        expected_status: DeliveryStatus,
        now: datetime,
    ) -> ConnectorDelivery:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock(conn, delivery_id)
                if current.status != expected_status:
                    raise ConcurrencyError(
                        f"delivery {delivery_id} is {current.status}, expected {expected_status}"
                    )
                return await self._write(conn, apply_transition(current, transition, now=now))

    async def summarize(self, *, project_id: str, connector_type: str, now: datetime) -> DeliverySummary:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_SUMMARIZE_DELIVERIES, project_id, connector_type, now)
        return DeliverySummary(
            total=row["total"],
            queued=row["queued"],
            retrying=row["retrying"],
            delivered=row["delivered"],
            dead_lettered=row["dead_lettered"],
            due_now=row["due_now"],
            earliest_next_attempt_at=row["earliest_next_attempt_at"],
        )

    async def list_project_ids(self) -> list[str]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_PROJECT_IDS)
        return [row["project_id"] for row in rows]

    async def _lock(self, conn: Any, delivery_id: str) -> ConnectorDelivery:
        row = await conn.fetchrow(SQL_LOCK_DELIVERY, delivery_id)
        if row is None:
            raise NotFoundError(f"delivery not found: {delivery_id}")
        return _delivery_from_row(row)

    async def _write(self, conn: Any, delivery: ConnectorDelivery) -> ConnectorDelivery:
        row = await conn.fetchrow(
            SQL_UPDATE_DELIVERY,
            delivery.id,
            delivery.status.value,
            delivery.attempt_count,
            delivery.last_status_code,
            delivery.last_error,
            delivery.next_attempt_at,
            delivery.dead_letter_reason,
            delivery.delivered_at,
            delivery.updated_at,
        )
        return _delivery_from_row(row)


@dataclass
class PostgresAuditLog:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        return self.pool_manager.acquire_pool()

    async def append_event(
        self,
        *,
        actor: str,
        payload: AuditEventPayload,
        created_at: datetime | None = None,
    ) -> AuditEvent:
        event_type = event_type_of(payload)
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_INSERT_AUDIT_EVENT,
                new_event_id(),
                event_type,
                actor,
                payload.project_id,
                payload_to_json(payload),
                created_at or datetime.now(tz=UTC),
            )
        return AuditEvent(
            id=row["id"],
            event_type=row["event_type"],
            actor=row["actor"],
            created_at=row["created_at"],
            payload=payload,
        )

    async def list_events(
        self,
        *,
        limit: int = 100,
        project_id: str | None = None,
        event_types: tuple[str, ...] | None = None,
    ) -> list[AuditEvent]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                SQL_LIST_AUDIT_EVENTS,
                project_id,
                None if event_types is None else list(event_types),
                limit,
            )
        return [
            AuditEvent(
                id=row["id"],
                event_type=row["event_type"],
                actor=row["actor"],
                created_at=row["created_at"],
                payload=parse_event_payload(row["event_type"], dict(row["payload"])),
            )
            for row in rows
        ]


def _overrides_to_json(overrides: dict[str, ConnectorOverride]) -> dict[str, Any]:
    return {
        connector_type: {
            "is_enabled": override.is_enabled,
            "max_retrying": override.max_retrying,
            "max_due_now": override.max_due_now,
            "min_limit": override.min_limit,
        }
        for connector_type, override in overrides.items()
    }


def _policy_from_row(row: Any) -> BackpressurePolicy:
    return BackpressurePolicy(
        project_id=row["project_id"],
        is_enabled=row["is_enabled"],
        max_retrying=row["max_retrying"],
        max_due_now=row["max_due_now"],
        min_limit=row["min_limit"],
        connector_overrides={
            connector_type: ConnectorOverride(**values)
            for connector_type, values in (row["connector_overrides"] or {}).items()
        },
        updated_at=row["updated_at"],
        updated_by=row["updated_by"],
    )


def _approvals_to_json(approvals: tuple[DraftApproval, ...]) -> list[dict[str, str]]:
    return [{"actor": item.actor, "approved_at": item.approved_at.isoformat()} for item in approvals]


def _draft_from_row(row: Any) -> BackpressurePolicyDraft:
    return BackpressurePolicyDraft(
        project_id=row["project_id"],
        proposed=policy_patch_from_json(row["proposed"]),
        required_approvals=row["required_approvals"],
        approvals=tuple(
            DraftApproval(actor=item["actor"], approved_at=datetime.fromisoformat(item["approved_at"]))
            for item in row["approvals"] or []
        ),
        activate_at=row["activate_at"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=row["version"],
    )


def _guardian_policy_from_row(row: Any) -> GuardianPolicy:
    return GuardianPolicy(
        project_id=row["project_id"],
        is_enabled=row["is_enabled"],
        lookback_hours=row["lookback_hours"],
        risk_threshold=row["risk_threshold"],
        max_actions_per_project=row["max_actions_per_project"],
        action_limit=row["action_limit"],
        cooldown_minutes=row["cooldown_minutes"],
        min_dead_letter_minutes=row["min_dead_letter_minutes"],
        allow_process_queue=row["allow_process_queue"],
        allow_redrive_dead_letters=row["allow_redrive_dead_letters"],
        updated_at=row["updated_at"],
        updated_by=row["updated_by"],
    )


@dataclass
class PostgresPolicyStore:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        return self.pool_manager.acquire_pool()

    async def get_policy(self, *, project_id: str) -> BackpressurePolicy | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_POLICY, project_id)
        return None if row is None else _policy_from_row(row)

    async def save_policy(self, *, policy: BackpressurePolicy) -> BackpressurePolicy:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await self._upsert_policy(conn, policy)
        return _policy_from_row(row)

    async def get_draft(self, *, project_id: str) -> BackpressurePolicyDraft | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_DRAFT, project_id)
        return None if row is None else _draft_from_row(row)

    async def save_draft(
        self,
        *,
        draft: BackpressurePolicyDraft,
        expected_version: int | None,
    ) -> BackpressurePolicyDraft:
        pool = self._pool()
        async with pool.acquire() as conn:
            if expected_version is None:
                row = await conn.fetchrow(
                    SQL_INSERT_DRAFT,
                    draft.project_id,
                    draft.proposed.to_json(),
                    draft.required_approvals,
                    _approvals_to_json(draft.approvals),
                    draft.activate_at,
                    draft.created_by,
                    draft.created_at,
                    draft.updated_at,
                )
                if row is None:
                    raise ConcurrencyError(f"draft already exists for project '{draft.project_id}'")
            else:
                row = await conn.fetchrow(
                    SQL_UPDATE_DRAFT,
                    draft.project_id,
                    draft.proposed.to_json(),
                    draft.required_approvals,
                    _approvals_to_json(draft.approvals),
                    draft.activate_at,
                    draft.updated_at,
                    expected_version,
                )
                if row is None:
                    raise ConcurrencyError(f"draft for project '{draft.project_id}' changed concurrently")
        return _draft_from_row(row)

    async def delete_draft(self, *, project_id: str, expected_version: int | None = None) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_DELETE_DRAFT, project_id, expected_version)
                if row is not None:
                    return True
                if expected_version is None:
                    return False
                if await conn.fetchval(SQL_DRAFT_EXISTS, project_id):
                    raise ConcurrencyError(f"draft for project '{project_id}' changed concurrently")
                return False

    async def list_draft_project_ids(self) -> list[str]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DRAFT_PROJECT_IDS)
        return [row["project_id"] for row in rows]

    async def apply_draft(
        self,
        *,
        policy: BackpressurePolicy,
        expected_version: int,
    ) -> BackpressurePolicy:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                deleted = await conn.fetchrow(SQL_DELETE_DRAFT, policy.project_id, expected_version)
                if deleted is None:
                    raise ConcurrencyError(f"draft for project '{policy.project_id}' changed concurrently")
                row = await self._upsert_policy(conn, policy)
        return _policy_from_row(row)

    async def get_guardian_policy(self, *, project_id: str) -> GuardianPolicy | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_GUARDIAN_POLICY, project_id)
        return None if row is None else _guardian_policy_from_row(row)

    async def save_guardian_policy(self, *, policy: GuardianPolicy) -> GuardianPolicy:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_UPSERT_GUARDIAN_POLICY,
                policy.project_id,
                policy.is_enabled,
                policy.lookback_hours,
                policy.risk_threshold,
                policy.max_actions_per_project,
                policy.action_limit,
                policy.cooldown_minutes,
                policy.min_dead_letter_minutes,
                policy.allow_process_queue,
                policy.allow_redrive_dead_letters,
                policy.updated_at,
                policy.updated_by,
            )
        return _guardian_policy_from_row(row)

    async def _upsert_policy(self, conn: Any, policy: BackpressurePolicy) -> Any:
        return await conn.fetchrow(
            SQL_UPSERT_POLICY,
            policy.project_id,
            policy.is_enabled,
            policy.max_retrying,
            policy.max_due_now,
            policy.min_limit,
            _overrides_to_json(policy.connector_overrides),
            policy.updated_at,
            policy.updated_by,
        )
