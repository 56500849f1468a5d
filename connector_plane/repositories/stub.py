from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from connector_plane.domain.errors import ConcurrencyError, NotFoundError
from connector_plane.domain.events import AuditEvent, AuditEventPayload, event_type_of
from connector_plane.domain.ids import new_delivery_id, new_event_id
from connector_plane.domain.lifecycle import PENDING_STATUSES, apply_transition, is_due
from connector_plane.domain.models import (
    BackpressurePolicy,
    BackpressurePolicyDraft,
    ConnectorDelivery,
    ConnectorDeliveryAttempt,
    DeliveryStatus,
    DeliverySummary,
    DeliveryTransition,
    DispatchResult,
    EnqueueResult,
    GuardianPolicy,
)


@dataclass
class InMemoryDeliveryStore:
    """Non-network delivery store with the same row-level guarantees as Postgres."""

    deliveries: dict[str, ConnectorDelivery] = field(default_factory=dict)
    payloads: dict[str, dict[str, Any]] = field(default_factory=dict)
    attempts: dict[str, list[ConnectorDeliveryAttempt]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

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
        async with self.lock:
            existing = self._find_duplicate(
                project_id=project_id,
                connector_type=connector_type,
                payload_hash=payload_hash,
                idempotency_key=idempotency_key,
            )
            if existing is not None:
                return EnqueueResult(delivery=existing, duplicate=True)

            delivery = ConnectorDelivery(
                id=new_delivery_id(),
                project_id=project_id,
                connector_type=connector_type,
                idempotency_key=idempotency_key,
                payload_hash=payload_hash,
                status=DeliveryStatus.QUEUED,
                attempt_count=0,
                max_attempts=max_attempts,
                last_status_code=None,
                last_error=None,
                next_attempt_at=now,
                dead_letter_reason=None,
                delivered_at=None,
                created_at=now,
                updated_at=now,
            )
            self.deliveries[delivery.id] = delivery
            self.payloads[delivery.id] = copy.deepcopy(payload)
            self.attempts[delivery.id] = []
            return EnqueueResult(delivery=delivery, duplicate=False)

    async def get_delivery(self, *, delivery_id: str) -> ConnectorDelivery | None:
        return self.deliveries.get(delivery_id)

    async def get_payload(self, *, delivery_id: str) -> dict[str, Any]:
        payload = self.payloads.get(delivery_id)
        if payload is None:
            raise NotFoundError(f"delivery not found: {delivery_id}")
        return copy.deepcopy(payload)

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
        items = [
            item
            for item in self.deliveries.values()
            if item.project_id == project_id
            and (connector_type is None or item.connector_type == connector_type)
            and (status is None or item.status == status)
            and (created_after is None or item.created_at >= created_after)
            and (before is None or (item.created_at, item.id) < before)
        ]
        items.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return items[:limit]

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
        items = [
            item
            for item in self.deliveries.values()
            if item.project_id == project_id and item.connector_type == connector_type and is_due(item, now)
        ]
        items.sort(key=lambda item: (item.created_at, item.id))
        return items[:limit]

    async def list_attempts(self, *, delivery_id: str) -> list[ConnectorDeliveryAttempt]:
        return list(self.attempts.get(delivery_id, []))

    async def list_attempts_by_delivery(
        self,
        *,
        delivery_ids: list[str],
    ) -> dict[str, list[ConnectorDeliveryAttempt]]:
        return {delivery_id: list(self.attempts.get(delivery_id, [])) for delivery_id in delivery_ids}

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
        async with self.lock:
            current = self._require(delivery_id)
            if current.status not in PENDING_STATUSES or current.attempt_count != expected_attempt_count:
                raise ConcurrencyError(f"delivery {delivery_id} changed while an attempt was in flight")
            updated = apply_transition(current, transition, now=now, result=result)
            # Numbering spans redrives; attempt_count only tracks the current retry budget.
            history = self.attempts.setdefault(delivery_id, [])
            attempt = ConnectorDeliveryAttempt(
                id=attempt_id,
                delivery_id=delivery_id,
                attempt_number=max((item.attempt_number for item in history), default=0) + 1,
                attempted_at=now,
                status_code=result.status_code,
                error=result.error,
                error_code=result.error_code,
                latency_ms=result.latency_ms,
            )
            self.deliveries[delivery_id] = updated
            history.append(attempt)
            return updated, attempt

    async def transition_delivery(
        self,
        *,
        delivery_id: str,
        transition: DeliveryTransition,
        expected_status: DeliveryStatus,
        now: datetime,
    ) -> ConnectorDelivery:
        async with self.lock:
            current = self._require(delivery_id)
            if current.status != expected_status:
                raise ConcurrencyError(
                    f"delivery {delivery_id} is {current.status}, expected {expected_status}"
                )
            updated = apply_transition(current, transition, now=now)
            self.deliveries[delivery_id] = updated
            return updated

    async def summarize(self, *, project_id: str, connector_type: str, now: datetime) -> DeliverySummary:
        counts = {status: 0 for status in DeliveryStatus}
        due_now = 0
        earliest: datetime | None = None
        total = 0
        for item in self.deliveries.values():
            if item.project_id != project_id or item.connector_type != connector_type:
                continue
            total += 1
            counts[item.status] += 1
            if is_due(item, now):
                due_now += 1
            if item.status in PENDING_STATUSES and item.next_attempt_at is not None:
                if earliest is None or item.next_attempt_at < earliest:
                    earliest = item.next_attempt_at
        return DeliverySummary(
            total=total,
            queued=counts[DeliveryStatus.QUEUED],
            retrying=counts[DeliveryStatus.RETRYING],
            delivered=counts[DeliveryStatus.DELIVERED],
            dead_lettered=counts[DeliveryStatus.DEAD_LETTERED],
            due_now=due_now,
            earliest_next_attempt_at=earliest,
        )

    async def list_project_ids(self) -> list[str]:
        return sorted({item.project_id for item in self.deliveries.values()})

    def _require(self, delivery_id: str) -> ConnectorDelivery:
        current = self.deliveries.get(delivery_id)
        if current is None:
            raise NotFoundError(f"delivery not found: {delivery_id}")
        return current

    def _find_duplicate(
        self,
        *,
        project_id: str,
        connector_type: str,
        payload_hash: str,
        idempotency_key: str | None,
    ) -> ConnectorDelivery | None:
        for item in self.deliveries.values():
            if item.project_id != project_id or item.connector_type != connector_type:
                continue
            if idempotency_key is not None:
                if item.idempotency_key == idempotency_key:
                    return item
            elif item.idempotency_key is None and item.payload_hash == payload_hash:
                return item
        return None


@dataclass
class InMemoryAuditLog:
    events: list[AuditEvent] = field(default_factory=list)

    async def append_event(
        self,
        *,
        actor: str,
        payload: AuditEventPayload,
        created_at: datetime | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=new_event_id(),
            event_type=event_type_of(payload),
            actor=actor,
            created_at=created_at or datetime.now(tz=UTC),
            payload=payload,
        )
        self.events.append(event)
        return event

    async def list_events(
        self,
        *,
        limit: int = 100,
        project_id: str | None = None,
        event_types: tuple[str, ...] | None = None,
    ) -> list[AuditEvent]:
        matched = [
            event
            for event in reversed(self.events)
            if (project_id is None or event.project_id == project_id)
            and (event_types is None or event.event_type in event_types)
        ]
        matched.sort(key=lambda event: event.created_at, reverse=True)
        return matched[:limit]


@dataclass
class InMemoryPolicyStore:
    policies: dict[str, BackpressurePolicy] = field(default_factory=dict)
    drafts: dict[str, BackpressurePolicyDraft] = field(default_factory=dict)
    guardian_policies: dict[str, GuardianPolicy] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def get_policy(self, *, project_id: str) -> BackpressurePolicy | None:
        return self.policies.get(project_id)

    async def save_policy(self, *, policy: BackpressurePolicy) -> BackpressurePolicy:
        self.policies[policy.project_id] = policy
        return policy

    async def get_draft(self, *, project_id: str) -> BackpressurePolicyDraft | None:
        return self.drafts.get(project_id)

    async def save_draft(
        self,
        *,
        draft: BackpressurePolicyDraft,
        expected_version: int | None,
    ) -> BackpressurePolicyDraft:
        async with self.lock:
            current = self.drafts.get(draft.project_id)
            if expected_version is None:
                if current is not None:
                    raise ConcurrencyError(f"draft already exists for project '{draft.project_id}'")
                saved = replace(draft, version=1)
            else:
                if current is None or current.version != expected_version:
                    raise ConcurrencyError(f"draft for project '{draft.project_id}' changed concurrently")
                saved = replace(draft, version=expected_version + 1)
            self.drafts[draft.project_id] = saved
            return saved

    async def delete_draft(self, *, project_id: str, expected_version: int | None = None) -> bool:
        async with self.lock:
            current = self.drafts.get(project_id)
            if current is None:
                return False
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyError(f"draft for project '{project_id}' changed concurrently")
            del self.drafts[project_id]
            return True

    async def list_draft_project_ids(self) -> list[str]:
        return sorted(self.drafts)

    async def apply_draft(
        self,
        *,
        policy: BackpressurePolicy,
        expected_version: int,
    ) -> BackpressurePolicy:
        async with self.lock:
            current = self.drafts.get(policy.project_id)
            if current is None or current.version != expected_version:
                raise ConcurrencyError(f"draft for project '{policy.project_id}' changed concurrently")
            self.policies[policy.project_id] = policy
            del self.drafts[policy.project_id]
            return policy

    async def get_guardian_policy(self, *, project_id: str) -> GuardianPolicy | None:
        return self.guardian_policies.get(project_id)

    async def save_guardian_policy(self, *, policy: GuardianPolicy) -> GuardianPolicy:
        self.guardian_policies[policy.project_id] = policy
        return policy
