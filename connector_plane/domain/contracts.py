from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from connector_plane.domain.events import AuditEvent, AuditEventPayload
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


@runtime_checkable
class DeliveryStore(Protocol):
    """Durable delivery rows plus their attempt history.

    Row mutation is atomic per delivery: `record_attempt` and
    `transition_delivery` check the caller's view of the row and raise
    ConcurrencyError when another writer got there first.
    """

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
    ) -> EnqueueResult: ...

    async def get_delivery(self, *, delivery_id: str) -> ConnectorDelivery | None: ...

    async def get_payload(self, *, delivery_id: str) -> dict[str, Any]: ...

    # Newest first. `before` is the (created_at, id) of the last row of the previous page.
    async def list_deliveries(
        self,
        *,
        project_id: str,
        connector_type: str | None = None,
        status: DeliveryStatus | None = None,
        created_after: datetime | None = None,
        limit: int = 100,
        before: tuple[datetime, str] | None = None,
    ) -> list[ConnectorDelivery]: ...

    # Queued rows, or retrying rows whose next_attempt_at has passed; oldest first.
    async def list_due(
        self,
        *,
        project_id: str,
        connector_type: str,
        now: datetime,
        limit: int,
    ) -> list[ConnectorDelivery]: ...

    async def list_attempts(self, *, delivery_id: str) -> list[ConnectorDeliveryAttempt]: ...

    async def list_attempts_by_delivery(
        self,
        *,
        delivery_ids: list[str],
    ) -> dict[str, list[ConnectorDeliveryAttempt]]: ...

    async def record_attempt(
        self,
        *,
        delivery_id: str,
        attempt_id: str,
        result: DispatchResult,
        transition: DeliveryTransition,
        expected_attempt_count: int,
        now: datetime,
    ) -> tuple[ConnectorDelivery, ConnectorDeliveryAttempt]: ...

    async def transition_delivery(
        self,
        *,
        delivery_id: str,
        transition: DeliveryTransition,
        expected_status: DeliveryStatus,
        now: datetime,
    ) -> ConnectorDelivery: ...

    async def summarize(self, *, project_id: str, connector_type: str, now: datetime) -> DeliverySummary: ...

    async def list_project_ids(self) -> list[str]: ...


@runtime_checkable
class AuditLog(Protocol):
    """Append-only event stream. Event type is carried by the payload variant."""

    async def append_event(
        self,
        *,
        actor: str,
        payload: AuditEventPayload,
        created_at: datetime | None = None,
    ) -> AuditEvent: ...

    # Newest first.
    async def list_events(
        self,
        *,
        limit: int = 100,
        project_id: str | None = None,
        event_types: tuple[str, ...] | None = None,
    ) -> list[AuditEvent]: ...


@runtime_checkable
class PolicyStore(Protocol):
    async def get_policy(self, *, project_id: str) -> BackpressurePolicy | None: ...

    async def save_policy(self, *, policy: BackpressurePolicy) -> BackpressurePolicy: ...

    async def get_draft(self, *, project_id: str) -> BackpressurePolicyDraft | None: ...

    # expected_version=None creates; otherwise the stored draft must carry that version.
    async def save_draft(
        self,
        *,
        draft: BackpressurePolicyDraft,
        expected_version: int | None,
    ) -> BackpressurePolicyDraft: ...

    async def delete_draft(self, *, project_id: str, expected_version: int | None = None) -> bool: ...

    async def list_draft_project_ids(self) -> list[str]: ...

    # Saves the live policy and removes the draft it came from in one step.
    async def apply_draft(
        self,
        *,
        policy: BackpressurePolicy,
        expected_version: int,
    ) -> BackpressurePolicy: ...

    async def get_guardian_policy(self, *, project_id: str) -> GuardianPolicy | None: ...

    async def save_guardian_policy(self, *, policy: GuardianPolicy) -> GuardianPolicy: ...


@runtime_checkable
class ConnectorDispatcher(Protocol):
    """Sends one payload to one connector endpoint.

    A response with a status code is returned as DispatchResult even when it
    is not 2xx. Transport problems raise DeliveryAttemptError carrying a
    canonical attempt error code.
    """

    async def dispatch(
        self,
        *,
        connector_type: str,
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> DispatchResult: ...
