from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from connector_plane.clients.stub import StubConnectorDispatcher
from connector_plane.domain.contracts import ConnectorDispatcher
from connector_plane.domain.control_plane_config import ControlPlaneConfig, load_control_plane_config
from connector_plane.domain.models import ConnectorDelivery, ConnectorDeliveryAttempt, DeliveryStatus
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle
from connector_plane.repositories.stub import InMemoryAuditLog, InMemoryDeliveryStore, InMemoryPolicyStore
from connector_plane.services.guardian import GuardianController
from connector_plane.services.pump import DeliveryPump
from connector_plane.services.reporting import ConnectorReporting

NOW = datetime(2026, 2, 21, 12, 0, tzinfo=UTC)


def make_delivery(
    delivery_id: str = "dlv_01HZZZZZZZZZZZZZZZZZZZZZZZ",
    *,
    status: DeliveryStatus = DeliveryStatus.QUEUED,
    created_at: datetime = NOW - timedelta(hours=1),
    connector_type: str = "webhook",
    project_id: str = "proj-1",
    attempt_count: int = 0,
    max_attempts: int = 3,
    last_error: str | None = None,
    updated_at: datetime | None = None,
) -> ConnectorDelivery:
    return ConnectorDelivery(
        id=delivery_id,
        project_id=project_id,
        connector_type=connector_type,
        idempotency_key=None,
        payload_hash=f"hash-{delivery_id}",
        status=status,
        attempt_count=attempt_count,
        max_attempts=max_attempts,
        last_status_code=None,
        last_error=last_error,
        next_attempt_at=created_at if status in (DeliveryStatus.QUEUED, DeliveryStatus.RETRYING) else None,
        dead_letter_reason=(last_error or "failed") if status == DeliveryStatus.DEAD_LETTERED else None,
        delivered_at=created_at if status == DeliveryStatus.DELIVERED else None,
        created_at=created_at,
        updated_at=updated_at or created_at,
    )


def make_attempt(
    delivery_id: str,
    attempt_number: int,
    *,
    status_code: int | None = 200,
    error: str | None = None,
) -> ConnectorDeliveryAttempt:
    return ConnectorDeliveryAttempt(
        id=f"att_{delivery_id[-8:]}{attempt_number}",
        delivery_id=delivery_id,
        attempt_number=attempt_number,
        attempted_at=NOW - timedelta(minutes=30),
        status_code=status_code,
        error=error,
        error_code=None if error is None else "non_success_status",
        latency_ms=12,
    )


@dataclass
class FakeClock:
    now: datetime = NOW

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Services:
    config: ControlPlaneConfig
    delivery_store: InMemoryDeliveryStore
    policy_store: InMemoryPolicyStore
    audit_log: InMemoryAuditLog
    dispatcher: Any
    pump: DeliveryPump
    reporting: ConnectorReporting
    lifecycle: BackpressurePolicyLifecycle
    guardian: GuardianController


def build_services(
    *,
    dispatcher: ConnectorDispatcher | None = None,
    config: ControlPlaneConfig | None = None,
) -> Services:
    config = config or load_control_plane_config()
    delivery_store = InMemoryDeliveryStore()
    policy_store = InMemoryPolicyStore()
    audit_log = InMemoryAuditLog()
    dispatcher = dispatcher or StubConnectorDispatcher()
    pump = DeliveryPump(
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        delivery_defaults=config.delivery,
        backpressure_defaults=config.backpressure,
    )
    reporting = ConnectorReporting(delivery_store=delivery_store)
    lifecycle = BackpressurePolicyLifecycle(
        policy_store=policy_store,
        audit_log=audit_log,
        backpressure_defaults=config.backpressure,
        draft_defaults=config.drafts,
    )
    guardian = GuardianController(
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        pump=pump,
        reporting=reporting,
        guardian_defaults=config.guardian,
    )
    return Services(
        config=config,
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        pump=pump,
        reporting=reporting,
        lifecycle=lifecycle,
        guardian=guardian,
    )
