from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from connector_plane.domain.error_taxonomy import AttemptErrorCode, is_success_status
from connector_plane.domain.patch import PolicyPatch


# Canonical delivery lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with connector_plane/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_connector_plane.up.sql.
class DeliveryStatus(StrEnum):
    QUEUED = "queued"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class Recommendation(StrEnum):
    HEALTHY = "healthy"
    PROCESS_QUEUE = "process_queue"
    REDRIVE_DEAD_LETTERS = "redrive_dead_letters"


@dataclass(frozen=True)
class ConnectorDelivery:
    id: str
    project_id: str
    connector_type: str
    idempotency_key: str | None
    payload_hash: str
    status: DeliveryStatus
    attempt_count: int
    max_attempts: int
    last_status_code: int | None
    last_error: str | None
    next_attempt_at: datetime | None
    dead_letter_reason: str | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ConnectorDeliveryAttempt:
    id: str
    delivery_id: str
    attempt_number: int
    attempted_at: datetime
    status_code: int | None
    error: str | None
    error_code: AttemptErrorCode | None
    latency_ms: int

    @property
    def success(self) -> bool:
        return is_success_status(self.status_code)


@dataclass(frozen=True)
class DispatchResult:
    """Result of sending one payload to one connector endpoint."""

    status_code: int | None
    latency_ms: int
    error: str | None = None
    error_code: AttemptErrorCode | None = None

    @property
    def success(self) -> bool:
        return self.error is None and is_success_status(self.status_code)


@dataclass(frozen=True)
class DeliveryTransition:
    status: DeliveryStatus
    next_attempt_at: datetime | None = None
    dead_letter_reason: str | None = None
    delivered_at: datetime | None = None
    reset_attempts: bool = False


@dataclass(frozen=True)
class EnqueueResult:
    delivery: ConnectorDelivery
    duplicate: bool


@dataclass(frozen=True)
class DeliverySummary:
    total: int = 0
    queued: int = 0
    retrying: int = 0
    delivered: int = 0
    dead_lettered: int = 0
    due_now: int = 0
    earliest_next_attempt_at: datetime | None = None

    @property
    def outstanding(self) -> int:
        return self.queued + self.retrying


@dataclass(frozen=True)
class ConnectorOverride:
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


@dataclass(frozen=True)
class BackpressurePolicy:
    project_id: str
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int
    connector_overrides: dict[str, ConnectorOverride] = field(default_factory=dict)
    updated_at: datetime | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class DraftApproval:
    actor: str
    approved_at: datetime


@dataclass(frozen=True)
class BackpressurePolicyDraft:
    project_id: str
    proposed: PolicyPatch
    required_approvals: int
    approvals: tuple[DraftApproval, ...]
    activate_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    # Bumped on every write; stores reject saves against a stale version.
    version: int = 1


@dataclass(frozen=True)
class GuardianPolicy:
    project_id: str
    is_enabled: bool
    lookback_hours: int
    risk_threshold: float
    max_actions_per_project: int
    action_limit: int
    cooldown_minutes: int
    min_dead_letter_minutes: int
    allow_process_queue: bool
    allow_redrive_dead_letters: bool
    updated_at: datetime | None = None
    updated_by: str | None = None
