from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger("runtime")

# Audit event contracts. Every known event type carries a typed payload;
# anything else read back from the log is kept as UnrecognizedPayload so old
# or foreign rows never break a reader.

DELIVERY_QUEUED = "connector_delivery_queued_v2"
DELIVERY_ATTEMPTED = "connector_delivery_attempted_v2"
DELIVERED = "connector_delivered_v2"
DEAD_LETTERED = "connector_dead_lettered_v2"
DELIVERY_REDRIVEN = "connector_delivery_redriven_v2"
BACKPRESSURE_POLICY_UPDATED = "connector_backpressure_policy_updated_v2"
BACKPRESSURE_DRAFT_UPDATED = "connector_backpressure_draft_updated_v2"
BACKPRESSURE_DRAFT_APPROVED = "connector_backpressure_draft_approved_v2"
GUARDIAN_ACTION = "connector_guardian_action_v2"
GUARDIAN_POLICY_UPDATED = "connector_guardian_policy_updated_v2"
UNRECOGNIZED = "unrecognized"

GuardianActionKind = Literal["process_queue", "redrive_dead_letters"]


class DeliveryQueuedPayload(BaseModel):
    event_type: Literal["connector_delivery_queued_v2"] = DELIVERY_QUEUED
    project_id: str
    connector_type: str
    delivery_id: str
    idempotency_key: str | None = None
    max_attempts: int


class DeliveryAttemptedPayload(BaseModel):
    event_type: Literal["connector_delivery_attempted_v2"] = DELIVERY_ATTEMPTED
    project_id: str
    connector_type: str
    delivery_id: str
    attempt_number: int
    status_code: int | None = None
    error_code: str | None = None
    latency_ms: int
    success: bool


class DeliveredPayload(BaseModel):
    event_type: Literal["connector_delivered_v2"] = DELIVERED
    project_id: str
    connector_type: str
    delivery_id: str
    attempt_count: int


class DeadLetteredPayload(BaseModel):
    event_type: Literal["connector_dead_lettered_v2"] = DEAD_LETTERED
    project_id: str
    connector_type: str
    delivery_id: str
    attempt_count: int
    dead_letter_reason: str


class DeliveryRedrivenPayload(BaseModel):
    event_type: Literal["connector_delivery_redriven_v2"] = DELIVERY_REDRIVEN
    project_id: str
    connector_type: str
    delivery_id: str
    trigger: Literal["manual", "guardian"]


class BackpressurePolicyUpdatedPayload(BaseModel):
    event_type: Literal["connector_backpressure_policy_updated_v2"] = BACKPRESSURE_POLICY_UPDATED
    project_id: str
    # Sparse fields that were applied, as PolicyPatch.to_json() renders them.
    applied_patch: dict[str, Any]
    policy: dict[str, Any]
    approvers: list[str] = Field(default_factory=list)
    required_approvals: int


class BackpressureDraftUpdatedPayload(BaseModel):
    event_type: Literal["connector_backpressure_draft_updated_v2"] = BACKPRESSURE_DRAFT_UPDATED
    project_id: str
    action: Literal["upserted", "discarded"]
    proposed: dict[str, Any] = Field(default_factory=dict)
    required_approvals: int | None = None
    activate_at: datetime | None = None


class BackpressureDraftApprovedPayload(BaseModel):
    event_type: Literal["connector_backpressure_draft_approved_v2"] = BACKPRESSURE_DRAFT_APPROVED
    project_id: str
    approver: str
    approval_count: int
    required_approvals: int


class GuardianActionPayload(BaseModel):
    event_type: Literal["connector_guardian_action_v2"] = GUARDIAN_ACTION
    project_id: str
    connector_type: str
    action: GuardianActionKind
    risk_score: float
    dry_run: bool
    ok: bool
    processed: int = 0
    error: str | None = None


class GuardianPolicyUpdatedPayload(BaseModel):
    event_type: Literal["connector_guardian_policy_updated_v2"] = GUARDIAN_POLICY_UPDATED
    project_id: str
    policy: dict[str, Any]


class UnrecognizedPayload(BaseModel):
    event_type: Literal["unrecognized"] = UNRECOGNIZED
    raw_event_type: str
    project_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


KnownPayload: TypeAlias = Annotated[
    Union[
        DeliveryQueuedPayload,
        DeliveryAttemptedPayload,
        DeliveredPayload,
        DeadLetteredPayload,
        DeliveryRedrivenPayload,
        BackpressurePolicyUpdatedPayload,
        BackpressureDraftUpdatedPayload,
        BackpressureDraftApprovedPayload,
        GuardianActionPayload,
        GuardianPolicyUpdatedPayload,
    ],
    Field(discriminator="event_type"),
]

AuditEventPayload: TypeAlias = Union[
    DeliveryQueuedPayload,
    DeliveryAttemptedPayload,
    DeliveredPayload,
    DeadLetteredPayload,
    DeliveryRedrivenPayload,
    BackpressurePolicyUpdatedPayload,
    BackpressureDraftUpdatedPayload,
    BackpressureDraftApprovedPayload,
    GuardianActionPayload,
    GuardianPolicyUpdatedPayload,
    UnrecognizedPayload,
]

KNOWN_EVENT_TYPES: tuple[str, ...] = (
    DELIVERY_QUEUED,
    DELIVERY_ATTEMPTED,
    DELIVERED,
    DEAD_LETTERED,
    DELIVERY_REDRIVEN,
    BACKPRESSURE_POLICY_UPDATED,
    BACKPRESSURE_DRAFT_UPDATED,
    BACKPRESSURE_DRAFT_APPROVED,
    GUARDIAN_ACTION,
    GUARDIAN_POLICY_UPDATED,
)

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(KnownPayload)


@dataclass(frozen=True)
class AuditEvent:
    id: str
    event_type: str
    actor: str
    created_at: datetime
    payload: AuditEventPayload

    @property
    def project_id(self) -> str | None:
        return self.payload.project_id


def parse_event_payload(event_type: str, raw_payload: dict[str, Any]) -> AuditEventPayload:
    """Decode a stored payload; unknown or malformed rows become UnrecognizedPayload."""
    project_id = raw_payload.get("project_id")
    fallback = UnrecognizedPayload(
        raw_event_type=event_type,
        project_id=project_id if isinstance(project_id, str) else None,
        metadata=dict(raw_payload),
    )
    if event_type not in KNOWN_EVENT_TYPES:
        return fallback
    try:
        return _PAYLOAD_ADAPTER.validate_python({**raw_payload, "event_type": event_type})
    except PydanticValidationError:
        logger.warning("audit payload failed validation", extra={"event_type": event_type})
        return fallback


def payload_to_json(payload: AuditEventPayload) -> dict[str, Any]:
    data = payload.model_dump(mode="json")
    data.pop("event_type", None)
    return data


def event_type_of(payload: AuditEventPayload) -> str:
    if isinstance(payload, UnrecognizedPayload):
        return payload.raw_event_type
    return payload.event_type
