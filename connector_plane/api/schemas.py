from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from connector_plane.domain.models import DeliveryStatus, Recommendation


DELIVERY_ID_PATTERN = r"^dlv_[0-9A-HJKMNP-TV-Z]{26}$"
EVENT_ID_PATTERN = r"^evt_[0-9A-HJKMNP-TV-Z]{26}$"
ACTOR_MAX_LENGTH = 128


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    busy_ticks_total: int
    idle_ticks_total: int
    errors_total: int
    consecutive_errors: int = 0


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


# Deliveries


class EnqueueDeliveryRequest(BaseModel):
    payload: dict[str, Any]
    idempotency_key: str | None = Field(default=None, max_length=256)
    max_attempts: int | None = None
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class DeliveryResponse(BaseModel):
    id: str = Field(pattern=DELIVERY_ID_PATTERN)
    project_id: str
    connector_type: str
    status: DeliveryStatus
    idempotency_key: str | None
    payload_hash: str
    attempt_count: int
    max_attempts: int
    last_status_code: int | None
    last_error: str | None
    next_attempt_at: datetime | None
    dead_letter_reason: str | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class EnqueueDeliveryResponse(BaseModel):
    delivery: DeliveryResponse
    duplicate: bool


class DeliveryListResponse(BaseModel):
    items: list[DeliveryResponse]


class DeliverySummaryResponse(BaseModel):
    total: int
    queued: int
    retrying: int
    delivered: int
    dead_lettered: int
    due_now: int
    earliest_next_attempt_at: datetime | None


class TopErrorResponse(BaseModel):
    message: str
    count: int


class StatusCountsResponse(BaseModel):
    queued: int
    retrying: int
    delivered: int
    dead_lettered: int


class InsightsResponse(BaseModel):
    connector_type: str
    lookback_hours: int
    window_start: datetime
    delivery_count: int
    status_counts: StatusCountsResponse
    delivery_success_rate: float = Field(ge=0, le=1)
    attempt_success_rate: float = Field(ge=0, le=1)
    avg_attempts_per_delivery: float
    max_attempts_observed: int
    attempt_count: int
    top_errors: list[TopErrorResponse]


class ProcessConnectorsRequest(BaseModel):
    connector_types: list[str] | None = None
    limit: int | None = None
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class DrainResponse(BaseModel):
    connector_type: str
    skipped: bool
    reason: str | None = None
    requested_limit: int
    effective_limit: int = 0
    queue_depth: int = 0
    throttled: bool = False
    throttle_reason: str | None = None
    policy_source: str | None = None
    attempted: int = 0
    delivered: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    conflicts: int = 0


class ProcessConnectorsResponse(BaseModel):
    project_id: str
    attempted: int
    items: list[DrainResponse]


class RedriveRequest(BaseModel):
    connector_types: list[str] | None = None
    limit: int = 50
    min_dead_letter_minutes: int = 0
    process_after_redrive: bool = False
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class RedriveItemResponse(BaseModel):
    connector_type: str
    eligible: int
    redriven: list[str]
    conflicts: int
    processed: DrainResponse | None = None


class RedriveResponse(BaseModel):
    project_id: str
    redriven_total: int
    items: list[RedriveItemResponse]


class ConnectorActionRequest(BaseModel):
    action: Literal["process_queue", "redrive_dead_letters"]
    limit: int = 10
    min_dead_letter_minutes: int = 15
    # Drain the redriven deliveries in the same request.
    process_after_redrive: bool = True
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class ConnectorActionResponse(BaseModel):
    project_id: str
    connector_type: str
    action: Literal["process_queue", "redrive_dead_letters"]
    processed_count: int
    delivery_ids: list[str]
    drain: DrainResponse | None = None
    redrive: RedriveItemResponse | None = None


class TimelineEntryResponse(BaseModel):
    id: str = Field(pattern=EVENT_ID_PATTERN)
    event_type: str
    actor: str
    created_at: datetime
    connector_type: str
    delivery_id: str
    attempt_number: int | None
    success: bool | None
    status_code: int | None
    reason: str | None
    redrive: bool
    trigger: Literal["manual", "guardian"] | None


class TimelineConnectorSummaryResponse(BaseModel):
    connector_type: str
    total: int
    delivered: int
    dead_lettered: int


class TimelineSummaryResponse(BaseModel):
    total: int
    queued: int
    attempted: int
    delivered: int
    dead_lettered: int
    redrive_queued: int
    by_connector: list[TimelineConnectorSummaryResponse]


class ActionTimelineResponse(BaseModel):
    project_id: str
    connector_type: str | None
    event_type: str | None
    redrive_only: bool
    limit: int
    summary: TimelineSummaryResponse
    events: list[TimelineEntryResponse]


# Reliability and outcomes


class RiskBreakdownResponse(BaseModel):
    dead_letter_pressure: float
    due_now_pressure: float
    retry_pressure: float
    queued_pressure: float
    max_attempt_pressure: float
    delivery_failure_pressure: float
    attempt_failure_pressure: float
    error_pressure: float
    total: float


class RankedConnectorResponse(BaseModel):
    connector_type: str
    risk_score: float
    recommendation: Recommendation
    risk_reasons: list[str]
    risk_breakdown: RiskBreakdownResponse
    baseline_risk_score: float
    risk_delta: float
    risk_trend: Literal["improving", "worsening", "stable"]
    summary: DeliverySummaryResponse
    insights: InsightsResponse


class ReliabilityResponse(BaseModel):
    project_id: str
    lookback_hours: int
    generated_at: datetime
    items: list[RankedConnectorResponse]


class OutcomeWindowResponse(BaseModel):
    window_start: datetime
    window_end: datetime
    lookback_hours: int
    total_deliveries: int
    delivered: int
    dead_lettered: int
    retrying: int
    queued: int
    delivery_success_rate: float
    dead_letter_rate: float


class OutcomeDeltaResponse(BaseModel):
    total_deliveries: int
    delivered: int
    dead_lettered: int
    retrying: int
    queued: int
    delivery_success_rate: float
    dead_letter_rate: float


class PolicyUpdateResponse(BaseModel):
    event_id: str = Field(pattern=EVENT_ID_PATTERN)
    actor: str
    created_at: datetime
    applied_patch: dict[str, Any]
    policy: dict[str, Any]
    approvers: list[str]


class OutcomesResponse(BaseModel):
    project_id: str
    connector_type: str | None
    current: OutcomeWindowResponse
    baseline: OutcomeWindowResponse
    delta: OutcomeDeltaResponse
    policy_updates: list[PolicyUpdateResponse]


# Backpressure policy lifecycle


class ConnectorOverrideResponse(BaseModel):
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


class PolicyResponse(BaseModel):
    project_id: str
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int
    connector_overrides: dict[str, ConnectorOverrideResponse]
    updated_at: datetime | None
    updated_by: str | None


class ActivationResponse(BaseModel):
    ready: bool
    reason: Literal["activation_time_pending", "approvals_pending"] | None
    activation_ready: bool
    approval_count: int
    required_approvals: int
    approvals_remaining: int


class DraftApprovalResponse(BaseModel):
    actor: str
    approved_at: datetime


class DraftResponse(BaseModel):
    project_id: str
    proposed: dict[str, Any]
    required_approvals: int
    approvals: list[DraftApprovalResponse]
    activate_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int
    activation: ActivationResponse


class UpsertDraftRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=ACTOR_MAX_LENGTH)
    # Sparse policy patch; absent keys are left untouched.
    policy: dict[str, Any] = Field(default_factory=dict)
    required_approvals: int | None = None
    activate_at: datetime | None = None


class ActorRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=ACTOR_MAX_LENGTH)


class ApproveDraftResponse(BaseModel):
    counted: bool
    draft: DraftResponse


class DiscardDraftResponse(BaseModel):
    project_id: str
    discarded: bool


class ActivateDraftsRequest(BaseModel):
    dry_run: bool = False
    # All projects with a pending draft when omitted.
    project_ids: list[str] | None = None
    limit: int = 100
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class DraftActivationItemResponse(BaseModel):
    project_id: str
    status: Literal["ready", "blocked", "applied", "failed"]
    reason: str | None
    message: str
    activation: ActivationResponse
    policy: PolicyResponse | None = None


class ActivateDraftsResponse(BaseModel):
    dry_run: bool
    total_draft_count: int
    scanned: int
    limited: bool
    ready: int
    blocked: int
    applied: int
    failed: int
    items: list[DraftActivationItemResponse]


class SimulateRequest(BaseModel):
    # Candidate patch; when omitted the current draft is simulated.
    policy: dict[str, Any] | None = None
    connector_types: list[str] | None = None
    requested_limit: int | None = None


class BackpressureDecisionResponse(BaseModel):
    effective_limit: int
    queue_depth: int
    throttled: bool
    reason: str | None
    source: Literal["policy_connector_override", "policy_default"]
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


class ConnectorSimulationResponse(BaseModel):
    connector_type: str
    due_now: int
    retrying: int
    current: BackpressureDecisionResponse
    candidate: BackpressureDecisionResponse
    effective_limit_delta: int
    throttled_changed: bool


class SimulationResponse(BaseModel):
    project_id: str
    candidate_source: Literal["request", "draft"]
    candidate_policy: PolicyResponse
    requested_limit: int
    connector_count: int
    drained_before: int
    drained_after: int
    drained_delta: int
    throttled_before: int
    throttled_after: int
    throttled_delta: int
    items: list[ConnectorSimulationResponse]


class TuningRecommendationResponse(BaseModel):
    enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


class ConnectorSuggestionResponse(BaseModel):
    connector_type: str
    pressure_tier: Literal["low", "medium", "high"]
    retrying: int
    due_now: int
    outstanding: int
    recommendation: TuningRecommendationResponse


class RecommendationResponse(BaseModel):
    project_id: str
    recommendation: TuningRecommendationResponse
    patch: dict[str, Any]
    by_connector: list[ConnectorSuggestionResponse]


# Guardian


class GuardianPolicyResponse(BaseModel):
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
    updated_at: datetime | None
    updated_by: str | None


class GuardianPolicyUpdateRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=ACTOR_MAX_LENGTH)
    is_enabled: bool | None = None
    lookback_hours: int | None = None
    risk_threshold: float | None = None
    max_actions_per_project: int | None = None
    action_limit: int | None = None
    cooldown_minutes: int | None = None
    min_dead_letter_minutes: int | None = None
    allow_process_queue: bool | None = None
    allow_redrive_dead_letters: bool | None = None


class GuardianRunRequest(BaseModel):
    dry_run: bool = False
    actor: str = Field(default="api", min_length=1, max_length=ACTOR_MAX_LENGTH)


class GuardianActionResponse(BaseModel):
    connector_type: str
    action: Literal["process_queue", "redrive_dead_letters"]
    risk_score: float
    risk_reasons: list[str]


class SkippedActionResponse(GuardianActionResponse):
    reason: Literal["cooldown_active"]
    last_action_at: datetime
    retry_after_seconds: int


class ExecutedActionResponse(BaseModel):
    connector_type: str
    action: Literal["process_queue", "redrive_dead_letters"]
    risk_score: float
    ok: bool
    processed: int
    error: str | None


class GuardianRunResponse(BaseModel):
    project_id: str
    dry_run: bool
    skipped: bool
    reason: str | None
    planned: list[GuardianActionResponse]
    cooldown_skipped: list[SkippedActionResponse]
    executed: list[ExecutedActionResponse]
    failures: int
