from __future__ import annotations

from datetime import datetime

from connector_plane.api.schemas import (
    ActivationResponse,
    ConnectorOverrideResponse,
    DeliveryResponse,
    DeliverySummaryResponse,
    DraftApprovalResponse,
    DraftResponse,
    GuardianPolicyResponse,
    InsightsResponse,
    PolicyResponse,
    StatusCountsResponse,
    TopErrorResponse,
)
from connector_plane.domain.models import (
    BackpressurePolicy,
    BackpressurePolicyDraft,
    ConnectorDelivery,
    DeliverySummary,
    GuardianPolicy,
)
from connector_plane.domain.use_cases.insights import ConnectorInsights
from connector_plane.domain.use_cases.policy_lifecycle import ActivationStatus, evaluate_activation


def delivery_response(delivery: ConnectorDelivery) -> DeliveryResponse:
    return DeliveryResponse(
        id=delivery.id,
        project_id=delivery.project_id,
        connector_type=delivery.connector_type,
        status=delivery.status,
        idempotency_key=delivery.idempotency_key,
        payload_hash=delivery.payload_hash,
        attempt_count=delivery.attempt_count,
        max_attempts=delivery.max_attempts,
        last_status_code=delivery.last_status_code,
        last_error=delivery.last_error,
        next_attempt_at=delivery.next_attempt_at,
        dead_letter_reason=delivery.dead_letter_reason,
        delivered_at=delivery.delivered_at,
        created_at=delivery.created_at,
        updated_at=delivery.updated_at,
    )


def summary_response(summary: DeliverySummary) -> DeliverySummaryResponse:
    return DeliverySummaryResponse(
        total=summary.total,
        queued=summary.queued,
        retrying=summary.retrying,
        delivered=summary.delivered,
        dead_lettered=summary.dead_lettered,
        due_now=summary.due_now,
        earliest_next_attempt_at=summary.earliest_next_attempt_at,
    )


def insights_response(*, connector_type: str, lookback_hours: int, insights: ConnectorInsights) -> InsightsResponse:
    counts = insights.status_counts
    return InsightsResponse(
        connector_type=connector_type,
        lookback_hours=lookback_hours,
        window_start=insights.window_start,
        delivery_count=insights.delivery_count,
        status_counts=StatusCountsResponse(
            queued=counts.queued,
            retrying=counts.retrying,
            delivered=counts.delivered,
            dead_lettered=counts.dead_lettered,
        ),
        delivery_success_rate=insights.delivery_success_rate,
        attempt_success_rate=insights.attempt_success_rate,
        avg_attempts_per_delivery=insights.avg_attempts_per_delivery,
        max_attempts_observed=insights.max_attempts_observed,
        attempt_count=insights.attempt_count,
        top_errors=[TopErrorResponse(message=item.message, count=item.count) for item in insights.top_errors],
    )


def policy_response(policy: BackpressurePolicy) -> PolicyResponse:
    return PolicyResponse(
        project_id=policy.project_id,
        is_enabled=policy.is_enabled,
        max_retrying=policy.max_retrying,
        max_due_now=policy.max_due_now,
        min_limit=policy.min_limit,
        connector_overrides={
            connector_type: ConnectorOverrideResponse(
                is_enabled=override.is_enabled,
                max_retrying=override.max_retrying,
                max_due_now=override.max_due_now,
                min_limit=override.min_limit,
            )
            for connector_type, override in sorted(policy.connector_overrides.items())
        },
        updated_at=policy.updated_at,
        updated_by=policy.updated_by,
    )


def draft_response(draft: BackpressurePolicyDraft, *, now: datetime) -> DraftResponse:
    activation = evaluate_activation(draft, now)
    return DraftResponse(
        project_id=draft.project_id,
        proposed=draft.proposed.to_json(),
        required_approvals=draft.required_approvals,
        approvals=[DraftApprovalResponse(actor=item.actor, approved_at=item.approved_at) for item in draft.approvals],
        activate_at=draft.activate_at,
        created_by=draft.created_by,
        created_at=draft.created_at,
        updated_at=draft.updated_at,
        version=draft.version,
        activation=activation_response(activation),
    )


def activation_response(activation: ActivationStatus) -> ActivationResponse:
    return ActivationResponse(
        ready=activation.ready,
        reason=activation.reason,
        activation_ready=activation.activation_ready,
        approval_count=activation.approval_count,
        required_approvals=activation.required_approvals,
        approvals_remaining=activation.approvals_remaining,
    )


def guardian_policy_response(policy: GuardianPolicy) -> GuardianPolicyResponse:
    return GuardianPolicyResponse(
        project_id=policy.project_id,
        is_enabled=policy.is_enabled,
        lookback_hours=policy.lookback_hours,
        risk_threshold=policy.risk_threshold,
        max_actions_per_project=policy.max_actions_per_project,
        action_limit=policy.action_limit,
        cooldown_minutes=policy.cooldown_minutes,
        min_dead_letter_minutes=policy.min_dead_letter_minutes,
        allow_process_queue=policy.allow_process_queue,
        allow_redrive_dead_letters=policy.allow_redrive_dead_letters,
        updated_at=policy.updated_at,
        updated_by=policy.updated_by,
    )
