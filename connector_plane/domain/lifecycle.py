from __future__ import annotations

from datetime import datetime, timedelta

from connector_plane.domain.errors import ValidationError
from connector_plane.domain.models import ConnectorDelivery, DeliveryStatus, DeliveryTransition, DispatchResult
from connector_plane.domain.validation import INITIAL_BACKOFF_MS_BOUNDS


ALLOWED_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.QUEUED: {DeliveryStatus.RETRYING, DeliveryStatus.DELIVERED, DeliveryStatus.DEAD_LETTERED},
    DeliveryStatus.RETRYING: {DeliveryStatus.RETRYING, DeliveryStatus.DELIVERED, DeliveryStatus.DEAD_LETTERED},
    DeliveryStatus.DEAD_LETTERED: {DeliveryStatus.QUEUED},
    DeliveryStatus.DELIVERED: set(),
}

PENDING_STATUSES = frozenset({DeliveryStatus.QUEUED, DeliveryStatus.RETRYING})


def require_transition(from_status: DeliveryStatus, to_status: DeliveryStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise ValidationError(f"invalid delivery transition: {from_status} -> {to_status}")


def clamp_initial_backoff_ms(initial_backoff_ms: int) -> int:
    return max(INITIAL_BACKOFF_MS_BOUNDS.minimum, min(INITIAL_BACKOFF_MS_BOUNDS.maximum, initial_backoff_ms))


def compute_retry_backoff(*, attempt_number: int, initial_backoff_ms: int) -> timedelta:
    """Exponential backoff: initial * 2^(attempt-1), attempt_number is 1-based."""
    exponent = max(attempt_number, 1) - 1
    return timedelta(milliseconds=clamp_initial_backoff_ms(initial_backoff_ms) * (2**exponent))


def is_due(delivery: ConnectorDelivery, now: datetime) -> bool:
    if delivery.status not in PENDING_STATUSES:
        return False
    return delivery.next_attempt_at is None or delivery.next_attempt_at <= now


def is_dead_letter_eligible_for_redrive(
    delivery: ConnectorDelivery,
    *,
    min_dead_letter_minutes: int,
    now: datetime,
) -> bool:
    if delivery.status != DeliveryStatus.DEAD_LETTERED:
        return False
    return delivery.updated_at + timedelta(minutes=min_dead_letter_minutes) <= now


def transition_after_attempt(
    delivery: ConnectorDelivery,
    result: DispatchResult,
    *,
    now: datetime,
    initial_backoff_ms: int,
) -> DeliveryTransition:
    attempt_number = delivery.attempt_count + 1
    if result.success:
        transition = DeliveryTransition(status=DeliveryStatus.DELIVERED, delivered_at=now)
    elif attempt_number >= delivery.max_attempts:
        transition = DeliveryTransition(
            status=DeliveryStatus.DEAD_LETTERED,
            dead_letter_reason=result.error or f"status {result.status_code}",
        )
    else:
        transition = DeliveryTransition(
            status=DeliveryStatus.RETRYING,
            next_attempt_at=now
            + compute_retry_backoff(attempt_number=attempt_number, initial_backoff_ms=initial_backoff_ms),
        )
    require_transition(delivery.status, transition.status)
    return transition


def redrive_transition(delivery: ConnectorDelivery, *, now: datetime) -> DeliveryTransition:
    require_transition(delivery.status, DeliveryStatus.QUEUED)
    return DeliveryTransition(status=DeliveryStatus.QUEUED, next_attempt_at=now, reset_attempts=True)


def apply_transition(
    delivery: ConnectorDelivery,
    transition: DeliveryTransition,
    *,
    now: datetime,
    result: DispatchResult | None = None,
) -> ConnectorDelivery:
    """Project a transition onto a delivery row, keeping the status-linked fields consistent."""
    require_transition(delivery.status, transition.status)
    if transition.reset_attempts:
        attempt_count = 0
        last_status_code: int | None = None
        last_error: str | None = None
    else:
        attempt_count = delivery.attempt_count
        last_status_code = delivery.last_status_code
        last_error = delivery.last_error
    if result is not None:
        attempt_count += 1
        last_status_code = result.status_code
        last_error = result.error
    if attempt_count > delivery.max_attempts:
        raise ValidationError("attempt_count cannot exceed max_attempts")

    return ConnectorDelivery(
        id=delivery.id,
        project_id=delivery.project_id,
        connector_type=delivery.connector_type,
        idempotency_key=delivery.idempotency_key,
        payload_hash=delivery.payload_hash,
        status=transition.status,
        attempt_count=attempt_count,
        max_attempts=delivery.max_attempts,
        last_status_code=last_status_code,
        last_error=last_error,
        next_attempt_at=transition.next_attempt_at if transition.status in PENDING_STATUSES else None,
        dead_letter_reason=transition.dead_letter_reason
        if transition.status == DeliveryStatus.DEAD_LETTERED
        else None,
        delivered_at=transition.delivered_at if transition.status == DeliveryStatus.DELIVERED else None,
        created_at=delivery.created_at,
        updated_at=now,
    )
