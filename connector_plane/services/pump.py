from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Literal

from connector_plane.domain.connectors import require_connector_type
from connector_plane.domain.contracts import AuditLog, ConnectorDispatcher, DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import BackpressureDefaults, DeliveryDefaults
from connector_plane.domain.error_taxonomy import resolve_attempt_error
from connector_plane.domain.errors import ConcurrencyError, DeliveryAttemptError, ValidationError
from connector_plane.domain.events import (
    DeadLetteredPayload,
    DeliveredPayload,
    DeliveryAttemptedPayload,
    DeliveryQueuedPayload,
    DeliveryRedrivenPayload,
)
from connector_plane.domain.ids import new_attempt_id
from connector_plane.domain.lifecycle import (
    is_dead_letter_eligible_for_redrive,
    redrive_transition,
    transition_after_attempt,
)
from connector_plane.domain.models import (
    BackpressurePolicy,
    ConnectorDelivery,
    DeliveryStatus,
    DispatchResult,
    EnqueueResult,
)
from connector_plane.domain.payloads import normalize_idempotency_key, payload_hash
from connector_plane.domain.use_cases.backpressure import (
    BackpressureDecision,
    compute_effective_limit,
    default_policy,
    resolve_backpressure,
)
from connector_plane.domain.validation import (
    MAX_ATTEMPTS_BOUNDS,
    MIN_DEAD_LETTER_MINUTES_BOUNDS,
    REDRIVE_LIMIT_BOUNDS,
    REQUESTED_LIMIT_BOUNDS,
    require_int,
)

logger = logging.getLogger("runtime")

COMPONENT_ID = "services.pump.drain"

# Dead letters scanned per redrive call before eligibility filtering.
REDRIVE_SCAN_LIMIT = 5_000

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AttemptReport:
    delivery_id: str
    attempt_number: int
    status: DeliveryStatus
    status_code: int | None
    error_code: str | None
    latency_ms: int


@dataclass(frozen=True)
class DrainResult:
    project_id: str
    connector_type: str
    skipped: bool
    reason: Literal["in_flight"] | None
    decision: BackpressureDecision | None
    attempts: tuple[AttemptReport, ...] = ()
    conflicts: int = 0

    @property
    def attempted(self) -> int:
        return len(self.attempts)

    def count(self, status: DeliveryStatus) -> int:
        return sum(1 for item in self.attempts if item.status == status)


@dataclass(frozen=True)
class RedriveResult:
    project_id: str
    connector_type: str
    eligible: int
    redriven: tuple[str, ...]
    conflicts: int = 0
    processed: DrainResult | None = None


@dataclass
class DeliveryPump:
    """Moves due deliveries through dispatch under the live backpressure policy.

    One drain per (project, connector) runs at a time inside a process; an
    overlapping call returns a skipped result instead of waiting.
    """

    delivery_store: DeliveryStore
    policy_store: PolicyStore
    audit_log: AuditLog
    dispatcher: ConnectorDispatcher
    delivery_defaults: DeliveryDefaults
    backpressure_defaults: BackpressureDefaults
    _in_flight: set[tuple[str, str]] = field(default_factory=set, init=False, repr=False)

    async def enqueue(
        self,
        *,
        project_id: str,
        connector_type: str,
        payload: dict[str, Any],
        now: datetime,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> EnqueueResult:
        connector_type = require_connector_type(connector_type)
        if not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object")
        attempts = self.delivery_defaults.max_attempts if max_attempts is None else max_attempts
        require_int("max_attempts", attempts, MAX_ATTEMPTS_BOUNDS)
        key = normalize_idempotency_key(idempotency_key)

        result = await self.delivery_store.enqueue(
            project_id=project_id,
            connector_type=connector_type,
            payload=payload,
            payload_hash=payload_hash(payload),
            idempotency_key=key,
            max_attempts=attempts,
            now=now,
        )
        if result.duplicate:
            logger.info(
                "delivery enqueue deduplicated",
                extra={"project_id": project_id, "connector_type": connector_type, "delivery_id": result.delivery.id},
            )
            return result

        await self.audit_log.append_event(
            actor=actor,
            payload=DeliveryQueuedPayload(
                project_id=project_id,
                connector_type=connector_type,
                delivery_id=result.delivery.id,
                idempotency_key=key,
                max_attempts=attempts,
            ),
            created_at=now,
        )
        return result

    async def live_policy(self, *, project_id: str) -> BackpressurePolicy:
        stored = await self.policy_store.get_policy(project_id=project_id)
        if stored is not None:
            return stored
        return default_policy(project_id, self.backpressure_defaults)

    async def drain(
        self,
        *,
        project_id: str,
        connector_type: str,
        requested_limit: int,
        now: datetime,
        actor: str = SYSTEM_ACTOR,
    ) -> DrainResult:
        connector_type = require_connector_type(connector_type)
        require_int("requested_limit", requested_limit, REQUESTED_LIMIT_BOUNDS)

        key = (project_id, connector_type)
        if key in self._in_flight:
            logger.info(
                "drain skipped, previous drain still running",
                extra={"project_id": project_id, "connector_type": connector_type},
            )
            return DrainResult(
                project_id=project_id,
                connector_type=connector_type,
                skipped=True,
                reason="in_flight",
                decision=None,
            )

        self._in_flight.add(key)
        try:
            return await self._drain(
                project_id=project_id,
                connector_type=connector_type,
                requested_limit=requested_limit,
                now=now,
                actor=actor,
            )
        finally:
            self._in_flight.discard(key)

    async def redrive(
        self,
        *,
        project_id: str,
        connector_type: str,
        limit: int,
        min_dead_letter_minutes: int,
        now: datetime,
        actor: str = SYSTEM_ACTOR,
        trigger: Literal["manual", "guardian"] = "manual",
        process_after: bool = False,
    ) -> RedriveResult:
        """Re-queue dead letters that have rested at least `min_dead_letter_minutes`, oldest first.

        With `process_after`, a drain sized to the redriven count follows at once.
        """
        connector_type = require_connector_type(connector_type)
        require_int("limit", limit, REDRIVE_LIMIT_BOUNDS)
        require_int("min_dead_letter_minutes", min_dead_letter_minutes, MIN_DEAD_LETTER_MINUTES_BOUNDS)

        dead_letters = await self.delivery_store.list_deliveries(
            project_id=project_id,
            connector_type=connector_type,
            status=DeliveryStatus.DEAD_LETTERED,
            limit=REDRIVE_SCAN_LIMIT,
        )
        eligible = sorted(
            (
                item
                for item in dead_letters
                if is_dead_letter_eligible_for_redrive(item, min_dead_letter_minutes=min_dead_letter_minutes, now=now)
            ),
            key=lambda item: (item.updated_at, item.id),
        )

        redriven: list[str] = []
        conflicts = 0
        for delivery in eligible[:limit]:
            try:
                await self.delivery_store.transition_delivery(
                    delivery_id=delivery.id,
                    transition=redrive_transition(delivery, now=now),
                    expected_status=DeliveryStatus.DEAD_LETTERED,
                    now=now,
                )
            except ConcurrencyError:
                conflicts += 1
                logger.info(
                    "redrive lost a race, skipping delivery",
                    extra={"project_id": project_id, "connector_type": connector_type, "delivery_id": delivery.id},
                )
                continue
            redriven.append(delivery.id)
            await self.audit_log.append_event(
                actor=actor,
                payload=DeliveryRedrivenPayload(
                    project_id=project_id,
                    connector_type=connector_type,
                    delivery_id=delivery.id,
                    trigger=trigger,
                ),
                created_at=now,
            )

        if redriven:
            logger.info(
                "dead letters redriven",
                extra={"project_id": project_id, "connector_type": connector_type, "processed": len(redriven)},
            )
        processed = None
        if process_after and redriven:
            processed = await self.drain(
                project_id=project_id,
                connector_type=connector_type,
                requested_limit=len(redriven),
                now=now,
                actor=actor,
            )
        return RedriveResult(
            project_id=project_id,
            connector_type=connector_type,
            eligible=len(eligible),
            redriven=tuple(redriven),
            conflicts=conflicts,
            processed=processed,
        )

    async def _drain(
        self,
        *,
        project_id: str,
        connector_type: str,
        requested_limit: int,
        now: datetime,
        actor: str,
    ) -> DrainResult:
        policy = await self.live_policy(project_id=project_id)
        summary = await self.delivery_store.summarize(project_id=project_id, connector_type=connector_type, now=now)
        decision = compute_effective_limit(
            requested_limit=requested_limit,
            summary=summary,
            resolved=resolve_backpressure(connector_type=connector_type, policy=policy),
        )
        if decision.throttled:
            logger.info(
                "drain throttled by backpressure policy",
                extra={"project_id": project_id, "connector_type": connector_type},
            )

        due = await self.delivery_store.list_due(
            project_id=project_id,
            connector_type=connector_type,
            now=now,
            limit=decision.effective_limit,
        )
        reports: list[AttemptReport] = []
        conflicts = 0
        for delivery in due:
            try:
                reports.append(await self._attempt(delivery, now=now, actor=actor))
            except ConcurrencyError:
                conflicts += 1
                logger.info(
                    "attempt lost a race, skipping delivery",
                    extra={"project_id": project_id, "connector_type": connector_type, "delivery_id": delivery.id},
                )

        return DrainResult(
            project_id=project_id,
            connector_type=connector_type,
            skipped=False,
            reason=None,
            decision=decision,
            attempts=tuple(reports),
            conflicts=conflicts,
        )

    async def _attempt(self, delivery: ConnectorDelivery, *, now: datetime, actor: str) -> AttemptReport:
        payload = await self.delivery_store.get_payload(delivery_id=delivery.id)
        result = await self._dispatch(delivery, payload)
        transition = transition_after_attempt(
            delivery,
            result,
            now=now,
            initial_backoff_ms=self.delivery_defaults.initial_backoff_ms,
        )
        updated, attempt = await self.delivery_store.record_attempt(
            delivery_id=delivery.id,
            attempt_id=new_attempt_id(),
            result=result,
            transition=transition,
            expected_attempt_count=delivery.attempt_count,
            now=now,
        )

        await self.audit_log.append_event(
            actor=actor,
            payload=DeliveryAttemptedPayload(
                project_id=updated.project_id,
                connector_type=updated.connector_type,
                delivery_id=updated.id,
                attempt_number=attempt.attempt_number,
                status_code=attempt.status_code,
                error_code=attempt.error_code,
                latency_ms=attempt.latency_ms,
                success=result.success,
            ),
            created_at=now,
        )
        if updated.status == DeliveryStatus.DELIVERED:
            await self.audit_log.append_event(
                actor=actor,
                payload=DeliveredPayload(
                    project_id=updated.project_id,
                    connector_type=updated.connector_type,
                    delivery_id=updated.id,
                    attempt_count=updated.attempt_count,
                ),
                created_at=now,
            )
        elif updated.status == DeliveryStatus.DEAD_LETTERED:
            await self.audit_log.append_event(
                actor=actor,
                payload=DeadLetteredPayload(
                    project_id=updated.project_id,
                    connector_type=updated.connector_type,
                    delivery_id=updated.id,
                    attempt_count=updated.attempt_count,
                    dead_letter_reason=updated.dead_letter_reason or "",
                ),
                created_at=now,
            )
            logger.warning(
                "delivery dead-lettered",
                extra={
                    "project_id": updated.project_id,
                    "connector_type": updated.connector_type,
                    "delivery_id": updated.id,
                    "attempt": updated.attempt_count,
                },
            )

        return AttemptReport(
            delivery_id=updated.id,
            attempt_number=attempt.attempt_number,
            status=updated.status,
            status_code=attempt.status_code,
            error_code=attempt.error_code,
            latency_ms=attempt.latency_ms,
        )

    async def _dispatch(self, delivery: ConnectorDelivery, payload: dict[str, Any]) -> DispatchResult:
        """Send once. Every failure mode comes back as a failed DispatchResult."""
        timeout_seconds = self.delivery_defaults.attempt_timeout_seconds
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.dispatcher.dispatch(
                    connector_type=delivery.connector_type,
                    payload=payload,
                    timeout_seconds=timeout_seconds,
                ),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            return DispatchResult(
                status_code=None,
                latency_ms=_elapsed_ms(started),
                error=f"attempt timed out after {timeout_seconds:g}s",
                error_code="attempt_timeout",
            )
        except DeliveryAttemptError as exc:
            return DispatchResult(
                status_code=exc.status_code,
                latency_ms=_elapsed_ms(started),
                error=str(exc),
                error_code=resolve_attempt_error(exc.code),
            )
        except Exception as exc:
            logger.exception(
                "dispatcher raised unexpectedly",
                extra={
                    "project_id": delivery.project_id,
                    "connector_type": delivery.connector_type,
                    "delivery_id": delivery.id,
                },
            )
            return DispatchResult(
                status_code=None,
                latency_ms=_elapsed_ms(started),
                error=f"dispatcher error: {exc}",
                error_code="dispatcher_error",
            )

        if result.success:
            return result
        if result.error is None:
            return DispatchResult(
                status_code=result.status_code,
                latency_ms=result.latency_ms,
                error=f"Remote endpoint returned {result.status_code}",
                error_code="non_success_status",
            )
        return DispatchResult(
            status_code=result.status_code,
            latency_ms=result.latency_ms,
            error=result.error,
            error_code=resolve_attempt_error(result.error_code),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
