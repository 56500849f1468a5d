from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Literal

from connector_plane.domain.connectors import SUPPORTED_CONNECTOR_TYPES
from connector_plane.domain.contracts import AuditLog, DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import GuardianDefaults
from connector_plane.domain.events import (
    GUARDIAN_ACTION,
    GuardianActionPayload,
    GuardianPolicyUpdatedPayload,
)
from connector_plane.domain.models import GuardianPolicy
from connector_plane.domain.use_cases.guardian import (
    GuardianAction,
    SkippedAction,
    apply_cooldown,
    default_guardian_policy,
    guardian_policy_to_json,
    select_actions,
    update_guardian_policy,
)
from connector_plane.domain.use_cases.reliability import RankedConnector, rank
from connector_plane.domain.validation import require_actor
from connector_plane.services.pump import DeliveryPump
from connector_plane.services.reporting import ConnectorReporting

logger = logging.getLogger("runtime")

COMPONENT_ID = "services.guardian.run"

GUARDIAN_ACTOR = "guardian"

# Guardian action events scanned when reconstructing per-connector cooldowns.
COOLDOWN_EVENT_SCAN_LIMIT = 500


@dataclass(frozen=True)
class ExecutedAction:
    connector_type: str
    action: str
    risk_score: float
    ok: bool
    processed: int
    error: str | None = None


@dataclass(frozen=True)
class GuardianRunResult:
    project_id: str
    dry_run: bool
    skipped: bool
    reason: Literal["guardian_disabled"] | None
    policy: GuardianPolicy
    ranked: tuple[RankedConnector, ...] = ()
    planned: tuple[GuardianAction, ...] = ()
    cooldown_skipped: tuple[SkippedAction, ...] = ()
    executed: tuple[ExecutedAction, ...] = ()

    @property
    def failures(self) -> int:
        return sum(1 for item in self.executed if not item.ok)


@dataclass
class GuardianController:
    """Ranks connector risk per project and runs bounded corrective actions."""

    delivery_store: DeliveryStore
    policy_store: PolicyStore
    audit_log: AuditLog
    pump: DeliveryPump
    reporting: ConnectorReporting
    guardian_defaults: GuardianDefaults

    async def get_policy(self, *, project_id: str) -> GuardianPolicy:
        stored = await self.policy_store.get_guardian_policy(project_id=project_id)
        if stored is not None:
            return stored
        return default_guardian_policy(project_id, self.guardian_defaults)

    async def update_policy(
        self,
        *,
        project_id: str,
        updates: Mapping[str, object],
        actor: str,
        now: datetime,
    ) -> GuardianPolicy:
        actor = require_actor(actor)
        current = await self.get_policy(project_id=project_id)
        updated = update_guardian_policy(current, updates, actor=actor, now=now)
        saved = await self.policy_store.save_guardian_policy(policy=updated)
        await self.audit_log.append_event(
            actor=actor,
            payload=GuardianPolicyUpdatedPayload(project_id=project_id, policy=guardian_policy_to_json(saved)),
            created_at=now,
        )
        return saved

    async def last_action_times(self, *, project_id: str) -> dict[str, datetime]:
        """Most recent executed (non dry-run) guardian action per connector."""
        events = await self.audit_log.list_events(
            limit=COOLDOWN_EVENT_SCAN_LIMIT,
            project_id=project_id,
            event_types=(GUARDIAN_ACTION,),
        )
        latest: dict[str, datetime] = {}
        for event in events:
            payload = event.payload
            if not isinstance(payload, GuardianActionPayload) or payload.dry_run:
                continue
            previous = latest.get(payload.connector_type)
            if previous is None or event.created_at > previous:
                latest[payload.connector_type] = event.created_at
        return latest

    async def run_project(
        self,
        *,
        project_id: str,
        now: datetime,
        dry_run: bool = False,
        actor: str = GUARDIAN_ACTOR,
    ) -> GuardianRunResult:
        policy = await self.get_policy(project_id=project_id)
        if not policy.is_enabled:
            return GuardianRunResult(
                project_id=project_id,
                dry_run=dry_run,
                skipped=True,
                reason="guardian_disabled",
                policy=policy,
            )

        records = await self.reporting.reliability_records(
            project_id=project_id,
            connector_types=SUPPORTED_CONNECTOR_TYPES,
            lookback_hours=policy.lookback_hours,
            now=now,
        )
        ranked = rank(records)
        selected = select_actions(
            ranked=ranked,
            risk_threshold=policy.risk_threshold,
            max_actions=policy.max_actions_per_project,
            allow_process_queue=policy.allow_process_queue,
            allow_redrive_dead_letters=policy.allow_redrive_dead_letters,
        )
        cooldown = apply_cooldown(
            actions=selected,
            last_action_at_by_connector=await self.last_action_times(project_id=project_id),
            cooldown_minutes=policy.cooldown_minutes,
            now=now,
        )

        executed: list[ExecutedAction] = []
        if not dry_run:
            for action in cooldown.eligible:
                outcome = await self._execute(project_id=project_id, action=action, policy=policy, now=now)
                executed.append(outcome)
                await self.audit_log.append_event(
                    actor=actor,
                    payload=GuardianActionPayload(
                        project_id=project_id,
                        connector_type=action.connector_type,
                        action=action.action,
                        risk_score=action.risk_score,
                        dry_run=False,
                        ok=outcome.ok,
                        processed=outcome.processed,
                        error=outcome.error,
                    ),
                    created_at=now,
                )

        if cooldown.eligible or cooldown.skipped:
            logger.info(
                "guardian run finished",
                extra={"project_id": project_id, "processed": len(executed)},
            )
        return GuardianRunResult(
            project_id=project_id,
            dry_run=dry_run,
            skipped=False,
            reason=None,
            policy=policy,
            ranked=tuple(ranked),
            planned=cooldown.eligible,
            cooldown_skipped=cooldown.skipped,
            executed=tuple(executed),
        )

    async def run_all(self, *, now: datetime, dry_run: bool = False) -> list[GuardianRunResult]:
        results = []
        for project_id in await self.delivery_store.list_project_ids():
            results.append(await self.run_project(project_id=project_id, now=now, dry_run=dry_run))
        return results

    async def _execute(
        self,
        *,
        project_id: str,
        action: GuardianAction,
        policy: GuardianPolicy,
        now: datetime,
    ) -> ExecutedAction:
        try:
            if action.action == "process_queue":
                drained = await self.pump.drain(
                    project_id=project_id,
                    connector_type=action.connector_type,
                    requested_limit=policy.action_limit,
                    now=now,
                    actor=GUARDIAN_ACTOR,
                )
                if drained.skipped:
                    return ExecutedAction(
                        connector_type=action.connector_type,
                        action=action.action,
                        risk_score=action.risk_score,
                        ok=False,
                        processed=0,
                        error=f"drain skipped: {drained.reason}",
                    )
                processed = drained.attempted
            else:
                redriven = await self.pump.redrive(
                    project_id=project_id,
                    connector_type=action.connector_type,
                    limit=policy.action_limit,
                    min_dead_letter_minutes=policy.min_dead_letter_minutes,
                    now=now,
                    actor=GUARDIAN_ACTOR,
                    trigger="guardian",
                )
                processed = len(redriven.redriven)
        except Exception as exc:
            logger.exception(
                "guardian action failed",
                extra={"project_id": project_id, "connector_type": action.connector_type},
            )
            return ExecutedAction(
                connector_type=action.connector_type,
                action=action.action,
                risk_score=action.risk_score,
                ok=False,
                processed=0,
                error=str(exc) or exc.__class__.__name__,
            )
        return ExecutedAction(
            connector_type=action.connector_type,
            action=action.action,
            risk_score=action.risk_score,
            ok=True,
            processed=processed,
        )
