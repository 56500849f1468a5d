from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import math
from typing import Literal

from connector_plane.domain.control_plane_config import GuardianDefaults
from connector_plane.domain.errors import ValidationError
from connector_plane.domain.events import GuardianActionKind
from connector_plane.domain.models import GuardianPolicy, Recommendation
from connector_plane.domain.use_cases.reliability import RankedConnector, RiskReason
from connector_plane.domain.validation import (
    ACTION_LIMIT_BOUNDS,
    COOLDOWN_MINUTES_BOUNDS,
    LOOKBACK_HOURS_BOUNDS,
    MAX_ACTIONS_BOUNDS,
    MIN_DEAD_LETTER_MINUTES_BOUNDS,
    RISK_THRESHOLD_BOUNDS,
    require_bool,
    require_int,
    require_number,
)

COMPONENT_ID = "domain.guardian.select"

SkipReason = Literal["cooldown_active"]

GUARDIAN_POLICY_FIELDS = (
    "is_enabled",
    "lookback_hours",
    "risk_threshold",
    "max_actions_per_project",
    "action_limit",
    "cooldown_minutes",
    "min_dead_letter_minutes",
    "allow_process_queue",
    "allow_redrive_dead_letters",
)


@dataclass(frozen=True)
class GuardianAction:
    connector_type: str
    action: GuardianActionKind
    risk_score: float
    risk_reasons: tuple[RiskReason, ...]


@dataclass(frozen=True)
class SkippedAction:
    connector_type: str
    action: GuardianActionKind
    risk_score: float
    risk_reasons: tuple[RiskReason, ...]
    reason: SkipReason
    last_action_at: datetime
    retry_after_seconds: int


@dataclass(frozen=True)
class CooldownResult:
    eligible: tuple[GuardianAction, ...]
    skipped: tuple[SkippedAction, ...]


def select_actions(
    *,
    ranked: Iterable[RankedConnector],
    risk_threshold: float,
    max_actions: int,
    allow_process_queue: bool,
    allow_redrive_dead_letters: bool,
) -> list[GuardianAction]:
    selected: list[GuardianAction] = []
    limit = max(MAX_ACTIONS_BOUNDS.minimum, min(max_actions, MAX_ACTIONS_BOUNDS.maximum))
    for item in sorted(ranked, key=lambda entry: (-entry.risk_score, entry.connector_type)):
        if item.recommendation == Recommendation.HEALTHY or item.risk_score < risk_threshold:
            continue
        if item.recommendation == Recommendation.PROCESS_QUEUE and not allow_process_queue:
            continue
        if item.recommendation == Recommendation.REDRIVE_DEAD_LETTERS and not allow_redrive_dead_letters:
            continue
        selected.append(
            GuardianAction(
                connector_type=item.connector_type,
                action=item.recommendation.value,  # type: ignore[arg-type]
                risk_score=item.risk_score,
                risk_reasons=item.risk_reasons,
            )
        )
        if len(selected) >= limit:
            break
    return selected


def apply_cooldown(
    *,
    actions: Iterable[GuardianAction],
    last_action_at_by_connector: Mapping[str, datetime],
    cooldown_minutes: int,
    now: datetime,
) -> CooldownResult:
    """Hold back actions for connectors the guardian touched within the cooldown."""
    pending = tuple(actions)
    if cooldown_minutes <= 0:
        return CooldownResult(eligible=pending, skipped=())

    cooldown = timedelta(minutes=cooldown_minutes)
    eligible: list[GuardianAction] = []
    skipped: list[SkippedAction] = []
    for action in pending:
        last_action_at = last_action_at_by_connector.get(action.connector_type)
        if last_action_at is None:
            eligible.append(action)
            continue
        elapsed = max(now - last_action_at, timedelta(0))
        if elapsed >= cooldown:
            eligible.append(action)
            continue
        skipped.append(
            SkippedAction(
                connector_type=action.connector_type,
                action=action.action,
                risk_score=action.risk_score,
                risk_reasons=action.risk_reasons,
                reason="cooldown_active",
                last_action_at=last_action_at,
                retry_after_seconds=max(1, math.ceil((cooldown - elapsed).total_seconds())),
            )
        )
    return CooldownResult(eligible=tuple(eligible), skipped=tuple(skipped))


def default_guardian_policy(project_id: str, defaults: GuardianDefaults) -> GuardianPolicy:
    return GuardianPolicy(
        project_id=project_id,
        is_enabled=defaults.is_enabled,
        lookback_hours=defaults.lookback_hours,
        risk_threshold=defaults.risk_threshold,
        max_actions_per_project=defaults.max_actions_per_project,
        action_limit=defaults.action_limit,
        cooldown_minutes=defaults.cooldown_minutes,
        min_dead_letter_minutes=defaults.min_dead_letter_minutes,
        allow_process_queue=defaults.allow_process_queue,
        allow_redrive_dead_letters=defaults.allow_redrive_dead_letters,
    )


def update_guardian_policy(
    current: GuardianPolicy,
    updates: Mapping[str, object],
    *,
    actor: str,
    now: datetime,
) -> GuardianPolicy:
    """Validated upsert. Out-of-range values are rejected, never clamped."""
    unknown = sorted(set(updates) - set(GUARDIAN_POLICY_FIELDS))
    if unknown:
        raise ValidationError(f"unknown guardian policy fields: {', '.join(unknown)}")

    validated: dict[str, object] = {}
    for name, value in updates.items():
        if name in ("is_enabled", "allow_process_queue", "allow_redrive_dead_letters"):
            validated[name] = require_bool(name, value)
        elif name == "risk_threshold":
            validated[name] = require_number(name, value, RISK_THRESHOLD_BOUNDS)
        elif name == "lookback_hours":
            validated[name] = require_int(name, value, LOOKBACK_HOURS_BOUNDS)
        elif name == "max_actions_per_project":
            validated[name] = require_int(name, value, MAX_ACTIONS_BOUNDS)
        elif name == "action_limit":
            validated[name] = require_int(name, value, ACTION_LIMIT_BOUNDS)
        elif name == "cooldown_minutes":
            validated[name] = require_int(name, value, COOLDOWN_MINUTES_BOUNDS)
        elif name == "min_dead_letter_minutes":
            validated[name] = require_int(name, value, MIN_DEAD_LETTER_MINUTES_BOUNDS)
    return replace(current, **validated, updated_at=now, updated_by=actor)


def guardian_policy_to_json(policy: GuardianPolicy) -> dict[str, object]:
    return {name: getattr(policy, name) for name in GUARDIAN_POLICY_FIELDS}
