from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal

from connector_plane.domain.connectors import require_connector_type
from connector_plane.domain.control_plane_config import BackpressureDefaults
from connector_plane.domain.models import BackpressurePolicy, ConnectorOverride, DeliverySummary
from connector_plane.domain.patch import OverridePatch, PolicyPatch, is_set
from connector_plane.domain.validation import (
    DUE_NOW_CAP_BOUNDS,
    MIN_LIMIT_BOUNDS,
    RETRY_CAP_BOUNDS,
    require_bool,
    require_int,
)

PolicySource = Literal["policy_connector_override", "policy_default"]
ThrottleReason = Literal["policy_disabled", "retrying_limit", "due_now_limit"]


@dataclass(frozen=True)
class ResolvedBackpressure:
    source: PolicySource
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


@dataclass(frozen=True)
class BackpressureDecision:
    requested_limit: int
    effective_limit: int
    queue_depth: int
    throttled: bool
    reason: ThrottleReason | None
    resolved: ResolvedBackpressure


def default_policy(project_id: str, defaults: BackpressureDefaults) -> BackpressurePolicy:
    return BackpressurePolicy(
        project_id=project_id,
        is_enabled=defaults.is_enabled,
        max_retrying=defaults.max_retrying,
        max_due_now=defaults.max_due_now,
        min_limit=defaults.min_limit,
    )


def resolve_backpressure(*, connector_type: str, policy: BackpressurePolicy) -> ResolvedBackpressure:
    override = policy.connector_overrides.get(connector_type)
    if override is not None:
        return ResolvedBackpressure(
            source="policy_connector_override",
            is_enabled=override.is_enabled,
            max_retrying=override.max_retrying,
            max_due_now=override.max_due_now,
            min_limit=override.min_limit,
        )
    return ResolvedBackpressure(
        source="policy_default",
        is_enabled=policy.is_enabled,
        max_retrying=policy.max_retrying,
        max_due_now=policy.max_due_now,
        min_limit=policy.min_limit,
    )


def compute_effective_limit(
    *,
    requested_limit: int,
    summary: DeliverySummary,
    resolved: ResolvedBackpressure,
) -> BackpressureDecision:
    """How many due deliveries one drain may attempt.

    effective = clamp(requested, min_limit, min(max_retrying, max_due_now, due_now)).
    The lower bound is capped by the upper one, so an empty queue drains 0.
    """
    queue_depth = max(summary.due_now, 0)
    if not resolved.is_enabled:
        return BackpressureDecision(
            requested_limit=requested_limit,
            effective_limit=0,
            queue_depth=queue_depth,
            throttled=queue_depth > 0,
            reason="policy_disabled" if queue_depth > 0 else None,
            resolved=resolved,
        )

    upper = min(resolved.max_retrying, resolved.max_due_now, queue_depth)
    lower = min(resolved.min_limit, upper)
    effective = max(lower, min(requested_limit, upper))

    reason: ThrottleReason | None = None
    throttled = effective < min(requested_limit, queue_depth)
    if throttled:
        reason = "retrying_limit" if resolved.max_retrying <= resolved.max_due_now else "due_now_limit"
    return BackpressureDecision(
        requested_limit=requested_limit,
        effective_limit=effective,
        queue_depth=queue_depth,
        throttled=throttled,
        reason=reason,
        resolved=resolved,
    )


def validate_policy_patch(patch: PolicyPatch) -> PolicyPatch:
    """Reject out-of-range values and canonicalise connector override keys."""
    if is_set(patch.is_enabled):
        require_bool("is_enabled", patch.is_enabled)
    if is_set(patch.max_retrying):
        require_int("max_retrying", patch.max_retrying, RETRY_CAP_BOUNDS)
    if is_set(patch.max_due_now):
        require_int("max_due_now", patch.max_due_now, DUE_NOW_CAP_BOUNDS)
    if is_set(patch.min_limit):
        require_int("min_limit", patch.min_limit, MIN_LIMIT_BOUNDS)
    if not is_set(patch.connector_overrides):
        return patch

    overrides: dict[str, OverridePatch | None] = {}
    for raw_type, override in patch.connector_overrides.items():  # type: ignore[union-attr]
        connector_type = require_connector_type(raw_type)
        if override is not None:
            prefix = f"connector_overrides.{connector_type}"
            if is_set(override.is_enabled):
                require_bool(f"{prefix}.is_enabled", override.is_enabled)
            if is_set(override.max_retrying):
                require_int(f"{prefix}.max_retrying", override.max_retrying, RETRY_CAP_BOUNDS)
            if is_set(override.max_due_now):
                require_int(f"{prefix}.max_due_now", override.max_due_now, DUE_NOW_CAP_BOUNDS)
            if is_set(override.min_limit):
                require_int(f"{prefix}.min_limit", override.min_limit, MIN_LIMIT_BOUNDS)
        overrides[connector_type] = override
    return replace(patch, connector_overrides=overrides)


def build_candidate_policy(
    live: BackpressurePolicy,
    patch: PolicyPatch,
    *,
    now: datetime | None = None,
    actor: str | None = None,
) -> BackpressurePolicy:
    """Copy only the fields present on `patch` onto `live`."""
    overrides = dict(live.connector_overrides)
    if is_set(patch.connector_overrides):
        for connector_type, override_patch in patch.connector_overrides.items():  # type: ignore[union-attr]
            if override_patch is None:
                overrides.pop(connector_type, None)
                continue
            base = overrides.get(connector_type) or ConnectorOverride(
                is_enabled=live.is_enabled,
                max_retrying=live.max_retrying,
                max_due_now=live.max_due_now,
                min_limit=live.min_limit,
            )
            overrides[connector_type] = replace(
                base,
                **{name: getattr(override_patch, name) for name in override_patch.present_fields()},
            )

    scalar_updates = {
        name: getattr(patch, name) for name in patch.present_fields() if name != "connector_overrides"
    }
    return replace(
        live,
        **scalar_updates,
        connector_overrides=overrides,
        updated_at=now if now is not None else live.updated_at,
        updated_by=actor if actor is not None else live.updated_by,
    )


def policy_to_json(policy: BackpressurePolicy) -> dict[str, object]:
    return {
        "is_enabled": policy.is_enabled,
        "max_retrying": policy.max_retrying,
        "max_due_now": policy.max_due_now,
        "min_limit": policy.min_limit,
        "connector_overrides": {
            connector_type: {
                "is_enabled": override.is_enabled,
                "max_retrying": override.max_retrying,
                "max_due_now": override.max_due_now,
                "min_limit": override.min_limit,
            }
            for connector_type, override in sorted(policy.connector_overrides.items())
        },
    }
