from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from connector_plane.domain.connectors import canonical_connector_type
from connector_plane.domain.validation import (
    ACTION_LIMIT_BOUNDS,
    COOLDOWN_MINUTES_BOUNDS,
    DUE_NOW_CAP_BOUNDS,
    INITIAL_BACKOFF_MS_BOUNDS,
    LOOKBACK_HOURS_BOUNDS,
    MAX_ACTIONS_BOUNDS,
    MAX_ATTEMPTS_BOUNDS,
    MIN_DEAD_LETTER_MINUTES_BOUNDS,
    MIN_LIMIT_BOUNDS,
    REQUESTED_LIMIT_BOUNDS,
    REQUIRED_APPROVALS_BOUNDS,
    RETRY_CAP_BOUNDS,
    RISK_THRESHOLD_BOUNDS,
    IntBounds,
)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "control_plane.v1.yaml"


@dataclass(frozen=True)
class BackpressureDefaults:
    is_enabled: bool
    max_retrying: int
    max_due_now: int
    min_limit: int


@dataclass(frozen=True)
class GuardianDefaults:
    is_enabled: bool
    lookback_hours: int
    risk_threshold: float
    max_actions_per_project: int
    action_limit: int
    cooldown_minutes: int
    min_dead_letter_minutes: int
    allow_process_queue: bool
    allow_redrive_dead_letters: bool


@dataclass(frozen=True)
class DeliveryDefaults:
    max_attempts: int
    initial_backoff_ms: int
    attempt_timeout_seconds: float


@dataclass(frozen=True)
class PumpDefaults:
    requested_limit: int
    insights_lookback_hours: int


@dataclass(frozen=True)
class DraftDefaults:
    required_approvals: int


@dataclass(frozen=True)
class DispatcherConfig:
    mode: str
    endpoints: dict[str, str]


@dataclass(frozen=True)
class ControlPlaneConfig:
    config_version: str
    backpressure: BackpressureDefaults
    guardian: GuardianDefaults
    delivery: DeliveryDefaults
    pump: PumpDefaults
    drafts: DraftDefaults
    dispatcher: DispatcherConfig


DISPATCHER_MODES = ("stub", "http")


def load_control_plane_config(*, file_path: str | Path = DEFAULT_CONFIG_PATH) -> ControlPlaneConfig:
    data = yaml.safe_load(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("control plane config must be a YAML object")
    return parse_control_plane_config(data)


def parse_control_plane_config(data: dict[str, object]) -> ControlPlaneConfig:
    config_version = _required_str(data, "config_version")

    backpressure_raw = _required_obj(data, "backpressure")
    backpressure = BackpressureDefaults(
        is_enabled=_required_bool(backpressure_raw, "is_enabled"),
        max_retrying=_bounded_int(backpressure_raw, "max_retrying", RETRY_CAP_BOUNDS),
        max_due_now=_bounded_int(backpressure_raw, "max_due_now", DUE_NOW_CAP_BOUNDS),
        min_limit=_bounded_int(backpressure_raw, "min_limit", MIN_LIMIT_BOUNDS),
    )

    guardian_raw = _required_obj(data, "guardian")
    risk_threshold = _required_float(guardian_raw, "risk_threshold")
    if risk_threshold <= RISK_THRESHOLD_BOUNDS.above or risk_threshold > RISK_THRESHOLD_BOUNDS.maximum:
        raise ValueError("guardian.risk_threshold is out of range")
    guardian = GuardianDefaults(
        is_enabled=_required_bool(guardian_raw, "is_enabled"),
        lookback_hours=_bounded_int(guardian_raw, "lookback_hours", LOOKBACK_HOURS_BOUNDS),
        risk_threshold=risk_threshold,
        max_actions_per_project=_bounded_int(guardian_raw, "max_actions_per_project", MAX_ACTIONS_BOUNDS),
        action_limit=_bounded_int(guardian_raw, "action_limit", ACTION_LIMIT_BOUNDS),
        cooldown_minutes=_bounded_int(guardian_raw, "cooldown_minutes", COOLDOWN_MINUTES_BOUNDS),
        min_dead_letter_minutes=_bounded_int(
            guardian_raw, "min_dead_letter_minutes", MIN_DEAD_LETTER_MINUTES_BOUNDS
        ),
        allow_process_queue=_required_bool(guardian_raw, "allow_process_queue"),
        allow_redrive_dead_letters=_required_bool(guardian_raw, "allow_redrive_dead_letters"),
    )

    delivery_raw = _required_obj(data, "delivery")
    attempt_timeout_seconds = _required_float(delivery_raw, "attempt_timeout_seconds")
    if attempt_timeout_seconds <= 0:
        raise ValueError("delivery.attempt_timeout_seconds must be > 0")
    delivery = DeliveryDefaults(
        max_attempts=_bounded_int(delivery_raw, "max_attempts", MAX_ATTEMPTS_BOUNDS),
        initial_backoff_ms=_bounded_int(delivery_raw, "initial_backoff_ms", INITIAL_BACKOFF_MS_BOUNDS),
        attempt_timeout_seconds=attempt_timeout_seconds,
    )

    pump_raw = _required_obj(data, "pump")
    pump = PumpDefaults(
        requested_limit=_bounded_int(pump_raw, "requested_limit", REQUESTED_LIMIT_BOUNDS),
        insights_lookback_hours=_bounded_int(pump_raw, "insights_lookback_hours", LOOKBACK_HOURS_BOUNDS),
    )

    drafts_raw = _required_obj(data, "drafts")
    drafts = DraftDefaults(
        required_approvals=_bounded_int(drafts_raw, "required_approvals", REQUIRED_APPROVALS_BOUNDS),
    )

    dispatcher_raw = _required_obj(data, "dispatcher")
    mode = _required_str(dispatcher_raw, "mode")
    if mode not in DISPATCHER_MODES:
        raise ValueError(f"dispatcher.mode must be one of: {', '.join(DISPATCHER_MODES)}")
    endpoints_raw = dispatcher_raw.get("endpoints") or {}
    if not isinstance(endpoints_raw, dict):
        raise ValueError("dispatcher.endpoints must be object")
    endpoints: dict[str, str] = {}
    for raw_type, url in endpoints_raw.items():
        connector_type = canonical_connector_type(str(raw_type))
        if connector_type is None:
            raise ValueError(f"dispatcher.endpoints has unsupported connector type '{raw_type}'")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValueError(f"dispatcher.endpoints.{raw_type} must be an http(s) URL")
        endpoints[connector_type] = url

    return ControlPlaneConfig(
        config_version=config_version,
        backpressure=backpressure,
        guardian=guardian,
        delivery=delivery,
        pump=pump,
        drafts=drafts,
        dispatcher=DispatcherConfig(mode=mode, endpoints=endpoints),
    )


def _bounded_int(data: dict[str, object], key: str, bounds: IntBounds) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} is required and must be integer")
    if value < bounds.minimum or value > bounds.maximum:
        raise ValueError(f"{key} must be between {bounds.minimum} and {bounds.maximum}")
    return value


def _required_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} is required and must be non-empty string")
    return value


def _required_float(data: dict[str, object], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} is required and must be number")
    return float(value)


def _required_bool(data: dict[str, object], key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise ValueError(f"{key} is required and must be boolean")
    return value


def _required_obj(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"{key} is required and must be object")
    return value
