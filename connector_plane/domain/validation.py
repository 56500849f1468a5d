from __future__ import annotations

from dataclasses import dataclass

from connector_plane.domain.errors import ValidationError


@dataclass(frozen=True)
class IntBounds:
    minimum: int
    maximum: int


@dataclass(frozen=True)
class NumberBounds:
    # Exclusive lower bound, inclusive upper bound.
    above: float
    maximum: float


RETRY_CAP_BOUNDS = IntBounds(minimum=1, maximum=10_000)
DUE_NOW_CAP_BOUNDS = IntBounds(minimum=1, maximum=10_000)
MIN_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=100)
REQUIRED_APPROVALS_BOUNDS = IntBounds(minimum=1, maximum=10)
MAX_ATTEMPTS_BOUNDS = IntBounds(minimum=1, maximum=10)
REQUESTED_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=10_000)
REDRIVE_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=1_000)
INITIAL_BACKOFF_MS_BOUNDS = IntBounds(minimum=100, maximum=60_000)

LOOKBACK_HOURS_BOUNDS = IntBounds(minimum=1, maximum=720)
RISK_THRESHOLD_BOUNDS = NumberBounds(above=0.0, maximum=500.0)
MAX_ACTIONS_BOUNDS = IntBounds(minimum=1, maximum=20)
ACTION_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=100)
COOLDOWN_MINUTES_BOUNDS = IntBounds(minimum=0, maximum=1_440)
MIN_DEAD_LETTER_MINUTES_BOUNDS = IntBounds(minimum=0, maximum=10_080)
ACTIVATION_BATCH_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=500)
TIMELINE_LIMIT_BOUNDS = IntBounds(minimum=1, maximum=500)


def require_int(name: str, value: object, bounds: IntBounds) -> int:
    # bool is an int subclass; never accept it as a count.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < bounds.minimum or value > bounds.maximum:
        raise ValidationError(f"{name} must be between {bounds.minimum} and {bounds.maximum}, got {value}")
    return value


def require_number(name: str, value: object, bounds: NumberBounds) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    number_value = float(value)
    if number_value <= bounds.above or number_value > bounds.maximum:
        raise ValidationError(f"{name} must be greater than {bounds.above:g} and at most {bounds.maximum:g}")
    return number_value


def require_bool(name: str, value: object) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean")
    return value


def require_actor(value: object, *, name: str = "actor") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def normalize_actor(actor: str) -> str:
    """Approval identity: trimmed and case-insensitive."""
    return actor.strip().lower()
