from __future__ import annotations

from typing import Literal

# Canonical vocabulary for failed delivery attempts.
AttemptErrorCode = Literal[
    "endpoint_unreachable",
    "non_success_status",
    "attempt_timeout",
    "invalid_connector_config",
    "dispatcher_error",
]

# Allowed persisted values for attempt error codes.
CANONICAL_ATTEMPT_ERROR_CODES: tuple[AttemptErrorCode, ...] = (
    "endpoint_unreachable",
    "non_success_status",
    "attempt_timeout",
    "invalid_connector_config",
    "dispatcher_error",
)


def is_canonical_attempt_error_code(code: str) -> bool:
    return code in CANONICAL_ATTEMPT_ERROR_CODES


def resolve_attempt_error(code: str | None) -> AttemptErrorCode:
    if code is not None and is_canonical_attempt_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a dispatcher emitted an unknown code.
    return "dispatcher_error"


def is_success_status(status_code: int | None) -> bool:
    return status_code is not None and 200 <= status_code < 300
