from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from connector_plane.domain.errors import DeliveryAttemptError
from connector_plane.domain.models import DispatchResult
from connector_plane.domain.payloads import payload_hash

# Payload keys that steer the simulated connector. They let tests and demo
# traffic exercise retries and dead-lettering without a remote endpoint.
SIMULATE_FAILURE_COUNT = "__simulate_failure_count"
SIMULATE_ALWAYS_FAIL = "__simulate_always_fail"
SIMULATE_STATUS_CODE = "__simulate_status_code"
SIMULATE_ERROR_MESSAGE = "__simulate_error_message"
SIMULATE_UNREACHABLE = "__simulate_unreachable"

DEFAULT_FAILURE_STATUS = 503
DEFAULT_FAILURE_MESSAGE = "Connector delivery failed"


@dataclass(frozen=True)
class SimulationHints:
    failure_count: int = 0
    always_fail: bool = False
    status_code: int = DEFAULT_FAILURE_STATUS
    error_message: str = DEFAULT_FAILURE_MESSAGE
    unreachable: bool = False


def simulation_hints_from_payload(payload: dict[str, Any]) -> SimulationHints:
    failure_count = payload.get(SIMULATE_FAILURE_COUNT)
    status_code = payload.get(SIMULATE_STATUS_CODE)
    error_message = payload.get(SIMULATE_ERROR_MESSAGE)
    return SimulationHints(
        failure_count=failure_count
        if isinstance(failure_count, int) and not isinstance(failure_count, bool) and failure_count > 0
        else 0,
        always_fail=payload.get(SIMULATE_ALWAYS_FAIL) is True,
        status_code=status_code
        if isinstance(status_code, int) and not isinstance(status_code, bool) and status_code >= 100
        else DEFAULT_FAILURE_STATUS,
        error_message=error_message.strip()
        if isinstance(error_message, str) and error_message.strip()
        else DEFAULT_FAILURE_MESSAGE,
        unreachable=payload.get(SIMULATE_UNREACHABLE) is True,
    )


@dataclass
class StubConnectorDispatcher:
    """Deterministic in-process connector.

    Succeeds with 200 unless the payload asks for failures. The n-th send of
    the same payload fails while n <= failure_count.
    """

    sends: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    calls_by_payload: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 5

    async def dispatch(
        self,
        *,
        connector_type: str,
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> DispatchResult:
        del timeout_seconds
        key = f"{connector_type}:{payload_hash(payload)}"
        call_number = self.calls_by_payload.get(key, 0) + 1
        self.calls_by_payload[key] = call_number
        self.sends.append((connector_type, payload))

        hints = simulation_hints_from_payload(payload)
        if hints.unreachable:
            raise DeliveryAttemptError("endpoint_unreachable", f"{connector_type} endpoint is unreachable")
        if hints.always_fail or call_number <= hints.failure_count:
            return DispatchResult(
                status_code=hints.status_code,
                latency_ms=self.latency_ms,
                error=hints.error_message,
                error_code="non_success_status",
            )
        return DispatchResult(status_code=200, latency_ms=self.latency_ms)
