from __future__ import annotations

from dataclasses import dataclass, field
import json
import time
from typing import Any

import httpx

from connector_plane.domain.errors import DeliveryAttemptError
from connector_plane.domain.models import DispatchResult

COMPONENT_ID = "clients.http_dispatcher.dispatch"


def _slack_body(payload: dict[str, Any]) -> dict[str, Any]:
    text = payload.get("text")
    if isinstance(text, str) and text.strip():
        return {"text": text}
    return {"text": json.dumps(payload, sort_keys=True, ensure_ascii=True)}


def _db_body(payload: dict[str, Any]) -> dict[str, Any]:
    table = payload.get("table")
    record = {key: value for key, value in payload.items() if key != "table"}
    return {"table": table if isinstance(table, str) and table else "connector_deliveries", "record": record}


BODY_SHAPERS = {
    "slack": _slack_body,
    "db": _db_body,
}


@dataclass
class HttpConnectorDispatcher:
    """POSTs JSON to the endpoint configured for each connector type."""

    endpoints: dict[str, str]
    headers: dict[str, str] = field(default_factory=dict)
    transport: httpx.AsyncBaseTransport | None = None

    async def dispatch(
        self,
        *,
        connector_type: str,
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> DispatchResult:
        url = self.endpoints.get(connector_type)
        if url is None:
            raise DeliveryAttemptError(
                "invalid_connector_config",
                f"no endpoint configured for connector type '{connector_type}'",
            )

        shaper = BODY_SHAPERS.get(connector_type)
        body = shaper(payload) if shaper is not None else payload
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout_seconds, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={"content-type": "application/json", **self.headers},
                )
        except httpx.TimeoutException as exc:
            raise DeliveryAttemptError("attempt_timeout", f"{connector_type} request timed out") from exc
        except httpx.RequestError as exc:
            raise DeliveryAttemptError("endpoint_unreachable", f"{connector_type} request failed: {exc}") from exc

        latency_ms = int((time.monotonic() - started) * 1000)
        if response.is_success:
            return DispatchResult(status_code=response.status_code, latency_ms=latency_ms)
        return DispatchResult(
            status_code=response.status_code,
            latency_ms=latency_ms,
            error=f"Remote endpoint returned {response.status_code}",
            error_code="non_success_status",
        )
