from pathlib import Path

import pytest

from connector_plane.clients.stub import StubConnectorDispatcher
from connector_plane.domain.contracts import AuditLog, ConnectorDispatcher, DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import DEFAULT_CONFIG_PATH, load_control_plane_config
from connector_plane.domain.events import (
    DELIVERED,
    DeliveredPayload,
    UnrecognizedPayload,
    parse_event_payload,
    payload_to_json,
)
from connector_plane.domain.patch import UNSET, OverridePatch, PolicyPatch, policy_patch_from_json
from connector_plane.repositories.stub import InMemoryAuditLog, InMemoryDeliveryStore, InMemoryPolicyStore


@pytest.mark.unit
def test_in_memory_adapters_satisfy_contracts() -> None:
    assert isinstance(InMemoryDeliveryStore(), DeliveryStore)
    assert isinstance(InMemoryPolicyStore(), PolicyStore)
    assert isinstance(InMemoryAuditLog(), AuditLog)
    assert isinstance(StubConnectorDispatcher(), ConnectorDispatcher)


@pytest.mark.unit
def test_default_control_plane_config_loads() -> None:
    config = load_control_plane_config()

    assert config.config_version == "control-plane:v1"
    assert config.backpressure.max_due_now == 100
    assert config.guardian.risk_threshold == 20.0
    assert config.delivery.initial_backoff_ms == 500
    assert config.dispatcher.mode == "stub"


@pytest.mark.unit
def test_config_rejects_out_of_range_values(tmp_path: Path) -> None:
    text = DEFAULT_CONFIG_PATH.read_text(encoding="utf-8").replace("max_attempts: 3", "max_attempts: 99")
    broken = tmp_path / "control_plane.yaml"
    broken.write_text(text, encoding="utf-8")

    with pytest.raises(ValueError, match="max_attempts"):
        load_control_plane_config(file_path=broken)


@pytest.mark.unit
def test_config_canonicalises_endpoint_aliases(tmp_path: Path) -> None:
    text = DEFAULT_CONFIG_PATH.read_text(encoding="utf-8").replace(
        "endpoints: {}",
        'endpoints:\n    slack_webhook: "https://hooks.example.test/slack"',
    )
    config_file = tmp_path / "control_plane.yaml"
    config_file.write_text(text, encoding="utf-8")

    config = load_control_plane_config(file_path=config_file)

    assert config.dispatcher.endpoints == {"slack": "https://hooks.example.test/slack"}


@pytest.mark.unit
def test_policy_patch_json_keeps_absent_and_null_distinct() -> None:
    patch = policy_patch_from_json({"min_limit": 2, "connector_overrides": {"db": None, "jira": {"max_due_now": 5}}})

    assert patch.max_retrying is UNSET
    assert patch.connector_overrides == {"db": None, "jira": OverridePatch(max_due_now=5)}
    assert patch.to_json() == {"min_limit": 2, "connector_overrides": {"db": None, "jira": {"max_due_now": 5}}}
    assert PolicyPatch().is_empty() is True


@pytest.mark.unit
def test_policy_patch_json_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError, match="unknown policy fields: max_budget"):
        policy_patch_from_json({"max_budget": 1})
    with pytest.raises(ValueError, match="unknown override fields"):
        policy_patch_from_json({"connector_overrides": {"db": {"burst": 1}}})


@pytest.mark.unit
def test_audit_payloads_round_trip_and_unknown_types_are_kept() -> None:
    payload = DeliveredPayload(project_id="proj-1", connector_type="webhook", delivery_id="dlv_1", attempt_count=2)

    parsed = parse_event_payload(DELIVERED, payload_to_json(payload))
    unknown = parse_event_payload("legacy_connector_event_v1", {"project_id": "proj-9", "extra": 1})

    assert parsed == payload
    assert isinstance(unknown, UnrecognizedPayload)
    assert unknown.raw_event_type == "legacy_connector_event_v1"
    assert unknown.project_id == "proj-9"
