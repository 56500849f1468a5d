from __future__ import annotations

from dataclasses import dataclass, field

from connector_plane.domain.clock import Clock, utc_now
from connector_plane.domain.contracts import AuditLog, DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import ControlPlaneConfig
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle
from connector_plane.services.guardian import GuardianController
from connector_plane.services.pump import DeliveryPump
from connector_plane.services.reporting import ConnectorReporting


@dataclass(frozen=True)
class ApiDeps:
    config: ControlPlaneConfig
    delivery_store: DeliveryStore
    policy_store: PolicyStore
    audit_log: AuditLog
    pump: DeliveryPump
    reporting: ConnectorReporting
    lifecycle: BackpressurePolicyLifecycle
    guardian: GuardianController
    clock: Clock = field(default=utc_now)
