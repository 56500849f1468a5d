from __future__ import annotations

from dataclasses import dataclass

from connector_plane.domain.contracts import DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import PumpDefaults
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle
from connector_plane.services.guardian import GuardianController
from connector_plane.services.pump import DeliveryPump


@dataclass(frozen=True)
class WorkerDeps:
    delivery_store: DeliveryStore
    policy_store: PolicyStore
    pump: DeliveryPump
    guardian: GuardianController
    lifecycle: BackpressurePolicyLifecycle
    pump_defaults: PumpDefaults
