from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.clients.http_dispatcher import HttpConnectorDispatcher
from connector_plane.clients.stub import StubConnectorDispatcher
from connector_plane.domain.contracts import AuditLog, ConnectorDispatcher, DeliveryStore, PolicyStore
from connector_plane.domain.control_plane_config import (
    DEFAULT_CONFIG_PATH,
    DISPATCHER_MODES,
    ControlPlaneConfig,
    load_control_plane_config,
)
from connector_plane.domain.use_cases.policy_lifecycle import BackpressurePolicyLifecycle
from connector_plane.repositories.stub import InMemoryAuditLog, InMemoryDeliveryStore, InMemoryPolicyStore
from connector_plane.roles import RuntimeRole
from connector_plane.services.guardian import GuardianController
from connector_plane.services.pump import DeliveryPump
from connector_plane.services.reporting import ConnectorReporting
from connector_plane.workers.handlers.deps import WorkerDeps
from connector_plane.workers.handlers.factory import WORKER_STAGES, build_tick_handler
from connector_plane.workers.loop import WorkerLoop


@dataclass
class RuntimeContainer:
    config: ControlPlaneConfig
    mode: str
    delivery_store: DeliveryStore
    policy_store: PolicyStore
    audit_log: AuditLog
    dispatcher: ConnectorDispatcher
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_dispatcher(config: ControlPlaneConfig) -> ConnectorDispatcher:
    mode = os.getenv("CONNECTOR_DISPATCHER_MODE") or config.dispatcher.mode
    if mode not in DISPATCHER_MODES:
        raise ValueError(f"CONNECTOR_DISPATCHER_MODE must be one of: {', '.join(DISPATCHER_MODES)}")
    if mode == "http":
        return HttpConnectorDispatcher(endpoints=dict(config.dispatcher.endpoints))
    return StubConnectorDispatcher()


def build_runtime_container(role: RuntimeRole, *, config: ControlPlaneConfig | None = None) -> RuntimeContainer:
    if config is None:
        config = load_control_plane_config(file_path=os.getenv("CONNECTOR_PLANE_CONFIG") or DEFAULT_CONFIG_PATH)

    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    delivery_store: DeliveryStore
    policy_store: PolicyStore
    audit_log: AuditLog
    if database_url:
        # asyncpg is only imported when a database is configured.
        from connector_plane.repositories.postgres import (
            AsyncpgPoolManager,
            PostgresAuditLog,
            PostgresDeliveryStore,
            PostgresPolicyStore,
        )

        pool_manager = AsyncpgPoolManager(dsn=database_url)
        delivery_store = PostgresDeliveryStore(pool_manager=pool_manager)
        policy_store = PostgresPolicyStore(pool_manager=pool_manager)
        audit_log = PostgresAuditLog(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
        mode = "postgres"
    else:
        delivery_store = InMemoryDeliveryStore()
        policy_store = InMemoryPolicyStore()
        audit_log = InMemoryAuditLog()
        mode = "in_memory"

    dispatcher = build_dispatcher(config)
    pump = DeliveryPump(
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        delivery_defaults=config.delivery,
        backpressure_defaults=config.backpressure,
    )
    reporting = ConnectorReporting(delivery_store=delivery_store)
    lifecycle = BackpressurePolicyLifecycle(
        policy_store=policy_store,
        audit_log=audit_log,
        backpressure_defaults=config.backpressure,
        draft_defaults=config.drafts,
    )
    guardian = GuardianController(
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        pump=pump,
        reporting=reporting,
        guardian_defaults=config.guardian,
    )
    api_deps = ApiDeps(
        config=config,
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        pump=pump,
        reporting=reporting,
        lifecycle=lifecycle,
        guardian=guardian,
    )

    worker_loop: WorkerLoop | None = None
    if role.name in WORKER_STAGES:
        worker_deps = WorkerDeps(
            delivery_store=delivery_store,
            policy_store=policy_store,
            pump=pump,
            guardian=guardian,
            lifecycle=lifecycle,
            pump_defaults=config.pump,
        )
        worker_loop = WorkerLoop(
            role=role.name,
            stage=WORKER_STAGES[role.name],
            tick=build_tick_handler(role.name, worker_deps),
        )

    return RuntimeContainer(
        config=config,
        mode=mode,
        delivery_store=delivery_store,
        policy_store=policy_store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
