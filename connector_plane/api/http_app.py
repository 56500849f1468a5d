from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException, Query

from connector_plane.api.handlers.backpressure import (
    activate_drafts_handler,
    apply_draft_handler,
    approve_draft_handler,
    discard_draft_handler,
    get_draft_handler,
    get_policy_handler,
    get_recommendation_handler,
    simulate_handler,
    upsert_draft_handler,
)
from connector_plane.api.handlers.deliveries import (
    action_timeline_handler,
    connector_action_handler,
    enqueue_delivery_handler,
    get_insights_handler,
    list_deliveries_handler,
    process_connectors_handler,
    redrive_handler,
)
from connector_plane.api.handlers.deps import ApiDeps
from connector_plane.api.handlers.guardian import (
    get_guardian_policy_handler,
    run_guardian_handler,
    update_guardian_policy_handler,
)
from connector_plane.api.handlers.reliability import get_outcomes_handler, get_reliability_handler
from connector_plane.api.schemas import (
    ActionTimelineResponse,
    ActivateDraftsRequest,
    ActivateDraftsResponse,
    ActorRequest,
    ApproveDraftResponse,
    ConnectorActionRequest,
    ConnectorActionResponse,
    DeliveryListResponse,
    DiscardDraftResponse,
    DraftResponse,
    EnqueueDeliveryRequest,
    EnqueueDeliveryResponse,
    ErrorResponse,
    GuardianPolicyResponse,
    GuardianPolicyUpdateRequest,
    GuardianRunRequest,
    GuardianRunResponse,
    HealthResponse,
    InsightsResponse,
    OutcomesResponse,
    PolicyResponse,
    ProcessConnectorsRequest,
    ProcessConnectorsResponse,
    ReadyResponse,
    RecommendationResponse,
    RedriveRequest,
    RedriveResponse,
    ReliabilityResponse,
    SimulateRequest,
    SimulationResponse,
    UpsertDraftRequest,
    WorkerMetrics,
)
from connector_plane.domain.errors import (
    ConcurrencyError,
    DomainError,
    DraftNotReadyError,
    NotFoundError,
)
from connector_plane.domain.models import DeliveryStatus
from connector_plane.domain.patch import UNSET
from connector_plane.workers.loop import WorkerLoop
from connector_plane.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _http_error(exc: DomainError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ConcurrencyError, DraftNotReadyError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
    mode: str = "in_memory",
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="connector-plane", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            busy_ticks_total=0,
            idle_ticks_total=0,
            errors_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped,
                    ticks_total=worker_state.ticks_total,
                    busy_ticks_total=worker_state.busy_ticks_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                    consecutive_errors=worker_state.consecutive_errors,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    @app.post(
        "/projects/{project_id}/connectors/{connector_type}/deliveries",
        response_model=EnqueueDeliveryResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def enqueue_delivery(
        project_id: str,
        connector_type: str,
        request: EnqueueDeliveryRequest,
    ) -> EnqueueDeliveryResponse:
        deps = _require_deps()
        try:
            return await enqueue_delivery_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                payload=request.payload,
                idempotency_key=request.idempotency_key,
                max_attempts=request.max_attempts,
                actor=request.actor,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/{connector_type}/deliveries",
        response_model=DeliveryListResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def list_deliveries(
        project_id: str,
        connector_type: str,
        status: DeliveryStatus | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> DeliveryListResponse:
        deps = _require_deps()
        try:
            return await list_deliveries_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                status=status,
                limit=limit,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/{connector_type}/insights",
        response_model=InsightsResponse,
        responses=ERROR_RESPONSES,
        tags=["Reliability"],
    )
    async def get_insights(
        project_id: str,
        connector_type: str,
        lookback_hours: int | None = Query(default=None),
    ) -> InsightsResponse:
        deps = _require_deps()
        try:
            return await get_insights_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                lookback_hours=lookback_hours,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/process",
        response_model=ProcessConnectorsResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def process_connectors(project_id: str, request: ProcessConnectorsRequest) -> ProcessConnectorsResponse:
        deps = _require_deps()
        try:
            return await process_connectors_handler(
                deps,
                project_id=project_id,
                connector_types=request.connector_types,
                limit=request.limit,
                actor=request.actor,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/redrive",
        response_model=RedriveResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def redrive(project_id: str, request: RedriveRequest) -> RedriveResponse:
        deps = _require_deps()
        try:
            return await redrive_handler(
                deps,
                project_id=project_id,
                connector_types=request.connector_types,
                limit=request.limit,
                min_dead_letter_minutes=request.min_dead_letter_minutes,
                actor=request.actor,
                process_after_redrive=request.process_after_redrive,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/{connector_type}/action",
        response_model=ConnectorActionResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def run_connector_action(
        project_id: str,
        connector_type: str,
        request: ConnectorActionRequest,
    ) -> ConnectorActionResponse:
        deps = _require_deps()
        try:
            return await connector_action_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                action=request.action,
                limit=request.limit,
                min_dead_letter_minutes=request.min_dead_letter_minutes,
                process_after_redrive=request.process_after_redrive,
                actor=request.actor,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/actions",
        response_model=ActionTimelineResponse,
        responses=ERROR_RESPONSES,
        tags=["Deliveries"],
    )
    async def get_action_timeline(
        project_id: str,
        connector_type: str | None = Query(default=None),
        event_type: str | None = Query(default=None),
        redrive_only: bool = Query(default=False),
        limit: int = Query(default=100),
    ) -> ActionTimelineResponse:
        deps = _require_deps()
        try:
            return await action_timeline_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                event_type=event_type,
                redrive_only=redrive_only,
                limit=limit,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/reliability",
        response_model=ReliabilityResponse,
        responses=ERROR_RESPONSES,
        tags=["Reliability"],
    )
    async def get_reliability(
        project_id: str,
        connector_types: list[str] | None = Query(default=None),
        lookback_hours: int | None = Query(default=None),
    ) -> ReliabilityResponse:
        deps = _require_deps()
        try:
            return await get_reliability_handler(
                deps,
                project_id=project_id,
                connector_types=connector_types,
                lookback_hours=lookback_hours,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/backpressure/outcomes",
        response_model=OutcomesResponse,
        responses=ERROR_RESPONSES,
        tags=["Reliability"],
    )
    async def get_outcomes(
        project_id: str,
        connector_type: str | None = Query(default=None),
        lookback_hours: int | None = Query(default=None),
    ) -> OutcomesResponse:
        deps = _require_deps()
        try:
            return await get_outcomes_handler(
                deps,
                project_id=project_id,
                connector_type=connector_type,
                lookback_hours=lookback_hours,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/backpressure/policy",
        response_model=PolicyResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def get_policy(project_id: str) -> PolicyResponse:
        deps = _require_deps()
        return await get_policy_handler(deps, project_id=project_id)

    @app.get(
        "/projects/{project_id}/connectors/backpressure/draft",
        response_model=DraftResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def get_draft(project_id: str) -> DraftResponse:
        deps = _require_deps()
        try:
            return await get_draft_handler(deps, project_id=project_id)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.put(
        "/projects/{project_id}/connectors/backpressure/draft",
        response_model=DraftResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def upsert_draft(project_id: str, request: UpsertDraftRequest) -> DraftResponse:
        deps = _require_deps()
        # An explicit null clears activate_at; leaving the key out keeps it.
        activate_at = request.activate_at if "activate_at" in request.model_fields_set else UNSET
        try:
            return await upsert_draft_handler(
                deps,
                project_id=project_id,
                actor=request.actor,
                policy=request.policy,
                required_approvals=request.required_approvals,
                activate_at=activate_at,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.delete(
        "/projects/{project_id}/connectors/backpressure/draft",
        response_model=DiscardDraftResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def discard_draft(
        project_id: str,
        actor: str = Query(min_length=1, max_length=128),
    ) -> DiscardDraftResponse:
        deps = _require_deps()
        try:
            return await discard_draft_handler(deps, project_id=project_id, actor=actor)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/backpressure/draft/approvals",
        response_model=ApproveDraftResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def approve_draft(project_id: str, request: ActorRequest) -> ApproveDraftResponse:
        deps = _require_deps()
        try:
            return await approve_draft_handler(deps, project_id=project_id, actor=request.actor)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/backpressure/draft/apply",
        response_model=PolicyResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def apply_draft(project_id: str, request: ActorRequest) -> PolicyResponse:
        deps = _require_deps()
        try:
            return await apply_draft_handler(deps, project_id=project_id, actor=request.actor)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/connectors/backpressure/drafts/activate",
        response_model=ActivateDraftsResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def activate_drafts(request: ActivateDraftsRequest) -> ActivateDraftsResponse:
        deps = _require_deps()
        try:
            return await activate_drafts_handler(
                deps,
                actor=request.actor,
                dry_run=request.dry_run,
                project_ids=request.project_ids,
                limit=request.limit,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/backpressure/simulate",
        response_model=SimulationResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def simulate_policy(project_id: str, request: SimulateRequest) -> SimulationResponse:
        deps = _require_deps()
        try:
            return await simulate_handler(
                deps,
                project_id=project_id,
                policy=request.policy,
                connector_types=request.connector_types,
                requested_limit=request.requested_limit,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/projects/{project_id}/connectors/backpressure/recommendation",
        response_model=RecommendationResponse,
        responses=ERROR_RESPONSES,
        tags=["Backpressure"],
    )
    async def get_recommendation(project_id: str) -> RecommendationResponse:
        deps = _require_deps()
        return await get_recommendation_handler(deps, project_id=project_id)

    @app.get(
        "/projects/{project_id}/connectors/guardian/policy",
        response_model=GuardianPolicyResponse,
        responses=ERROR_RESPONSES,
        tags=["Guardian"],
    )
    async def get_guardian_policy(project_id: str) -> GuardianPolicyResponse:
        deps = _require_deps()
        return await get_guardian_policy_handler(deps, project_id=project_id)

    @app.put(
        "/projects/{project_id}/connectors/guardian/policy",
        response_model=GuardianPolicyResponse,
        responses=ERROR_RESPONSES,
        tags=["Guardian"],
    )
    async def update_guardian_policy(project_id: str, request: GuardianPolicyUpdateRequest) -> GuardianPolicyResponse:
        deps = _require_deps()
        try:
            return await update_guardian_policy_handler(
                deps,
                project_id=project_id,
                updates=request.model_dump(exclude_unset=True, exclude={"actor"}),
                actor=request.actor,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/projects/{project_id}/connectors/guardian/run",
        response_model=GuardianRunResponse,
        responses=ERROR_RESPONSES,
        tags=["Guardian"],
    )
    async def run_guardian(project_id: str, request: GuardianRunRequest) -> GuardianRunResponse:
        deps = _require_deps()
        try:
            return await run_guardian_handler(
                deps,
                project_id=project_id,
                dry_run=request.dry_run,
                actor=request.actor,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    return app
