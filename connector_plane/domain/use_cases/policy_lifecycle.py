from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Literal, TypeVar

from connector_plane.domain.contracts import AuditLog, PolicyStore
from connector_plane.domain.control_plane_config import BackpressureDefaults, DraftDefaults
from connector_plane.domain.errors import (
    ConcurrencyError,
    DomainError,
    DraftNotReadyError,
    NotFoundError,
    ValidationError,
)
from connector_plane.domain.events import (
    BackpressureDraftApprovedPayload,
    BackpressureDraftUpdatedPayload,
    BackpressurePolicyUpdatedPayload,
)
from connector_plane.domain.models import BackpressurePolicy, BackpressurePolicyDraft, DraftApproval
from connector_plane.domain.patch import UNSET, PolicyPatch, Unset
from connector_plane.domain.use_cases.backpressure import (
    build_candidate_policy,
    default_policy,
    policy_to_json,
    validate_policy_patch,
)
from connector_plane.domain.validation import (
    ACTIVATION_BATCH_LIMIT_BOUNDS,
    REQUIRED_APPROVALS_BOUNDS,
    normalize_actor,
    require_actor,
    require_int,
)

logger = logging.getLogger("runtime")

ActivationBlockReason = Literal["activation_time_pending", "approvals_pending"]
DraftActivationStatus = Literal["ready", "blocked", "applied", "failed"]
T = TypeVar("T")

MAX_WRITE_RETRIES = 3
ACTIVATION_BATCH_LIMIT = 100


@dataclass(frozen=True)
class ActivationStatus:
    ready: bool
    reason: ActivationBlockReason | None
    activation_ready: bool
    approval_count: int
    required_approvals: int
    approvals_remaining: int


@dataclass(frozen=True)
class ApprovalResult:
    draft: BackpressurePolicyDraft
    counted: bool
    activation: ActivationStatus


@dataclass(frozen=True)
class DraftActivationOutcome:
    project_id: str
    status: DraftActivationStatus
    reason: str | None
    message: str
    activation: ActivationStatus
    policy: BackpressurePolicy | None = None


@dataclass(frozen=True)
class DraftActivationBatch:
    dry_run: bool
    total_draft_count: int
    outcomes: tuple[DraftActivationOutcome, ...]

    @property
    def scanned(self) -> int:
        return len(self.outcomes)

    @property
    def limited(self) -> bool:
        return self.total_draft_count > self.scanned

    def count(self, status: DraftActivationStatus) -> int:
        return sum(1 for item in self.outcomes if item.status == status)


def evaluate_activation(draft: BackpressurePolicyDraft, now: datetime) -> ActivationStatus:
    """Time gate first, then the approval count."""
    approval_count = len({normalize_actor(item.actor) for item in draft.approvals if item.actor.strip()})
    required = max(REQUIRED_APPROVALS_BOUNDS.minimum, min(REQUIRED_APPROVALS_BOUNDS.maximum, draft.required_approvals))
    remaining = max(0, required - approval_count)

    if draft.activate_at is not None and now < draft.activate_at:
        return ActivationStatus(
            ready=False,
            reason="activation_time_pending",
            activation_ready=False,
            approval_count=approval_count,
            required_approvals=required,
            approvals_remaining=remaining,
        )
    if remaining > 0:
        return ActivationStatus(
            ready=False,
            reason="approvals_pending",
            activation_ready=True,
            approval_count=approval_count,
            required_approvals=required,
            approvals_remaining=remaining,
        )
    return ActivationStatus(
        ready=True,
        reason=None,
        activation_ready=True,
        approval_count=approval_count,
        required_approvals=required,
        approvals_remaining=0,
    )


@dataclass
class BackpressurePolicyLifecycle:
    """Draft, approve and apply backpressure policy changes for a project.

    Draft writes are version-checked; a lost race re-reads the draft and
    retries up to `max_write_retries` times before surfacing ConcurrencyError.
    """

    policy_store: PolicyStore
    audit_log: AuditLog
    backpressure_defaults: BackpressureDefaults
    draft_defaults: DraftDefaults
    max_write_retries: int = MAX_WRITE_RETRIES

    async def live_policy(self, *, project_id: str) -> BackpressurePolicy:
        stored = await self.policy_store.get_policy(project_id=project_id)
        if stored is not None:
            return stored
        return default_policy(project_id, self.backpressure_defaults)

    async def get_draft(self, *, project_id: str) -> BackpressurePolicyDraft:
        draft = await self.policy_store.get_draft(project_id=project_id)
        if draft is None:
            raise NotFoundError(f"no backpressure draft for project '{project_id}'")
        return draft

    async def upsert_draft(
        self,
        *,
        project_id: str,
        patch: PolicyPatch,
        actor: str,
        now: datetime,
        required_approvals: int | None = None,
        activate_at: datetime | None | Unset = UNSET,
    ) -> BackpressurePolicyDraft:
        actor = require_actor(actor)
        patch = validate_policy_patch(patch)
        if required_approvals is not None:
            require_int("required_approvals", required_approvals, REQUIRED_APPROVALS_BOUNDS)

        async def _write() -> BackpressurePolicyDraft:
            existing = await self.policy_store.get_draft(project_id=project_id)
            if existing is None:
                if patch.is_empty():
                    raise ValidationError("a new draft needs at least one policy field")
                draft = BackpressurePolicyDraft(
                    project_id=project_id,
                    proposed=patch,
                    required_approvals=required_approvals or self.draft_defaults.required_approvals,
                    approvals=(),
                    activate_at=None if activate_at is UNSET else activate_at,  # type: ignore[arg-type]
                    created_by=actor,
                    created_at=now,
                    updated_at=now,
                )
                return await self.policy_store.save_draft(draft=draft, expected_version=None)

            # Any amendment invalidates approvals given for the previous content.
            amended = replace(
                existing,
                proposed=existing.proposed.merged_with(patch),
                required_approvals=required_approvals or existing.required_approvals,
                activate_at=existing.activate_at if activate_at is UNSET else activate_at,
                approvals=(),
                updated_at=now,
            )
            return await self.policy_store.save_draft(draft=amended, expected_version=existing.version)

        saved = await self._with_version_retry(_write, project_id=project_id)
        await self.audit_log.append_event(
            actor=actor,
            payload=BackpressureDraftUpdatedPayload(
                project_id=project_id,
                action="upserted",
                proposed=saved.proposed.to_json(),
                required_approvals=saved.required_approvals,
                activate_at=saved.activate_at,
            ),
        )
        return saved

    async def record_approval(self, *, project_id: str, actor: str, now: datetime) -> ApprovalResult:
        actor = require_actor(actor)
        approver = normalize_actor(actor)

        async def _write() -> tuple[BackpressurePolicyDraft, bool]:
            draft = await self.get_draft(project_id=project_id)
            if any(normalize_actor(item.actor) == approver for item in draft.approvals):
                return draft, False
            approved = replace(
                draft,
                approvals=(*draft.approvals, DraftApproval(actor=approver, approved_at=now)),
                updated_at=now,
            )
            saved = await self.policy_store.save_draft(draft=approved, expected_version=draft.version)
            return saved, True

        draft, counted = await self._with_version_retry(_write, project_id=project_id)
        activation = evaluate_activation(draft, now)
        if counted:
            await self.audit_log.append_event(
                actor=actor,
                payload=BackpressureDraftApprovedPayload(
                    project_id=project_id,
                    approver=approver,
                    approval_count=activation.approval_count,
                    required_approvals=activation.required_approvals,
                ),
            )
        return ApprovalResult(draft=draft, counted=counted, activation=activation)

    async def apply(self, *, project_id: str, actor: str, now: datetime) -> BackpressurePolicy:
        """Apply the current draft regardless of readiness. NotFoundError when there is none."""

        async def _write() -> BackpressurePolicy:
            draft = await self.get_draft(project_id=project_id)
            return await self._apply_draft(draft, actor=actor, now=now)

        return await self._with_version_retry(_write, project_id=project_id)

    async def activate_draft(self, *, project_id: str, actor: str, now: datetime) -> BackpressurePolicy:
        """Apply the draft only when its activation time and approvals allow it."""

        async def _write() -> BackpressurePolicy:
            draft = await self.get_draft(project_id=project_id)
            activation = evaluate_activation(draft, now)
            if not activation.ready:
                raise DraftNotReadyError(activation.reason or "not_ready")
            return await self._apply_draft(draft, actor=actor, now=now)

        return await self._with_version_retry(_write, project_id=project_id)

    async def activate_ready_drafts(
        self,
        *,
        actor: str,
        now: datetime,
        dry_run: bool = False,
        project_ids: Sequence[str] | None = None,
        limit: int = ACTIVATION_BATCH_LIMIT,
    ) -> DraftActivationBatch:
        """Evaluate pending drafts and apply every ready one.

        Unscheduled drafts are visited first, then by activate_at, ties broken
        by updated_at. A dry run writes nothing and reports ready drafts as
        "ready". A draft whose apply fails is reported and the batch continues.
        """
        actor = require_actor(actor)
        require_int("limit", limit, ACTIVATION_BATCH_LIMIT_BOUNDS)
        wanted = set(project_ids) if project_ids is not None else None

        drafts: list[BackpressurePolicyDraft] = []
        for project_id in await self.policy_store.list_draft_project_ids():
            if wanted is not None and project_id not in wanted:
                continue
            draft = await self.policy_store.get_draft(project_id=project_id)
            if draft is not None:
                drafts.append(draft)
        drafts.sort(key=_activation_order)

        outcomes = []
        for draft in drafts[:limit]:
            outcomes.append(await self._activate_one(draft, actor=actor, now=now, dry_run=dry_run))
        batch = DraftActivationBatch(dry_run=dry_run, total_draft_count=len(drafts), outcomes=tuple(outcomes))
        logger.info(
            "draft activation batch finished",
            extra={
                "actor": actor,
                "dry_run": dry_run,
                "scanned": batch.scanned,
                "applied": batch.count("applied"),
                "failed": batch.count("failed"),
            },
        )
        return batch

    async def _activate_one(
        self,
        draft: BackpressurePolicyDraft,
        *,
        actor: str,
        now: datetime,
        dry_run: bool,
    ) -> DraftActivationOutcome:
        activation = evaluate_activation(draft, now)
        if not activation.ready:
            if activation.reason == "activation_time_pending":
                message = "activation time has not been reached"
            else:
                message = f"{activation.approvals_remaining} more approval(s) required"
            return DraftActivationOutcome(
                project_id=draft.project_id,
                status="blocked",
                reason=activation.reason,
                message=message,
                activation=activation,
            )
        if dry_run:
            return DraftActivationOutcome(
                project_id=draft.project_id,
                status="ready",
                reason=None,
                message="draft would be applied",
                activation=activation,
            )
        try:
            policy = await self.activate_draft(project_id=draft.project_id, actor=actor, now=now)
        except DomainError as exc:
            # Amended, discarded or applied elsewhere since it was read.
            logger.warning(
                "draft activation failed",
                extra={"project_id": draft.project_id, "actor": actor, "reason": str(exc)},
            )
            return DraftActivationOutcome(
                project_id=draft.project_id,
                status="failed",
                reason="apply_failed",
                message=str(exc),
                activation=activation,
            )
        return DraftActivationOutcome(
            project_id=draft.project_id,
            status="applied",
            reason=None,
            message="draft applied",
            activation=activation,
            policy=policy,
        )

    async def discard_draft(self, *, project_id: str, actor: str) -> None:
        actor = require_actor(actor)
        deleted = await self.policy_store.delete_draft(project_id=project_id)
        if not deleted:
            raise NotFoundError(f"no backpressure draft for project '{project_id}'")
        await self.audit_log.append_event(
            actor=actor,
            payload=BackpressureDraftUpdatedPayload(project_id=project_id, action="discarded"),
        )

    async def _apply_draft(
        self,
        draft: BackpressurePolicyDraft,
        *,
        actor: str,
        now: datetime,
    ) -> BackpressurePolicy:
        live = await self.live_policy(project_id=draft.project_id)
        candidate = build_candidate_policy(live, draft.proposed, now=now, actor=actor)
        applied = await self.policy_store.apply_draft(policy=candidate, expected_version=draft.version)
        await self.audit_log.append_event(
            actor=actor,
            payload=BackpressurePolicyUpdatedPayload(
                project_id=draft.project_id,
                applied_patch=draft.proposed.to_json(),
                policy=policy_to_json(applied),
                approvers=[item.actor for item in draft.approvals],
                required_approvals=draft.required_approvals,
            ),
        )
        logger.info(
            "backpressure policy applied",
            extra={"project_id": draft.project_id, "actor": actor},
        )
        return applied

    async def _with_version_retry(self, operation: Callable[[], Awaitable[T]], *, project_id: str) -> T:
        for attempt in range(1, self.max_write_retries + 1):
            try:
                return await operation()
            except ConcurrencyError:
                if attempt >= self.max_write_retries:
                    raise
                logger.info(
                    "draft write lost a race, retrying",
                    extra={"project_id": project_id, "attempt": attempt},
                )
        raise ConcurrencyError("draft write retries exhausted")


def _activation_order(draft: BackpressurePolicyDraft) -> tuple[bool, datetime, datetime]:
    return (draft.activate_at is not None, draft.activate_at or draft.updated_at, draft.updated_at)
