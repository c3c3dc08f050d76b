from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from loguru import logger
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from cookbook_ingest.config import settings
from cookbook_ingest.errors import ErrorCode, ErrorPayload, IngestError, VersionConflict
from cookbook_ingest.ingest_core.normalize.service import NormalizeService
from cookbook_ingest.models.ingest import RecipeDraft, TaskState, TaskStatus
from cookbook_ingest.models.patches import NormalizePatchResult, RiskCategory
from cookbook_ingest.models.recipe import Recipe
from cookbook_ingest.ports import RECIPES, TASK_STATES, DocumentStore, TaskBus
from cookbook_ingest.services import streaming
from cookbook_ingest.services.logger import log_event
from cookbook_ingest.tools.url_utils import compute_url_hash


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def committed_recipe_id(task_id: str) -> str:
    return f"recipe-{task_id}"


@dataclass(slots=True)
class LifecycleResult:
    success: bool
    task_id: str
    recipe_id: str | None = None
    idempotent: bool = False
    error: ErrorPayload | None = None
    warnings: list[str] = field(default_factory=list)
    patch_result: NormalizePatchResult | None = None

    @classmethod
    def fail(cls, task_id: str, code: ErrorCode, message: str, **details: Any) -> "LifecycleResult":
        return cls(
            success=False,
            task_id=task_id,
            error=ErrorPayload(code=str(code), message=message, details=details),
        )


class TaskLifecycleService:
    """Moves reviewed drafts to their terminal states.

    Every state write is a compare-and-swap on the stored task version, so two
    reviewers racing on the same task produce exactly one committed recipe.
    """

    def __init__(
        self,
        store: DocumentStore,
        bus: TaskBus | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
        expiration: timedelta | None = None,
        block_on_violation: bool | None = None,
        normalize_service: NormalizeService | None = None,
    ):
        self.store = store
        self.bus = bus
        self.clock = clock
        self.expiration = expiration or timedelta(seconds=settings.draft_expiration_seconds)
        self.block_on_violation = (
            settings.guardrail_block_commit_on_violation if block_on_violation is None else block_on_violation
        )
        self.normalize_service = normalize_service or NormalizeService()

    async def get_state(self, task_id: str) -> TaskState | None:
        doc, version = await self.store.get(TASK_STATES, task_id)
        if doc is None:
            return None
        state = TaskState.model_validate(doc)
        state.version = version
        return state

    def is_expired(self, state: TaskState, now: datetime | None = None) -> bool:
        now = now or self.clock()
        last_updated = state.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return last_updated + self.expiration < now

    async def _publish(self, event) -> None:
        if self.bus is not None:
            await self.bus.publish_event(event)

    async def _swap(self, state: TaskState, **updates: Any) -> TaskState:
        new_state = state.model_copy(update={**updates, "last_updated": self.clock()})
        version = await self.store.compare_and_swap(
            TASK_STATES, state.task_id, state.version, new_state.to_json_dict()
        )
        return new_state.model_copy(update={"version": version})

    async def _expire(self, state: TaskState) -> bool:
        try:
            await self._swap(state, status=TaskStatus.EXPIRED)
        except VersionConflict:
            logger.debug(f"Task {state.task_id} changed while expiring; leaving it alone")
            return False
        await self._publish(streaming.expired(state.task_id))
        log_event("ingest.expired", f"Draft for task {state.task_id} expired", task_id=state.task_id)
        return True

    async def _load_reviewable(
        self, task_id: str, version: str | None
    ) -> tuple[TaskState | None, LifecycleResult | None]:
        """Shared gate for commit-like operations; returns the state or a failure."""
        state = await self.get_state(task_id)
        if state is None:
            return None, LifecycleResult.fail(task_id, ErrorCode.TASK_NOT_FOUND, f"Task {task_id} not found")

        if state.status == TaskStatus.COMMITTED:
            recipe_id = (state.result or {}).get("recipeId")
            return None, LifecycleResult(success=True, task_id=task_id, recipe_id=recipe_id, idempotent=True)
        if state.status == TaskStatus.REJECTED:
            return None, LifecycleResult.fail(task_id, ErrorCode.TASK_REJECTED, "Task was rejected")
        if state.status != TaskStatus.REVIEW_READY:
            return None, LifecycleResult.fail(
                task_id,
                ErrorCode.INVALID_TASK_STATE,
                f"Task is {state.status}, expected {TaskStatus.REVIEW_READY}",
                status=str(state.status),
            )

        if self.is_expired(state):
            await self._expire(state)
            return None, LifecycleResult.fail(
                task_id,
                ErrorCode.DRAFT_EXPIRED,
                "Draft has expired",
                lastUpdated=state.last_updated.isoformat(),
            )

        if version is not None and version != state.version:
            return None, LifecycleResult.fail(
                task_id,
                ErrorCode.COMMIT_CONFLICT,
                "Task was modified since it was read",
                expected=version,
                actual=state.version,
            )
        return state, None

    @staticmethod
    def _parse_draft(state: TaskState) -> RecipeDraft:
        try:
            return RecipeDraft.model_validate(state.result or {})
        except ValidationError as exc:
            raise IngestError(ErrorCode.INVALID_DRAFT, f"Stored draft is invalid: {exc.error_count()} error(s)") from exc

    def build_recipe(
        self,
        task_id: str,
        draft: RecipeDraft,
        overrides: dict[str, Any] | None = None,
    ) -> Recipe:
        now = self.clock()
        data = draft.recipe.to_json_dict()
        data.update({to_camel(key): value for key, value in (overrides or {}).items()})
        data["id"] = committed_recipe_id(task_id)
        recipe = Recipe.model_validate(data)

        source = recipe.source
        if not draft.source.is_empty() and (source is None or source.is_empty()):
            source = draft.source.model_copy()
        if source is not None and source.url and not source.url_hash:
            source = source.model_copy(update={"url_hash": compute_url_hash(source.url)})
        return recipe.model_copy(update={"source": source, "created_at": now, "updated_at": now})

    async def _duplicate_warnings(self, recipe: Recipe) -> list[str]:
        url_hash = recipe.source.url_hash if recipe.source else None
        if not url_hash:
            return []
        matches = await self.store.query(
            RECIPES,
            lambda doc: (doc.get("source") or {}).get("urlHash") == url_hash,
        )
        return [
            f"Duplicate source URL: recipe {key} was imported from the same page"
            for key, _, _ in matches
            if key != recipe.id
        ]

    async def _finish_commit(
        self,
        state: TaskState,
        recipe: Recipe,
        *,
        result: dict[str, Any],
        warnings: list[str],
    ) -> LifecycleResult:
        # The task CAS decides the winner; only the winner writes the recipe.
        try:
            await self._swap(state, status=TaskStatus.COMMITTED, result=result, error=None)
        except VersionConflict:
            current = await self.get_state(state.task_id)
            if current is not None and current.status == TaskStatus.COMMITTED:
                recipe_id = (current.result or {}).get("recipeId", recipe.id)
                return LifecycleResult(success=True, task_id=state.task_id, recipe_id=recipe_id, idempotent=True)
            return LifecycleResult.fail(
                state.task_id, ErrorCode.COMMIT_CONFLICT, "Task was modified during commit"
            )

        await self.store.put(RECIPES, recipe.id, recipe.to_json_dict())
        await self._publish(streaming.committed(state.task_id, recipe.id))
        log_event("ingest.committed", f"Committed recipe {recipe.id}", task_id=state.task_id)
        return LifecycleResult(success=True, task_id=state.task_id, recipe_id=recipe.id, warnings=warnings)

    async def commit(
        self,
        task_id: str,
        version: str | None = None,
        overrides: dict[str, Any] | None = None,
        *,
        idempotent: bool = True,
    ) -> LifecycleResult:
        state, early = await self._load_reviewable(task_id, version)
        if early is not None:
            if early.idempotent and not idempotent:
                return LifecycleResult.fail(
                    task_id, ErrorCode.ALREADY_COMMITTED, "Task is already committed", recipeId=early.recipe_id
                )
            return early

        try:
            draft = self._parse_draft(state)
        except IngestError as exc:
            return LifecycleResult(success=False, task_id=task_id, error=exc.to_payload())

        if (
            self.block_on_violation
            and draft.similarity_report is not None
            and draft.similarity_report.violates_policy
        ):
            return LifecycleResult.fail(
                task_id,
                ErrorCode.PARAPHRASE_POLICY_VIOLATION,
                "Draft still reproduces too much of the source text",
                maxOverlap=draft.similarity_report.max_contiguous_token_overlap,
                maxSimilarity=draft.similarity_report.max_ngram_similarity,
            )

        try:
            recipe = self.build_recipe(task_id, draft, overrides)
        except ValidationError as exc:
            return LifecycleResult.fail(
                task_id, ErrorCode.INVALID_DRAFT, f"Overrides produce an invalid recipe: {exc.error_count()} error(s)"
            )

        warnings = await self._duplicate_warnings(recipe)
        for warning in warnings:
            logger.warning(f"Task {task_id}: {warning}")
        return await self._finish_commit(state, recipe, result={"recipeId": recipe.id}, warnings=warnings)

    async def reject(self, task_id: str, reason: str | None = None) -> LifecycleResult:
        state = await self.get_state(task_id)
        if state is None:
            return LifecycleResult.fail(task_id, ErrorCode.TASK_NOT_FOUND, f"Task {task_id} not found")
        if state.status == TaskStatus.REJECTED:
            return LifecycleResult(success=True, task_id=task_id, idempotent=True)
        if not state.status.can_transition(TaskStatus.REJECTED):
            return LifecycleResult.fail(
                task_id,
                ErrorCode.INVALID_TASK_STATE,
                f"Task is {state.status}, expected {TaskStatus.REVIEW_READY}",
                status=str(state.status),
            )

        result = dict(state.result or {})
        if reason:
            result["rejectionReason"] = reason
        try:
            await self._swap(state, status=TaskStatus.REJECTED, result=result)
        except VersionConflict:
            current = await self.get_state(task_id)
            if current is not None and current.status == TaskStatus.REJECTED:
                return LifecycleResult(success=True, task_id=task_id, idempotent=True)
            return LifecycleResult.fail(task_id, ErrorCode.COMMIT_CONFLICT, "Task was modified during reject")

        await self._publish(streaming.rejected(task_id, reason))
        log_event("ingest.rejected", f"Rejected task {task_id}", task_id=task_id, reason=reason)
        return LifecycleResult(success=True, task_id=task_id)

    async def apply_normalize_patches(
        self,
        task_id: str,
        version: str | None = None,
        indices: Iterable[int] | None = None,
        max_risk: RiskCategory | str | None = None,
    ) -> LifecycleResult:
        """Apply reviewer-approved patches to the stored recipe and commit the task."""
        state, early = await self._load_reviewable(task_id, version)
        if early is not None:
            return early

        try:
            draft = self._parse_draft(state)
        except IngestError as exc:
            return LifecycleResult(success=False, task_id=task_id, error=exc.to_payload())

        response = draft.normalize_patch_response
        if response is None or not response.patches:
            return LifecycleResult.fail(task_id, ErrorCode.NO_PATCHES, "Draft has no normalize patches")

        selected = self.normalize_service.select_patches(response, indices, max_risk)
        if not selected:
            return LifecycleResult.fail(task_id, ErrorCode.NO_PATCHES, "No patches matched the review selection")

        patch_result = self.normalize_service.apply_patches(draft.recipe, selected)
        if patch_result.normalized_recipe is None or not patch_result.applied_patches:
            result = LifecycleResult.fail(
                task_id,
                ErrorCode.INVALID_PATCH,
                patch_result.summary,
                failed=[{"path": f.patch.path, "error": f.error} for f in patch_result.failed_patches],
            )
            result.patch_result = patch_result
            return result

        recipe = patch_result.normalized_recipe.model_copy(update={"updated_at": self.clock()})
        outcome = await self._finish_commit(
            state,
            recipe,
            result={"recipeId": recipe.id, "patchSummary": patch_result.summary},
            warnings=[f"{f.patch.path}: {f.error}" for f in patch_result.failed_patches],
        )
        outcome.patch_result = patch_result
        return outcome

    async def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Sweep REVIEW_READY tasks past their expiration into EXPIRED."""
        now = now or self.clock()
        candidates = await self.store.query(
            TASK_STATES, lambda doc: doc.get("status") == TaskStatus.REVIEW_READY.value
        )
        expired: list[str] = []
        for key, doc, version in candidates:
            state = TaskState.model_validate(doc)
            state.version = version
            if self.is_expired(state, now) and await self._expire(state):
                expired.append(key)
        if expired:
            logger.info(f"Expired {len(expired)} stale draft(s)")
        return expired


async def sweep_expired_drafts(
    lifecycle: TaskLifecycleService,
    stop: asyncio.Event,
    interval_minutes: int | None = None,
) -> None:
    """Run ``expire_stale`` on a fixed interval until ``stop`` is set."""
    minutes = settings.expiration_sweep_interval_minutes if interval_minutes is None else interval_minutes
    interval = max(int(minutes), 1) * 60
    while not stop.is_set():
        try:
            await lifecycle.expire_stale()
        except Exception as exc:
            logger.error(f"Draft expiration sweep failed: {exc}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
