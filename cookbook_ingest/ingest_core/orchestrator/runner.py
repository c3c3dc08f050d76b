from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import ValidationError

from cookbook_ingest.config import settings
from cookbook_ingest.errors import ErrorCode, ErrorPayload, IngestError
from cookbook_ingest.ingest_core.extract.service import ExtractionOutcome, RecipeExtractionOrchestrator
from cookbook_ingest.ingest_core.fetch.circuit_breaker import CircuitBreaker
from cookbook_ingest.ingest_core.fetch.service import FetchResult, FetchService, validate_url
from cookbook_ingest.ingest_core.guardrail.repair import RepairParaphraseService
from cookbook_ingest.ingest_core.guardrail.similarity import SimilarityDetector, violation_message
from cookbook_ingest.ingest_core.normalize.service import NormalizeService, render_patch_markdown
from cookbook_ingest.ingest_core.orchestrator import phases
from cookbook_ingest.ingest_core.orchestrator.phases import PhasePlan, plan_for
from cookbook_ingest.ingest_core.search.resolver import SearchProviderResolver
from cookbook_ingest.ingest_core.validate.service import RecipeValidator
from cookbook_ingest.models.ingest import (
    ArtifactRef,
    IngestMode,
    IngestTask,
    RecipeDraft,
    TaskState,
    TaskStatus,
)
from cookbook_ingest.models.recipe import ExtractionMethod, Recipe, RecipeSource
from cookbook_ingest.models.search import SearchCandidate, SearchRequest
from cookbook_ingest.ports import RECIPES, BlobStore, DocumentStore, LlmChat, TaskBus
from cookbook_ingest.services import streaming
from cookbook_ingest.services.artifacts import ArtifactStore
from cookbook_ingest.services.logger import log_phase
from cookbook_ingest.tools.url_utils import compute_url_hash, site_name


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Superseded(Exception):
    """The stored task state no longer accepts writes from this run."""

    def __init__(self, state: TaskState):
        super().__init__(f"Task {state.task_id} is already {state.status}")
        self.state = state


@dataclass
class _Run:
    task: IngestTask
    plan: PhasePlan
    progress: int = 0
    phase: str = phases.INITIALIZATION
    artifacts: list[ArtifactRef] = field(default_factory=list)


class IngestPhaseRunner:
    """Drives one ingest task through its phases, reporting state and progress.

    Every failure inside a run is mapped to an error payload on a FAILED task
    state. Cancellation is the exception: it propagates to the caller.
    """

    def __init__(
        self,
        bus: TaskBus,
        store: DocumentStore,
        blobs: BlobStore,
        *,
        llm: LlmChat | None = None,
        fetch_service: FetchService | None = None,
        extractor: RecipeExtractionOrchestrator | None = None,
        validator: RecipeValidator | None = None,
        detector: SimilarityDetector | None = None,
        repair_service: RepairParaphraseService | None = None,
        normalize_service: NormalizeService | None = None,
        search_resolver: SearchProviderResolver | None = None,
        auto_repair: bool | None = None,
        max_candidates: int | None = None,
    ):
        self.bus = bus
        self.store = store
        self.artifacts = ArtifactStore(blobs)
        self.llm = llm
        self.fetch_service = fetch_service or FetchService(CircuitBreaker())
        self.extractor = extractor or RecipeExtractionOrchestrator(llm)
        self.validator = validator or RecipeValidator()
        self.detector = detector or SimilarityDetector()
        self.repair_service = repair_service or (
            RepairParaphraseService(llm, self.detector) if llm is not None else None
        )
        self.normalize_service = normalize_service or NormalizeService(llm)
        self.search_resolver = search_resolver
        self.auto_repair = settings.guardrail_auto_repair if auto_repair is None else auto_repair
        self.max_candidates = max(
            int(settings.max_discovery_candidates if max_candidates is None else max_candidates), 1
        )

    async def process_next(self) -> TaskState | None:
        payload = await self.bus.read_next_task()
        if payload is None:
            return None
        return await self.run(payload)

    async def serve(self, stop: asyncio.Event, poll_interval: float = 1.0) -> None:
        """Process queued tasks until ``stop`` is set."""
        while not stop.is_set():
            state = await self.process_next()
            if state is None:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run(self, payload: Any) -> TaskState:
        task_id = "unknown"
        if isinstance(payload, dict):
            task_id = str(payload.get("taskId") or payload.get("task_id") or task_id)

        try:
            task = IngestTask.model_validate(payload)
        except ValidationError as exc:
            error = IngestError(
                ErrorCode.INVALID_PAYLOAD,
                "Task payload is invalid",
                details={"errors": [e.get("msg") for e in exc.errors()[:10]]},
                phase=phases.INITIALIZATION,
            )
            return await self._fail(task_id, 0, error.to_payload())

        existing = await self.bus.get_task_state(task.task_id)
        if existing is not None and existing.status != TaskStatus.PENDING:
            logger.info(f"Skipping task {task.task_id}: already {existing.status}")
            return existing

        run = _Run(task=task, plan=plan_for(task.mode))
        try:
            if task.mode == IngestMode.NORMALIZE:
                return await self._run_normalize(run)
            return await self._run_ingest(run)
        except _Superseded as exc:
            logger.warning(f"Stopping run for task {task.task_id}: {exc}")
            return exc.state
        except IngestError as exc:
            payload = exc.to_payload()
            payload.phase = exc.phase or run.phase
            return await self._fail(task.task_id, run.progress, payload)
        except Exception as exc:
            logger.exception(f"Unhandled error in task {task.task_id} during {run.phase}")
            payload = ErrorPayload(
                code=ErrorCode.INTERNAL_ERROR,
                message=str(exc) or type(exc).__name__,
                details={"exception": type(exc).__name__},
                phase=run.phase,
            )
            return await self._fail(task.task_id, run.progress, payload)

    async def _write_state(self, state: TaskState) -> TaskState:
        current = await self.bus.get_task_state(state.task_id)
        if current is not None and not current.status.can_transition(state.status):
            raise _Superseded(current)
        return await self.bus.set_task_state(state)

    async def _enter(self, run: _Run, phase: str, message: str, fraction: float = 0.0) -> None:
        run.phase = phase
        run.progress = max(run.progress, run.plan.progress_for(phase, fraction))
        await self._write_state(
            TaskState(
                task_id=run.task.task_id,
                status=TaskStatus.RUNNING,
                current_phase=phase,
                progress=run.progress,
                last_updated=_utc_now(),
            )
        )
        await self.bus.publish_event(streaming.ingest_progress(run.task.task_id, phase, run.progress, message))
        log_phase(run.task.task_id, phase, "running", run.progress)

    async def _fail(self, task_id: str, progress: int, error: ErrorPayload) -> TaskState:
        try:
            state = await self._write_state(
                TaskState(
                    task_id=task_id,
                    status=TaskStatus.FAILED,
                    current_phase=error.phase,
                    progress=progress,
                    error=error,
                    last_updated=_utc_now(),
                )
            )
        except _Superseded as exc:
            logger.warning(f"Not failing task {task_id}: {exc}")
            return exc.state
        log_phase(task_id, error.phase or phases.INITIALIZATION, "failed", progress, error.model_dump())
        await self.bus.publish_event(streaming.failed(task_id, error))
        return state

    async def _save_text(self, run: _Run, name: str, text: str) -> None:
        ref = await self.artifacts.save_text(run.task.thread_id, run.task.task_id, run.phase, name, text)
        run.artifacts.append(ref)

    async def _save_json(self, run: _Run, name: str, payload: Any) -> None:
        ref = await self.artifacts.save_json(run.task.thread_id, run.task.task_id, run.phase, name, payload)
        run.artifacts.append(ref)

    async def _discover(self, run: _Run) -> list[SearchCandidate]:
        await self._enter(run, phases.DISCOVER, f"Searching for '{run.task.query}'")
        if self.search_resolver is None:
            raise IngestError(ErrorCode.NO_SEARCH_RESULTS, "No search providers are configured")

        constraints = run.task.constraints
        request = SearchRequest(
            query=run.task.query or "",
            max_results=min(int(constraints.get("maxResults") or self.max_candidates), self.max_candidates),
            market=constraints.get("market"),
            safe_search=constraints.get("safeSearch"),
            site_restrictions=list(constraints.get("siteRestrictions") or []),
        )
        response = await self.search_resolver.search(request, run.task.search_provider)
        result = response.result
        if not result.success:
            raise IngestError(
                result.error_code or ErrorCode.NO_SEARCH_RESULTS,
                result.error or "Search failed",
                details={"provider": response.provider, "fallbackFrom": response.fallback_from},
            )
        if not result.candidates:
            raise IngestError(
                ErrorCode.NO_SEARCH_RESULTS,
                f"No results for query '{run.task.query}'",
                details={"provider": response.provider},
            )

        await self._save_json(
            run,
            "candidates.json",
            {
                "provider": response.provider,
                "fallbackFrom": response.fallback_from,
                "fallbackReason": response.fallback_reason,
                "candidates": [c.to_json_dict() for c in result.candidates],
            },
        )
        return result.candidates

    async def _fetch(self, run: _Run, url: str) -> FetchResult:
        await self._enter(run, phases.FETCH, f"Fetching {url}")
        validation = validate_url(url)
        if not validation.ok:
            raise IngestError(validation.error_code or ErrorCode.INVALID_URL_FORMAT, validation.message or "Invalid URL")

        fetched = await self.fetch_service.fetch(url)
        if not fetched.success:
            raise IngestError(
                fetched.error_code or ErrorCode.FETCH_FAILED,
                fetched.error or "Fetch failed",
                details={"url": url, "statusCode": fetched.status_code, "retryCount": fetched.retry_count},
            )
        return fetched

    async def _extract(self, run: _Run, fetched: FetchResult) -> ExtractionOutcome:
        page_url = fetched.final_url or fetched.url
        await self._enter(run, phases.EXTRACT, "Extracting recipe")
        outcome = await self.extractor.extract(
            fetched.content or "",
            page_url,
            prompt_overrides=run.task.prompt_overrides,
        )
        await self._save_text(run, "snapshot.txt", outcome.page.text)
        await self._save_json(
            run,
            "page.meta.json",
            {
                "url": fetched.url,
                "finalUrl": page_url,
                "statusCode": fetched.status_code,
                "contentType": fetched.content_type,
                "contentLength": fetched.content_length,
                "retrievedAt": fetched.retrieved_at.isoformat() if fetched.retrieved_at else None,
                "sanitizer": outcome.page.method,
                **outcome.page.metadata.to_dict(),
            },
        )
        if outcome.result.method == ExtractionMethod.JSON_LD and outcome.result.raw_source:
            await self._save_text(run, "recipe.jsonld", outcome.result.raw_source)
        return outcome

    def _source(self, url: str, fetched: FetchResult, outcome: ExtractionOutcome) -> RecipeSource:
        return RecipeSource(
            url=url,
            url_hash=compute_url_hash(url),
            site_name=outcome.page.metadata.site_name or site_name(url),
            author=outcome.result.author,
            retrieved_at=fetched.retrieved_at or _utc_now(),
            extraction_method=outcome.result.method,
        )

    async def _run_ingest(self, run: _Run) -> TaskState:
        task = run.task
        candidates: list[SearchCandidate] = []
        url = task.url or ""
        if task.mode == IngestMode.QUERY:
            candidates = await self._discover(run)
            url = candidates[0].url

        fetched = await self._fetch(run, url)
        outcome = await self._extract(run, fetched)
        recipe = outcome.result.recipe
        if recipe is None:
            raise IngestError(
                ErrorCode.LLM_EXTRACTION_FAILED,
                outcome.result.error or "No extractor produced a recipe",
                details={"url": url, "method": str(outcome.result.method)},
            )

        await self._enter(run, phases.VALIDATE, "Validating draft")
        source_text = outcome.page.text
        report = self.validator.validate(recipe)
        similarity = self.detector.analyze_draft(source_text, recipe)
        draft = RecipeDraft(
            recipe=recipe,
            source=self._source(url, fetched, outcome),
            validation_report=report,
            similarity_report=similarity,
            candidates=candidates,
            confidence=outcome.result.confidence,
        )
        await self._save_json(run, "similarity.json", similarity.to_json_dict())

        if similarity.violates_policy:
            draft = await self._repair(run, draft, source_text)

        await self._enter(run, phases.REVIEW_READY, "Draft ready for review")
        await self._save_json(run, "draft.recipe.json", draft.recipe.to_json_dict())
        return await self._review_ready(
            run,
            draft,
            extraction_method=str(outcome.result.method),
            llmCalls=outcome.llm_calls,
        )

    async def _repair(self, run: _Run, draft: RecipeDraft, source_text: str) -> RecipeDraft:
        await self._enter(run, phases.REPAIR_PARAPHRASE, "Rephrasing text that mirrors the source")
        if not self.auto_repair or self.repair_service is None:
            message = violation_message(draft.similarity_report)
            report = draft.validation_report.model_copy(
                update={"errors": [*draft.validation_report.errors, message]}
            )
            return draft.model_copy(update={"validation_report": report})

        result = await self.repair_service.repair(draft, source_text, prompt_overrides=run.task.prompt_overrides)
        await self._save_json(
            run,
            "repair.json",
            {
                "attempts": result.attempts,
                "repairedSections": result.repaired_sections,
                "stillViolatesPolicy": result.still_violates_policy,
                "details": result.details,
                "error": result.error,
                "similarity": result.report.to_json_dict(),
            },
        )
        draft = result.draft
        # Rephrased text can trip schema rules, so validate again.
        validation = self.validator.validate(draft.recipe)
        if result.still_violates_policy:
            validation = validation.model_copy(
                update={"errors": [*validation.errors, violation_message(result.report)]}
            )
        return draft.model_copy(update={"validation_report": validation})

    async def _run_normalize(self, run: _Run) -> TaskState:
        task = run.task
        await self._enter(run, phases.FETCH_RECIPE, f"Loading recipe {task.recipe_id}")
        doc, _ = await self.store.get(RECIPES, task.recipe_id or "")
        if doc is None:
            raise IngestError(ErrorCode.RECIPE_NOT_FOUND, f"Recipe {task.recipe_id} not found")
        recipe = Recipe.model_validate(doc)

        await self._enter(run, phases.NORMALIZE, "Generating normalization patches")
        response = await self.normalize_service.generate_patches(
            recipe,
            task.focus_areas,
            prompt_overrides=task.prompt_overrides,
        )
        response = self.normalize_service.with_original_values(recipe, response)
        patch_errors = self.normalize_service.validate_patches(response.patches)
        await self._save_json(run, "normalize.patch.json", response.to_json_dict())
        await self._save_text(run, "normalize.diff.md", render_patch_markdown(response))

        report = self.validator.validate(recipe)
        draft = RecipeDraft(
            recipe=recipe,
            source=recipe.source or RecipeSource(extraction_method=ExtractionMethod.MANUAL),
            validation_report=report.model_copy(update={"errors": [*report.errors, *patch_errors]}),
            normalize_patch_response=response,
        )

        await self._enter(run, phases.REVIEW_READY, "Patches ready for review")
        return await self._review_ready(
            run,
            draft,
            patchCount=len(response.patches),
            riskCounts=response.risk_counts(),
        )

    async def _review_ready(self, run: _Run, draft: RecipeDraft, **event_data: Any) -> TaskState:
        draft = draft.model_copy(update={"artifacts": list(run.artifacts)})
        run.phase = phases.FINALIZE
        run.progress = 100
        state = await self._write_state(
            TaskState(
                task_id=run.task.task_id,
                status=TaskStatus.REVIEW_READY,
                current_phase=phases.REVIEW_READY,
                progress=100,
                result=draft.to_json_dict(),
                last_updated=_utc_now(),
            )
        )
        extraction_method = event_data.pop("extraction_method", None)
        await self.bus.publish_event(
            streaming.review_ready(run.task.task_id, extraction_method=extraction_method, **event_data)
        )
        log_phase(run.task.task_id, phases.REVIEW_READY, "completed", 100)
        return state
