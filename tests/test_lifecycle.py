from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cookbook_ingest.adapters.memory import InMemoryDocumentStore, InMemoryTaskBus
from cookbook_ingest.errors import ErrorCode
from cookbook_ingest.ingest_core.lifecycle.service import (
    TaskLifecycleService,
    committed_recipe_id,
    sweep_expired_drafts,
)
from cookbook_ingest.models.events import EventType
from cookbook_ingest.models.ingest import RecipeDraft, SimilarityReport, TaskState, TaskStatus
from cookbook_ingest.models.patches import NormalizePatchOperation, NormalizePatchResponse, PatchApplyStatus
from cookbook_ingest.models.recipe import ExtractionMethod, Recipe, RecipeSource
from cookbook_ingest.ports import RECIPES
from tests.fakes import make_recipe

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SOURCE_URL = "https://www.example.com/chicken?utm_source=newsletter"


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class YieldingStore(InMemoryDocumentStore):
    """Suspends on reads so concurrent callers interleave."""

    async def get(self, collection, key):
        await asyncio.sleep(0)
        return await super().get(collection, key)


class SuspendingStore(YieldingStore):
    """Also suspends before queries and writes."""

    async def query(self, collection, predicate):
        await asyncio.sleep(0)
        return await super().query(collection, predicate)

    async def put(self, collection, key, doc):
        await asyncio.sleep(0)
        return await super().put(collection, key, doc)

    async def compare_and_swap(self, collection, key, expected_version, doc):
        await asyncio.sleep(0)
        return await super().compare_and_swap(collection, key, expected_version, doc)


def _draft(**kwargs) -> RecipeDraft:
    data = {
        "recipe": make_recipe(id="draft-abc"),
        "source": RecipeSource(
            url=SOURCE_URL,
            site_name="example.com",
            author="Jamie Cook",
            extraction_method=ExtractionMethod.JSON_LD,
        ),
    }
    data.update(kwargs)
    return RecipeDraft(**data)


async def _seed(bus: InMemoryTaskBus, task_id: str = "task-1", *, draft: RecipeDraft | None = None,
                status: TaskStatus = TaskStatus.REVIEW_READY, last_updated: datetime = NOW) -> TaskState:
    return await bus.set_task_state(
        TaskState(
            task_id=task_id,
            status=status,
            progress=100,
            result=(draft or _draft()).to_json_dict(),
            last_updated=last_updated,
        )
    )


def _service(store, bus, clock=None, **kwargs) -> TaskLifecycleService:
    return TaskLifecycleService(store, bus, clock=clock or Clock(), expiration=timedelta(days=7), **kwargs)


@pytest.mark.asyncio
async def test_commit_persists_recipe_with_provenance():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    state = await _seed(bus)

    result = await _service(store, bus).commit("task-1", state.version)

    assert result.success is True
    assert result.recipe_id == committed_recipe_id("task-1") == "recipe-task-1"
    doc, _ = await store.get(RECIPES, "recipe-task-1")
    recipe = Recipe.model_validate(doc)
    assert recipe.source.url == SOURCE_URL
    assert recipe.source.author == "Jamie Cook"
    assert recipe.source.url_hash and len(recipe.source.url_hash) == 22
    assert recipe.created_at == NOW

    stored = await bus.get_task_state("task-1")
    assert stored.status == TaskStatus.COMMITTED
    assert stored.result == {"recipeId": "recipe-task-1"}
    assert bus.events[-1].event == EventType.INGEST_COMMITTED


@pytest.mark.asyncio
async def test_commit_applies_overrides():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus)

    result = await _service(store, bus).commit("task-1", overrides={"name": "Better Chicken", "prep_time_minutes": 15})

    doc, _ = await store.get(RECIPES, result.recipe_id)
    assert doc["name"] == "Better Chicken"
    assert doc["prepTimeMinutes"] == 15


@pytest.mark.asyncio
async def test_commit_is_idempotent():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    state = await _seed(bus)
    service = _service(store, bus)

    first = await service.commit("task-1", state.version)
    second = await service.commit("task-1", state.version)

    assert first.success and second.success
    assert second.idempotent is True
    assert second.recipe_id == first.recipe_id
    assert store.count(RECIPES) == 1

    strict = await service.commit("task-1", idempotent=False)
    assert strict.error.code == ErrorCode.ALREADY_COMMITTED


@pytest.mark.asyncio
async def test_concurrent_commits_create_one_recipe():
    store = YieldingStore()
    bus = InMemoryTaskBus(store)
    state = await _seed(bus)
    service = _service(store, bus)

    results = await asyncio.gather(*(service.commit("task-1", state.version) for _ in range(5)))

    assert all(r.success for r in results)
    assert {r.recipe_id for r in results} == {"recipe-task-1"}
    assert sum(1 for r in results if not r.idempotent) == 1
    assert store.count(RECIPES) == 1


@pytest.mark.asyncio
async def test_reject_racing_commit_leaves_no_recipe_behind():
    store = SuspendingStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus)
    service = _service(store, bus)

    committed, rejected = await asyncio.gather(service.commit("task-1"), service.reject("task-1"))

    assert rejected.success is True
    assert committed.success is False
    assert committed.error.code == ErrorCode.COMMIT_CONFLICT
    assert (await bus.get_task_state("task-1")).status == TaskStatus.REJECTED
    assert store.count(RECIPES) == 0
    assert [e.event for e in bus.events] == [EventType.INGEST_REJECTED]


@pytest.mark.asyncio
async def test_commit_with_stale_version_conflicts():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    stale = await _seed(bus)
    await _seed(bus)

    result = await _service(store, bus).commit("task-1", stale.version)

    assert result.success is False
    assert result.error.code == ErrorCode.COMMIT_CONFLICT
    assert store.count(RECIPES) == 0


@pytest.mark.asyncio
async def test_commit_reports_missing_rejected_and_running_tasks():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "rejected", status=TaskStatus.REJECTED)
    await _seed(bus, "running", status=TaskStatus.RUNNING)
    service = _service(store, bus)

    assert (await service.commit("missing")).error.code == ErrorCode.TASK_NOT_FOUND
    assert (await service.commit("rejected")).error.code == ErrorCode.TASK_REJECTED
    assert (await service.commit("running")).error.code == ErrorCode.INVALID_TASK_STATE


@pytest.mark.asyncio
async def test_expired_draft_cannot_be_committed():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, last_updated=NOW - timedelta(days=8))

    result = await _service(store, bus).commit("task-1")

    assert result.error.code == ErrorCode.DRAFT_EXPIRED
    assert (await bus.get_task_state("task-1")).status == TaskStatus.EXPIRED
    assert bus.events[-1].event == EventType.INGEST_EXPIRED
    assert store.count(RECIPES) == 0


@pytest.mark.asyncio
async def test_draft_just_inside_expiry_window_commits():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, last_updated=NOW - timedelta(days=7))

    result = await _service(store, bus).commit("task-1")
    assert result.success is True


@pytest.mark.asyncio
async def test_invalid_stored_draft_is_reported():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await bus.set_task_state(
        TaskState(task_id="task-1", status=TaskStatus.REVIEW_READY, result={"recipe": "nope"}, last_updated=NOW)
    )

    result = await _service(store, bus).commit("task-1")
    assert result.error.code == ErrorCode.INVALID_DRAFT


@pytest.mark.asyncio
async def test_policy_violation_blocks_commit_only_when_configured():
    violating = _draft(
        similarity_report=SimilarityReport(max_contiguous_token_overlap=120, max_ngram_similarity=0.6, violates_policy=True)
    )
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "blocked", draft=violating)
    await _seed(bus, "allowed", draft=violating)

    blocked = await _service(store, bus, block_on_violation=True).commit("blocked")
    allowed = await _service(store, bus, block_on_violation=False).commit("allowed")

    assert blocked.error.code == ErrorCode.PARAPHRASE_POLICY_VIOLATION
    assert allowed.success is True


@pytest.mark.asyncio
async def test_duplicate_source_url_adds_warning():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "first")
    await _seed(bus, "second")
    service = _service(store, bus)

    await service.commit("first")
    second = await service.commit("second")

    assert second.success is True
    assert second.warnings == [
        "Duplicate source URL: recipe recipe-first was imported from the same page"
    ]


@pytest.mark.asyncio
async def test_reject_is_idempotent_and_blocks_commit():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus)
    service = _service(store, bus)

    first = await service.reject("task-1", "Not a recipe")
    again = await service.reject("task-1")

    assert first.success is True
    assert again.idempotent is True
    state = await bus.get_task_state("task-1")
    assert state.status == TaskStatus.REJECTED
    assert state.result["rejectionReason"] == "Not a recipe"
    assert (await service.commit("task-1")).error.code == ErrorCode.TASK_REJECTED


@pytest.mark.asyncio
async def test_reject_refuses_committed_task():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus)
    service = _service(store, bus)
    await service.commit("task-1")

    result = await service.reject("task-1")
    assert result.error.code == ErrorCode.INVALID_TASK_STATE


def _normalize_draft() -> RecipeDraft:
    recipe = make_recipe(
        id="recipe-42",
        source=RecipeSource(url="https://example.com/chicken", extraction_method=ExtractionMethod.JSON_LD),
    )
    return RecipeDraft(
        recipe=recipe,
        source=recipe.source,
        normalize_patch_response=NormalizePatchResponse(
            patches=[
                NormalizePatchOperation(op="replace", path="/cuisine", value="Greek", risk_category="low"),
                NormalizePatchOperation(op="replace", path="/servings", value=6, risk_category="high"),
                NormalizePatchOperation(op="remove", path="/instructions/9", risk_category="low"),
            ],
            summary="Tidy",
        ),
    )


@pytest.mark.asyncio
async def test_apply_normalize_patches_updates_existing_recipe():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await store.put(RECIPES, "recipe-42", _normalize_draft().recipe.to_json_dict())
    await _seed(bus, draft=_normalize_draft())

    result = await _service(store, bus).apply_normalize_patches("task-1", max_risk="medium")

    assert result.success is True
    assert result.recipe_id == "recipe-42"
    assert result.warnings == ["/instructions/9: Array index out of bounds: 9"]
    doc, _ = await store.get(RECIPES, "recipe-42")
    assert doc["cuisine"] == "Greek"
    assert doc["servings"] == 4
    state = await bus.get_task_state("task-1")
    assert state.result == {"recipeId": "recipe-42", "patchSummary": "Applied 1/2 patches, 1 failed"}


@pytest.mark.asyncio
async def test_apply_normalize_patches_requires_matching_patches():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "plain")
    await _seed(bus, "normalize", draft=_normalize_draft())
    service = _service(store, bus)

    assert (await service.apply_normalize_patches("plain")).error.code == ErrorCode.NO_PATCHES
    assert (await service.apply_normalize_patches("normalize", indices=[7])).error.code == ErrorCode.NO_PATCHES
    failed = await service.apply_normalize_patches("normalize", indices=[2])
    assert failed.error.code == ErrorCode.INVALID_PATCH
    assert failed.patch_result is not None
    assert failed.patch_result.status == PatchApplyStatus.PARTIAL
    assert (await bus.get_task_state("normalize")).status == TaskStatus.REVIEW_READY
    assert store.count(RECIPES) == 0


@pytest.mark.asyncio
async def test_expire_stale_moves_only_old_review_ready_tasks():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "old", last_updated=NOW - timedelta(days=10))
    await _seed(bus, "fresh", last_updated=NOW - timedelta(days=1))
    await _seed(bus, "failed", status=TaskStatus.FAILED, last_updated=NOW - timedelta(days=30))

    expired = await _service(store, bus).expire_stale()

    assert expired == ["old"]
    assert (await bus.get_task_state("old")).status == TaskStatus.EXPIRED
    assert (await bus.get_task_state("fresh")).status == TaskStatus.REVIEW_READY
    assert (await bus.get_task_state("failed")).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_sweeper_runs_until_stopped():
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    await _seed(bus, "old", last_updated=NOW - timedelta(days=10))
    service = _service(store, bus)
    stop = asyncio.Event()

    sweeper = asyncio.create_task(sweep_expired_drafts(service, stop, interval_minutes=1))
    for _ in range(10):
        await asyncio.sleep(0)
        if (await bus.get_task_state("old")).status == TaskStatus.EXPIRED:
            break
    stop.set()
    await asyncio.wait_for(sweeper, timeout=1)

    assert (await bus.get_task_state("old")).status == TaskStatus.EXPIRED
