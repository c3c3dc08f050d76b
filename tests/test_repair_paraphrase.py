from __future__ import annotations

import json

import pytest

from cookbook_ingest.ingest_core.guardrail.repair import (
    REPAIR_PHASE,
    RepairParaphraseService,
    parse_rephrased_sections,
    split_steps,
)
from cookbook_ingest.ingest_core.guardrail.similarity import SimilarityDetector
from cookbook_ingest.models.ingest import RecipeDraft
from cookbook_ingest.models.recipe import ExtractionMethod, RecipeSource
from tests.fakes import ScriptedLlm, make_recipe

SOURCE = (
    "Whisk the eggs with the sugar until the mixture turns pale and doubles in volume. "
    "Fold in the sifted flour gently with a large metal spoon so the batter keeps its air. "
    "Pour the batter into the prepared tin and bake in the middle of the oven for twenty minutes."
)

REPHRASED = json.dumps(
    {
        "sections": [
            {
                "name": "Instructions",
                "rephrased_text": "1. Beat eggs and sugar until light.\n2. Combine with flour carefully.\n3. Transfer to a pan; cook 20 min.",
            }
        ]
    }
)


def _detector() -> SimilarityDetector:
    return SimilarityDetector(overlap_warning=8, overlap_error=15, ngram_warning=0.2, ngram_error=0.35)


def _draft(instructions: list[str]) -> RecipeDraft:
    return RecipeDraft(
        recipe=make_recipe(description="Light sponge.", instructions=instructions),
        source=RecipeSource(url="https://example.com/sponge", extraction_method=ExtractionMethod.JSON_LD),
    )


def test_split_steps_strips_numbering():
    assert split_steps("1. Mix.\n2) Bake well.\nStep 3: Cool.") == ["Mix.", "Bake well.", "Cool."]


def test_split_steps_falls_back_to_sentences():
    assert split_steps("Mix everything. Bake until golden.") == ["Mix everything.", "Bake until golden."]


def test_parse_rephrased_sections_accepts_fenced_json():
    raw = "```json\n" + REPHRASED + "\n```"
    sections = parse_rephrased_sections(raw)
    assert list(sections) == ["instructions"]
    assert parse_rephrased_sections("not json") == {}


@pytest.mark.asyncio
async def test_repair_rewrites_violating_instructions():
    llm = ScriptedLlm(REPHRASED)
    service = RepairParaphraseService(llm, _detector(), max_attempts=2)

    result = await service.repair(_draft(SOURCE.split(". ")), SOURCE)

    assert result.success is True
    assert result.attempts == 1
    assert result.repaired_sections == ["Instructions"]
    assert result.draft.recipe.instructions[0] == "Beat eggs and sugar until light."
    assert result.draft.similarity_report is not None
    assert result.draft.similarity_report.violates_policy is False
    assert llm.phases == [REPAIR_PHASE]
    assert llm.calls[0]["temperature"] == 0.7
    assert "Instructions" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_repair_skips_llm_when_nothing_violates():
    llm = ScriptedLlm()
    service = RepairParaphraseService(llm, _detector())

    result = await service.repair(_draft(["Beat eggs.", "Bake."]), SOURCE)

    assert result.success is True
    assert result.attempts == 0
    assert llm.calls == []


@pytest.mark.asyncio
async def test_repair_gives_up_after_max_attempts_and_flags_draft():
    llm = ScriptedLlm("I cannot help with that.", "still not json")
    service = RepairParaphraseService(llm, _detector(), max_attempts=2)

    result = await service.repair(_draft(SOURCE.split(". ")), SOURCE)

    assert result.still_violates_policy is True
    assert result.attempts == 2
    assert result.error == "Could not parse rephrased sections from LLM response."
    errors = result.draft.validation_report.errors
    assert len(errors) == 1
    assert errors[0].startswith("High verbatim similarity detected")


@pytest.mark.asyncio
async def test_repair_stops_on_llm_failure():
    llm = ScriptedLlm(RuntimeError("gateway timeout"), REPHRASED)
    service = RepairParaphraseService(llm, _detector(), max_attempts=3)

    result = await service.repair(_draft(SOURCE.split(". ")), SOURCE)

    assert result.still_violates_policy is True
    assert result.attempts == 1
    assert result.error == "gateway timeout"
    assert len(llm.calls) == 1
