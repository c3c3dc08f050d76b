from __future__ import annotations

import json

import pytest

from cookbook_ingest.errors import ErrorCode, IngestError
from cookbook_ingest.ingest_core.extract.heuristic import HeuristicRecipeExtractor
from cookbook_ingest.ingest_core.extract.interfaces import ExtractionContext
from cookbook_ingest.ingest_core.extract.jsonld import JsonLdRecipeExtractor, find_recipe_node
from cookbook_ingest.ingest_core.extract.llm import (
    EXTRACT_PHASE,
    LLM_CONFIDENCE,
    LLM_REPAIRED_CONFIDENCE,
    REPAIR_JSON_PHASE,
    LlmRecipeExtractor,
    importance_trim,
)
from cookbook_ingest.ingest_core.extract.parsing import (
    parse_ingredient,
    parse_iso_duration,
    parse_quantity,
    parse_servings,
)
from cookbook_ingest.ingest_core.extract.sanitize import HtmlSanitizer
from cookbook_ingest.ingest_core.extract.service import RecipeExtractionOrchestrator
from cookbook_ingest.models.recipe import ExtractionMethod
from tests.fakes import RECIPE_JSONLD_HTML, ScriptedLlm

HEURISTIC_HTML = """
<html><head><title>Tomato Soup</title><meta name="description" content="A simple soup."></head>
<body>
  <nav><ul><li>Home</li><li>Recipes</li></ul></nav>
  <h1>Roasted Tomato Soup</h1>
  <h2>Ingredients</h2>
  <ul><li>6 tomatoes, halved</li><li>2 tbsp olive oil</li><li>1 onion</li></ul>
  <h2>Method</h2>
  <ol><li>Roast the tomatoes.</li><li>Blend with stock.</li></ol>
</body></html>
"""

PROSE_HTML = "<html><body><p>" + "Thoughts about cooking without any recipe structure. " * 10 + "</p></body></html>"

LLM_RECIPE = json.dumps(
    {
        "name": "Tomato Soup",
        "description": "Roasted and blended.",
        "ingredients": [{"name": "tomatoes", "quantity": 6}],
        "instructions": ["Roast.", "Blend."],
        "servings": 2,
    }
)


def _context(html: str, text: str = "") -> ExtractionContext:
    return ExtractionContext(url="https://example.com/recipe", html=html, text=text)


@pytest.mark.parametrize(
    ("value", "minutes"),
    [("PT1H30M", 90), ("PT45M", 45), ("P1DT2H", 1560), ("PT90S", 2), ("garbage", 0), (None, 0), (15, 15)],
)
def test_parse_iso_duration(value, minutes):
    assert parse_iso_duration(value) == minutes


def test_parse_ingredient_splits_quantity_unit_and_notes():
    ingredient = parse_ingredient("1 ½ cups flour (sifted)")
    assert ingredient.quantity == pytest.approx(1.5)
    assert ingredient.unit == "cups"
    assert ingredient.name == "flour"
    assert ingredient.notes == "sifted"

    plain = parse_ingredient("salt to taste")
    assert plain.name == "salt to taste"
    assert plain.quantity == 1


def test_parse_quantity_and_servings():
    assert parse_quantity("2-3") == 2
    assert parse_quantity("3/4") == pytest.approx(0.75)
    assert parse_servings("Makes 6 portions") == 6
    assert parse_servings(["8", "8 servings"]) == 8
    assert parse_servings(None) == 4


def test_find_recipe_node_walks_graph():
    data = {"@graph": [{"@type": "WebSite"}, {"@type": ["Recipe", "NewsArticle"], "name": "Pie"}]}
    assert find_recipe_node(data)["name"] == "Pie"
    assert find_recipe_node({"@type": "Article"}) is None


@pytest.mark.asyncio
async def test_jsonld_extractor_maps_schema_org_recipe():
    result = await JsonLdRecipeExtractor().extract(_context(RECIPE_JSONLD_HTML))

    assert result.success is True
    assert result.confidence == 0.95
    recipe = result.recipe
    assert recipe.name == "Lemon Garlic Chicken"
    assert recipe.servings == 4
    assert recipe.prep_time_minutes == 10
    assert recipe.cook_time_minutes == 30
    assert [i.name for i in recipe.ingredients] == ["chicken thighs", "garlic", "lemon"]
    assert recipe.ingredients[1].unit == "cloves"
    assert len(recipe.instructions) == 3
    assert result.author == "Jamie Cook"
    assert '"recipeIngredient"' in result.raw_source


@pytest.mark.asyncio
async def test_jsonld_extractor_reports_missing_and_invalid_blocks():
    missing = await JsonLdRecipeExtractor().extract(_context("<html><body>No data</body></html>"))
    assert missing.success is False
    assert missing.error_code == "NO_JSONLD"

    broken = await JsonLdRecipeExtractor().extract(
        _context('<script type="application/ld+json">{not json</script>')
    )
    assert broken.error_code == "INVALID_JSON"


@pytest.mark.asyncio
async def test_heuristic_extractor_reads_heading_lists():
    result = await HeuristicRecipeExtractor().extract(_context(HEURISTIC_HTML))

    assert result.success is True
    assert result.confidence == 0.5
    assert result.recipe.name == "Roasted Tomato Soup"
    assert result.recipe.description == "A simple soup."
    assert [i.name for i in result.recipe.ingredients] == ["tomatoes", "olive oil", "onion"]
    assert result.recipe.ingredients[1].unit == "tbsp"
    assert result.recipe.instructions == ["Roast the tomatoes.", "Blend with stock."]


@pytest.mark.asyncio
async def test_heuristic_extractor_fails_without_lists():
    result = await HeuristicRecipeExtractor().extract(_context("<html><body><h1>Hello</h1></body></html>"))
    assert result.success is False
    assert result.error_code == "NO_RECIPE_STRUCTURE"


def test_importance_trim_keeps_lists_and_headings_first():
    prose = "Long story about grandma. " * 20
    text = f"{prose}\n\n# Ingredients\n\n- 2 eggs\n- 1 cup milk\n\n{prose}"
    trimmed = importance_trim(text, 200)
    assert "# Ingredients" in trimmed
    assert "- 2 eggs" in trimmed
    assert len(trimmed) <= 200
    assert importance_trim("short", 200) == "short"


@pytest.mark.asyncio
async def test_llm_extractor_parses_first_response():
    llm = ScriptedLlm("```json\n" + LLM_RECIPE + "\n```")
    result = await LlmRecipeExtractor(llm).extract(_context("<p>x</p>", text="Tomato soup page text"))

    assert result.success is True
    assert result.confidence == LLM_CONFIDENCE
    assert result.recipe.name == "Tomato Soup"
    assert result.recipe.id.startswith("draft-")
    assert result.llm_calls == 1
    assert llm.phases == [EXTRACT_PHASE]
    assert "Tomato soup page text" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_llm_extractor_repairs_malformed_json():
    llm = ScriptedLlm('{"name": "Tomato Soup", "servings": "lots"', LLM_RECIPE)
    result = await LlmRecipeExtractor(llm, max_repair_attempts=2).extract(_context("", text="Soup text"))

    assert result.success is True
    assert result.confidence == LLM_REPAIRED_CONFIDENCE
    assert result.repair_attempts == 1
    assert llm.phases == [EXTRACT_PHASE, REPAIR_JSON_PHASE]
    assert '"servings": "lots"' in llm.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_llm_extractor_gives_up_after_repairs():
    llm = ScriptedLlm("nope", "still nope", '{"name": ""}')
    result = await LlmRecipeExtractor(llm, max_repair_attempts=2).extract(_context("", text="Soup text"))

    assert result.success is False
    assert result.error_code == "LLM_EXTRACTION_FAILED"
    assert result.llm_calls == 3
    assert result.error == "Recipe name is empty"


@pytest.mark.asyncio
async def test_llm_extractor_skips_empty_pages():
    llm = ScriptedLlm()
    result = await LlmRecipeExtractor(llm).extract(_context("", text="   "))
    assert result.error_code == "NO_CONTENT"
    assert llm.calls == []


@pytest.mark.asyncio
async def test_orchestrator_prefers_jsonld_without_llm_calls():
    llm = ScriptedLlm()
    outcome = await RecipeExtractionOrchestrator(llm).extract(RECIPE_JSONLD_HTML, "https://example.com/chicken")

    assert outcome.result.method == ExtractionMethod.JSON_LD
    assert outcome.llm_calls == 0
    assert llm.calls == []
    assert outcome.page.metadata.site_name == "Test Kitchen"


@pytest.mark.asyncio
async def test_orchestrator_falls_back_to_llm():
    llm = ScriptedLlm(LLM_RECIPE)
    outcome = await RecipeExtractionOrchestrator(llm).extract(HEURISTIC_HTML, "https://example.com/soup")

    assert outcome.result.method == ExtractionMethod.LLM
    assert outcome.llm_calls == 1
    assert [a.method for a in outcome.attempts] == [ExtractionMethod.JSON_LD, ExtractionMethod.LLM]


@pytest.mark.asyncio
async def test_orchestrator_uses_heuristic_when_llm_errors():
    llm = ScriptedLlm(RuntimeError("provider down"))
    outcome = await RecipeExtractionOrchestrator(llm).extract(HEURISTIC_HTML, "https://example.com/soup")

    assert outcome.result.method == ExtractionMethod.HEURISTIC
    assert outcome.attempts[1].error_code == "EXTRACTOR_ERROR"


@pytest.mark.asyncio
async def test_orchestrator_without_llm_skips_to_heuristic():
    outcome = await RecipeExtractionOrchestrator().extract(HEURISTIC_HTML, "https://example.com/soup")
    assert outcome.result.method == ExtractionMethod.HEURISTIC
    assert len(outcome.attempts) == 2


@pytest.mark.asyncio
async def test_orchestrator_raises_when_every_extractor_fails():
    with pytest.raises(IngestError) as info:
        await RecipeExtractionOrchestrator().extract(PROSE_HTML, "https://example.com/blog")

    assert info.value.code == ErrorCode.LLM_EXTRACTION_FAILED
    assert [a["method"] for a in info.value.details["attempts"]] == ["JsonLd", "Heuristic"]


def test_sanitizer_collects_metadata_and_strips_navigation():
    page = HtmlSanitizer().sanitize(HEURISTIC_HTML)
    assert page.metadata.title == "Tomato Soup"
    assert page.metadata.description == "A simple soup."
    assert "Roast the tomatoes." in page.text
    if page.method == "raw":
        assert "Home" not in page.text
