from __future__ import annotations

import json
import re
import uuid
from typing import Any

from bs4 import BeautifulSoup
from loguru import logger

from cookbook_ingest.ingest_core.extract.interfaces import ExtractionContext, ExtractionResult
from cookbook_ingest.ingest_core.extract.parsing import (
    parse_ingredient,
    parse_iso_duration,
    parse_servings,
    split_instruction_text,
    split_keywords,
)
from cookbook_ingest.models.recipe import ExtractionMethod, NutritionInfo, Recipe

JSONLD_CONFIDENCE = 0.95

RECIPE_TYPES = {"recipe", "howto"}

NUTRITION_FIELDS = {
    "calories": "calories",
    "protein_grams": "proteinContent",
    "carbs_grams": "carbohydrateContent",
    "fat_grams": "fatContent",
    "fiber_grams": "fiberContent",
    "sugar_grams": "sugarContent",
    "sodium_mg": "sodiumContent",
}


def _type_names(node: dict[str, Any]) -> set[str]:
    raw = node.get("@type")
    values = raw if isinstance(raw, list) else [raw]
    names: set[str] = set()
    for value in values:
        if isinstance(value, str):
            names.add(value.rstrip("/").rsplit("/", 1)[-1].lower())
    return names


def find_recipe_node(data: Any) -> dict[str, Any] | None:
    """Depth-first search for a schema.org Recipe/HowTo node."""
    if isinstance(data, list):
        for item in data:
            found = find_recipe_node(item)
            if found is not None:
                return found
        return None
    if not isinstance(data, dict):
        return None
    if _type_names(data) & RECIPE_TYPES:
        return data
    for key in ("@graph", "mainEntity", "mainEntityOfPage"):
        if key in data:
            found = find_recipe_node(data[key])
            if found is not None:
                return found
    return None


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        cleaned = BeautifulSoup(value, "html.parser").get_text(" ") if "<" in value else value
        cleaned = " ".join(cleaned.split())
        return cleaned or None
    if isinstance(value, dict):
        return _text(value.get("name") or value.get("text"))
    if isinstance(value, list) and value:
        return _text(value[0])
    return None


def _instruction_text(item: Any) -> list[str]:
    if isinstance(item, str):
        return split_instruction_text(item)
    if isinstance(item, dict):
        if "itemListElement" in item and isinstance(item["itemListElement"], list):
            steps: list[str] = []
            for child in item["itemListElement"]:
                steps.extend(_instruction_text(child))
            return steps
        text = _text(item.get("text")) or _text(item.get("description")) or _text(item.get("name"))
        return [text] if text else []
    return []


def parse_instructions(value: Any) -> list[str]:
    if isinstance(value, str):
        return split_instruction_text(BeautifulSoup(value, "html.parser").get_text("\n"))
    if isinstance(value, list):
        steps: list[str] = []
        for item in value:
            steps.extend(_instruction_text(item))
        return steps
    if isinstance(value, dict):
        return _instruction_text(value)
    return []


def _image_url(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for item in value:
            url = _image_url(item)
            if url:
                return url
        return None
    if isinstance(value, dict):
        return _image_url(value.get("url") or value.get("contentUrl"))
    return None


def _nutrition_value(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"\d+(?:\.\d+)?", value)
        if match:
            return float(match.group())
    return 0.0


def parse_nutrition(value: Any) -> NutritionInfo | None:
    if not isinstance(value, dict):
        return None
    return NutritionInfo(
        **{field: _nutrition_value(value.get(key)) for field, key in NUTRITION_FIELDS.items()}
    )


def _author(value: Any) -> str | None:
    if isinstance(value, list):
        for item in value:
            name = _author(item)
            if name:
                return name
        return None
    return _text(value)


def map_recipe_node(node: dict[str, Any]) -> Recipe:
    name = _text(node.get("name")) or _text(node.get("headline"))
    if not name:
        raise ValueError("Recipe node has no name")

    prep = parse_iso_duration(node.get("prepTime"))
    cook = parse_iso_duration(node.get("cookTime"))
    total = parse_iso_duration(node.get("totalTime"))
    if total and not prep and not cook:
        prep = total // 3
        cook = total - prep

    tags = split_keywords(node.get("recipeCategory")) + split_keywords(node.get("keywords"))
    cuisine = split_keywords(node.get("recipeCuisine"))

    return Recipe(
        id=f"draft-{uuid.uuid4().hex}",
        name=name,
        description=_text(node.get("description")),
        ingredients=[
            parse_ingredient(item)
            for item in (node.get("recipeIngredient") or node.get("ingredients") or [])
            if isinstance(item, str) and item.strip()
        ],
        instructions=parse_instructions(node.get("recipeInstructions")),
        cuisine=cuisine[0] if cuisine else None,
        prep_time_minutes=prep,
        cook_time_minutes=cook,
        servings=parse_servings(node.get("recipeYield")),
        nutrition=parse_nutrition(node.get("nutrition")),
        tags=list(dict.fromkeys(tags)),
        image_url=_image_url(node.get("image")),
    )


def author_from_node(node: dict[str, Any]) -> str | None:
    return _author(node.get("author"))


class JsonLdRecipeExtractor:
    """Reads schema.org Recipe data from application/ld+json script blocks."""

    method = ExtractionMethod.JSON_LD

    async def extract(self, context: ExtractionContext) -> ExtractionResult:
        soup = BeautifulSoup(context.html or "", "html.parser")
        scripts = soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)})
        if not scripts:
            return ExtractionResult.failed(self.method, "NO_JSONLD", "No JSON-LD blocks found")

        last_error = ("NO_RECIPE_NODE", "No Recipe object in JSON-LD")
        for script in scripts:
            raw = (script.string or script.get_text() or "").strip()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                logger.debug(f"Skipping invalid JSON-LD block on {context.url}: {exc}")
                last_error = ("INVALID_JSON", f"Invalid JSON-LD: {exc.msg}")
                continue

            node = find_recipe_node(data)
            if node is None:
                continue

            try:
                recipe = map_recipe_node(node)
            except ValueError as exc:
                last_error = ("MAPPING_FAILED", str(exc))
                continue

            return ExtractionResult(
                success=True,
                method=self.method,
                recipe=recipe,
                confidence=JSONLD_CONFIDENCE,
                raw_source=json.dumps(node, ensure_ascii=False, indent=2),
                author=author_from_node(node),
            )

        code, message = last_error
        return ExtractionResult.failed(self.method, code, message)
