from __future__ import annotations

import re
import uuid

from bs4 import BeautifulSoup, Tag

from cookbook_ingest.ingest_core.extract.interfaces import ExtractionContext, ExtractionResult
from cookbook_ingest.ingest_core.extract.parsing import parse_ingredient
from cookbook_ingest.ingest_core.extract.sanitize import extract_metadata
from cookbook_ingest.models.recipe import ExtractionMethod, Recipe

HEURISTIC_CONFIDENCE = 0.5

INGREDIENT_HINT = re.compile(r"ingredient", re.I)
INSTRUCTION_HINT = re.compile(r"instruction|direction|method|preparation|steps?\b", re.I)


def _list_items(container: Tag | None) -> list[str]:
    if container is None:
        return []
    items = [" ".join(li.get_text(" ").split()) for li in container.find_all("li")]
    return [item for item in items if item]


def _find_by_class(soup: BeautifulSoup, hint: re.Pattern[str]) -> Tag | None:
    for tag in soup.find_all(["ul", "ol", "div", "section"]):
        marker = " ".join(tag.get("class") or []) + " " + (tag.get("id") or "")
        if hint.search(marker) and tag.find("li"):
            return tag
    return None


def _find_after_heading(soup: BeautifulSoup, hint: re.Pattern[str]) -> Tag | None:
    for heading in soup.find_all(["h2", "h3", "h4"]):
        if hint.search(heading.get_text(" ")):
            found = heading.find_next(["ul", "ol"])
            if found is not None:
                return found
    return None


class HeuristicRecipeExtractor:
    """Last-resort extractor reading the page title and ingredient/step lists."""

    method = ExtractionMethod.HEURISTIC

    async def extract(self, context: ExtractionContext) -> ExtractionResult:
        soup = BeautifulSoup(context.html or "", "html.parser")
        for tag in soup.find_all(["script", "style", "noscript"]):
            tag.decompose()

        h1 = soup.find("h1")
        name = " ".join(h1.get_text(" ").split()) if h1 else ""
        metadata = extract_metadata(soup)
        name = name or (metadata.title or "")
        if not name:
            return ExtractionResult.failed(self.method, "NO_TITLE", "Page has no title")

        ingredients = _list_items(
            _find_by_class(soup, INGREDIENT_HINT) or _find_after_heading(soup, INGREDIENT_HINT)
        )
        instructions = _list_items(
            _find_by_class(soup, INSTRUCTION_HINT) or _find_after_heading(soup, INSTRUCTION_HINT)
        )
        if not ingredients or not instructions:
            return ExtractionResult.failed(
                self.method,
                "NO_RECIPE_STRUCTURE",
                "Could not locate ingredient and instruction lists",
            )

        recipe = Recipe(
            id=f"draft-{uuid.uuid4().hex}",
            name=name,
            description=metadata.description,
            ingredients=[parse_ingredient(item) for item in ingredients],
            instructions=instructions,
            image_url=metadata.image_url,
        )
        return ExtractionResult(
            success=True,
            method=self.method,
            recipe=recipe,
            confidence=HEURISTIC_CONFIDENCE,
            author=metadata.author,
        )
