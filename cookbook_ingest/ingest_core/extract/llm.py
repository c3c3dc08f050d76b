from __future__ import annotations

import re
import uuid
from typing import Any

from loguru import logger
from pydantic import ValidationError

from cookbook_ingest.config import settings
from cookbook_ingest.ingest_core.extract.interfaces import ExtractionContext, ExtractionResult
from cookbook_ingest.models.recipe import ExtractionMethod, Recipe
from cookbook_ingest.ports import LlmChat
from cookbook_ingest.services.prompt_store import get_prompt, prompt_prefix, render_prompt
from cookbook_ingest.tools.llm_json import parse_json_object

LLM_CONFIDENCE = 0.85
LLM_REPAIRED_CONFIDENCE = 0.75
EXTRACT_TEMPERATURE = 0.3

EXTRACT_PHASE = "Ingest.Extract"
REPAIR_JSON_PHASE = "Ingest.RepairJson"
EXTRACT_PROMPT = "ingest.extract"

LIST_LINE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
HEADING_LINE = re.compile(r"^\s*#{1,6}\s+")
PREVIOUS_RESPONSE_CHARS = 4000


def _is_important(block: str) -> bool:
    lines = [line for line in block.splitlines() if line.strip()]
    if not lines:
        return False
    if HEADING_LINE.match(lines[0]):
        return True
    return any(LIST_LINE.match(line) for line in lines)


def importance_trim(text: str, budget: int) -> str:
    """Trim text to ``budget`` chars, keeping headings and lists before prose.

    Blocks are paragraphs separated by blank lines. Important blocks are taken
    first, then the remaining paragraphs fill what is left of the budget. The
    kept blocks are emitted in their original order.
    """
    if budget <= 0 or len(text) <= budget:
        return text

    blocks = [block.strip() for block in re.split(r"\n\s*\n", text) if block.strip()]
    ordered = [i for i, block in enumerate(blocks) if _is_important(block)]
    ordered += [i for i, block in enumerate(blocks) if not _is_important(block)]

    kept: set[int] = set()
    used = 0
    for index in ordered:
        cost = len(blocks[index]) + (2 if kept else 0)
        if used + cost > budget:
            continue
        kept.add(index)
        used += cost

    if not kept:
        return text[:budget]
    return "\n\n".join(blocks[i] for i in sorted(kept))


def _recipe_from_payload(data: dict[str, Any]) -> Recipe:
    payload = dict(data)
    if "recipe" in payload and isinstance(payload["recipe"], dict):
        payload = dict(payload["recipe"])
    if not str(payload.get("id") or "").strip():
        payload["id"] = f"draft-{uuid.uuid4().hex}"
    payload.pop("source", None)
    recipe = Recipe.model_validate(payload)
    if not recipe.name.strip():
        raise ValueError("Recipe name is empty")
    return recipe


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        location = ".".join(str(piece) for piece in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}")
    return "Schema validation failed: " + "; ".join(parts)


class LlmRecipeExtractor:
    """Asks the model for recipe JSON and repairs malformed answers."""

    method = ExtractionMethod.LLM

    def __init__(
        self,
        llm: LlmChat,
        *,
        max_repair_attempts: int | None = None,
        char_budget: int | None = None,
    ):
        self.llm = llm
        self.max_repair_attempts = max(
            int(settings.extract_max_repair_attempts if max_repair_attempts is None else max_repair_attempts),
            0,
        )
        self.char_budget = max(
            int(settings.content_char_budget if char_budget is None else char_budget),
            1000,
        )

    async def extract(self, context: ExtractionContext) -> ExtractionResult:
        content = importance_trim(context.text or "", self.char_budget)
        if not content.strip():
            return ExtractionResult.failed(self.method, "NO_CONTENT", "No page text to extract from")

        prefix = prompt_prefix(EXTRACT_PROMPT, context.prompt_overrides, EXTRACT_PHASE)
        schema = get_prompt(f"{EXTRACT_PROMPT}.schema")
        system = get_prompt(f"{prefix}.system")
        prompt = render_prompt(f"{prefix}.user", url=context.url, content=content, schema=schema)

        raw = await self.llm.complete(
            prompt,
            system=system,
            phase=EXTRACT_PHASE,
            temperature=EXTRACT_TEMPERATURE,
        )
        llm_calls = 1
        repairs = 0

        while True:
            recipe, error = self._parse(raw)
            if recipe is not None:
                return ExtractionResult(
                    success=True,
                    method=self.method,
                    recipe=recipe,
                    confidence=LLM_CONFIDENCE if repairs == 0 else LLM_REPAIRED_CONFIDENCE,
                    raw_source=raw,
                    llm_calls=llm_calls,
                    repair_attempts=repairs,
                )

            if repairs >= self.max_repair_attempts:
                logger.warning(f"LLM extraction failed for {context.url} after {repairs} repairs: {error}")
                return ExtractionResult.failed(
                    self.method,
                    "LLM_EXTRACTION_FAILED",
                    error or "LLM extraction failed",
                    raw_source=raw,
                    llm_calls=llm_calls,
                    repair_attempts=repairs,
                )

            repairs += 1
            logger.info(f"Repairing LLM extraction for {context.url} (attempt {repairs}): {error}")
            repair_prompt = render_prompt(
                f"{EXTRACT_PROMPT}.repair",
                error=error,
                previous_response=(raw or "")[:PREVIOUS_RESPONSE_CHARS],
                schema=schema,
            )
            raw = await self.llm.complete(
                repair_prompt,
                system=system,
                phase=REPAIR_JSON_PHASE,
                temperature=EXTRACT_TEMPERATURE,
            )
            llm_calls += 1

    @staticmethod
    def _parse(raw: str | None) -> tuple[Recipe | None, str | None]:
        parsed = parse_json_object(raw)
        if not parsed.ok or parsed.data is None:
            return None, parsed.error
        try:
            return _recipe_from_payload(parsed.data), None
        except ValidationError as exc:
            return None, _validation_message(exc)
        except ValueError as exc:
            return None, str(exc)
