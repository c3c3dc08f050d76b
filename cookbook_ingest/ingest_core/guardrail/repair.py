from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.ingest_core.guardrail.similarity import (
    DESCRIPTION_SECTION,
    INSTRUCTIONS_SECTION,
    SectionScore,
    SimilarityDetector,
    violation_message,
)
from cookbook_ingest.models.ingest import RecipeDraft, SimilarityReport
from cookbook_ingest.ports import LlmChat
from cookbook_ingest.services.prompt_store import get_prompt, prompt_prefix, render_prompt
from cookbook_ingest.tools.llm_json import parse_json_object

REPAIR_PHASE = "Ingest.RepairParaphrase"
REPAIR_PROMPT = "ingest.repair_paraphrase"
REPAIR_TEMPERATURE = 0.7
REPAIR_MAX_TOKENS = 2000
MAX_SOURCE_EXCERPT = 2000

STEP_NUMBER = re.compile(r"^\s*(?:step\s*)?\d+[.):]\s*", re.I)


@dataclass(slots=True)
class RepairResult:
    draft: RecipeDraft
    report: SimilarityReport
    still_violates_policy: bool
    attempts: int = 0
    repaired_sections: list[str] = field(default_factory=list)
    raw_responses: list[str] = field(default_factory=list)
    details: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return not self.still_violates_policy


def split_steps(text: str) -> list[str]:
    lines = [STEP_NUMBER.sub("", line).strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if len(lines) > 1:
        return lines
    sentences = [piece.strip() for piece in re.split(r"(?<=[.!?])\s+", text.strip())]
    return [sentence for sentence in sentences if len(sentence) > 5] or lines


def parse_rephrased_sections(raw: str | None) -> dict[str, str]:
    parsed = parse_json_object(raw)
    if not parsed.ok or parsed.data is None:
        return {}
    sections = parsed.data.get("sections")
    if not isinstance(sections, list):
        return {}
    rephrased: dict[str, str] = {}
    for item in sections:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        text = item.get("rephrased_text") or item.get("rephrasedText") or ""
        if name and isinstance(text, str) and text.strip():
            rephrased[name.lower()] = text.strip()
    return rephrased


def apply_rephrased(draft: RecipeDraft, rephrased: dict[str, str]) -> tuple[RecipeDraft, list[str]]:
    updates: dict[str, object] = {}
    applied: list[str] = []
    if DESCRIPTION_SECTION.lower() in rephrased:
        updates["description"] = rephrased[DESCRIPTION_SECTION.lower()]
        applied.append(DESCRIPTION_SECTION)
    if INSTRUCTIONS_SECTION.lower() in rephrased:
        steps = split_steps(rephrased[INSTRUCTIONS_SECTION.lower()])
        if steps:
            updates["instructions"] = steps
            applied.append(INSTRUCTIONS_SECTION)
    if not updates:
        return draft, applied
    recipe = draft.recipe.model_copy(update=updates)
    return draft.model_copy(update={"recipe": recipe}), applied


class RepairParaphraseService:
    """Rewrites the sections of a draft that echo the source too closely."""

    def __init__(
        self,
        llm: LlmChat,
        detector: SimilarityDetector | None = None,
        *,
        max_attempts: int | None = None,
    ):
        self.llm = llm
        self.detector = detector or SimilarityDetector()
        self.max_attempts = max(
            int(settings.guardrail_max_repair_attempts if max_attempts is None else max_attempts), 1
        )

    def violating_sections(self, draft: RecipeDraft, source_text: str) -> list[SectionScore]:
        return [
            score
            for score in self.detector.flagged_sections(source_text, draft.recipe)
            if self.detector.violates(score.overlap, score.similarity)
        ]

    def _build_prompt(
        self,
        source_text: str,
        sections: list[SectionScore],
        prompt_overrides: dict[str, str] | None,
    ) -> tuple[str, str]:
        excerpt = source_text
        if len(excerpt) > MAX_SOURCE_EXCERPT:
            excerpt = excerpt[:MAX_SOURCE_EXCERPT] + "..."
        sections_json = json.dumps(
            [
                {
                    "name": s.name,
                    "original_text": s.text,
                    "similarity_score": round(s.similarity, 4),
                    "token_overlap": s.overlap,
                }
                for s in sections
            ],
            indent=2,
            ensure_ascii=False,
        )
        prefix = prompt_prefix(REPAIR_PROMPT, prompt_overrides, REPAIR_PHASE)
        system = get_prompt(f"{prefix}.system")
        prompt = render_prompt(f"{prefix}.user", source_excerpt=excerpt, sections_json=sections_json)
        return system, prompt

    async def repair(
        self,
        draft: RecipeDraft,
        source_text: str,
        *,
        prompt_overrides: dict[str, str] | None = None,
    ) -> RepairResult:
        report = self.detector.analyze_draft(source_text, draft.recipe)
        sections = self.violating_sections(draft, source_text)
        if not sections:
            return RepairResult(
                draft=draft.model_copy(update={"similarity_report": report}),
                report=report,
                still_violates_policy=report.violates_policy,
                details="No sections required repair.",
            )

        logger.info(
            f"Repairing paraphrase for '{draft.recipe.name}': "
            f"{', '.join(s.name for s in sections)} (overlap={report.max_contiguous_token_overlap}, "
            f"similarity={report.max_ngram_similarity:.2%})"
        )

        current = draft
        attempts = 0
        repaired: list[str] = []
        raw_responses: list[str] = []
        error: str | None = None

        while sections and attempts < self.max_attempts:
            attempts += 1
            system, prompt = self._build_prompt(source_text, sections, prompt_overrides)
            try:
                raw = await self.llm.complete(
                    prompt,
                    system=system,
                    phase=REPAIR_PHASE,
                    temperature=REPAIR_TEMPERATURE,
                    max_tokens=REPAIR_MAX_TOKENS,
                )
            except Exception as exc:
                logger.error(f"LLM call failed for repair paraphrase: {exc}")
                error = str(exc)
                break

            raw_responses.append(raw)
            rephrased = parse_rephrased_sections(raw)
            wanted = {s.name.lower() for s in sections}
            rephrased = {name: text for name, text in rephrased.items() if name in wanted}
            if not rephrased:
                error = "Could not parse rephrased sections from LLM response."
                logger.warning(f"Repair attempt {attempts}: {error}")
                continue

            current, applied = apply_rephrased(current, rephrased)
            repaired.extend(name for name in applied if name not in repaired)
            report = self.detector.analyze_draft(source_text, current.recipe)
            sections = self.violating_sections(current, source_text)
            error = None

        still_violates = report.violates_policy
        validation_report = current.validation_report
        if still_violates:
            message = violation_message(report)
            if message not in validation_report.errors:
                validation_report = validation_report.model_copy(
                    update={"errors": [*validation_report.errors, message]}
                )

        current = current.model_copy(
            update={"similarity_report": report, "validation_report": validation_report}
        )
        logger.info(
            f"Repair complete after {attempts} attempt(s). New similarity: "
            f"{report.max_contiguous_token_overlap} overlap, {report.max_ngram_similarity:.2%}. "
            f"Still violates: {still_violates}"
        )
        return RepairResult(
            draft=current,
            report=report,
            still_violates_policy=still_violates,
            attempts=attempts,
            repaired_sections=repaired,
            raw_responses=raw_responses,
            details=(
                f"Repaired {len(repaired)} section(s). "
                f"New similarity: {report.max_ngram_similarity:.2%}, "
                f"overlap: {report.max_contiguous_token_overlap} tokens."
            ),
            error=error,
        )
