from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.models.ingest import SimilarityReport
from cookbook_ingest.models.recipe import Recipe

WORD_TOKEN = re.compile(r"\w+")

DESCRIPTION_SECTION = "Description"
INSTRUCTIONS_SECTION = "Instructions"


def tokenize(text: str | None, min_token_length: int = 2) -> list[str]:
    if not text or not text.strip():
        return []
    return [token for token in WORD_TOKEN.findall(text.lower()) if len(token) >= min_token_length]


def compute_max_contiguous_overlap(source_tokens: list[str], extracted_tokens: list[str]) -> int:
    """Length of the longest token run shared by both sequences."""
    if not source_tokens or not extracted_tokens:
        return 0

    # Rolling DP row over the source; O(len(a) * len(b)) time, O(len(a)) memory.
    best = 0
    previous = [0] * (len(source_tokens) + 1)
    for token in extracted_tokens:
        current = [0] * (len(source_tokens) + 1)
        for j, source_token in enumerate(source_tokens, start=1):
            if token == source_token:
                run = previous[j - 1] + 1
                current[j] = run
                if run > best:
                    best = run
        previous = current
    return best


def _ngrams(tokens: list[str], n: int) -> set[tuple[str, ...]]:
    return {tuple(tokens[i : i + n]) for i in range(len(tokens) - n + 1)}


def compute_ngram_jaccard_similarity(source_tokens: list[str], extracted_tokens: list[str], n: int = 5) -> float:
    if n <= 0 or len(source_tokens) < n or len(extracted_tokens) < n:
        return 0.0
    source = _ngrams(source_tokens, n)
    extracted = _ngrams(extracted_tokens, n)
    union = source | extracted
    if not union:
        return 0.0
    return len(source & extracted) / len(union)


@dataclass(slots=True)
class SectionScore:
    name: str
    text: str
    overlap: int
    similarity: float


def recipe_sections(recipe: Recipe) -> dict[str, str]:
    """The free-text parts of a recipe that can echo the source page."""
    sections: dict[str, str] = {}
    if (recipe.description or "").strip():
        sections[DESCRIPTION_SECTION] = recipe.description or ""
    steps = [step for step in recipe.instructions if step.strip()]
    if steps:
        sections[INSTRUCTIONS_SECTION] = "\n".join(steps)
    return sections


def violation_message(report: SimilarityReport) -> str:
    return (
        f"High verbatim similarity detected: {report.max_ngram_similarity:.0%} n-gram similarity, "
        f"{report.max_contiguous_token_overlap} contiguous token overlap."
    )


class SimilarityDetector:
    """Scores how much extracted text reuses the source page verbatim."""

    def __init__(
        self,
        *,
        overlap_warning: int | None = None,
        overlap_error: int | None = None,
        ngram_warning: float | None = None,
        ngram_error: float | None = None,
        ngram_size: int | None = None,
        min_token_length: int | None = None,
    ):
        self.overlap_warning = max(
            int(settings.guardrail_token_overlap_warning if overlap_warning is None else overlap_warning), 1
        )
        self.overlap_error = max(
            int(settings.guardrail_token_overlap_error if overlap_error is None else overlap_error), 1
        )
        self.ngram_warning = float(settings.guardrail_ngram_warning if ngram_warning is None else ngram_warning)
        self.ngram_error = float(settings.guardrail_ngram_error if ngram_error is None else ngram_error)
        self.ngram_size = max(int(settings.guardrail_ngram_size if ngram_size is None else ngram_size), 1)
        self.min_token_length = max(
            int(settings.guardrail_min_token_length if min_token_length is None else min_token_length), 1
        )

    def tokenize(self, text: str | None) -> list[str]:
        return tokenize(text, self.min_token_length)

    def violates(self, overlap: int, similarity: float) -> bool:
        return overlap >= self.overlap_error or similarity >= self.ngram_error

    def warns(self, overlap: int, similarity: float) -> bool:
        return overlap >= self.overlap_warning or similarity >= self.ngram_warning

    def analyze(self, source: str, text: str) -> SimilarityReport:
        if not (source or "").strip() or not (text or "").strip():
            return SimilarityReport(details="Empty content provided for similarity analysis.")

        source_tokens = self.tokenize(source)
        tokens = self.tokenize(text)
        overlap = compute_max_contiguous_overlap(source_tokens, tokens)
        similarity = compute_ngram_jaccard_similarity(source_tokens, tokens, self.ngram_size)
        violates = self.violates(overlap, similarity)
        return SimilarityReport(
            max_contiguous_token_overlap=overlap,
            max_ngram_similarity=similarity,
            violates_policy=violates,
            details=(
                f"Status: {'VIOLATION' if violates else 'OK'}. "
                f"Max contiguous overlap: {overlap} tokens (threshold: {self.overlap_error}). "
                f"Max n-gram similarity: {similarity:.2%} (threshold: {self.ngram_error:.2%})."
            ),
        )

    def score_sections(self, source: str, sections: dict[str, str]) -> list[SectionScore]:
        source_tokens = self.tokenize(source)
        scores: list[SectionScore] = []
        for name, text in sections.items():
            if not (text or "").strip():
                continue
            tokens = self.tokenize(text)
            scores.append(
                SectionScore(
                    name=name,
                    text=text,
                    overlap=compute_max_contiguous_overlap(source_tokens, tokens),
                    similarity=compute_ngram_jaccard_similarity(source_tokens, tokens, self.ngram_size),
                )
            )
        return scores

    def flagged_sections(self, source: str, recipe: Recipe) -> list[SectionScore]:
        """Sections at or above the warning level."""
        return [
            score
            for score in self.score_sections(source, recipe_sections(recipe))
            if self.warns(score.overlap, score.similarity)
        ]

    def analyze_sections(self, source: str, sections: dict[str, str]) -> SimilarityReport:
        if not (source or "").strip() or not sections:
            return SimilarityReport(details="No sections provided for similarity analysis.")

        scores = self.score_sections(source, sections)
        max_overlap = max((s.overlap for s in scores), default=0)
        max_similarity = max((s.similarity for s in scores), default=0.0)
        violates = self.violates(max_overlap, max_similarity)

        details = (
            f"Status: {'VIOLATION' if violates else 'OK'}. "
            f"Max contiguous overlap: {max_overlap} tokens. "
            f"Max n-gram similarity: {max_similarity:.2%}."
        )
        flagged = [
            f"{s.name}: overlap={s.overlap}, similarity={s.similarity:.2%}"
            for s in scores
            if self.warns(s.overlap, s.similarity)
        ]
        if flagged:
            details += " High similarity sections: " + "; ".join(flagged)

        logger.debug(
            f"Similarity analysis: overlap={max_overlap}, similarity={max_similarity:.2%}, violates={violates}"
        )
        return SimilarityReport(
            max_contiguous_token_overlap=max_overlap,
            max_ngram_similarity=max_similarity,
            violates_policy=violates,
            details=details,
        )

    def analyze_draft(self, source: str, recipe: Recipe) -> SimilarityReport:
        return self.analyze_sections(source, recipe_sections(recipe))
