from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from cookbook_ingest.errors import ErrorCode, IngestError
from cookbook_ingest.ingest_core.extract.heuristic import HeuristicRecipeExtractor
from cookbook_ingest.ingest_core.extract.interfaces import (
    ExtractionContext,
    ExtractionResult,
    RecipeExtractor,
)
from cookbook_ingest.ingest_core.extract.jsonld import JsonLdRecipeExtractor
from cookbook_ingest.ingest_core.extract.llm import LlmRecipeExtractor
from cookbook_ingest.ingest_core.extract.sanitize import HtmlSanitizer, SanitizedPage
from cookbook_ingest.ports import LlmChat
from cookbook_ingest.tools.url_utils import site_name


@dataclass(slots=True)
class ExtractionOutcome:
    result: ExtractionResult
    page: SanitizedPage
    attempts: list[ExtractionResult] = field(default_factory=list)

    @property
    def llm_calls(self) -> int:
        return sum(attempt.llm_calls for attempt in self.attempts)


class RecipeExtractionOrchestrator:
    """JSON-LD first, then the LLM, then page heuristics."""

    def __init__(
        self,
        llm: LlmChat | None = None,
        *,
        jsonld: RecipeExtractor | None = None,
        llm_extractor: RecipeExtractor | None = None,
        heuristic: RecipeExtractor | None = None,
        sanitizer: HtmlSanitizer | None = None,
    ):
        self.jsonld = jsonld or JsonLdRecipeExtractor()
        self.llm_extractor = llm_extractor or (LlmRecipeExtractor(llm) if llm is not None else None)
        self.heuristic = heuristic or HeuristicRecipeExtractor()
        self.sanitizer = sanitizer or HtmlSanitizer()

    async def extract(
        self,
        html: str,
        url: str,
        *,
        prompt_overrides: dict[str, str] | None = None,
    ) -> ExtractionOutcome:
        page = self.sanitizer.sanitize(html or "")
        context = ExtractionContext(
            url=url,
            html=html or "",
            text=page.text,
            site_name=page.metadata.site_name or site_name(url),
            prompt_overrides=dict(prompt_overrides or {}),
        )
        attempts: list[ExtractionResult] = []

        chain = [self.jsonld, self.llm_extractor, self.heuristic]
        for extractor in chain:
            if extractor is None:
                continue
            result = await self._run(extractor, context)
            attempts.append(result)
            if result.success and result.recipe is not None and result.recipe.name.strip():
                if result.author is None:
                    result.author = page.metadata.author
                logger.info(
                    f"Extracted recipe '{result.recipe.name}' from {url} via {result.method} "
                    f"(confidence={result.confidence:.2f}, llm_calls={sum(a.llm_calls for a in attempts)})"
                )
                return ExtractionOutcome(result=result, page=page, attempts=attempts)
            logger.debug(f"{extractor.method} extraction failed for {url}: {result.error_code} {result.error}")

        raise IngestError(
            ErrorCode.LLM_EXTRACTION_FAILED,
            "Could not extract a recipe from the page",
            details={
                "attempts": [
                    {"method": str(a.method), "errorCode": a.error_code, "error": a.error}
                    for a in attempts
                ],
            },
        )

    @staticmethod
    async def _run(extractor: RecipeExtractor, context: ExtractionContext) -> ExtractionResult:
        try:
            return await extractor.extract(context)
        except IngestError:
            raise
        except Exception as exc:
            logger.warning(f"{extractor.method} extractor raised for {context.url}: {exc}")
            return ExtractionResult.failed(extractor.method, "EXTRACTOR_ERROR", str(exc))
