from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from cookbook_ingest.models.recipe import ExtractionMethod, Recipe


@dataclass(slots=True)
class ExtractionContext:
    url: str
    html: str
    text: str = ""
    site_name: str | None = None
    prompt_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    method: ExtractionMethod
    recipe: Recipe | None = None
    confidence: float = 0.0
    error: str | None = None
    error_code: str | None = None
    raw_source: str | None = None
    author: str | None = None
    llm_calls: int = 0
    repair_attempts: int = 0

    @classmethod
    def failed(
        cls,
        method: ExtractionMethod,
        error_code: str,
        error: str,
        **kwargs,
    ) -> "ExtractionResult":
        return cls(success=False, method=method, error=error, error_code=error_code, **kwargs)


class RecipeExtractor(Protocol):
    method: ExtractionMethod

    async def extract(self, context: ExtractionContext) -> ExtractionResult: ...
