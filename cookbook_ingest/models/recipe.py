from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, the shape LLM prompts see."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ExtractionMethod(StrEnum):
    JSON_LD = "JsonLd"
    HEURISTIC = "Heuristic"
    LLM = "Llm"
    MANUAL = "Manual"


class Ingredient(CamelModel):
    name: str
    quantity: float = 0
    unit: str | None = None
    notes: str | None = None


class NutritionInfo(CamelModel):
    calories: float = 0
    protein_grams: float = 0
    carbs_grams: float = 0
    fat_grams: float = 0
    fiber_grams: float = 0
    sodium_mg: float = 0
    sugar_grams: float = 0


class RecipeSource(CamelModel):
    url: str = ""
    url_hash: str | None = None
    site_name: str | None = None
    author: str | None = None
    retrieved_at: datetime = Field(default_factory=_utc_now)
    extraction_method: ExtractionMethod = ExtractionMethod.JSON_LD
    license_hint: str | None = None

    def is_empty(self) -> bool:
        return not self.url and not self.site_name and not self.author


class Recipe(CamelModel):
    id: str
    name: str
    description: str | None = None
    ingredients: list[Ingredient] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)
    cuisine: str | None = None
    diet_type: str | None = None
    prep_time_minutes: int = 0
    cook_time_minutes: int = 0
    servings: int = 0
    nutrition: NutritionInfo | None = None
    tags: list[str] = Field(default_factory=list)
    image_url: str | None = None
    source: RecipeSource | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime | None = None
