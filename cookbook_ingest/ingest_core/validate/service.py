from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import urlparse

from loguru import logger

from cookbook_ingest.models.ingest import ValidationReport
from cookbook_ingest.models.recipe import Recipe

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_INGREDIENT_NAME_LENGTH = 200
MAX_INSTRUCTION_LENGTH = 2000
MAX_TAG_LENGTH = 50
MAX_TAG_COUNT = 20
MAX_INGREDIENTS = 100
MAX_INSTRUCTIONS = 100

MAX_REASONABLE_PREP_MINUTES = 24 * 60
MAX_REASONABLE_COOK_MINUTES = 72 * 60
MAX_REASONABLE_SERVINGS = 100
DESCRIPTION_EXPECTED_FROM_INGREDIENTS = 3
SHORT_DESCRIPTION_CHARS = 20


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(slots=True)
class ValidationIssue:
    field: str
    message: str
    severity: Severity
    code: str

    def format(self) -> str:
        return f"[{self.code}] {self.field}: {self.message}"


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class RecipeValidator:
    """Structural errors plus softer business-rule warnings for a draft recipe."""

    def validate(self, recipe: Recipe) -> ValidationReport:
        issues = self.schema_issues(recipe) + self.business_issues(recipe)
        report = ValidationReport(
            errors=[i.format() for i in issues if i.severity == Severity.ERROR],
            warnings=[i.format() for i in issues if i.severity == Severity.WARNING],
        )
        logger.debug(
            f"Validated recipe '{recipe.name}': {len(report.errors)} errors, {len(report.warnings)} warnings"
        )
        return report

    def schema_issues(self, recipe: Recipe) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        def error(field: str, code: str, message: str) -> None:
            issues.append(ValidationIssue(field, message, Severity.ERROR, code))

        name = recipe.name or ""
        if not name.strip():
            error("Name", "REQUIRED_NAME", "Recipe name is required")
        elif len(name) > MAX_NAME_LENGTH:
            error("Name", "NAME_TOO_LONG", f"Recipe name exceeds maximum length of {MAX_NAME_LENGTH} characters")

        if recipe.description and len(recipe.description) > MAX_DESCRIPTION_LENGTH:
            error(
                "Description",
                "DESCRIPTION_TOO_LONG",
                f"Description exceeds maximum length of {MAX_DESCRIPTION_LENGTH} characters",
            )

        if recipe.prep_time_minutes < 0:
            error("PrepTimeMinutes", "NEGATIVE_PREP_TIME", "Prep time cannot be negative")
        if recipe.cook_time_minutes < 0:
            error("CookTimeMinutes", "NEGATIVE_COOK_TIME", "Cook time cannot be negative")
        if recipe.servings <= 0:
            error("Servings", "INVALID_SERVINGS", "Servings must be a positive number")

        if not recipe.ingredients:
            error("Ingredients", "NO_INGREDIENTS", "Recipe must have at least one ingredient")
        elif len(recipe.ingredients) > MAX_INGREDIENTS:
            error("Ingredients", "TOO_MANY_INGREDIENTS", f"Recipe has too many ingredients (max {MAX_INGREDIENTS})")

        for i, ingredient in enumerate(recipe.ingredients):
            position = i + 1
            if not (ingredient.name or "").strip():
                error(f"Ingredients[{i}].Name", "INGREDIENT_NO_NAME", f"Ingredient at position {position} has no name")
            elif len(ingredient.name) > MAX_INGREDIENT_NAME_LENGTH:
                error(
                    f"Ingredients[{i}].Name",
                    "INGREDIENT_NAME_TOO_LONG",
                    f"Ingredient name at position {position} is too long (max {MAX_INGREDIENT_NAME_LENGTH})",
                )
            if ingredient.quantity < 0:
                error(
                    f"Ingredients[{i}].Quantity",
                    "NEGATIVE_INGREDIENT_QUANTITY",
                    f"Ingredient quantity at position {position} cannot be negative",
                )

        if not recipe.instructions:
            error("Instructions", "NO_INSTRUCTIONS", "Recipe must have at least one instruction")
        elif len(recipe.instructions) > MAX_INSTRUCTIONS:
            error(
                "Instructions",
                "TOO_MANY_INSTRUCTIONS",
                f"Recipe has too many instructions (max {MAX_INSTRUCTIONS})",
            )

        for i, step in enumerate(recipe.instructions):
            if not (step or "").strip():
                error(f"Instructions[{i}]", "EMPTY_INSTRUCTION", f"Instruction at step {i + 1} is empty")
            elif len(step) > MAX_INSTRUCTION_LENGTH:
                error(
                    f"Instructions[{i}]",
                    "INSTRUCTION_TOO_LONG",
                    f"Instruction at step {i + 1} is too long (max {MAX_INSTRUCTION_LENGTH})",
                )

        if len(recipe.tags) > MAX_TAG_COUNT:
            error("Tags", "TOO_MANY_TAGS", f"Recipe has too many tags (max {MAX_TAG_COUNT})")
        for tag in recipe.tags:
            if len(tag) > MAX_TAG_LENGTH:
                error("Tags", "TAG_TOO_LONG", f"Tag '{tag[:20]}...' is too long (max {MAX_TAG_LENGTH})")

        if recipe.image_url and not _is_http_url(recipe.image_url):
            error("ImageUrl", "INVALID_IMAGE_URL", "Image URL is not a valid HTTP/HTTPS URL")

        return issues

    def business_issues(self, recipe: Recipe) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        def warn(field: str, code: str, message: str) -> None:
            issues.append(ValidationIssue(field, message, Severity.WARNING, code))

        if recipe.prep_time_minutes > MAX_REASONABLE_PREP_MINUTES:
            warn(
                "PrepTimeMinutes",
                "LONG_PREP_TIME",
                f"Prep time of {recipe.prep_time_minutes} minutes "
                f"({recipe.prep_time_minutes // 60} hours) seems unusually long",
            )
        if recipe.cook_time_minutes > MAX_REASONABLE_COOK_MINUTES:
            warn(
                "CookTimeMinutes",
                "LONG_COOK_TIME",
                f"Cook time of {recipe.cook_time_minutes} minutes "
                f"({recipe.cook_time_minutes // 60} hours) seems unusually long",
            )
        if recipe.prep_time_minutes == 0 and recipe.cook_time_minutes == 0:
            warn(
                "PrepTimeMinutes",
                "NO_TIME_ESTIMATES",
                "Both prep time and cook time are zero, consider adding time estimates",
            )
        if recipe.servings > MAX_REASONABLE_SERVINGS:
            warn("Servings", "HIGH_SERVINGS", f"Serving size of {recipe.servings} seems unusually high")

        description = (recipe.description or "").strip()
        if not description and len(recipe.ingredients) >= DESCRIPTION_EXPECTED_FROM_INGREDIENTS:
            warn("Description", "MISSING_DESCRIPTION", "Recipe has no description, consider adding one")
        if description and len(recipe.description or "") < SHORT_DESCRIPTION_CHARS:
            warn("Description", "SHORT_DESCRIPTION", "Recipe description is very short, consider expanding it")

        if not (recipe.cuisine or "").strip():
            warn("Cuisine", "MISSING_CUISINE", "No cuisine type specified")
        if not recipe.tags:
            warn("Tags", "NO_TAGS", "No tags specified")
        if not (recipe.image_url or "").strip():
            warn("ImageUrl", "NO_IMAGE", "No image URL specified")

        if len(recipe.ingredients) < 3 and len(recipe.instructions) > 5:
            warn(
                "Ingredients",
                "FEW_INGREDIENTS",
                "Recipe has many instructions but few ingredients, some may be missing",
            )
        if len(recipe.instructions) < 2 and len(recipe.ingredients) > 5:
            warn(
                "Instructions",
                "FEW_INSTRUCTIONS",
                "Recipe has many ingredients but few instructions, some steps may be missing",
            )

        names = Counter((ingredient.name or "").strip().lower() for ingredient in recipe.ingredients)
        duplicates = [name for name, count in names.items() if name and count > 1]
        if duplicates:
            warn("Ingredients", "DUPLICATE_INGREDIENTS", f"Recipe has duplicate ingredients: {', '.join(duplicates)}")

        zero_quantity = sum(1 for ingredient in recipe.ingredients if ingredient.quantity == 0)
        if zero_quantity:
            warn("Ingredients", "ZERO_QUANTITY_INGREDIENTS", f"{zero_quantity} ingredient(s) have zero quantity")

        return issues
