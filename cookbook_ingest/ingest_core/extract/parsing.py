from __future__ import annotations

import re
from typing import Any

from cookbook_ingest.models.recipe import Ingredient

DEFAULT_SERVINGS = 4

UNICODE_FRACTIONS = {
    "½": " 1/2",
    "¼": " 1/4",
    "¾": " 3/4",
    "⅓": " 1/3",
    "⅔": " 2/3",
    "⅛": " 1/8",
    "⅜": " 3/8",
    "⅝": " 5/8",
    "⅞": " 7/8",
}

_ISO_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$",
    re.IGNORECASE,
)

_UNITS = (
    r"cups?|tablespoons?|tbsps?|tbs|teaspoons?|tsps?|ounces?|oz|pounds?|lbs?|grams?|g|"
    r"kilograms?|kg|milliliters?|millilitres?|ml|liters?|litres?|l|pinch(?:es)?|dash(?:es)?|"
    r"cloves?|slices?|pieces?|stalks?|heads?|bunch(?:es)?|cans?|packages?|pkgs?|sticks?|"
    r"sprigs?|quarts?|qt|pints?|pt"
)

_INGREDIENT_RE = re.compile(
    rf"^(?P<qty>[\d\s/.½¼¾⅓⅔⅛⅜⅝⅞-]+)?\s*(?:(?P<unit>{_UNITS})\.?\s+)?(?P<name>[^(]+?)(?:\s*\((?P<notes>[^)]+)\))?(?:,\s*(?P<trailing>.+))?$",
    re.IGNORECASE,
)

_STEP_SPLIT_RE = re.compile(r"(?:\r?\n)+|(?<=\.)\s+(?=\d+[.)]\s)")


def parse_iso_duration(value: Any) -> int:
    """Minutes in an ISO-8601 duration such as PT1H30M; 0 when unparsable."""
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    if not isinstance(value, str) or not value.strip():
        return 0
    match = _ISO_DURATION_RE.match(value.strip())
    if not match:
        return 0
    days = int(match.group("days") or 0)
    hours = int(match.group("hours") or 0)
    minutes = int(match.group("minutes") or 0)
    seconds = int(match.group("seconds") or 0)
    return days * 24 * 60 + hours * 60 + minutes + (seconds + 30) // 60


def parse_quantity(text: str | None) -> float:
    if not text or not text.strip():
        return 1.0
    normalized = text
    for symbol, replacement in UNICODE_FRACTIONS.items():
        normalized = normalized.replace(symbol, replacement)
    # Ranges such as "2-3" keep the lower bound.
    normalized = normalized.split("-", 1)[0]

    total = 0.0
    for part in normalized.split():
        if "/" in part:
            numerator, _, denominator = part.partition("/")
            try:
                den = float(denominator)
                if den:
                    total += float(numerator) / den
            except ValueError:
                continue
        else:
            try:
                total += float(part)
            except ValueError:
                continue
    return round(total, 4) if total > 0 else 1.0


def parse_ingredient(text: str) -> Ingredient:
    original = " ".join((text or "").split())
    match = _INGREDIENT_RE.match(original)
    if not match or not (match.group("name") or "").strip():
        return Ingredient(name=original, quantity=1)

    notes = [part.strip() for part in (match.group("notes"), match.group("trailing")) if part and part.strip()]
    unit = (match.group("unit") or "").strip() or None
    return Ingredient(
        name=match.group("name").strip(),
        quantity=parse_quantity(match.group("qty")),
        unit=unit,
        notes=", ".join(notes) or None,
    )


def _servings_value(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    if isinstance(value, str):
        match = re.search(r"\d+", value)
        if match and int(match.group()) > 0:
            return int(match.group())
    return None


def parse_servings(value: Any) -> int:
    items = value if isinstance(value, list) else [value]
    for item in items:
        servings = _servings_value(item)
        if servings is not None:
            return servings
    return DEFAULT_SERVINGS


def split_instruction_text(text: str) -> list[str]:
    steps = [re.sub(r"^\d+[.)]\s*", "", step).strip() for step in _STEP_SPLIT_RE.split(text or "")]
    return [step for step in steps if step]


def split_keywords(value: Any) -> list[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value if isinstance(item, (str, int, float))]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]
