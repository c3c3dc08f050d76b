from __future__ import annotations

import copy
import json
from typing import Any, Iterable

from loguru import logger
from pydantic import ValidationError

from cookbook_ingest.ingest_core.normalize.json_pointer import PointerError, apply_operation, resolve
from cookbook_ingest.models.patches import (
    NormalizePatchOperation,
    NormalizePatchResponse,
    NormalizePatchResult,
    PatchApplyStatus,
    PatchFailure,
    PatchOp,
    RiskCategory,
)
from cookbook_ingest.models.recipe import Recipe
from cookbook_ingest.ports import LlmChat
from cookbook_ingest.services.prompt_store import get_prompt, prompt_prefix, render_prompt
from cookbook_ingest.tools.llm_json import parse_json_object

NORMALIZE_PHASE = "Ingest.Normalize"
NORMALIZE_PROMPT = "ingest.normalize"
NORMALIZE_TEMPERATURE = 0.3

DEFAULT_FOCUS_AREAS = "All areas: formatting, units, ingredient notes, metadata."
PARSE_FAILURE_SUMMARY = "Failed to parse LLM response"
VALID_OPS = {op.value for op in PatchOp}


def _coerce_patch(raw: Any) -> NormalizePatchOperation:
    if isinstance(raw, NormalizePatchOperation):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"Patch must be an object, got {type(raw).__name__}")
    data = dict(raw)
    for key in ("op", "riskCategory", "risk_category"):
        if isinstance(data.get(key), str):
            data[key] = data[key].strip().lower()
    return NormalizePatchOperation.model_validate(data)


def parse_patch_response(raw: str | None) -> NormalizePatchResponse:
    parsed = parse_json_object(raw)
    if not parsed.ok or parsed.data is None:
        logger.warning(f"Failed to parse normalize response: {parsed.error}")
        return NormalizePatchResponse(summary=PARSE_FAILURE_SUMMARY)

    raw_patches = parsed.data.get("patches") or []
    if not isinstance(raw_patches, list):
        return NormalizePatchResponse(summary=PARSE_FAILURE_SUMMARY)

    patches: list[NormalizePatchOperation] = []
    for item in raw_patches:
        try:
            patches.append(_coerce_patch(item))
        except (ValidationError, ValueError) as exc:
            logger.warning(f"Dropping malformed normalize patch {item!r}: {exc}")

    has_high = any(p.risk_category == RiskCategory.HIGH for p in patches)
    return NormalizePatchResponse(
        patches=patches,
        summary=str(parsed.data.get("summary") or ""),
        has_high_risk_changes=bool(parsed.data.get("hasHighRiskChanges")) or has_high,
    )


def _display(value: Any) -> str:
    if value is None:
        return "_(none)_"
    return f"`{json.dumps(value, ensure_ascii=False)}`"


def render_patch_markdown(response: NormalizePatchResponse) -> str:
    """Human-readable review sheet for a patch set."""
    counts = response.risk_counts()
    lines = [
        "# Normalize patches",
        "",
        response.summary or "_No summary provided._",
        "",
        f"Risk: {counts['low']} low, {counts['medium']} medium, {counts['high']} high",
        "",
    ]
    if not response.patches:
        lines.append("No changes suggested.")
        return "\n".join(lines) + "\n"

    lines += ["| # | Risk | Op | Path | Before | After | Reason |", "|---|---|---|---|---|---|---|"]
    for index, patch in enumerate(response.patches):
        after = "" if patch.op == PatchOp.REMOVE else _display(patch.value)
        lines.append(
            f"| {index} | {patch.risk_category} | {patch.op} | `{patch.path}` | "
            f"{_display(patch.original_value)} | {after} | {patch.reason.replace('|', '/')} |"
        )
    return "\n".join(lines) + "\n"


class NormalizeService:
    """LLM-proposed JSON patches for an existing recipe, applied only on review."""

    def __init__(self, llm: LlmChat | None = None):
        self.llm = llm

    async def generate_patches(
        self,
        recipe: Recipe,
        focus_areas: list[str] | None = None,
        *,
        prompt_overrides: dict[str, str] | None = None,
    ) -> NormalizePatchResponse:
        if self.llm is None:
            raise RuntimeError("NormalizeService needs an LLM to generate patches")

        logger.info(f"Generating normalize patches for recipe {recipe.id}")
        prefix = prompt_prefix(NORMALIZE_PROMPT, prompt_overrides, NORMALIZE_PHASE)
        focus = "\n".join(f"- {area}" for area in focus_areas or [] if area.strip()) or DEFAULT_FOCUS_AREAS
        prompt = render_prompt(
            f"{prefix}.user",
            recipe_json=json.dumps(recipe.to_json_dict(), indent=2, ensure_ascii=False),
            focus_areas=focus,
        )
        raw = await self.llm.complete(
            prompt,
            system=get_prompt(f"{prefix}.system"),
            phase=NORMALIZE_PHASE,
            temperature=NORMALIZE_TEMPERATURE,
        )
        response = parse_patch_response(raw)
        counts = response.risk_counts()
        logger.info(
            f"Generated {len(response.patches)} normalize patches: "
            f"{counts['low']} low, {counts['medium']} medium, {counts['high']} high risk"
        )
        return response

    def with_original_values(self, recipe: Recipe, response: NormalizePatchResponse) -> NormalizePatchResponse:
        """Fill ``original_value`` from the current recipe for reviewer previews."""
        document = recipe.to_json_dict()
        patches = []
        for patch in response.patches:
            try:
                original = copy.deepcopy(resolve(document, patch.path))
            except PointerError:
                original = None
            patches.append(patch.model_copy(update={"original_value": original}))
        return response.model_copy(update={"patches": patches})

    def validate_patches(self, patches: Iterable[NormalizePatchOperation | dict[str, Any]]) -> list[str]:
        errors: list[str] = []
        for patch in patches:
            if isinstance(patch, NormalizePatchOperation):
                op, path, has_value, value = str(patch.op), patch.path, True, patch.value
            else:
                op = str(patch.get("op") or "").strip().lower()
                path = patch.get("path")
                has_value, value = "value" in patch, patch.get("value")

            if not isinstance(path, str) or not path.strip():
                errors.append("Patch has empty path")
            elif not path.startswith("/"):
                errors.append(f"Patch path must start with '/': {path}")

            if op not in VALID_OPS:
                errors.append(f"Patch op must be one of replace, add, remove: {op or '(missing)'}")
            elif op in {PatchOp.REPLACE, PatchOp.ADD} and (not has_value or value is None):
                errors.append(f"Patch value required for replace/add: {path}")
        return errors

    def apply_patches(self, recipe: Recipe, patches: list[NormalizePatchOperation]) -> NormalizePatchResult:
        logger.info(f"Applying {len(patches)} normalize patches to recipe {recipe.id}")
        if not patches:
            return NormalizePatchResult(
                status=PatchApplyStatus.SUCCESS,
                normalized_recipe=recipe,
                summary="No patches to apply",
            )

        document = copy.deepcopy(recipe.to_json_dict())
        applied: list[NormalizePatchOperation] = []
        failed: list[PatchFailure] = []

        for patch in patches:
            try:
                previous = apply_operation(document, str(patch.op), patch.path, copy.deepcopy(patch.value))
            except PointerError as exc:
                logger.warning(f"Failed to apply patch {patch.op} {patch.path}: {exc}")
                failed.append(PatchFailure(patch=patch, error=str(exc)))
                continue
            applied.append(patch.model_copy(update={"original_value": previous}))
            logger.debug(f"Applied patch: {patch.op} {patch.path}")

        summary = f"Applied {len(applied)}/{len(patches)} patches"
        if failed:
            summary += f", {len(failed)} failed"

        if not applied:
            return NormalizePatchResult(
                status=PatchApplyStatus.PARTIAL,
                normalized_recipe=recipe.model_copy(deep=True),
                summary=summary,
                failed_patches=failed,
            )

        try:
            normalized = Recipe.model_validate(document)
        except ValidationError as exc:
            logger.warning(f"Patched recipe {recipe.id} no longer validates: {exc}")
            return NormalizePatchResult(
                status=PatchApplyStatus.FAILED,
                normalized_recipe=None,
                summary=f"Failed to validate patched recipe: {exc.error_count()} error(s)",
                applied_patches=applied,
                failed_patches=failed,
            )

        return NormalizePatchResult(
            status=PatchApplyStatus.PARTIAL if failed else PatchApplyStatus.SUCCESS,
            normalized_recipe=normalized,
            summary=summary,
            applied_patches=applied,
            failed_patches=failed,
        )

    def select_patches(
        self,
        response: NormalizePatchResponse,
        indices: Iterable[int] | None = None,
        max_risk: RiskCategory | str | None = None,
    ) -> list[NormalizePatchOperation]:
        wanted = None if indices is None else set(indices)
        ceiling = RiskCategory(str(max_risk).lower()) if max_risk is not None else None
        selected = []
        for index, patch in enumerate(response.patches):
            if wanted is not None and index not in wanted:
                continue
            if ceiling is not None and patch.risk_category.rank > ceiling.rank:
                continue
            selected.append(patch)
        return selected

    def apply_reviewed(
        self,
        recipe: Recipe,
        response: NormalizePatchResponse,
        indices: Iterable[int] | None = None,
        max_risk: RiskCategory | str | None = None,
    ) -> NormalizePatchResult:
        """Apply the patches a reviewer approved, by position and risk ceiling."""
        return self.apply_patches(recipe, self.select_patches(response, indices, max_risk))
