from __future__ import annotations

import json

import pytest

from cookbook_ingest.ingest_core.normalize.json_pointer import PointerError, apply_operation, parse_pointer, resolve
from cookbook_ingest.ingest_core.normalize.service import (
    NORMALIZE_PHASE,
    PARSE_FAILURE_SUMMARY,
    NormalizeService,
    parse_patch_response,
    render_patch_markdown,
)
from cookbook_ingest.models.patches import (
    NormalizePatchOperation,
    NormalizePatchResponse,
    PatchApplyStatus,
    PatchOp,
    RiskCategory,
)
from tests.fakes import ScriptedLlm, make_recipe

PATCH_RESPONSE = json.dumps(
    {
        "patches": [
            {
                "op": "replace",
                "path": "/ingredients/1/unit",
                "value": "clove",
                "riskCategory": "LOW",
                "reason": "Singular unit",
            },
            {
                "op": "add",
                "path": "/tags/-",
                "value": "weeknight",
                "riskCategory": "medium",
                "reason": "Helpful tag",
            },
            {
                "op": "remove",
                "path": "/instructions/2",
                "riskCategory": "high",
                "reason": "Redundant step",
            },
        ],
        "summary": "Tidy units and tags",
        "hasHighRiskChanges": False,
    }
)


def _patch(op: str, path: str, value=None, risk: str = "low") -> NormalizePatchOperation:
    return NormalizePatchOperation(op=op, path=path, value=value, risk_category=risk, reason="test")


def test_parse_pointer_unescapes_tokens():
    assert parse_pointer("/a~1b/c~0d/0") == ["a/b", "c~d", "0"]
    with pytest.raises(PointerError, match="empty path"):
        parse_pointer("")
    with pytest.raises(PointerError, match="must start with '/'"):
        parse_pointer("name")


def test_apply_operation_on_objects_and_arrays():
    doc = {"name": "Soup", "tags": ["a", "b"]}

    assert apply_operation(doc, "replace", "/name", "Stew") == "Soup"
    apply_operation(doc, "add", "/tags/0", "first")
    apply_operation(doc, "add", "/tags/-", "last")
    assert doc["tags"] == ["first", "a", "b", "last"]
    assert apply_operation(doc, "remove", "/tags/1") == "a"
    apply_operation(doc, "add", "/cuisine", "French")
    assert resolve(doc, "/cuisine") == "French"


def test_apply_operation_rejects_missing_targets():
    doc = {"tags": ["a"]}
    with pytest.raises(PointerError):
        apply_operation(doc, "replace", "/missing", 1)
    with pytest.raises(PointerError):
        apply_operation(doc, "remove", "/tags/3")
    with pytest.raises(PointerError):
        apply_operation(doc, "add", "/tags/5", "x")
    with pytest.raises(PointerError):
        apply_operation(doc, "replace", "/tags/01", "x")


def test_parse_patch_response_normalizes_case_and_recomputes_high_risk():
    response = parse_patch_response(PATCH_RESPONSE)

    assert len(response.patches) == 3
    assert response.patches[0].risk_category == RiskCategory.LOW
    assert response.patches[2].op == PatchOp.REMOVE
    assert response.has_high_risk_changes is True
    assert response.risk_counts() == {"low": 1, "medium": 1, "high": 1}


def test_parse_patch_response_drops_malformed_patches():
    raw = json.dumps({"patches": [{"op": "rename", "path": "/name"}, {"op": "remove", "path": "/tags/0"}]})
    response = parse_patch_response(raw)
    assert [p.op for p in response.patches] == [PatchOp.REMOVE]


def test_parse_patch_response_failure_is_empty_response():
    response = parse_patch_response("The recipe looks fine to me!")
    assert response.patches == []
    assert response.summary == PARSE_FAILURE_SUMMARY


@pytest.mark.asyncio
async def test_generate_patches_calls_llm_with_recipe_json():
    llm = ScriptedLlm(PATCH_RESPONSE)
    service = NormalizeService(llm)

    response = await service.generate_patches(make_recipe(), ["units"])

    assert len(response.patches) == 3
    assert llm.phases == [NORMALIZE_PHASE]
    assert '"name": "Lemon Garlic Chicken"' in llm.calls[0]["prompt"]
    assert "- units" in llm.calls[0]["prompt"]


def test_with_original_values_fills_previews():
    service = NormalizeService()
    response = service.with_original_values(make_recipe(), parse_patch_response(PATCH_RESPONSE))

    assert response.patches[0].original_value == "cloves"
    assert response.patches[1].original_value is None
    assert response.patches[2].original_value == "Add garlic and lemon juice, then roast for 20 minutes."


def test_validate_patches_reports_each_problem():
    errors = NormalizeService().validate_patches(
        [
            {"op": "replace", "path": "", "value": 1},
            {"op": "replace", "path": "name", "value": "x"},
            {"op": "move", "path": "/name"},
            {"op": "add", "path": "/tags/-"},
            _patch("remove", "/tags/0"),
        ]
    )
    assert errors == [
        "Patch has empty path",
        "Patch path must start with '/': name",
        "Patch op must be one of replace, add, remove: move",
        "Patch value required for replace/add: /tags/-",
    ]


def test_apply_patches_success():
    recipe = make_recipe()
    result = NormalizeService().apply_patches(
        recipe,
        [_patch("replace", "/name", "Lemony Chicken"), _patch("add", "/tags/-", "easy")],
    )

    assert result.status == PatchApplyStatus.SUCCESS
    assert result.normalized_recipe.name == "Lemony Chicken"
    assert result.normalized_recipe.tags == ["easy"]
    assert result.summary == "Applied 2/2 patches"
    assert result.applied_patches[0].original_value == "Lemon Garlic Chicken"
    assert recipe.name == "Lemon Garlic Chicken"


def test_apply_patches_partial_when_some_fail():
    result = NormalizeService().apply_patches(
        make_recipe(),
        [_patch("replace", "/cuisine", "Italian"), _patch("remove", "/instructions/10")],
    )

    assert result.status == PatchApplyStatus.PARTIAL
    assert result.normalized_recipe.cuisine == "Italian"
    assert len(result.failed_patches) == 1
    assert "out of bounds" in result.failed_patches[0].error
    assert result.summary == "Applied 1/2 patches, 1 failed"


def test_apply_patches_is_partial_when_every_patch_fails():
    recipe = make_recipe()
    result = NormalizeService().apply_patches(recipe, [_patch("replace", "/nope", 1)])

    assert result.status == PatchApplyStatus.PARTIAL
    assert result.normalized_recipe == recipe
    assert result.applied_patches == []
    assert [f.patch.path for f in result.failed_patches] == ["/nope"]
    assert result.summary == "Applied 0/1 patches, 1 failed"


def test_apply_patches_fails_when_result_invalid():
    service = NormalizeService()

    invalid = service.apply_patches(make_recipe(), [_patch("replace", "/servings", "many")])
    assert invalid.status == PatchApplyStatus.FAILED
    assert invalid.summary.startswith("Failed to validate patched recipe")


def test_apply_patches_with_empty_list_is_noop():
    recipe = make_recipe()
    result = NormalizeService().apply_patches(recipe, [])
    assert result.status == PatchApplyStatus.SUCCESS
    assert result.normalized_recipe == recipe
    assert result.summary == "No patches to apply"


def test_apply_reviewed_filters_by_index_and_risk():
    service = NormalizeService()
    response = parse_patch_response(PATCH_RESPONSE)

    low_only = service.apply_reviewed(make_recipe(), response, max_risk="low")
    assert [p.path for p in low_only.applied_patches] == ["/ingredients/1/unit"]

    picked = service.apply_reviewed(make_recipe(), response, indices=[1, 2], max_risk=RiskCategory.MEDIUM)
    assert [p.path for p in picked.applied_patches] == ["/tags/-"]


def test_render_patch_markdown_lists_every_patch():
    response = NormalizeService().with_original_values(make_recipe(), parse_patch_response(PATCH_RESPONSE))
    markdown = render_patch_markdown(response)

    assert markdown.startswith("# Normalize patches")
    assert "Risk: 1 low, 1 medium, 1 high" in markdown
    assert '| 0 | low | replace | `/ingredients/1/unit` | `"cloves"` | `"clove"` | Singular unit |' in markdown
    assert "No changes suggested." in render_patch_markdown(NormalizePatchResponse())
