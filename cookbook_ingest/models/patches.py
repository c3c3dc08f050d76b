from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import Field

from cookbook_ingest.models.recipe import CamelModel, Recipe


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class RiskCategory(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskCategory.LOW: 0, RiskCategory.MEDIUM: 1, RiskCategory.HIGH: 2}


class NormalizePatchOperation(CamelModel):
    op: PatchOp
    path: str
    value: Any = None
    risk_category: RiskCategory = RiskCategory.MEDIUM
    reason: str = ""
    original_value: Any = None


class NormalizePatchResponse(CamelModel):
    patches: list[NormalizePatchOperation] = Field(default_factory=list)
    summary: str = ""
    has_high_risk_changes: bool = False

    def risk_counts(self) -> dict[str, int]:
        counts = {category.value: 0 for category in RiskCategory}
        for patch in self.patches:
            counts[patch.risk_category.value] += 1
        return counts


class PatchApplyStatus(StrEnum):
    SUCCESS = "Success"
    PARTIAL = "Partial"
    FAILED = "Failed"


@dataclass(slots=True)
class PatchFailure:
    patch: NormalizePatchOperation
    error: str


@dataclass(slots=True)
class NormalizePatchResult:
    status: PatchApplyStatus
    normalized_recipe: Recipe | None
    summary: str
    applied_patches: list[NormalizePatchOperation] = field(default_factory=list)
    failed_patches: list[PatchFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == PatchApplyStatus.SUCCESS
