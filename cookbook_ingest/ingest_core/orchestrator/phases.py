from __future__ import annotations

import math
from dataclasses import dataclass

from cookbook_ingest.models.ingest import IngestMode

INITIALIZATION = "Initialization"
DISCOVER = "Ingest.Discover"
FETCH = "Ingest.Fetch"
EXTRACT = "Ingest.Extract"
REPAIR_JSON = "Ingest.RepairJson"
VALIDATE = "Ingest.Validate"
REPAIR_PARAPHRASE = "Ingest.RepairParaphrase"
FETCH_RECIPE = "Ingest.FetchRecipe"
NORMALIZE = "Ingest.Normalize"
REVIEW_READY = "Ingest.ReviewReady"
FINALIZE = "Ingest.Finalize"

URL_WEIGHTS: tuple[tuple[str, float], ...] = (
    (FETCH, 15),
    (EXTRACT, 40),
    (VALIDATE, 25),
    (REPAIR_PARAPHRASE, 5),
    (REVIEW_READY, 10),
    (FINALIZE, 5),
)
DISCOVER_WEIGHT = 10

NORMALIZE_WEIGHTS: tuple[tuple[str, float], ...] = (
    (FETCH_RECIPE, 20),
    (NORMALIZE, 60),
    (REVIEW_READY, 15),
    (FINALIZE, 5),
)


@dataclass(frozen=True, slots=True)
class PhasePlan:
    """Ordered phases with the share of the 0-100 progress bar each owns."""

    weights: tuple[tuple[str, float], ...]

    @property
    def phases(self) -> list[str]:
        return [name for name, _ in self.weights]

    @property
    def total(self) -> float:
        return sum(weight for _, weight in self.weights)

    def progress_for(self, phase: str, fraction: float = 0.0) -> int:
        completed = 0.0
        for name, weight in self.weights:
            if name == phase:
                fraction = min(max(fraction, 0.0), 1.0)
                value = math.floor(completed + weight * fraction + 1e-9)
                return min(max(value, 0), 100)
            completed += weight
        raise ValueError(f"Phase {phase} is not part of this plan")


def _with_discover(weights: tuple[tuple[str, float], ...]) -> tuple[tuple[str, float], ...]:
    scale = (100 - DISCOVER_WEIGHT) / sum(weight for _, weight in weights)
    return ((DISCOVER, DISCOVER_WEIGHT),) + tuple((name, weight * scale) for name, weight in weights)


URL_PLAN = PhasePlan(URL_WEIGHTS)
QUERY_PLAN = PhasePlan(_with_discover(URL_WEIGHTS))
NORMALIZE_PLAN = PhasePlan(NORMALIZE_WEIGHTS)


def plan_for(mode: IngestMode) -> PhasePlan:
    if mode == IngestMode.QUERY:
        return QUERY_PLAN
    if mode == IngestMode.NORMALIZE:
        return NORMALIZE_PLAN
    return URL_PLAN
