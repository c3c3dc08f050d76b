from __future__ import annotations

import pytest

from cookbook_ingest.ingest_core.orchestrator import phases
from cookbook_ingest.ingest_core.orchestrator.phases import NORMALIZE_PLAN, QUERY_PLAN, URL_PLAN, plan_for
from cookbook_ingest.models.ingest import IngestMode


@pytest.mark.parametrize("plan", [URL_PLAN, QUERY_PLAN, NORMALIZE_PLAN])
def test_plans_cover_the_whole_progress_bar(plan):
    assert plan.total == pytest.approx(100)
    assert plan.progress_for(plan.phases[-1], 1.0) == 100


def test_url_plan_boundaries():
    assert URL_PLAN.progress_for(phases.FETCH) == 0
    assert URL_PLAN.progress_for(phases.EXTRACT) == 15
    assert URL_PLAN.progress_for(phases.EXTRACT, 0.5) == 35
    assert URL_PLAN.progress_for(phases.VALIDATE) == 55
    assert URL_PLAN.progress_for(phases.REVIEW_READY) == 85


def test_query_plan_scales_url_phases_after_discovery():
    assert QUERY_PLAN.phases[0] == phases.DISCOVER
    assert QUERY_PLAN.progress_for(phases.DISCOVER) == 0
    assert QUERY_PLAN.progress_for(phases.FETCH) == 10
    # 10 + 15 * 0.9
    assert QUERY_PLAN.progress_for(phases.EXTRACT) == 23


def test_fraction_is_clamped():
    assert URL_PLAN.progress_for(phases.EXTRACT, -1) == 15
    assert URL_PLAN.progress_for(phases.EXTRACT, 7) == 55


def test_unknown_phase_raises():
    with pytest.raises(ValueError, match="not part of this plan"):
        NORMALIZE_PLAN.progress_for(phases.EXTRACT)


def test_plan_for_mode():
    assert plan_for(IngestMode.URL) is URL_PLAN
    assert plan_for(IngestMode.QUERY) is QUERY_PLAN
    assert plan_for(IngestMode.NORMALIZE) is NORMALIZE_PLAN
