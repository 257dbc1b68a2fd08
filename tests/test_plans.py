"""Tests for agent plan step transitions."""

import pytest

from loom.models import PlanStepStatus
from loom.plans import (
    STEP_ANALYZE,
    STEP_DEPLOY,
    STEP_GENERATE,
    STEP_IMPORT_REPO,
    STEP_REVIEW,
    STEP_SELECT_REPO,
    build_initial_plan,
    mark_completed,
    mark_current,
    mark_failed,
    step_index,
)

P = PlanStepStatus


def _statuses(plan):
    return [s.status for s in plan]


def _labels(plan):
    return [s.label for s in plan]


class TestBuildInitialPlan:
    def test_without_repo(self):
        plan = build_initial_plan()
        assert _labels(plan) == [STEP_ANALYZE, STEP_GENERATE, STEP_REVIEW, STEP_DEPLOY]
        assert _statuses(plan) == [P.COMPLETED, P.CURRENT, P.PENDING, P.PENDING]

    def test_with_repo(self):
        plan = build_initial_plan(has_repo=True)
        assert _labels(plan) == [
            STEP_ANALYZE,
            STEP_IMPORT_REPO,
            STEP_GENERATE,
            STEP_REVIEW,
            STEP_DEPLOY,
        ]
        assert _statuses(plan) == [P.COMPLETED, P.CURRENT, P.PENDING, P.PENDING, P.PENDING]

    def test_needs_selection(self):
        plan = build_initial_plan(needs_selection=True)
        assert _labels(plan)[:3] == [STEP_ANALYZE, STEP_SELECT_REPO, STEP_IMPORT_REPO]
        assert _statuses(plan) == [
            P.COMPLETED,
            P.CURRENT,
            P.PENDING,
            P.PENDING,
            P.PENDING,
            P.PENDING,
        ]

    def test_exactly_one_current(self):
        for has_repo in (False, True):
            for needs_selection in (False, True):
                plan = build_initial_plan(has_repo, needs_selection)
                assert _statuses(plan).count(P.CURRENT) == 1


class TestTransitions:
    def test_mark_current_completes_earlier_steps(self):
        plan = build_initial_plan(has_repo=True)
        updated = mark_current(plan, step_index(plan, STEP_REVIEW))
        assert _statuses(updated) == [P.COMPLETED, P.COMPLETED, P.COMPLETED, P.CURRENT, P.PENDING]

    def test_mark_current_demotes_stale_later_current(self):
        plan = build_initial_plan()
        updated = mark_current(plan, 0)
        assert _statuses(updated) == [P.CURRENT, P.PENDING, P.PENDING, P.PENDING]

    def test_mark_completed_through_index(self):
        plan = build_initial_plan()
        updated = mark_completed(plan, len(plan) - 1)
        assert all(s == P.COMPLETED for s in _statuses(updated))

    def test_mark_failed_touches_only_that_step(self):
        plan = build_initial_plan()
        deploy = step_index(plan, STEP_DEPLOY)
        updated = mark_failed(plan, deploy)
        assert _statuses(updated) == [P.COMPLETED, P.CURRENT, P.PENDING, P.FAILED]

    def test_input_not_mutated(self):
        plan = build_initial_plan()
        before = _statuses(plan)
        mark_current(plan, 2)
        mark_completed(plan, 3)
        mark_failed(plan, 1)
        assert _statuses(plan) == before

    @pytest.mark.parametrize("fn", [mark_current, mark_completed, mark_failed])
    def test_out_of_range_raises(self, fn):
        plan = build_initial_plan()
        with pytest.raises(IndexError):
            fn(plan, len(plan))
        with pytest.raises(IndexError):
            fn(plan, -1)

    def test_step_index_unknown_label(self):
        with pytest.raises(ValueError):
            step_index(build_initial_plan(), STEP_SELECT_REPO)
