"""Agent Plans — checklist step-state transitions for the Linear timeline.

Pure functions over ``list[PlanStep]``. Every function returns a new list and
never mutates its input. Linear renders plans with replacement semantics, so the
router always sends the full list produced here.
"""

from __future__ import annotations

from loom.models import Plan, PlanStep, PlanStepStatus

STEP_ANALYZE = "Analyze issue requirements"
STEP_SELECT_REPO = "Wait for repository selection"
STEP_IMPORT_REPO = "Import repository context"
STEP_GENERATE = "Generate UI components with v0"
STEP_REVIEW = "Review generated code"
STEP_DEPLOY = "Deploy preview to Vercel"


def build_initial_plan(has_repo: bool = False, needs_selection: bool = False) -> Plan:
    """Build the UI generation checklist for a new session.

    The analysis step is always complete by the time a plan is shown. Whichever
    step comes first after it is ``current``; everything later is ``pending``.
    """
    steps = [PlanStep(label=STEP_ANALYZE, status=PlanStepStatus.COMPLETED)]

    if needs_selection:
        steps.append(PlanStep(label=STEP_SELECT_REPO, status=PlanStepStatus.CURRENT))
        steps.append(PlanStep(label=STEP_IMPORT_REPO))
    elif has_repo:
        steps.append(PlanStep(label=STEP_IMPORT_REPO, status=PlanStepStatus.CURRENT))

    generate_status = (
        PlanStepStatus.PENDING if (has_repo or needs_selection) else PlanStepStatus.CURRENT
    )
    steps.append(PlanStep(label=STEP_GENERATE, status=generate_status))
    steps.append(PlanStep(label=STEP_REVIEW))
    steps.append(PlanStep(label=STEP_DEPLOY))
    return steps


def step_index(plan: Plan, label: str) -> int:
    """Return the index of the step with ``label``.

    Raises:
        ValueError: If the plan has no such step.
    """
    for i, step in enumerate(plan):
        if step.label == label:
            return i
    raise ValueError(f"Plan has no step labelled {label!r}")


def _check_index(plan: Plan, index: int) -> None:
    if not 0 <= index < len(plan):
        raise IndexError(f"Plan step index {index} out of range (plan has {len(plan)} steps)")


def mark_current(plan: Plan, index: int) -> Plan:
    """Make step ``index`` the current step.

    Earlier steps become completed. Later steps keep their status, except that a
    stale ``current`` further down is reset to pending so only one step is current.
    """
    _check_index(plan, index)
    updated = []
    for i, step in enumerate(plan):
        if i < index:
            status = PlanStepStatus.COMPLETED
        elif i == index:
            status = PlanStepStatus.CURRENT
        elif step.status == PlanStepStatus.CURRENT:
            status = PlanStepStatus.PENDING
        else:
            status = step.status
        updated.append(step.model_copy(update={"status": status}))
    return updated


def mark_completed(plan: Plan, index: int) -> Plan:
    """Complete every step up to and including ``index``."""
    _check_index(plan, index)
    completed = PlanStepStatus.COMPLETED
    return [
        step.model_copy(update={"status": completed if i <= index else step.status})
        for i, step in enumerate(plan)
    ]


def mark_failed(plan: Plan, index: int) -> Plan:
    """Mark step ``index`` as failed, leaving all other steps alone."""
    _check_index(plan, index)
    return [
        step.model_copy(update={"status": PlanStepStatus.FAILED if i == index else step.status})
        for i, step in enumerate(plan)
    ]
