"""
Step catalogue and the run/step state machine.

Each pipeline variant is an ordered list of step ids. The transition helpers
below are the only places a Step or WorkflowRun changes status, and they
enforce these rules:

  - run status only moves forward: queued → running → completed|failed|cancelled
  - a step is completed only after it was processing
  - a step's progress never decreases
"""

from typing import Optional

from .models import (
    PipelineVariant,
    RunStatus,
    Step,
    StepStatus,
    WorkflowRun,
    utcnow,
)

VALIDATION = "validation"
IMAGE_GENERATION = "image_generation"
IMAGE_UPLOAD = "image_upload"
VIDEO_GENERATION = "video_generation"
VIDEO_UPLOAD = "video_upload"
FINALIZATION = "finalization"

STEP_NAMES = {
    VALIDATION: "Validation & Security Check",
    IMAGE_GENERATION: "Generate Image",
    IMAGE_UPLOAD: "Upload Image to Storage",
    VIDEO_GENERATION: "Convert Image to Video",
    VIDEO_UPLOAD: "Upload Video to Storage",
    FINALIZATION: "Finalize Assets",
}

PIPELINES = {
    PipelineVariant.COMPLETE: [
        VALIDATION, IMAGE_GENERATION, IMAGE_UPLOAD,
        VIDEO_GENERATION, VIDEO_UPLOAD, FINALIZATION,
    ],
    PipelineVariant.IMAGE_ONLY: [VALIDATION, IMAGE_GENERATION, IMAGE_UPLOAD],
    PipelineVariant.VIDEO_FROM_IMAGE: [
        VALIDATION, VIDEO_GENERATION, VIDEO_UPLOAD, FINALIZATION,
    ],
}

PAID_STEPS = {IMAGE_GENERATION, VIDEO_GENERATION}


def required_providers(variant: PipelineVariant) -> set[str]:
    """Which generation providers ("image", "video") a variant calls."""
    needed = set()
    pipeline = PIPELINES[variant]
    if IMAGE_GENERATION in pipeline:
        needed.add("image")
    if VIDEO_GENERATION in pipeline:
        needed.add("video")
    return needed


def build_steps(variant: PipelineVariant, costs: Optional[dict[str, int]] = None) -> list[Step]:
    costs = costs or {}
    return [
        Step(id=step_id, name=STEP_NAMES[step_id], cost=costs.get(step_id, 0))
        for step_id in PIPELINES[variant]
    ]


# ── Run transitions ──────────────────────────────────────────────────────────

_RUN_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


class IllegalTransition(RuntimeError):
    pass


def transition_run(run: WorkflowRun, status: RunStatus) -> None:
    if status not in _RUN_TRANSITIONS[run.status]:
        raise IllegalTransition(f"Run {run.id}: {run.status.value} → {status.value} not allowed")
    run.status = status
    if status == RunStatus.RUNNING:
        run.started_at = utcnow()
    elif run.is_terminal:
        run.completed_at = utcnow()


# ── Step transitions ─────────────────────────────────────────────────────────

def start_step(step: Step) -> None:
    if step.status != StepStatus.PENDING:
        raise IllegalTransition(f"Step {step.id}: cannot start from {step.status.value}")
    step.status = StepStatus.PROCESSING
    step.progress = 0
    step.started_at = utcnow()


def advance_progress(step: Step, progress: int) -> bool:
    """Raise the step's progress; returns False when nothing changed."""
    if step.status != StepStatus.PROCESSING:
        return False
    progress = max(0, min(100, int(progress)))
    if progress <= step.progress:
        return False
    step.progress = progress
    return True


def complete_step(step: Step, result: Optional[dict] = None) -> None:
    if step.status != StepStatus.PROCESSING:
        raise IllegalTransition(f"Step {step.id}: cannot complete from {step.status.value}")
    step.status = StepStatus.COMPLETED
    step.progress = 100
    step.completed_at = utcnow()
    if result is not None:
        step.result = {**(step.result or {}), **result}


def fail_step(step: Step, error: str, code: str) -> None:
    if step.status not in (StepStatus.PENDING, StepStatus.PROCESSING):
        raise IllegalTransition(f"Step {step.id}: cannot fail from {step.status.value}")
    step.status = StepStatus.FAILED
    step.error = error
    step.error_code = code
    step.completed_at = utcnow()
