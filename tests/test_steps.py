import pytest

from mediaflow.workflow.models import PipelineVariant, RunStatus, StepStatus, WorkflowRun
from mediaflow.workflow.steps import (
    IllegalTransition,
    advance_progress,
    build_steps,
    complete_step,
    fail_step,
    required_providers,
    start_step,
    transition_run,
)


def _run(status=RunStatus.QUEUED) -> WorkflowRun:
    return WorkflowRun(
        id="run-1",
        user_id="user-1",
        variant=PipelineVariant.COMPLETE,
        status=status,
        steps=build_steps(PipelineVariant.COMPLETE),
    )


def test_build_steps_assigns_costs_to_paid_steps():
    steps = build_steps(PipelineVariant.COMPLETE, {"image_generation": 5, "video_generation": 18})
    assert [s.cost for s in steps] == [0, 5, 0, 18, 0, 0]
    assert all(s.status == StepStatus.PENDING and s.progress == 0 for s in steps)
    assert steps[0].name == "Validation & Security Check"


def test_required_providers():
    assert required_providers(PipelineVariant.COMPLETE) == {"image", "video"}
    assert required_providers(PipelineVariant.IMAGE_ONLY) == {"image"}
    assert required_providers(PipelineVariant.VIDEO_FROM_IMAGE) == {"video"}


def test_run_moves_forward_only():
    run = _run()
    transition_run(run, RunStatus.RUNNING)
    assert run.started_at is not None
    transition_run(run, RunStatus.COMPLETED)
    assert run.completed_at is not None

    with pytest.raises(IllegalTransition):
        transition_run(run, RunStatus.RUNNING)
    with pytest.raises(IllegalTransition):
        transition_run(run, RunStatus.CANCELLED)


def test_queued_run_can_be_cancelled():
    run = _run()
    transition_run(run, RunStatus.CANCELLED)
    assert run.is_terminal


def test_step_must_be_processing_to_complete():
    step = build_steps(PipelineVariant.IMAGE_ONLY)[0]
    with pytest.raises(IllegalTransition):
        complete_step(step)

    start_step(step)
    complete_step(step, {"checks": 1})
    assert step.status == StepStatus.COMPLETED
    assert step.progress == 100
    assert step.result == {"checks": 1}

    with pytest.raises(IllegalTransition):
        start_step(step)
    with pytest.raises(IllegalTransition):
        fail_step(step, "boom", "internal_failure")


def test_complete_step_merges_into_existing_result():
    step = build_steps(PipelineVariant.COMPLETE)[3]
    start_step(step)
    step.result = {"job_id": "job-1"}
    complete_step(step, {"url": "https://x/video.mp4"})
    assert step.result == {"job_id": "job-1", "url": "https://x/video.mp4"}


def test_progress_never_decreases():
    step = build_steps(PipelineVariant.COMPLETE)[3]
    assert not advance_progress(step, 10)  # pending

    start_step(step)
    assert advance_progress(step, 30)
    assert not advance_progress(step, 20)
    assert not advance_progress(step, 30)
    assert step.progress == 30
    assert advance_progress(step, 250)
    assert step.progress == 100


def test_pending_step_can_fail():
    step = build_steps(PipelineVariant.COMPLETE)[4]
    fail_step(step, "cancelled", "cancelled")
    assert step.status == StepStatus.FAILED
    assert step.error_code == "cancelled"
