"""
Generation Workflow

Orchestration for prompt → image → video runs:
  coordinator — run/step state machine, credit charging, cancellation
  poller      — bounded, cancellable wait on asynchronous provider jobs
  ledger      — prepaid credit balances with atomic debit / refund
  publisher   — per-run progress events, replayed to late subscribers
  routes      — /workflow and /credits HTTP endpoints (SSE streaming)
"""

from .errors import WorkflowError
from .models import PipelineVariant, RunStatus, StepStatus

__all__ = [
    "WorkflowError",
    "PipelineVariant",
    "RunStatus",
    "StepStatus",
]
