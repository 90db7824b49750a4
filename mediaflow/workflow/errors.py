"""
Failure taxonomy for the generation workflow.

Every error carries a stable ``code`` (stored on the failed step / run and
sent to clients) and the HTTP status the routes translate it to.
"""

from typing import Optional


class WorkflowError(Exception):
    code = "workflow_error"
    http_status = 500
    default_message = "Workflow error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidConfiguration(WorkflowError):
    code = "invalid_configuration"
    http_status = 400
    default_message = "Invalid workflow configuration"


class ContentRejected(WorkflowError):
    code = "content_rejected"
    http_status = 400
    default_message = "Content rejected by moderation"


class InsufficientCredits(WorkflowError):
    code = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        self.shortage = max(0, required - available)
        super().__init__(
            f"Insufficient credits. You have {available} but need {required} "
            f"(short by {self.shortage})."
        )


class ProviderCallFailed(WorkflowError):
    code = "provider_call_failed"
    http_status = 502
    default_message = "Generation provider call failed"


class ProviderJobFailed(ProviderCallFailed):
    code = "provider_job_failed"
    default_message = "Generation provider reported a failed job"


class ProviderTimeout(WorkflowError):
    code = "provider_timeout"
    http_status = 504
    default_message = "Generation provider did not finish in time"


class Cancelled(WorkflowError):
    code = "cancelled"
    http_status = 409
    default_message = "cancelled"


class InternalFailure(WorkflowError):
    code = "internal_failure"
    http_status = 500
    default_message = "Internal error"


class RunNotFound(WorkflowError):
    code = "run_not_found"
    http_status = 404
    default_message = "Workflow not found"


class RunAlreadyTerminal(WorkflowError):
    code = "run_already_terminal"
    http_status = 409
    default_message = "Workflow already finished"


class ConcurrencyLimitExceeded(WorkflowError):
    code = "concurrency_limit"
    http_status = 429
    default_message = "Too many workflows running"


class LeaseLost(WorkflowError):
    code = "lease_lost"
    http_status = 409
    default_message = "Workflow is now owned by another worker"


class CancellationPending(WorkflowError):
    code = "cancellation_pending"
    http_status = 202
    default_message = "Cancellation requested; the owning worker has not stopped yet"
