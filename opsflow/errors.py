"""Exception hierarchy for opsflow."""

from __future__ import annotations


class OpsflowError(Exception):
    """Base class for all opsflow errors."""


class WorkflowNotFound(OpsflowError):
    """No workflow definition exists for the requested id."""


class WorkflowInactive(OpsflowError):
    """The workflow definition has been deactivated."""


class WorkflowConfigError(OpsflowError):
    """A workflow definition is malformed and cannot be triggered."""


class CircuitBreakerOpen(OpsflowError):
    """Raised when a workflow's breaker refuses new runs."""

    def __init__(self, workflow_id: str, message: str) -> None:
        super().__init__(message)
        self.workflow_id = workflow_id


class InvalidTransition(OpsflowError):
    """A run status change that the lifecycle does not allow."""


class DecisionError(OpsflowError):
    """The decision service failed or returned output of the wrong shape."""


class ApprovalError(OpsflowError):
    """An approval ticket cannot be resolved as requested."""


class ExceptionRecordError(OpsflowError):
    """An exception record cannot be resolved as requested."""


class RunCancelled(OpsflowError):
    """A run was marked for cancellation between steps."""


class WorkflowHalted(OpsflowError):
    """An exception rule asked for the running workflow to stop."""


class PipelineNotFound(OpsflowError):
    """No pipeline definition exists for the requested id."""


class StepFailed(OpsflowError):
    """A step the rest of the run depends on did not succeed."""
