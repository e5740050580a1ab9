"""
Workflow error taxonomy.

Every error raised by the approval workflow derives from WorkflowError and
carries a stable machine code plus the HTTP status the API maps it to.
The application-level handler in prflow.main renders them as
{"error": {"code": ..., "message": ..., "retryable": ...}}.
"""

from fastapi import status


class WorkflowError(Exception):
    """Base workflow error with a user-facing message."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "WORKFLOW_ERROR"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(WorkflowError):
    """Malformed or inconsistent input; correctable by the user."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "VALIDATION_ERROR"


class NotFoundError(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "PR_NOT_FOUND"


class UnauthorizedError(WorkflowError):
    """The actor may not perform this action. Never names the required role."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "INSUFFICIENT_PERMISSIONS"


class StageMismatchError(WorkflowError):
    """The stage argument is not the PR's current stage."""

    status_code = status.HTTP_409_CONFLICT
    code = "STAGE_MISMATCH"


class AlreadyFinalizedError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    code = "PR_ALREADY_FINALIZED"


class EditLockedError(WorkflowError):
    """Details edit after the approval chain has started."""

    status_code = status.HTTP_409_CONFLICT
    code = "PR_EDIT_LOCKED"


class ConcurrentModificationError(WorkflowError):
    """Lost an optimistic-concurrency race; re-read and retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_MODIFICATION"
    retryable = True


class StoreUnavailableError(WorkflowError):
    """Transient Request Store failure or timeout."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"
    retryable = True


class ConfigurationError(WorkflowError):
    """Broken stage policy data. Operator-facing only."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "CONFIGURATION_ERROR"

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "message": "The approval workflow is misconfigured",
            "retryable": False,
        }
