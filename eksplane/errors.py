from typing import Any, Optional

from eksplane.models import ValidationErrorDetail, ValidationErrorResponse

VALIDATION_ERROR_REASON = "VALIDATION_ERROR"
STACK_FAILED_REASON = "CLOUDFORMATION_STACK_FAILED"
EKS_UPDATE_FAILED_REASON = "EKS_UPDATE_FAILED"
POLL_TIMEOUT_REASON = "POLL_TIMEOUT"


class ConfigValidationError(Exception):
    """Exception raised when a request fails validation."""

    reason = VALIDATION_ERROR_REASON

    def __init__(self, errors: list[ValidationErrorDetail]):
        self.errors = errors
        messages = [f"{e.field}: {e.message}" for e in errors]
        super().__init__(f"Validation failed: {'; '.join(messages)}")

    def to_response(self) -> ValidationErrorResponse:
        """Convert to API response format."""
        return ValidationErrorResponse(
            error="validation_error",
            message=f"Validation failed with {len(self.errors)} error(s)",
            details=self.errors,
        )


class PreconditionFailedError(Exception):
    """The cluster is not in a state that allows the requested operation."""


class NotFoundError(Exception):
    """A stored cluster or node pool does not exist."""


class ActivityError(Exception):
    """Typed activity failure.

    ``reason`` is matched against the non-retryable reasons of the
    activity's retry policy.
    """

    reason = "ACTIVITY_ERROR"

    def __init__(self, message: str, reason: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        if reason:
            self.reason = reason
        self.details = details or {}


class StackFailedError(ActivityError):
    """A CloudFormation stack reached a failed or rolled back state."""

    reason = STACK_FAILED_REASON

    def __init__(self, stack_name: str, status: str, status_reason: str = ""):
        message = f"stack {stack_name} failed with status {status}"
        if status_reason:
            message = f"{message}: {status_reason}"
        super().__init__(
            message,
            details={"stack_name": stack_name, "status": status, "status_reason": status_reason},
        )
        self.stack_name = stack_name
        self.status = status
        self.status_reason = status_reason


class ClusterUpdateFailedError(ActivityError):
    """An EKS update finished with status Failed or Cancelled."""

    reason = EKS_UPDATE_FAILED_REASON


class PollTimeoutError(ActivityError):
    """A polled resource did not reach a terminal state in time."""

    reason = POLL_TIMEOUT_REASON


class WorkflowCancelledError(Exception):
    """Raised at a suspension point once cancellation was requested."""


def error_reason(err: BaseException) -> str:
    """Reason string of an error, the class name for untyped errors."""
    return getattr(err, "reason", None) or type(err).__name__


def unwrap_error(err: BaseException) -> BaseException:
    """Innermost cause of a chain of wrapped errors."""
    while err.__cause__ is not None:
        err = err.__cause__
    return err


class CombinedError(Exception):
    """Several independent failures reported together."""

    def __init__(self, message: str, errors: list[BaseException]):
        self.errors = errors
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"{message}: {details}" if details else message)
