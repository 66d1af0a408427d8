import logging
from typing import Callable, Optional

from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from eksplane.errors import VALIDATION_ERROR_REASON, WorkflowCancelledError, error_reason

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Retry schedule of a single activity.

    The n-th retry waits ``initial_interval * backoff_coefficient ** (n - 1)``
    seconds, capped at ``maximum_interval`` when set.
    """

    initial_interval: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    backoff_coefficient: float = Field(default=2.0, ge=1.0)
    maximum_interval: Optional[float] = Field(default=None, ge=0)
    maximum_attempts: int = Field(default=1, ge=1)
    non_retryable_reasons: list[str] = Field(default_factory=list)

    def is_retryable(self, err: BaseException) -> bool:
        if isinstance(err, WorkflowCancelledError):
            return False
        reason = error_reason(err)
        if reason == VALIDATION_ERROR_REASON:
            return False
        return reason not in self.non_retryable_reasons

    def retrying(self, sleep: Callable[[float], None], activity_name: str = "") -> Retrying:
        """Build a tenacity controller that sleeps through ``sleep``."""
        wait_kwargs = {
            "multiplier": self.initial_interval,
            "exp_base": self.backoff_coefficient,
        }
        if self.maximum_interval is not None:
            wait_kwargs["max"] = self.maximum_interval

        def _log_retry(retry_state: RetryCallState) -> None:
            err = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Activity %s failed on attempt %d, retrying in %.1fs: %s",
                activity_name,
                retry_state.attempt_number,
                retry_state.next_action.sleep if retry_state.next_action else 0,
                err,
            )

        return Retrying(
            stop=stop_after_attempt(self.maximum_attempts),
            wait=wait_exponential(**wait_kwargs),
            retry=retry_if_exception(self.is_retryable),
            sleep=sleep,
            before_sleep=_log_retry,
            reraise=True,
        )


class ActivityOptions(BaseModel):
    """Per-call execution options of an activity."""

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
