import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Optional

from pydantic import BaseModel

from eksplane.database import STEP_COMPLETED, Database
from eksplane.errors import WorkflowCancelledError
from eksplane.workflow.retry import ActivityOptions

logger = logging.getLogger(__name__)

# Waits up to the given seconds, returns True when the event was set meanwhile.
Timer = Callable[[float, threading.Event], bool]


def event_timer(seconds: float, cancelled: threading.Event) -> bool:
    return cancelled.wait(seconds)


class NonDeterministicWorkflowError(Exception):
    """A replayed run issued a different activity than the recorded one."""


class Activity(ABC):
    """A single retryable unit of work executed by a workflow."""

    name: ClassVar[str]
    output_model: ClassVar[Optional[type[BaseModel]]] = None

    @abstractmethod
    def execute(self, ctx: "ActivityContext", input: Any) -> Any:
        ...

    def encode(self, output: Any) -> Any:
        if isinstance(output, BaseModel):
            return output.model_dump(mode="json")
        return output

    def decode(self, stored: Any) -> Any:
        if self.output_model is not None and stored is not None:
            return self.output_model.model_validate(stored)
        return stored


class Workflow(ABC):
    """Deterministic orchestration of activities."""

    name: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]

    @abstractmethod
    def execute(self, ctx: "WorkflowContext", input: Any) -> Any:
        ...


class ActivityContext:
    """Execution context handed to a running activity."""

    def __init__(self, workflow: "WorkflowContext", step_index: int, attempt: int):
        self._workflow = workflow
        self.step_index = step_index
        self.attempt = attempt

    @property
    def workflow_id(self) -> str:
        return self._workflow.workflow_id

    @property
    def run_id(self) -> str:
        return self._workflow.run_id

    def heartbeat(self, details: Any = None) -> None:
        """Record progress so a resumed attempt can continue from it."""
        self._workflow.database.record_heartbeat(self.run_id, self.step_index, details)
        self._workflow.raise_if_cancelled()

    def heartbeat_details(self) -> Any:
        """Details of the last heartbeat of this step, from any attempt."""
        return self._workflow.database.step_heartbeat(self.run_id, self.step_index)

    def sleep(self, seconds: float) -> None:
        self._workflow.sleep(seconds)


class WorkflowContext:
    """Execution context of one workflow run.

    Every activity call is assigned the next step index of the run. Steps
    already completed for the run are replayed from the step log instead
    of being executed again.
    """

    def __init__(
        self,
        database: Database,
        activities: dict[str, Activity],
        workflow_id: str,
        run_id: str,
        default_options: Optional[ActivityOptions] = None,
        timer: Timer = event_timer,
        _steps: Optional[itertools.count] = None,
    ):
        self.database = database
        self.activities = activities
        self.workflow_id = workflow_id
        self.run_id = run_id
        self.default_options = default_options or ActivityOptions()
        self.timer = timer
        self._steps = _steps if _steps is not None else itertools.count()
        self._cancelled = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise WorkflowCancelledError(f"workflow {self.workflow_id} was cancelled")

    def with_options(self, options: ActivityOptions) -> "WorkflowContext":
        """Context sharing this run and cancellation with other default options."""
        ctx = WorkflowContext(
            self.database,
            self.activities,
            self.workflow_id,
            self.run_id,
            options,
            self.timer,
            self._steps,
        )
        ctx._cancelled = self._cancelled
        return ctx

    def disconnected(self) -> "WorkflowContext":
        """Context of the same run that ignores cancellation of this one."""
        return WorkflowContext(
            self.database,
            self.activities,
            self.workflow_id,
            self.run_id,
            self.default_options,
            self.timer,
            self._steps,
        )

    def sleep(self, seconds: float) -> None:
        """Suspend for a timer, raises WorkflowCancelledError on cancellation."""
        self.timer(seconds, self._cancelled)
        self.raise_if_cancelled()

    def execute_activity(self, name: str, input: Any, options: Optional[ActivityOptions] = None) -> Any:
        activity = self.activities.get(name)
        if activity is None:
            raise KeyError(f"activity {name} is not registered")

        step_index = next(self._steps)
        record = self.database.get_step(self.run_id, step_index)
        if record is not None:
            if record.activity_name != name:
                raise NonDeterministicWorkflowError(
                    f"run {self.run_id} step {step_index} recorded activity "
                    f"{record.activity_name}, got {name}"
                )
            if record.status == STEP_COMPLETED:
                logger.debug("Replaying step %d (%s) of run %s", step_index, name, self.run_id)
                return activity.decode(self.database.step_result(record))

        self.raise_if_cancelled()

        self.database.start_step(self.run_id, step_index, name)
        policy = (options or self.default_options).retry_policy

        try:
            for attempt in policy.retrying(self.sleep, activity_name=name):
                with attempt:
                    self.raise_if_cancelled()
                    self.database.record_attempt(self.run_id, step_index)
                    actx = ActivityContext(self, step_index, attempt.retry_state.attempt_number)
                    output = activity.execute(actx, input)
        except Exception as e:
            self.database.fail_step(self.run_id, step_index, str(e))
            raise

        self.database.complete_step(self.run_id, step_index, activity.encode(output))
        return output
