from eksplane.workflow.context import (
    Activity,
    ActivityContext,
    NonDeterministicWorkflowError,
    Timer,
    Workflow,
    WorkflowContext,
    event_timer,
)
from eksplane.workflow.retry import ActivityOptions, RetryPolicy
from eksplane.workflow.worker import Worker, WorkflowHandle

__all__ = [
    "Activity",
    "ActivityContext",
    "ActivityOptions",
    "NonDeterministicWorkflowError",
    "RetryPolicy",
    "Timer",
    "Workflow",
    "WorkflowContext",
    "WorkflowHandle",
    "Worker",
    "event_timer",
]
