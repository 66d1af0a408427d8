import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

from pydantic import BaseModel

from eksplane.database import RUN_CANCELLED, RUN_COMPLETED, RUN_FAILED, Database
from eksplane.errors import WorkflowCancelledError
from eksplane.workflow.context import Activity, Timer, Workflow, WorkflowContext, event_timer

logger = logging.getLogger(__name__)


class WorkflowHandle:
    """Reference to a started workflow run."""

    def __init__(self, workflow_id: str, run_id: str, ctx: WorkflowContext, future: Future):
        self.workflow_id = workflow_id
        self.run_id = run_id
        self._ctx = ctx
        self._future = future

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the run and return its result or raise its error."""
        return self._future.result(timeout)

    def cancel(self) -> None:
        """Request cancellation, honoured at the next suspension point."""
        logger.info("Cancelling workflow %s (run %s)", self.workflow_id, self.run_id)
        self._ctx.cancel()

    def done(self) -> bool:
        return self._future.done()


class Worker:
    """Runs workflow instances on a thread pool, one thread per instance."""

    def __init__(self, database: Database, max_workers: int = 4, timer: Timer = event_timer):
        self.database = database
        self.timer = timer
        self._activities: dict[str, Activity] = {}
        self._workflows: dict[str, Workflow] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow")

    def register_activity(self, activity: Activity) -> None:
        self._activities[activity.name] = activity

    def register_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.name] = workflow

    def start(
        self,
        workflow_name: str,
        input: BaseModel,
        workflow_id: str,
        run_id: Optional[str] = None,
    ) -> WorkflowHandle:
        """Start a workflow run.

        Passing the run ID of an unfinished run resumes it: completed
        steps are replayed from the step log.
        """
        workflow = self._workflows.get(workflow_name)
        if workflow is None:
            raise KeyError(f"workflow {workflow_name} is not registered")

        run_id = run_id or uuid.uuid4().hex
        created = self.database.start_run(
            run_id, workflow_id, workflow_name, input.model_dump(mode="json")
        )
        logger.info(
            "%s workflow %s (%s), run %s",
            "Starting" if created else "Resuming",
            workflow_id,
            workflow_name,
            run_id,
        )

        ctx = WorkflowContext(self.database, self._activities, workflow_id, run_id, timer=self.timer)
        future = self._executor.submit(self._run, workflow, ctx, input)
        return WorkflowHandle(workflow_id, run_id, ctx, future)

    def resume_pending(self) -> list[WorkflowHandle]:
        """Resume every run that was interrupted before it finished."""
        handles = []
        for run in self.database.list_running_runs():
            workflow = self._workflows.get(run.workflow_name)
            if workflow is None:
                logger.warning("Cannot resume run %s of unknown workflow %s", run.run_id, run.workflow_name)
                continue
            input = workflow.input_model.model_validate(self.database.run_input(run) or {})
            handles.append(self.start(run.workflow_name, input, run.workflow_id, run.run_id))
        return handles

    def _run(self, workflow: Workflow, ctx: WorkflowContext, input: BaseModel) -> Any:
        try:
            result = workflow.execute(ctx, input)
        except WorkflowCancelledError as e:
            self.database.finish_run(ctx.run_id, RUN_CANCELLED, str(e))
            raise
        except Exception as e:
            logger.exception("Workflow %s (run %s) failed", ctx.workflow_id, ctx.run_id)
            self.database.finish_run(ctx.run_id, RUN_FAILED, str(e))
            raise
        self.database.finish_run(ctx.run_id, RUN_COMPLETED)
        logger.info("Workflow %s (run %s) completed", ctx.workflow_id, ctx.run_id)
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
