import logging

from eksplane.errors import EKS_UPDATE_FAILED_REASON, STACK_FAILED_REASON
from eksplane.models import ClusterStatus
from eksplane.services.status import SetClusterStatusActivity, SetClusterStatusInput
from eksplane.workflow import ActivityOptions, RetryPolicy, WorkflowContext

logger = logging.getLogger(__name__)

IMAGE_NOT_FOUND_REASON = "IMAGE_NOT_FOUND"

DEFAULT_ACTIVITY_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy(
        initial_interval=10,
        backoff_coefficient=1.01,
        maximum_interval=10 * 60,
        maximum_attempts=10,
        non_retryable_reasons=[IMAGE_NOT_FOUND_REASON],
    )
)

UPDATE_STACK_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy(
        initial_interval=20,
        backoff_coefficient=1.1,
        maximum_attempts=10,
        non_retryable_reasons=[STACK_FAILED_REASON],
    )
)

WAIT_STACK_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy(
        initial_interval=20,
        backoff_coefficient=1.1,
        maximum_attempts=20,
        non_retryable_reasons=[STACK_FAILED_REASON],
    )
)

CLUSTER_VERSION_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy(
        initial_interval=2,
        backoff_coefficient=1.5,
        maximum_interval=30,
        maximum_attempts=5,
        non_retryable_reasons=[EKS_UPDATE_FAILED_REASON, "InvalidAddonVersionError"],
    )
)


def set_cluster_status(ctx: WorkflowContext, cluster_id: int, status: ClusterStatus, message: str) -> None:
    """Write the cluster status, failures are logged so the caller's outcome stands."""
    try:
        ctx.execute_activity(
            SetClusterStatusActivity.name,
            SetClusterStatusInput(cluster_id=cluster_id, status=status, message=message),
        )
    except Exception:
        logger.exception("Failed to set status of cluster %d to %s", cluster_id, status.value)
