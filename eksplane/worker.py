"""Wiring of activities and workflows into a worker."""

from typing import Optional

from eksplane.database import Database
from eksplane.services.aws import AwsClientFactory, StaticSecretStore
from eksplane.services.cloudformation import (
    CreateNodePoolStackActivity,
    DeleteStackActivity,
    GetCFStackActivity,
    StackTemplate,
    UpdateNodeGroupActivity,
    WaitCloudFormationStackActivity,
)
from eksplane.services.compute import (
    CalculateNodePoolVersionActivity,
    GetAMISizeActivity,
    SelectVolumeSizeActivity,
)
from eksplane.services.eks import UpdateAddonActivity, UpdateClusterVersionActivity, WaitUpdateActivity
from eksplane.services.status import (
    DeleteStoredNodePoolActivity,
    SaveClusterVersionActivity,
    SetClusterStatusActivity,
    SetNodePoolStatusActivity,
)
from eksplane.settings import Settings
from eksplane.workflow import Timer, Worker, event_timer
from eksplane.workflows import UpdateClusterVersionWorkflow, UpdateClusterWorkflow, UpdateNodePoolWorkflow


def build_worker(
    settings: Settings,
    database: Database,
    clients: Optional[AwsClientFactory] = None,
    template: Optional[StackTemplate] = None,
    timer: Timer = event_timer,
) -> Worker:
    """Create a worker with every activity and workflow registered."""
    if clients is None:
        clients = AwsClientFactory(StaticSecretStore.from_settings(settings))
    if template is None:
        template = StackTemplate.load(settings.node_pool_template_path)

    worker = Worker(database, max_workers=settings.worker_concurrency, timer=timer)

    for activity in (
        SetClusterStatusActivity(database),
        SaveClusterVersionActivity(database),
        SetNodePoolStatusActivity(database),
        DeleteStoredNodePoolActivity(database),
        GetCFStackActivity(clients),
        CreateNodePoolStackActivity(clients, template),
        UpdateNodeGroupActivity(clients, template),
        DeleteStackActivity(clients),
        WaitCloudFormationStackActivity(
            clients,
            interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        ),
        GetAMISizeActivity(clients),
        SelectVolumeSizeActivity(settings.default_node_volume_size),
        CalculateNodePoolVersionActivity(),
        UpdateClusterVersionActivity(clients),
        WaitUpdateActivity(
            clients,
            interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        ),
        UpdateAddonActivity(clients),
    ):
        worker.register_activity(activity)

    worker.register_workflow(UpdateClusterVersionWorkflow(settings.managed_addons))
    worker.register_workflow(UpdateNodePoolWorkflow())
    worker.register_workflow(UpdateClusterWorkflow())
    return worker
