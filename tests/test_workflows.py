import threading

import pytest

from eksplane.database import RUN_CANCELLED, RUN_FAILED
from eksplane.errors import ClusterUpdateFailedError, CombinedError, WorkflowCancelledError
from eksplane.models import (
    ClusterStatus,
    ClusterVersionUpdateRequest,
    NodePool,
    NodePoolStatus,
    NodePoolUpdateOptions,
    NodePoolUpdateRequest,
)
from eksplane.services.cloudformation import UpdateNodeGroupActivity
from eksplane.services.status import SaveClusterVersionActivity, SetNodePoolStatusActivity
from eksplane.versioning import node_pool_version
from eksplane.worker import build_worker
from eksplane.workflows import (
    ClusterVersionUpdateState,
    NodePoolUpdateState,
    UpdateClusterWorkflowInput,
)

from conftest import RecordingTimer, client_error

STACK = "eksplane-eks-nodepool-test-pool1"


class RunCanceller:
    """Cancels a run from inside one of its activities."""

    def __init__(self):
        self.handle = None
        self._attached = threading.Event()

    def attach(self, handle):
        self.handle = handle
        self._attached.set()
        return handle

    def cancel(self):
        assert self._attached.wait(5)
        self.handle.cancel()


class CancellingSaveClusterVersion(SaveClusterVersionActivity):
    def __init__(self, database, canceller):
        super().__init__(database)
        self.canceller = canceller

    def execute(self, ctx, input):
        self.canceller.cancel()
        return super().execute(ctx, input)


class CancellingUpdateNodeGroup(UpdateNodeGroupActivity):
    def __init__(self, clients, template, canceller):
        super().__init__(clients, template)
        self.canceller = canceller

    def execute(self, ctx, input):
        self.canceller.cancel()
        return super().execute(ctx, input)


class BrokenErrorStatus(SetNodePoolStatusActivity):
    def execute(self, ctx, input):
        if input.status == NodePoolStatus.ERROR:
            raise RuntimeError("status store unavailable")
        return super().execute(ctx, input)


@pytest.fixture
def node_pool_stack(cloudformation):
    cloudformation.add_stack(
        STACK,
        parameters={
            "NodeImageId": "ami-current",
            "NodeVolumeSize": "50",
            "NodeAutoScalingGroupMinSize": "1",
            "NodeAutoScalingGroupMaxSize": "3",
            "NodeAutoScalingInitSize": "2",
        },
    )


class TestUpdateClusterVersion:
    def _request(self, cluster, version="1.21") -> ClusterVersionUpdateRequest:
        return ClusterVersionUpdateRequest(
            organization_id=cluster.organization_id,
            region=cluster.region,
            secret_id=cluster.secret_id,
            cluster_id=cluster.id,
            cluster_name=cluster.name,
            version=version,
        )

    def test_upgrade_with_addons(self, worker, database, cluster, eks):
        eks.addons["coredns"] = "v1.8.0-eksbuild.1"
        eks.addon_versions["coredns"] = [("v1.8.3-eksbuild.1", ["1.21"])]

        handle = worker.start("eks-update-cluster-version", self._request(cluster), workflow_id="v-1")
        result = handle.result(timeout=10)

        assert result.states == [
            ClusterVersionUpdateState.NEW,
            ClusterVersionUpdateState.VERSION_UPDATE_SUBMITTED,
            ClusterVersionUpdateState.WAITING_FOR_COMPLETION,
            ClusterVersionUpdateState.VERSION_PERSISTED,
            ClusterVersionUpdateState.RUNNING,
        ]
        # vpc-cni is not installed
        assert result.updated_addons == ["coredns"]
        assert [c["updateId"] for c in eks.calls_of("describe_update")] == ["update-1", "update-2"]

        stored = database.get_cluster(cluster.id)
        assert stored.version == "1.21"
        assert stored.status == ClusterStatus.RUNNING

    def test_already_at_version(self, worker, database, cluster, eks):
        handle = worker.start("eks-update-cluster-version", self._request(cluster, "1.20"), workflow_id="v-1")
        handle.result(timeout=10)

        assert eks.calls_of("update_cluster_version") == []
        assert eks.calls_of("describe_update") == []
        assert database.get_cluster(cluster.id).status == ClusterStatus.RUNNING

    def test_failed_update_leaves_warning(self, worker, database, cluster, eks):
        eks.update_statuses = ["InProgress", "Failed"]

        handle = worker.start("eks-update-cluster-version", self._request(cluster), workflow_id="v-1")
        with pytest.raises(ClusterUpdateFailedError):
            handle.result(timeout=10)

        stored = database.get_cluster(cluster.id)
        assert stored.status == ClusterStatus.WARNING
        assert "NodeCreationFailure" in stored.status_message
        assert stored.version == "1.20"
        # failed EKS updates are not retried
        assert len(eks.calls_of("update_cluster_version")) == 1
        assert database.get_run(handle.run_id).status == RUN_FAILED

    def test_cancelled_while_waiting(self, settings, database, clients, template, cluster, eks):
        eks.update_statuses = ["InProgress", "Successful"]
        worker = build_worker(settings, database, clients=clients, template=template, timer=RecordingTimer(cancel_after=0))

        handle = worker.start("eks-update-cluster-version", self._request(cluster), workflow_id="v-1")
        with pytest.raises(WorkflowCancelledError):
            handle.result(timeout=10)
        worker.shutdown()

        assert database.get_run(handle.run_id).status == RUN_CANCELLED
        stored = database.get_cluster(cluster.id)
        assert stored.status == ClusterStatus.WARNING
        assert "cancelled" in stored.status_message
        assert stored.version == "1.20"

    def test_cancelled_in_the_last_step(self, worker, database, cluster):
        canceller = RunCanceller()
        worker.register_activity(CancellingSaveClusterVersion(database, canceller))

        handle = canceller.attach(
            worker.start("eks-update-cluster-version", self._request(cluster), workflow_id="v-1")
        )
        with pytest.raises(WorkflowCancelledError):
            handle.result(timeout=10)

        assert database.get_run(handle.run_id).status == RUN_CANCELLED
        stored = database.get_cluster(cluster.id)
        # the version was saved before the cancellation was noticed
        assert stored.version == "1.21"
        assert stored.status == ClusterStatus.WARNING


class TestUpdateNodePool:
    def _request(self, cluster, **kwargs) -> NodePoolUpdateRequest:
        values = {
            "secret_id": cluster.secret_id,
            "region": cluster.region,
            "stack_name": STACK,
            "cluster_id": cluster.id,
            "cluster_name": cluster.name,
            "node_pool_name": "pool1",
            "cluster_tags": cluster.tags,
        }
        values.update(kwargs)
        return NodePoolUpdateRequest(**values)

    def test_new_image(self, worker, database, cluster, node_pool, cloudformation, node_pool_stack):
        request = self._request(
            cluster,
            node_image="ami-new",
            options=NodePoolUpdateOptions(max_batch_size=2, max_surge=1),
        )

        result = worker.start("eks-update-node-pool", request, workflow_id="np-1").result(timeout=10)

        assert result.states == [
            NodePoolUpdateState.START,
            NodePoolUpdateState.INFRA_INTROSPECTION,
            NodePoolUpdateState.VERSION_RECALCULATED,
            NodePoolUpdateState.STACK_UPDATE_SUBMITTED,
            NodePoolUpdateState.WAITING_FOR_STACK_COMPLETE,
            NodePoolUpdateState.DONE,
        ]
        # the volume size of the running stack is part of the version
        assert result.node_pool_version == node_pool_version("ami-new", 50)
        assert result.node_pool_changed

        parameters = {p["ParameterKey"]: p for p in cloudformation.calls_of("update_stack")[0]["Parameters"]}
        assert parameters["NodeImageId"]["ParameterValue"] == "ami-new"
        assert parameters["NodeVolumeSize"] == {"ParameterKey": "NodeVolumeSize", "UsePreviousValue": True}
        assert parameters["NodeAutoScalingGroupMaxBatchSize"]["ParameterValue"] == "2"
        assert parameters["NodeAutoScalingGroupMinInstancesInService"]["ParameterValue"] == "1"

        stored = database.get_node_pool(cluster.id, "pool1")
        assert stored.status == NodePoolStatus.READY
        assert stored.image == "ami-new"
        assert database.get_cluster(cluster.id).status == ClusterStatus.RUNNING

    def test_new_volume_size(self, worker, database, cluster, node_pool, cloudformation, node_pool_stack):
        request = self._request(cluster, node_image="ami-new", node_volume_size=100)

        result = worker.start("eks-update-node-pool", request, workflow_id="np-1").result(timeout=10)

        assert NodePoolUpdateState.INFRA_INTROSPECTION not in result.states
        assert NodePoolUpdateState.VOLUME_SIZE_SELECTION in result.states
        assert result.node_pool_version == node_pool_version("ami-new", 100)
        parameters = {p["ParameterKey"]: p for p in cloudformation.calls_of("update_stack")[0]["Parameters"]}
        assert parameters["NodeVolumeSize"]["ParameterValue"] == "100"
        assert database.get_node_pool(cluster.id, "pool1").volume_size == 100

    def test_unchanged_stack_skips_the_wait(self, worker, database, cluster, node_pool, cloudformation, node_pool_stack):
        cloudformation.update_error = client_error("ValidationError", "No updates are to be performed.", "UpdateStack")

        result = worker.start("eks-update-node-pool", self._request(cluster), workflow_id="np-1").result(timeout=10)

        assert not result.node_pool_changed
        assert NodePoolUpdateState.WAITING_FOR_STACK_COMPLETE not in result.states
        assert cloudformation.calls[-1][0] == "update_stack"
        assert database.get_cluster(cluster.id).status == ClusterStatus.RUNNING
        assert database.get_node_pool(cluster.id, "pool1").status == NodePoolStatus.READY

    def test_rolled_back_stack(self, worker, database, cluster, node_pool, cloudformation, node_pool_stack):
        cloudformation.final_status["update"] = "UPDATE_ROLLBACK_COMPLETE"

        handle = worker.start("eks-update-node-pool", self._request(cluster, node_image="ami-new"), workflow_id="np-1")
        with pytest.raises(Exception, match="UPDATE_ROLLBACK_COMPLETE"):
            handle.result(timeout=10)

        stored = database.get_node_pool(cluster.id, "pool1")
        assert stored.status == NodePoolStatus.ERROR
        assert stored.status_message.startswith("failed to update node pool: ")
        assert stored.image == "ami-current"
        assert database.get_cluster(cluster.id).status == ClusterStatus.WARNING
        # stack failures are not retried
        assert len(cloudformation.calls_of("update_stack")) == 1

    def test_cancelled_while_waiting(
        self, settings, database, clients, template, cluster, node_pool, cloudformation, node_pool_stack
    ):
        cloudformation.final_status["update"] = "UPDATE_IN_PROGRESS"
        worker = build_worker(settings, database, clients=clients, template=template, timer=RecordingTimer(cancel_after=0))

        handle = worker.start("eks-update-node-pool", self._request(cluster, node_image="ami-new"), workflow_id="np-1")
        with pytest.raises(WorkflowCancelledError):
            handle.result(timeout=10)
        worker.shutdown()

        assert database.get_run(handle.run_id).status == RUN_CANCELLED
        assert database.get_node_pool(cluster.id, "pool1").status == NodePoolStatus.ERROR
        cluster = database.get_cluster(cluster.id)
        assert cluster.status == ClusterStatus.WARNING
        assert "cancelled" in cluster.status_message

    def test_cancelled_in_the_last_step(
        self, worker, database, clients, template, cluster, node_pool, cloudformation, node_pool_stack
    ):
        cloudformation.update_error = client_error("ValidationError", "No updates are to be performed.", "UpdateStack")
        canceller = RunCanceller()
        worker.register_activity(CancellingUpdateNodeGroup(clients, template, canceller))

        handle = canceller.attach(
            worker.start("eks-update-node-pool", self._request(cluster, node_image="ami-new"), workflow_id="np-1")
        )
        with pytest.raises(WorkflowCancelledError):
            handle.result(timeout=10)

        assert database.get_run(handle.run_id).status == RUN_CANCELLED
        stored = database.get_node_pool(cluster.id, "pool1")
        assert stored.status == NodePoolStatus.ERROR
        assert stored.image == "ami-current"
        assert database.get_cluster(cluster.id).status == ClusterStatus.WARNING


class TestUpdateCluster:
    @pytest.fixture
    def cluster_stack(self, cloudformation):
        cloudformation.add_stack(
            "eksplane-eks-test",
            outputs={
                "VpcId": "vpc-1",
                "NodeInstanceRoleId": "role",
                "SecurityGroups": "sg-cluster",
                "NodeSecurityGroup": "sg-node",
            },
        )

    @pytest.fixture
    def old_pool(self, database, cluster, cloudformation):
        cloudformation.add_stack("eksplane-eks-nodepool-test-old")
        return database.create_node_pool(
            cluster.id, NodePool(name="old", instance_type="m5.large", image="ami-current", status=NodePoolStatus.DELETING)
        )

    @pytest.fixture
    def new_pool(self, database, cluster):
        return database.create_node_pool(
            cluster.id,
            NodePool(
                name="pool2",
                instance_type="m5.xlarge",
                image="ami-new",
                min_count=1,
                max_count=2,
                count=1,
                subnet_ids=["subnet-2"],
                labels={"team": "data"},
            ),
        )

    def _input(self, cluster, **kwargs) -> UpdateClusterWorkflowInput:
        return UpdateClusterWorkflowInput(
            organization_id=cluster.organization_id,
            cluster_id=cluster.id,
            cluster_name=cluster.name,
            region=cluster.region,
            secret_id=cluster.secret_id,
            tags=cluster.tags,
            **kwargs,
        )

    def test_delete_create_and_update(
        self, worker, database, cluster, node_pool, node_pool_stack, cluster_stack, old_pool, new_pool, cloudformation
    ):
        resized = node_pool.model_copy(update={"count": 3, "max_count": 4})
        input = self._input(cluster, deleted=["old"], created=[new_pool], updated=[resized])

        result = worker.start("eks-update-cluster", input, workflow_id="c-1").result(timeout=10)

        assert result.deleted == ["old"]
        assert result.created == ["pool2"]
        assert result.updated == ["pool1"]

        assert "eksplane-eks-nodepool-test-old" not in cloudformation.stacks
        assert [p.name for p in database.list_node_pools(cluster.id)] == ["pool1", "pool2"]

        create = cloudformation.calls_of("create_stack")[0]
        parameters = {p["ParameterKey"]: p["ParameterValue"] for p in create["Parameters"]}
        assert parameters["VpcId"] == "vpc-1"
        assert parameters["NodeSecurityGroup"] == "sg-node"
        assert parameters["Subnets"] == "subnet-2"
        # no explicit size, the default floor applies
        assert parameters["NodeVolumeSize"] == "50"
        assert {"Key": "team", "Value": "platform"} in create["Tags"]

        created = database.get_node_pool(cluster.id, "pool2")
        assert created.status == NodePoolStatus.READY
        assert created.stack_id == cloudformation.stacks["eksplane-eks-nodepool-test-pool2"]["StackId"]
        assert created.volume_size == 50

        update = {p["ParameterKey"]: p for p in cloudformation.calls_of("update_stack")[0]["Parameters"]}
        assert update["NodeAutoScalingInitSize"]["ParameterValue"] == "3"
        assert update["NodeAutoScalingGroupMaxSize"]["ParameterValue"] == "4"
        assert update["NodeImageId"] == {"ParameterKey": "NodeImageId", "UsePreviousValue": True}

        assert database.get_node_pool(cluster.id, "pool1").status == NodePoolStatus.READY
        assert database.get_cluster(cluster.id).status == ClusterStatus.RUNNING

    def test_failures_are_combined(
        self, worker, database, cluster, node_pool, node_pool_stack, cluster_stack, new_pool, cloudformation
    ):
        cloudformation.final_status["create"] = "ROLLBACK_COMPLETE"
        resized = node_pool.model_copy(update={"count": 3})
        input = self._input(cluster, created=[new_pool], updated=[resized])

        handle = worker.start("eks-update-cluster", input, workflow_id="c-1")
        with pytest.raises(CombinedError) as exc_info:
            handle.result(timeout=10)

        assert len(exc_info.value.errors) == 1
        # the failing node pool does not stop the others
        assert database.get_node_pool(cluster.id, "pool1").status == NodePoolStatus.READY
        failed = database.get_node_pool(cluster.id, "pool2")
        assert failed.status == NodePoolStatus.ERROR
        assert "ROLLBACK_COMPLETE" in failed.status_message

        stored = database.get_cluster(cluster.id)
        assert stored.status == ClusterStatus.WARNING
        assert stored.status_message.startswith("failed to update node pools: ")

    def test_missing_image_is_not_retried(self, worker, database, cluster, cluster_stack, new_pool, ec2):
        del ec2.images["ami-new"]

        handle = worker.start("eks-update-cluster", self._input(cluster, created=[new_pool]), workflow_id="c-1")
        with pytest.raises(CombinedError, match="image ami-new not found"):
            handle.result(timeout=10)

        steps = database.list_steps(handle.run_id)
        ami_step = next(s for s in steps if s.activity_name == "eks-get-ami-size")
        assert ami_step.attempts == 1
        assert database.get_node_pool(cluster.id, "pool2").status == NodePoolStatus.ERROR

    def test_failed_error_status_write_does_not_stop_the_others(
        self, worker, database, cluster, node_pool, node_pool_stack, cluster_stack, new_pool, ec2
    ):
        del ec2.images["ami-new"]
        worker.register_activity(BrokenErrorStatus(database))
        resized = node_pool.model_copy(update={"count": 3})
        input = self._input(cluster, created=[new_pool], updated=[resized])

        handle = worker.start("eks-update-cluster", input, workflow_id="c-1")
        with pytest.raises(CombinedError) as exc_info:
            handle.result(timeout=10)

        assert len(exc_info.value.errors) == 1
        assert "image ami-new not found" in str(exc_info.value.errors[0])
        assert database.get_node_pool(cluster.id, "pool1").status == NodePoolStatus.READY
        assert database.get_cluster(cluster.id).status == ClusterStatus.WARNING
