import threading

import pytest
from botocore.exceptions import ClientError

from eksplane.database import Database
from eksplane.models import ClusterStatus, NodePool, NodePoolStatus, Subnet
from eksplane.services.cloudformation import StackTemplate
from eksplane.settings import Settings
from eksplane.worker import build_worker
from eksplane.workflow import WorkflowContext


def client_error(code: str, message: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakePaginator:
    def __init__(self, pages):
        self._pages = pages

    def paginate(self, **kwargs):
        return self._pages(**kwargs)


def _next_status(queue: list[str]) -> str:
    # the last status sticks
    return queue.pop(0) if len(queue) > 1 else queue[0]


class FakeCloudFormation:
    """In-memory CloudFormation keeping stacks by name."""

    def __init__(self):
        self.stacks: dict[str, dict] = {}
        self.statuses: dict[str, list[str]] = {}
        self.events: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, dict]] = []
        self.final_status = {"create": "CREATE_COMPLETE", "update": "UPDATE_COMPLETE"}
        self.update_error = None

    def add_stack(self, name: str, status: str = "CREATE_COMPLETE", parameters=None, outputs=None) -> None:
        self.stacks[name] = {
            "StackId": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{name}/1",
            "StackName": name,
            "StackStatus": status,
            "Parameters": [
                {"ParameterKey": k, "ParameterValue": v} for k, v in (parameters or {}).items()
            ],
            "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in (outputs or {}).items()],
        }

    def calls_of(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def describe_stacks(self, StackName):
        self.calls.append(("describe_stacks", {"StackName": StackName}))
        stack = self.stacks.get(StackName)
        if stack is None:
            raise client_error("ValidationError", f"Stack with id {StackName} does not exist", "DescribeStacks")
        if self.statuses.get(StackName):
            stack["StackStatus"] = _next_status(self.statuses[StackName])
        return {"Stacks": [dict(stack)]}

    def create_stack(self, **kwargs):
        self.calls.append(("create_stack", kwargs))
        name = kwargs["StackName"]
        if name in self.stacks:
            raise client_error("AlreadyExistsException", f"Stack [{name}] already exists", "CreateStack")
        self.add_stack(name, status=self.final_status["create"])
        self.stacks[name]["Parameters"] = kwargs.get("Parameters", [])
        return {"StackId": self.stacks[name]["StackId"]}

    def update_stack(self, **kwargs):
        self.calls.append(("update_stack", kwargs))
        if self.update_error is not None:
            raise self.update_error
        stack = self.stacks[kwargs["StackName"]]
        stack["StackStatus"] = self.final_status["update"]
        return {"StackId": stack["StackId"]}

    def delete_stack(self, **kwargs):
        self.calls.append(("delete_stack", kwargs))
        self.stacks.pop(kwargs["StackName"], None)
        return {}

    def get_paginator(self, operation):
        assert operation == "describe_stack_events"
        return FakePaginator(lambda StackName: [{"StackEvents": self.events.get(StackName, [])}])


class FakeEKS:
    def __init__(self):
        self.cluster_version = "1.20"
        self.update_statuses = ["Successful"]
        self.updates: dict[str, list[str]] = {}
        self.addons: dict[str, str] = {}
        self.addon_versions: dict[str, list[tuple[str, list[str]]]] = {}
        self.calls: list[tuple[str, dict]] = []

    def calls_of(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _new_update(self) -> str:
        update_id = f"update-{len(self.updates) + 1}"
        self.updates[update_id] = list(self.update_statuses)
        return update_id

    def describe_cluster(self, name):
        return {"cluster": {"name": name, "version": self.cluster_version, "status": "ACTIVE"}}

    def update_cluster_version(self, **kwargs):
        self.calls.append(("update_cluster_version", kwargs))
        return {"update": {"id": self._new_update(), "status": "InProgress"}}

    def describe_update(self, **kwargs):
        self.calls.append(("describe_update", kwargs))
        status = _next_status(self.updates[kwargs["updateId"]])
        update = {"id": kwargs["updateId"], "status": status, "errors": []}
        if status == "Failed":
            update["errors"] = [{"errorCode": "NodeCreationFailure", "errorMessage": "instances failed to join"}]
        return {"update": update}

    def describe_addon(self, clusterName, addonName):
        if addonName not in self.addons:
            raise client_error(
                "ResourceNotFoundException",
                f"No addon: {addonName} found in cluster: {clusterName}",
                "DescribeAddon",
            )
        return {"addon": {"addonName": addonName, "addonVersion": self.addons[addonName]}}

    def get_paginator(self, operation):
        assert operation == "describe_addon_versions"

        def _pages(addonName, kubernetesVersion):
            versions = [
                {
                    "addonVersion": version,
                    "compatibilities": [{"clusterVersion": c} for c in compatible],
                }
                for version, compatible in self.addon_versions.get(addonName, [])
            ]
            return [{"addons": [{"addonName": addonName, "addonVersions": versions}]}]

        return FakePaginator(_pages)

    def update_addon(self, **kwargs):
        self.calls.append(("update_addon", kwargs))
        return {"update": {"id": self._new_update(), "status": "InProgress"}}


class FakeEC2:
    def __init__(self):
        self.images: dict[str, int] = {}

    def describe_images(self, ImageIds):
        images = []
        for image_id in ImageIds:
            if not image_id.startswith("ami-"):
                raise client_error("InvalidAMIID.Malformed", f"Invalid id: \"{image_id}\"", "DescribeImages")
            if image_id not in self.images:
                raise client_error(
                    "InvalidAMIID.NotFound", f"The image id '[{image_id}]' does not exist", "DescribeImages"
                )
            images.append(
                {
                    "ImageId": image_id,
                    "RootDeviceName": "/dev/xvda",
                    "BlockDeviceMappings": [
                        {"DeviceName": "/dev/xvda", "Ebs": {"VolumeSize": self.images[image_id]}}
                    ],
                }
            )
        return {"Images": images}


class FakeClientFactory:
    def __init__(self, **clients):
        self.clients = clients
        self.requested: list[tuple[str, str, str]] = []

    def client(self, service: str, secret_id: str, region: str):
        self.requested.append((service, secret_id, region))
        return self.clients[service]


class RecordingTimer:
    """Timer that returns at once and records the requested delays."""

    def __init__(self, cancel_after: int = -1):
        self.delays: list[float] = []
        self.cancel_after = cancel_after

    def __call__(self, seconds: float, cancelled: threading.Event) -> bool:
        self.delays.append(seconds)
        if self.cancel_after >= 0 and len(self.delays) > self.cancel_after:
            cancelled.set()
        return cancelled.is_set()


@pytest.fixture
def database(tmp_path):
    return Database(f"sqlite:///{tmp_path}/eksplane.db")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path}/eksplane.db",
        poll_interval_seconds=0,
        poll_max_attempts=5,
        managed_addons=["vpc-cni", "coredns"],
    )


@pytest.fixture
def timer():
    return RecordingTimer()


@pytest.fixture
def cloudformation():
    return FakeCloudFormation()


@pytest.fixture
def eks():
    return FakeEKS()


@pytest.fixture
def ec2():
    fake = FakeEC2()
    fake.images["ami-current"] = 20
    fake.images["ami-new"] = 20
    return fake


@pytest.fixture
def clients(cloudformation, eks, ec2):
    return FakeClientFactory(cloudformation=cloudformation, eks=eks, ec2=ec2)


@pytest.fixture
def template():
    return StackTemplate.load()


@pytest.fixture
def worker(settings, database, clients, template, timer):
    worker = build_worker(settings, database, clients=clients, template=template, timer=timer)
    yield worker
    worker.shutdown()


@pytest.fixture
def workflow_context(database, timer):
    """Context factory for driving activities outside of a worker."""

    def _context(activities: dict, run_id: str = "run-1") -> WorkflowContext:
        database.start_run(run_id, "test-workflow", "test", {})
        return WorkflowContext(database, activities, "test-workflow", run_id, timer=timer)

    return _context


@pytest.fixture
def cluster(database):
    return database.create_cluster(
        organization_id=1,
        name="test",
        region="us-east-1",
        secret_id="secret",
        version="1.20",
        status=ClusterStatus.RUNNING,
        subnets=[
            Subnet(subnet_id="subnet-1", cidr="192.168.64.0/20", availability_zone="us-east-1a"),
            Subnet(subnet_id="subnet-2", cidr="192.168.80.0/20", availability_zone="us-east-1b"),
        ],
        tags={"team": "platform"},
    )


@pytest.fixture
def node_pool(database, cluster):
    return database.create_node_pool(
        cluster.id,
        NodePool(
            name="pool1",
            created_by="1",
            instance_type="m5.large",
            image="ami-current",
            volume_size=50,
            min_count=1,
            max_count=3,
            count=2,
            subnet_ids=["subnet-1"],
            stack_id="arn:aws:cloudformation:us-east-1:123456789012:stack/eksplane-eks-nodepool-test-pool1/1",
            status=NodePoolStatus.READY,
        ),
    )
