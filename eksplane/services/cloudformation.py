"""CloudFormation activities backing node pool stacks."""

import logging
from importlib import resources
from pathlib import Path
from typing import Optional

import yaml
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

from eksplane.errors import StackFailedError
from eksplane.models import StackOperation
from eksplane.services.aws import AwsClientFactory, client_request_token, error_code, error_message
from eksplane.services.polling import poll_until
from eksplane.workflow import Activity, ActivityContext

logger = logging.getLogger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed."

CLUSTER_NAME_TAG = "eksplane.io/cluster-name"
STACK_TYPE_TAG = "eksplane.io/stack-type"

NODE_POOL_NAME_LABEL = "nodepool.eksplane.io/name"
NODE_POOL_VERSION_LABEL = "nodepool.eksplane.io/version"


def node_pool_stack_name(cluster_name: str, node_pool_name: str) -> str:
    return f"eksplane-eks-nodepool-{cluster_name}-{node_pool_name}"


def cluster_stack_name(cluster_name: str) -> str:
    return f"eksplane-eks-{cluster_name}"


def node_pool_stack_tags(cluster_name: str, cluster_tags: dict[str, str]) -> list[dict[str, str]]:
    """Custom cluster tags followed by the tags identifying the stack."""
    tags = [{"Key": k, "Value": v} for k, v in sorted(cluster_tags.items())]
    tags.append({"Key": CLUSTER_NAME_TAG, "Value": cluster_name})
    tags.append({"Key": STACK_TYPE_TAG, "Value": "nodepool"})
    return tags


def kubelet_extra_arguments(node_pool_name: str, node_pool_version: str = "", labels: Optional[dict[str, str]] = None) -> str:
    node_labels = [f"{NODE_POOL_NAME_LABEL}={node_pool_name}"]
    if node_pool_version:
        node_labels.append(f"{NODE_POOL_VERSION_LABEL}={node_pool_version}")
    for key, value in sorted((labels or {}).items()):
        if key not in (NODE_POOL_NAME_LABEL, NODE_POOL_VERSION_LABEL):
            node_labels.append(f"{key}={value}")
    return f"--node-labels {','.join(node_labels)}"


class StackTemplate:
    """A CloudFormation template and the parameters it declares."""

    def __init__(self, body: str):
        self.body = body
        document = yaml.safe_load(body) or {}
        self.parameter_names = list((document.get("Parameters") or {}).keys())

    @classmethod
    def load(cls, path: str = "") -> "StackTemplate":
        """Load a template file, the bundled node pool template by default."""
        if path:
            return cls(Path(path).read_text())
        return cls(resources.files("eksplane").joinpath("templates/node_pool.yaml").read_text())

    def create_parameters(self, values: dict[str, str]) -> list[dict]:
        return [
            {"ParameterKey": key, "ParameterValue": values[key]}
            for key in self.parameter_names
            if key in values
        ]

    def update_parameters(self, values: dict[str, Optional[str]], previous: set[str]) -> list[dict]:
        """Parameters of a stack update.

        Values that are not set keep their previous value. Parameters the
        running stack does not know yet fall back to the template default.
        """
        parameters = []
        for key in self.parameter_names:
            value = values.get(key)
            if value is not None:
                parameters.append({"ParameterKey": key, "ParameterValue": value})
            elif key in previous:
                parameters.append({"ParameterKey": key, "UsePreviousValue": True})
        return parameters


class StackActivityInput(BaseModel):
    secret_id: str
    region: str
    stack_name: str


class StackDescription(BaseModel):
    stack_id: str = ""
    status: str = ""
    status_reason: str = ""
    parameters: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)


def describe_stack(cloudformation, stack_name: str) -> dict:
    response = cloudformation.describe_stacks(StackName=stack_name)
    stacks = response.get("Stacks", [])
    if not stacks:
        raise StackFailedError(stack_name, "NOT_FOUND", "stack does not exist")
    return stacks[0]


def stack_failure_reason(cloudformation, stack_name: str, token: str = "") -> str:
    """Reason of the first failed resource event, scoped to ``token`` when given."""
    try:
        paginator = cloudformation.get_paginator("describe_stack_events")
        events = []
        for page in paginator.paginate(StackName=stack_name):
            events.extend(page.get("StackEvents", []))
    except ClientError as e:
        logger.warning("Failed to describe events of stack %s: %s", stack_name, e)
        return ""

    # events are returned newest first
    for event in reversed(events):
        if token and event.get("ClientRequestToken") != token:
            continue
        if event.get("ResourceStatus", "").endswith("_FAILED") and event.get("ResourceStatusReason"):
            return f"{event.get('LogicalResourceId', '')}: {event['ResourceStatusReason']}"
    return ""


class GetCFStackActivity(Activity):
    """Describe a stack, returning its parameters and outputs."""

    name = "eks-get-cf-stack"
    output_model = StackDescription

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    def execute(self, ctx: ActivityContext, input: StackActivityInput) -> StackDescription:
        cloudformation = self.clients.client("cloudformation", input.secret_id, input.region)
        stack = describe_stack(cloudformation, input.stack_name)
        return StackDescription(
            stack_id=stack.get("StackId", ""),
            status=stack.get("StackStatus", ""),
            status_reason=stack.get("StackStatusReason", ""),
            parameters={
                p["ParameterKey"]: p.get("ParameterValue", "")
                for p in stack.get("Parameters", [])
            },
            outputs={o["OutputKey"]: o.get("OutputValue", "") for o in stack.get("Outputs", [])},
        )


class CreateNodePoolStackInput(BaseModel):
    secret_id: str
    region: str
    cluster_name: str
    node_pool_name: str
    node_pool_version: str = ""
    instance_type: str
    image: str
    spot_price: str
    volume_size: int
    autoscaling: bool = False
    min_count: int
    max_count: int
    count: int
    security_groups: list[str] = Field(default_factory=list)
    subnet_ids: list[str]
    labels: dict[str, str] = Field(default_factory=dict)
    vpc_id: str
    node_instance_role_id: str
    cluster_security_group: str
    node_security_group: str
    cluster_tags: dict[str, str] = Field(default_factory=dict)


class CreateNodePoolStackOutput(BaseModel):
    stack_id: str
    client_request_token: str


class CreateNodePoolStackActivity(Activity):
    """Create the CloudFormation stack of a new node pool."""

    name = "eks-create-node-pool-stack"
    output_model = CreateNodePoolStackOutput

    def __init__(self, clients: AwsClientFactory, template: StackTemplate):
        self.clients = clients
        self.template = template

    def execute(self, ctx: ActivityContext, input: CreateNodePoolStackInput) -> CreateNodePoolStackOutput:
        cloudformation = self.clients.client("cloudformation", input.secret_id, input.region)
        stack_name = node_pool_stack_name(input.cluster_name, input.node_pool_name)
        token = client_request_token(ctx.run_id, "create", input.node_pool_name)
        tags = node_pool_stack_tags(input.cluster_name, input.cluster_tags)

        values = {
            "ClusterName": input.cluster_name,
            "NodeGroupName": input.node_pool_name,
            "NodeImageId": input.image,
            "NodeInstanceType": input.instance_type,
            "NodeSpotPrice": input.spot_price,
            "NodeVolumeSize": str(input.volume_size),
            "NodeAutoScalingGroupMinSize": str(input.min_count),
            "NodeAutoScalingGroupMaxSize": str(input.max_count),
            "NodeAutoScalingInitSize": str(input.count),
            "ClusterAutoscalerEnabled": str(input.autoscaling).lower(),
            "ClusterControlPlaneSecurityGroup": input.cluster_security_group,
            "NodeSecurityGroup": input.node_security_group,
            "CustomNodeSecurityGroups": ",".join(input.security_groups),
            "NodeInstanceRoleId": input.node_instance_role_id,
            "VpcId": input.vpc_id,
            "Subnets": ",".join(input.subnet_ids),
            "KubeletExtraArguments": kubelet_extra_arguments(
                input.node_pool_name, input.node_pool_version, input.labels
            ),
            "StackTags": ",".join(f"{t['Key']}={t['Value']}" for t in tags),
        }

        try:
            response = cloudformation.create_stack(
                StackName=stack_name,
                TemplateBody=self.template.body,
                Parameters=self.template.create_parameters(values),
                Capabilities=["CAPABILITY_IAM"],
                ClientRequestToken=token,
                Tags=tags,
            )
            stack_id = response["StackId"]
        except ClientError as e:
            if error_code(e) != "AlreadyExistsException":
                raise
            # a previous attempt of this step already created the stack
            logger.info("Stack %s already exists", stack_name)
            stack_id = describe_stack(cloudformation, stack_name).get("StackId", "")

        logger.info("Creating node pool stack %s", stack_name)
        return CreateNodePoolStackOutput(stack_id=stack_id, client_request_token=token)


class UpdateNodeGroupInput(BaseModel):
    secret_id: str
    region: str
    cluster_name: str
    stack_name: str
    node_pool_name: str
    node_pool_version: str = ""
    node_image: str = ""
    node_volume_size: int = 0
    security_groups: Optional[list[str]] = None
    labels: Optional[dict[str, str]] = None
    min_size: int = 0
    max_size: int = 0
    desired_capacity: int = 0
    autoscaling: Optional[bool] = None
    max_batch_size: int = 0
    min_instances_in_service: int = 0
    cluster_tags: dict[str, str] = Field(default_factory=dict)


class UpdateNodeGroupOutput(BaseModel):
    node_pool_changed: bool = False
    client_request_token: str = ""


class UpdateNodeGroupActivity(Activity):
    """Update a node pool stack with the current template.

    Only the launch inputs and sizes passed in change, everything else
    keeps its previous value.
    """

    name = "eks-update-node-group"
    output_model = UpdateNodeGroupOutput

    def __init__(self, clients: AwsClientFactory, template: StackTemplate):
        self.clients = clients
        self.template = template

    def execute(self, ctx: ActivityContext, input: UpdateNodeGroupInput) -> UpdateNodeGroupOutput:
        cloudformation = self.clients.client("cloudformation", input.secret_id, input.region)
        token = client_request_token(ctx.run_id, "update", input.node_pool_name)
        tags = node_pool_stack_tags(input.cluster_name, input.cluster_tags)

        previous = describe_stack(cloudformation, input.stack_name)
        previous_keys = {p["ParameterKey"] for p in previous.get("Parameters", [])}

        def _positive(value: int) -> Optional[str]:
            return str(value) if value > 0 else None

        values: dict[str, Optional[str]] = {
            "NodeImageId": input.node_image or None,
            "NodeVolumeSize": _positive(input.node_volume_size),
            "NodeAutoScalingGroupMinSize": _positive(input.min_size),
            "NodeAutoScalingGroupMaxSize": _positive(input.max_size),
            "NodeAutoScalingInitSize": _positive(input.desired_capacity),
            "NodeAutoScalingGroupMaxBatchSize": _positive(input.max_batch_size),
            "NodeAutoScalingGroupMinInstancesInService": str(input.min_instances_in_service),
            "KubeletExtraArguments": kubelet_extra_arguments(
                input.node_pool_name, input.node_pool_version, input.labels
            ),
            "StackTags": ",".join(f"{t['Key']}={t['Value']}" for t in tags),
        }
        if input.security_groups is not None:
            values["CustomNodeSecurityGroups"] = ",".join(input.security_groups)
        if input.autoscaling is not None:
            values["ClusterAutoscalerEnabled"] = str(input.autoscaling).lower()

        try:
            cloudformation.update_stack(
                StackName=input.stack_name,
                TemplateBody=self.template.body,
                Parameters=self.template.update_parameters(values, previous_keys),
                Capabilities=["CAPABILITY_IAM"],
                ClientRequestToken=token,
                Tags=tags,
            )
        except ClientError as e:
            if error_code(e) == "ValidationError" and error_message(e).startswith(NO_UPDATES_MESSAGE):
                logger.info("Stack %s is up to date", input.stack_name)
                return UpdateNodeGroupOutput(node_pool_changed=False)
            raise

        logger.info("Updating node pool stack %s", input.stack_name)
        return UpdateNodeGroupOutput(node_pool_changed=True, client_request_token=token)


class DeleteStackActivity(Activity):
    """Start the deletion of a stack, a missing stack counts as deleted."""

    name = "eks-delete-stack"

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    def execute(self, ctx: ActivityContext, input: StackActivityInput) -> str:
        cloudformation = self.clients.client("cloudformation", input.secret_id, input.region)
        token = client_request_token(ctx.run_id, "delete", input.stack_name)
        cloudformation.delete_stack(StackName=input.stack_name, ClientRequestToken=token)
        logger.info("Deleting stack %s", input.stack_name)
        return token


class StackWaiter(BaseModel):
    """Terminal stack statuses of one stack operation."""

    success: frozenset[str]
    failure: frozenset[str]
    missing_is_success: bool = False


STACK_WAITERS: dict[StackOperation, StackWaiter] = {
    StackOperation.CREATE: StackWaiter(
        success=frozenset({"CREATE_COMPLETE"}),
        failure=frozenset(
            {"CREATE_FAILED", "DELETE_COMPLETE", "DELETE_FAILED", "ROLLBACK_FAILED", "ROLLBACK_COMPLETE"}
        ),
    ),
    StackOperation.UPDATE: StackWaiter(
        success=frozenset({"UPDATE_COMPLETE"}),
        failure=frozenset({"UPDATE_FAILED", "UPDATE_ROLLBACK_FAILED", "UPDATE_ROLLBACK_COMPLETE"}),
    ),
    StackOperation.DELETE: StackWaiter(
        success=frozenset({"DELETE_COMPLETE"}),
        failure=frozenset({"DELETE_FAILED"}),
        missing_is_success=True,
    ),
}


class WaitStackInput(BaseModel):
    secret_id: str
    region: str
    stack_name: str
    operation: StackOperation
    client_request_token: str = ""


class WaitCloudFormationStackActivity(Activity):
    """Wait until a stack operation reaches a terminal status."""

    name = "eks-wait-cf-stack"

    def __init__(self, clients: AwsClientFactory, interval: float = 30, max_attempts: int = 120):
        self.clients = clients
        self.interval = interval
        self.max_attempts = max_attempts

    def execute(self, ctx: ActivityContext, input: WaitStackInput) -> None:
        waiter = STACK_WAITERS[input.operation]

        def _check() -> bool:
            # per tick, the factory renews clients of expiring assumed roles
            cloudformation = self.clients.client("cloudformation", input.secret_id, input.region)
            try:
                stack = describe_stack(cloudformation, input.stack_name)
            except ClientError as e:
                if error_code(e) != "ValidationError":
                    raise
                if waiter.missing_is_success and "does not exist" in error_message(e):
                    return True
                raise StackFailedError(input.stack_name, "ValidationError", error_message(e)) from e

            status = stack.get("StackStatus", "")
            if status in waiter.success:
                return True
            if status in waiter.failure:
                reason = stack_failure_reason(
                    cloudformation, input.stack_name, input.client_request_token
                ) or stack.get("StackStatusReason", "")
                raise StackFailedError(input.stack_name, status, reason)
            return False

        poll_until(
            ctx,
            _check,
            self.interval,
            self.max_attempts,
            f"{input.operation.value} of stack {input.stack_name}",
        )
