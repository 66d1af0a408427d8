import ipaddress
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClusterStatus(str, Enum):
    """Status of a cluster as observed by the rest of the platform."""

    CREATING = "creating"
    UPDATING = "updating"
    DELETING = "deleting"
    RUNNING = "running"
    WARNING = "warning"
    ERROR = "error"


class NodePoolStatus(str, Enum):
    """Status of a single node pool."""

    CREATING = "creating"
    READY = "ready"
    UPDATING = "updating"
    DELETING = "deleting"
    ERROR = "error"


class StackOperation(str, Enum):
    """CloudFormation stack operation being waited on."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


CREATING_MESSAGE = "Cluster creation is in progress"
UPDATING_MESSAGE = "Update is in progress"
DELETING_MESSAGE = "Termination is in progress"
RUNNING_MESSAGE = "Cluster is running"

# Spot price used for on-demand node pools
ON_DEMAND_SPOT_PRICE = "0.0"

DEFAULT_NODE_MIN_COUNT = 1
DEFAULT_NODE_MAX_COUNT = 2

DEFAULT_VPC_CIDR = "192.168.0.0/16"
DEFAULT_SUBNET0_CIDR = "192.168.64.0/20"
DEFAULT_SUBNET1_CIDR = "192.168.80.0/20"


def _validate_optional_cidr(v: str) -> str:
    if not v:
        return v
    try:
        ipaddress.ip_network(v, strict=False)
    except ValueError as e:
        raise ValueError(f"Invalid CIDR block: {e}") from e
    return v


class ValidationErrorDetail(BaseModel):
    """Single validation error detail."""

    field: str
    message: str
    value: Optional[str] = None


class ValidationErrorResponse(BaseModel):
    """Structured validation error response."""

    error: str = "validation_error"
    message: str
    details: list[ValidationErrorDetail]


class Subnet(BaseModel):
    """A cluster subnet.

    Pre-existing subnets carry an ID; subnets to be created carry a CIDR
    and an availability zone and only exist at cluster creation time.
    """

    model_config = ConfigDict(frozen=True)

    subnet_id: str = Field(default="", description="ID of an existing subnet")
    cidr: str = Field(default="", description="CIDR range of a subnet to create")
    availability_zone: str = Field(default="", description="Availability zone of the subnet")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_optional_cidr(v)


class Vpc(BaseModel):
    """VPC reference: an existing VPC ID or the CIDR of a VPC to create."""

    vpc_id: str = Field(default="", description="ID of an existing VPC")
    cidr: str = Field(default="", description="CIDR range of a VPC to create")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_optional_cidr(v)


class EncryptionConfig(BaseModel):
    """Envelope encryption of Kubernetes resources with a KMS key."""

    key_arn: str = Field(default="", description="KMS key ARN")
    resources: Optional[list[str]] = Field(
        default=None,
        description="Kubernetes resources to encrypt, only 'secrets' is supported",
    )


class NodePoolSpec(BaseModel):
    """Desired state of a node pool as requested by the user."""

    instance_type: str = ""
    image: str = ""
    volume_size: int = Field(default=0, ge=0, description="Root volume size in GB, 0 for auto")
    spot_price: str = Field(default="", description="Empty for on-demand instances")
    autoscaling: bool = False
    min_count: int = Field(default=0, ge=0)
    max_count: int = Field(default=0, ge=0)
    count: int = Field(default=0, ge=0)
    security_groups: list[str] = Field(default_factory=list)
    subnet: Optional[Subnet] = Field(
        default=None,
        description="Subnet of the worker nodes, the first cluster subnet when omitted",
    )
    labels: dict[str, str] = Field(default_factory=dict)


class NodePool(BaseModel):
    """Current state of a node pool."""

    name: str
    created_by: str = ""
    instance_type: str = ""
    image: str = ""
    volume_size: int = 0
    spot_price: str = ON_DEMAND_SPOT_PRICE
    autoscaling: bool = False
    min_count: int = 0
    max_count: int = 0
    count: int = 0
    security_groups: list[str] = Field(default_factory=list)
    subnet: Optional[Subnet] = None
    subnet_ids: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    stack_id: str = ""
    status: NodePoolStatus = NodePoolStatus.CREATING
    status_message: str = ""


class NodePoolChanges(BaseModel):
    """Partition of node pools produced by a single reconciliation pass."""

    deleted: list[NodePool] = Field(default_factory=list)
    created: list[NodePool] = Field(default_factory=list)
    updated: list[NodePool] = Field(default_factory=list)


class Cluster(BaseModel):
    """Stored EKS cluster."""

    id: int
    organization_id: int
    name: str
    region: str
    secret_id: str
    version: str = ""
    status: ClusterStatus = ClusterStatus.CREATING
    status_message: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    subnets: list[Subnet] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ClusterCreateRequest(BaseModel):
    """EKS specific part of a cluster creation request."""

    name: str
    version: str = ""
    node_pools: dict[str, NodePoolSpec] = Field(default_factory=dict)
    vpc: Optional[Vpc] = None
    route_table_id: str = ""
    subnets: list[Subnet] = Field(default_factory=list)
    encryption_config: list[EncryptionConfig] = Field(default_factory=list)
    log_types: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)


class ClusterUpdateRequest(BaseModel):
    """Desired node pool set of an existing cluster."""

    organization_id: int
    region: str = ""
    secret_id: str = ""
    node_pools: dict[str, NodePoolSpec] = Field(default_factory=dict)
    subnets: list[Subnet] = Field(default_factory=list)
    vpc: Optional[Vpc] = None
    tags: dict[str, str] = Field(default_factory=dict)


class ClusterVersionUpdateRequest(BaseModel):
    """Kubernetes version upgrade of a cluster control plane."""

    organization_id: int = 0
    region: str
    secret_id: str
    cluster_id: int
    cluster_name: str
    version: str = Field(..., description="Target Kubernetes version, e.g. 1.21")


class NodePoolUpdateOptions(BaseModel):
    """Rolling update knobs of a node pool stack update."""

    max_batch_size: int = Field(default=0, ge=0)
    max_surge: int = Field(default=0, ge=0)


class NodePoolUpdateRequest(BaseModel):
    """Infrastructure update of a single node pool."""

    secret_id: str
    region: str
    stack_name: str
    organization_id: int = 0
    cluster_id: int
    cluster_secret_id: str = ""
    cluster_name: str
    node_pool_name: str
    node_volume_size: int = Field(default=0, ge=0)
    node_image: str = ""
    options: NodePoolUpdateOptions = Field(default_factory=NodePoolUpdateOptions)
    cluster_tags: dict[str, str] = Field(default_factory=dict)
