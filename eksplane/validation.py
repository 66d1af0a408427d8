import ipaddress
import re

from eksplane.errors import ConfigValidationError
from eksplane.models import (
    ClusterCreateRequest,
    EncryptionConfig,
    NodePoolSpec,
    Subnet,
    ValidationErrorDetail,
)

_LABEL_NAME = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)$")
_LABEL_PREFIX = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

ENCRYPTED_RESOURCE = "secrets"


def cidrs_overlap(cidr1: str, cidr2: str) -> bool:
    """Check if either CIDR block contains the network address of the other."""
    try:
        net1 = ipaddress.ip_network(cidr1, strict=False)
        net2 = ipaddress.ip_network(cidr2, strict=False)
    except ValueError:
        return False  # Invalid CIDRs handled elsewhere
    if net1.version != net2.version:
        return False
    return net2.network_address in net1 or net1.network_address in net2


def is_subnet_of(subnet_cidr: str, vpc_cidr: str) -> bool:
    """Check if subnet CIDR is within VPC CIDR range and not larger than it."""
    try:
        subnet = ipaddress.IPv4Network(subnet_cidr, strict=False)
        vpc = ipaddress.IPv4Network(vpc_cidr, strict=False)
        return subnet.subnet_of(vpc)
    except (ValueError, ipaddress.AddressValueError):
        return False


def raise_for_errors(errors: list[ValidationErrorDetail]) -> None:
    if errors:
        raise ConfigValidationError(errors)


def validate_node_pool(name: str, spec: NodePoolSpec, for_update: bool = False) -> list[ValidationErrorDetail]:
    """Validate a node pool whose count defaults were already applied.

    Instance type and image are only required for node pools that are
    about to be created.
    """
    errors: list[ValidationErrorDetail] = []
    field = f"node_pools.{name}"

    if not for_update:
        if not spec.instance_type:
            errors.append(
                ValidationErrorDetail(
                    field=f"{field}.instance_type",
                    message=f"instance type is required for node pool {name}",
                )
            )
        if not spec.image:
            errors.append(
                ValidationErrorDetail(
                    field=f"{field}.image",
                    message=f"image is required for node pool {name}",
                )
            )

    if spec.autoscaling and spec.max_count == 0:
        errors.append(
            ValidationErrorDetail(
                field=f"{field}.max_count",
                message="max count is required when autoscaling is enabled",
            )
        )

    if spec.max_count < spec.min_count:
        errors.append(
            ValidationErrorDetail(
                field=f"{field}.min_count",
                message="min count must be less than or equal to max count",
                value=str(spec.min_count),
            )
        )
    elif spec.count and not spec.min_count <= spec.count <= spec.max_count:
        errors.append(
            ValidationErrorDetail(
                field=f"{field}.count",
                message="count must be between min count and max count",
                value=str(spec.count),
            )
        )

    errors.extend(validate_labels(field, spec.labels))
    return errors


def validate_labels(field: str, labels: dict[str, str]) -> list[ValidationErrorDetail]:
    """Kubernetes label key and value syntax."""
    errors: list[ValidationErrorDetail] = []
    for key, value in labels.items():
        prefix, _, name = key.rpartition("/")
        valid_key = (
            0 < len(name) <= 63
            and _LABEL_NAME.match(name) is not None
            and (not prefix or (len(prefix) <= 253 and _LABEL_PREFIX.match(prefix) is not None))
        )
        if not valid_key:
            errors.append(
                ValidationErrorDetail(
                    field=f"{field}.labels",
                    message=f"invalid label key: {key}",
                    value=key,
                )
            )
        if value and (len(value) > 63 or _LABEL_NAME.match(value) is None):
            errors.append(
                ValidationErrorDetail(
                    field=f"{field}.labels",
                    message=f"invalid value for label {key}",
                    value=value,
                )
            )
    return errors


def validate_encryption_config(
    configs: list[EncryptionConfig], region: str
) -> list[ValidationErrorDetail]:
    """Validate the secrets encryption settings of a cluster.

    No encryption config is valid and leaves secrets unencrypted.
    """
    errors: list[ValidationErrorDetail] = []
    if not configs:
        return errors

    if len(configs) > 1:
        errors.append(
            ValidationErrorDetail(
                field="encryption_config",
                message="at most one encryption config is supported",
                value=str(len(configs)),
            )
        )
        return errors

    config = configs[0]

    if not config.key_arn:
        errors.append(
            ValidationErrorDetail(
                field="encryption_config[0].key_arn",
                message="KMS key ARN is required",
            )
        )
    elif not config.key_arn.startswith("arn:aws:kms"):
        errors.append(
            ValidationErrorDetail(
                field="encryption_config[0].key_arn",
                message="key ARN must reference a KMS key",
                value=config.key_arn,
            )
        )
    else:
        parts = config.key_arn.split(":")
        key_region = parts[3] if len(parts) > 3 else ""
        if not region or key_region != region:
            errors.append(
                ValidationErrorDetail(
                    field="encryption_config[0].key_arn",
                    message=f"KMS key must be located in the cluster region {region!r}",
                    value=config.key_arn,
                )
            )

    if config.resources is None or len(config.resources) != 1:
        errors.append(
            ValidationErrorDetail(
                field="encryption_config[0].resources",
                message=f"exactly one resource must be specified: {ENCRYPTED_RESOURCE}",
            )
        )
    elif config.resources[0] != ENCRYPTED_RESOURCE:
        errors.append(
            ValidationErrorDetail(
                field="encryption_config[0].resources",
                message=f"only {ENCRYPTED_RESOURCE} can be encrypted",
                value=config.resources[0],
            )
        )

    return errors


def _collect_subnets(request: ClusterCreateRequest) -> list[tuple[str, Subnet]]:
    subnets = [(f"subnets[{i}]", subnet) for i, subnet in enumerate(request.subnets)]
    for name, node_pool in request.node_pools.items():
        if node_pool.subnet is not None:
            subnets.append((f"node_pools.{name}.subnet", node_pool.subnet))
    return subnets


def validate_network(request: ClusterCreateRequest, region: str) -> list[ValidationErrorDetail]:
    """Validate the VPC and subnet layout of a cluster before creation."""
    errors: list[ValidationErrorDetail] = []

    vpc_id = request.vpc.vpc_id if request.vpc else ""
    vpc_cidr = request.vpc.cidr if request.vpc else ""

    if vpc_id and vpc_cidr:
        errors.append(
            ValidationErrorDetail(
                field="vpc",
                message="VPC ID and VPC CIDR cannot be specified together",
            )
        )
    elif not vpc_id and not vpc_cidr:
        errors.append(
            ValidationErrorDetail(
                field="vpc",
                message="either VPC ID or VPC CIDR is required",
            )
        )

    if len(request.subnets) < 2:
        errors.append(
            ValidationErrorDetail(
                field="subnets",
                message="at least two subnets in different availability zones are required",
                value=str(len(request.subnets)),
            )
        )

    existing: dict[str, Subnet] = {}
    new: dict[str, Subnet] = {}

    for field, subnet in _collect_subnets(request):
        if subnet.subnet_id and subnet.cidr:
            errors.append(
                ValidationErrorDetail(
                    field=field,
                    message="subnet ID and CIDR cannot be specified together",
                    value=subnet.subnet_id,
                )
            )
            continue
        if subnet.subnet_id:
            existing[subnet.subnet_id] = subnet
            continue
        if not subnet.cidr:
            # node pool subnets may be omitted entirely
            if field.startswith("subnets["):
                errors.append(
                    ValidationErrorDetail(
                        field=field,
                        message="either subnet ID or CIDR is required",
                    )
                )
            continue

        known = new.get(subnet.cidr)
        if known is not None and known.availability_zone != subnet.availability_zone:
            errors.append(
                ValidationErrorDetail(
                    field=field,
                    message=(
                        f"subnets with CIDR {subnet.cidr} are in different availability zones: "
                        f"{known.availability_zone}, {subnet.availability_zone}"
                    ),
                    value=subnet.cidr,
                )
            )
            continue
        if subnet.availability_zone and not subnet.availability_zone.startswith(region):
            errors.append(
                ValidationErrorDetail(
                    field=f"{field}.availability_zone",
                    message=f"availability zone must belong to region {region}",
                    value=subnet.availability_zone,
                )
            )
        new[subnet.cidr] = subnet

    if existing and new:
        errors.append(
            ValidationErrorDetail(
                field="subnets",
                message="existing subnets and new subnets cannot be mixed",
            )
        )

    if existing and not vpc_id:
        errors.append(
            ValidationErrorDetail(
                field="vpc.vpc_id",
                message="VPC ID must be provided when using existing subnets",
            )
        )

    if vpc_cidr:
        for cidr in new:
            if not is_subnet_of(cidr, vpc_cidr):
                errors.append(
                    ValidationErrorDetail(
                        field="subnets",
                        message=f"subnet CIDR {cidr} is not within VPC CIDR {vpc_cidr}",
                        value=cidr,
                    )
                )

    cidrs = list(new)
    for i, cidr1 in enumerate(cidrs):
        for cidr2 in cidrs[i + 1:]:
            if cidrs_overlap(cidr1, cidr2):
                errors.append(
                    ValidationErrorDetail(
                        field="subnets",
                        message=f"subnet CIDRs overlap: {cidr1} and {cidr2}",
                    )
                )

    route_table_required = bool(vpc_id) and bool(new)
    if route_table_required and not request.route_table_id:
        errors.append(
            ValidationErrorDetail(
                field="route_table_id",
                message="route table ID is required when creating subnets in an existing VPC",
            )
        )
    elif not route_table_required and request.route_table_id:
        errors.append(
            ValidationErrorDetail(
                field="route_table_id",
                message="route table ID can only be set when creating subnets in an existing VPC",
                value=request.route_table_id,
            )
        )

    return errors


def validate_cluster_creation(request: ClusterCreateRequest, region: str) -> None:
    """Run every creation-time check and raise on the first pass with errors.

    Defaults are expected to be applied already.
    """
    errors: list[ValidationErrorDetail] = []

    if not request.name:
        errors.append(ValidationErrorDetail(field="name", message="cluster name is required"))

    for name, node_pool in request.node_pools.items():
        errors.extend(validate_node_pool(name, node_pool))

    errors.extend(validate_network(request, region))
    errors.extend(validate_encryption_config(request.encryption_config, region))

    raise_for_errors(errors)
