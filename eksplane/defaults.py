import logging
from typing import Optional

from eksplane.images import ImageNotFoundError, ImageSelectionCriteria, ImageSelector
from eksplane.models import (
    DEFAULT_SUBNET0_CIDR,
    DEFAULT_SUBNET1_CIDR,
    DEFAULT_VPC_CIDR,
    ON_DEMAND_SPOT_PRICE,
    ClusterCreateRequest,
    Subnet,
    Vpc,
)
from eksplane.nodepools import apply_node_pool_defaults

logger = logging.getLogger(__name__)


def get_default_subnets(region: str) -> list[Subnet]:
    """Two new subnets in the first two availability zones of the region."""
    return [
        Subnet(cidr=DEFAULT_SUBNET0_CIDR, availability_zone=f"{region}a"),
        Subnet(cidr=DEFAULT_SUBNET1_CIDR, availability_zone=f"{region}b"),
    ]


def add_create_defaults(
    request: ClusterCreateRequest,
    region: str,
    image_selector: Optional[ImageSelector] = None,
) -> ClusterCreateRequest:
    """Return a copy of the creation request with every default filled in.

    Node pools without an image get one from ``image_selector``; if the
    selector has no match the image stays empty and validation reports it.
    """
    vpc = request.vpc
    if vpc is None or (not vpc.vpc_id and not vpc.cidr):
        vpc = Vpc(cidr=DEFAULT_VPC_CIDR)

    subnets = list(request.subnets) or get_default_subnets(region)

    node_pools = {}
    for name, spec in request.node_pools.items():
        spec = apply_node_pool_defaults(spec)
        update: dict = {}

        if not spec.spot_price:
            update["spot_price"] = ON_DEMAND_SPOT_PRICE

        if not spec.image and image_selector is not None:
            try:
                update["image"] = image_selector.select_image(
                    ImageSelectionCriteria(
                        region=region,
                        instance_type=spec.instance_type,
                        kubernetes_version=request.version,
                    )
                )
            except ImageNotFoundError as e:
                logger.warning("No default image for node pool %s: %s", name, e)

        if spec.subnet is None and subnets:
            update["subnet"] = subnets[0]

        node_pools[name] = spec.model_copy(update=update) if update else spec

    return request.model_copy(update={"vpc": vpc, "subnets": subnets, "node_pools": node_pools})
