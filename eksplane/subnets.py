from typing import Optional

from eksplane.models import Subnet


class SubnetResolutionError(Exception):
    """No cluster subnet matches a node pool subnet."""


def subnets_for_update(cluster_subnets: list[Subnet]) -> list[Subnet]:
    """Cluster subnets usable for node pools created during an update.

    Subnets can only be created together with the cluster, so each of
    them must already have an ID.
    """
    if not cluster_subnets:
        raise SubnetResolutionError("no cluster subnet is available")

    for subnet in cluster_subnets:
        if not subnet.subnet_id:
            raise SubnetResolutionError(
                f"cluster subnet CIDR {subnet.cidr} lacks an ID and subnet creation "
                "is not supported during cluster update"
            )
    return cluster_subnets


def resolve_subnet_ids(
    node_pool_name: str,
    subnet: Optional[Subnet],
    cluster_subnets: list[Subnet],
) -> list[str]:
    """Map a node pool subnet reference to the ID of a known cluster subnet.

    No reference selects the first cluster subnet. A reference matches by
    subnet ID when set, by CIDR otherwise.
    """
    if not cluster_subnets:
        raise SubnetResolutionError("no cluster subnet is available")

    if subnet is None or (not subnet.subnet_id and not subnet.cidr):
        return [cluster_subnets[0].subnet_id]

    for candidate in cluster_subnets:
        if subnet.subnet_id:
            if candidate.subnet_id == subnet.subnet_id:
                return [candidate.subnet_id]
        elif candidate.cidr == subnet.cidr:
            return [candidate.subnet_id]

    reference = subnet.subnet_id or subnet.cidr
    raise SubnetResolutionError(
        f"subnet {reference} of node pool {node_pool_name} is not a cluster subnet"
    )
