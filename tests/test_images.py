import pytest

from eksplane.defaults import add_create_defaults, get_default_subnets
from eksplane.images import (
    DEFAULT_IMAGES,
    ImageNotFoundError,
    ImageSelectionCriteria,
    ImageSelectors,
    KubernetesVersionImageSelector,
    RegionMapImageSelector,
    default_image_selector,
)
from eksplane.models import ClusterCreateRequest, NodePoolSpec, Subnet, Vpc


class TestImageSelectors:
    def test_region_map(self):
        selector = RegionMapImageSelector({"us-east-1": "ami-1"})
        assert selector.select_image(ImageSelectionCriteria(region="us-east-1")) == "ami-1"
        with pytest.raises(ImageNotFoundError):
            selector.select_image(ImageSelectionCriteria(region="eu-west-1"))

    def test_kubernetes_version_matches_minor_version(self):
        selector = KubernetesVersionImageSelector("1.21", RegionMapImageSelector({"us-east-1": "ami-121"}))
        assert selector.select_image(ImageSelectionCriteria(region="us-east-1", kubernetes_version="1.21.2")) == "ami-121"
        assert selector.select_image(ImageSelectionCriteria(region="us-east-1", kubernetes_version="v1.21")) == "ami-121"
        with pytest.raises(ImageNotFoundError):
            selector.select_image(ImageSelectionCriteria(region="us-east-1", kubernetes_version="1.2"))

    def test_first_match_wins(self):
        selector = ImageSelectors(
            [
                KubernetesVersionImageSelector("1.20", RegionMapImageSelector({"us-east-1": "ami-120"})),
                RegionMapImageSelector({"us-east-1": "ami-any"}),
            ]
        )
        assert selector.select_image(ImageSelectionCriteria(region="us-east-1", kubernetes_version="1.20")) == "ami-120"
        assert selector.select_image(ImageSelectionCriteria(region="us-east-1", kubernetes_version="1.22")) == "ami-any"

    def test_no_match(self):
        with pytest.raises(ImageNotFoundError):
            ImageSelectors([]).select_image(ImageSelectionCriteria(region="us-east-1"))

    def test_default_selector(self):
        image = default_image_selector().select_image(
            ImageSelectionCriteria(region="eu-west-1", kubernetes_version="1.21")
        )
        assert image == DEFAULT_IMAGES["1.21"]["eu-west-1"]


class TestCreateDefaults:
    def test_network_defaults(self):
        request = add_create_defaults(ClusterCreateRequest(name="test", version="1.21"), "us-east-1")

        assert request.vpc == Vpc(cidr="192.168.0.0/16")
        assert request.subnets == get_default_subnets("us-east-1")
        assert [s.availability_zone for s in request.subnets] == ["us-east-1a", "us-east-1b"]

    def test_node_pool_defaults(self):
        request = ClusterCreateRequest(
            name="test",
            version="1.21",
            node_pools={"pool1": NodePoolSpec(instance_type="m5.large")},
        )

        spec = add_create_defaults(request, "us-east-1", default_image_selector()).node_pools["pool1"]

        assert spec.image == DEFAULT_IMAGES["1.21"]["us-east-1"]
        assert spec.spot_price == "0.0"
        assert (spec.min_count, spec.max_count, spec.count) == (1, 2, 1)
        assert spec.subnet == Subnet(cidr="192.168.64.0/20", availability_zone="us-east-1a")

    def test_explicit_values_are_kept(self):
        subnets = [Subnet(subnet_id="subnet-1"), Subnet(subnet_id="subnet-2")]
        request = ClusterCreateRequest(
            name="test",
            version="1.21",
            vpc=Vpc(vpc_id="vpc-1"),
            subnets=subnets,
            node_pools={
                "pool1": NodePoolSpec(
                    instance_type="m5.large",
                    image="ami-custom",
                    spot_price="0.3",
                    subnet=Subnet(subnet_id="subnet-2"),
                )
            },
        )

        request = add_create_defaults(request, "us-east-1", default_image_selector())

        assert request.vpc == Vpc(vpc_id="vpc-1")
        assert request.subnets == subnets
        spec = request.node_pools["pool1"]
        assert spec.image == "ami-custom"
        assert spec.spot_price == "0.3"
        assert spec.subnet == Subnet(subnet_id="subnet-2")

    def test_unknown_version_leaves_image_empty(self):
        request = ClusterCreateRequest(
            name="test",
            version="1.10",
            node_pools={"pool1": NodePoolSpec(instance_type="m5.large")},
        )

        spec = add_create_defaults(request, "us-east-1", default_image_selector()).node_pools["pool1"]

        assert spec.image == ""
