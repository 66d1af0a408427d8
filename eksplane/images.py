"""Node image selection.

Selectors are constructed once and passed explicitly to the components
that fill in node pool images.
"""

from typing import Protocol

from pydantic import BaseModel


class ImageNotFoundError(LookupError):
    """No image matches the selection criteria."""


class ImageSelectionCriteria(BaseModel):
    region: str
    instance_type: str = ""
    kubernetes_version: str = ""


class ImageSelector(Protocol):
    def select_image(self, criteria: ImageSelectionCriteria) -> str:
        ...


class RegionMapImageSelector:
    """Selects an image by region."""

    def __init__(self, images: dict[str, str]):
        self.images = images

    def select_image(self, criteria: ImageSelectionCriteria) -> str:
        image = self.images.get(criteria.region)
        if not image:
            raise ImageNotFoundError(f"no image found for region {criteria.region}")
        return image


class KubernetesVersionImageSelector:
    """Delegates to another selector for one Kubernetes minor version."""

    def __init__(self, version: str, selector: ImageSelector):
        self.version = version
        self.selector = selector

    def matches(self, kubernetes_version: str) -> bool:
        requested = kubernetes_version.lstrip("v").split(".")[:2]
        return requested == self.version.split(".")[:2]

    def select_image(self, criteria: ImageSelectionCriteria) -> str:
        if not self.matches(criteria.kubernetes_version):
            raise ImageNotFoundError(
                f"no image found for Kubernetes version {criteria.kubernetes_version}"
            )
        return self.selector.select_image(criteria)


class ImageSelectors:
    """Tries selectors in order, the first match wins."""

    def __init__(self, selectors: list[ImageSelector]):
        self.selectors = selectors

    def select_image(self, criteria: ImageSelectionCriteria) -> str:
        for selector in self.selectors:
            try:
                return selector.select_image(criteria)
            except ImageNotFoundError:
                continue
        raise ImageNotFoundError(
            f"no image found for region {criteria.region} "
            f"and Kubernetes version {criteria.kubernetes_version}"
        )


# EKS optimized Amazon Linux 2 AMIs
DEFAULT_IMAGES: dict[str, dict[str, str]] = {
    "1.19": {
        "ap-northeast-1": "ami-08eb69ce386c9e5d4",
        "ap-northeast-2": "ami-0b164ef1518193966",
        "ap-northeast-3": "ami-0f86193ab75516a4e",
        "ap-southeast-1": "ami-0c814bff86ffae438",
        "ap-southeast-2": "ami-074d8646b8184300b",
        "ap-south-1": "ami-01de2b54dee5461ba",
        "ca-central-1": "ami-07c6ae17e840017d8",
        "eu-central-1": "ami-0c03b017874e1d7e4",
        "eu-north-1": "ami-02cc2d248cab6d882",
        "eu-west-1": "ami-07e16eb3fc2c12328",
        "eu-west-2": "ami-06178c718a7d9b164",
        "eu-west-3": "ami-02fe296802edc3bf9",
        "sa-east-1": "ami-0af82db946859c80f",
        "us-east-1": "ami-0ad9600b3719f8a53",
        "us-east-2": "ami-0dce41d8956099d1c",
        "us-west-1": "ami-08d4cdd9fa56e4cc2",
        "us-west-2": "ami-0123cdc1d3e4fac7a",
    },
    "1.20": {
        "ap-northeast-1": "ami-050c02862539f4984",
        "ap-northeast-2": "ami-0e34fc9c7492756ee",
        "ap-northeast-3": "ami-07acd78236d1e11dc",
        "ap-southeast-1": "ami-0bf1fa15b81394b79",
        "ap-southeast-2": "ami-041460ef88863e87a",
        "ap-south-1": "ami-0941443c8917f415a",
        "ca-central-1": "ami-05d993a0162ed26a2",
        "eu-central-1": "ami-0b273062ba87d6a40",
        "eu-north-1": "ami-0a89934258901e12e",
        "eu-west-1": "ami-0e9af5e112a678f08",
        "eu-west-2": "ami-013244fec0ed69e0c",
        "eu-west-3": "ami-0878e400a1097c4d4",
        "sa-east-1": "ami-04cd0cef082181df6",
        "us-east-1": "ami-01a09362cdb8f50b3",
        "us-east-2": "ami-0098e60c6f91e0198",
        "us-west-1": "ami-05a3f9078be6d6b29",
        "us-west-2": "ami-018dff183a28ac510",
    },
    "1.21": {
        "ap-northeast-1": "ami-02c6d763272789974",
        "ap-northeast-2": "ami-0a935a0be13d15a62",
        "ap-northeast-3": "ami-04b6b2ffed6e017cd",
        "ap-southeast-1": "ami-06c6b04b283f6a360",
        "ap-southeast-2": "ami-04844e9ed76402c4c",
        "ap-south-1": "ami-083fc9a94c76fcf99",
        "ca-central-1": "ami-08fbcecd888e28020",
        "eu-central-1": "ami-0cdaae2396feeac04",
        "eu-north-1": "ami-0eb7a1eaa3452a92e",
        "eu-west-1": "ami-003f91f482a604b6d",
        "eu-west-2": "ami-03bfc3ec1fbb98b64",
        "eu-west-3": "ami-055d6d194079fd39c",
        "sa-east-1": "ami-044c743d56df85e52",
        "us-east-1": "ami-05911b9b4df1172c7",
        "us-east-2": "ami-0b1eb76fbce602b88",
        "us-west-1": "ami-0b231db44d895f441",
        "us-west-2": "ami-0927a66ff40101d76",
    },
    "1.22": {
        "ap-northeast-1": "ami-0df4e9519930dec44",
        "ap-northeast-2": "ami-006da1df7b3f0314c",
        "ap-northeast-3": "ami-09b7c559361080c12",
        "ap-southeast-1": "ami-091a4816b24a28609",
        "ap-southeast-2": "ami-05ed20b703d2f11a1",
        "ap-south-1": "ami-0e070d28b9ba80b5f",
        "ca-central-1": "ami-0adb2ff3a246d92f0",
        "eu-central-1": "ami-00a3108f45c6dbb6c",
        "eu-north-1": "ami-03e9fa5d35116a5df",
        "eu-west-1": "ami-0123eaf3fc3256084",
        "eu-west-2": "ami-0d184db0f7d78e409",
        "eu-west-3": "ami-0572799da7d7711e5",
        "sa-east-1": "ami-0a459177cd5b03219",
        "us-east-1": "ami-0281494f7c4eb37d1",
        "us-east-2": "ami-05c1b5a6e6a6fa16e",
        "us-west-1": "ami-0642b600309077ef5",
        "us-west-2": "ami-0c8f79982ab160bad",
    },
}


def default_image_selector() -> ImageSelector:
    return ImageSelectors(
        [
            KubernetesVersionImageSelector(version, RegionMapImageSelector(images))
            for version, images in DEFAULT_IMAGES.items()
        ]
    )
