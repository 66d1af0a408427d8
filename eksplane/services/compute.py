from botocore.exceptions import ClientError
from pydantic import BaseModel

from eksplane.errors import ActivityError
from eksplane.services.aws import AwsClientFactory, error_code, error_message
from eksplane.versioning import node_pool_version, select_volume_size
from eksplane.workflow import Activity, ActivityContext

IMAGE_NOT_FOUND_CODES = frozenset(
    {"InvalidAMIID.NotFound", "InvalidAMIID.Malformed", "InvalidAMIID.Unavailable"}
)


class GetAMISizeInput(BaseModel):
    secret_id: str
    region: str
    image_id: str


class GetAMISizeOutput(BaseModel):
    ami_size: int


class GetAMISizeActivity(Activity):
    """Size in GB of the root device snapshot of an AMI."""

    name = "eks-get-ami-size"
    output_model = GetAMISizeOutput

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    def execute(self, ctx: ActivityContext, input: GetAMISizeInput) -> GetAMISizeOutput:
        ec2 = self.clients.client("ec2", input.secret_id, input.region)
        try:
            response = ec2.describe_images(ImageIds=[input.image_id])
        except ClientError as e:
            if error_code(e) in IMAGE_NOT_FOUND_CODES:
                raise ActivityError(
                    f"image {input.image_id} not found: {error_message(e)}",
                    reason="IMAGE_NOT_FOUND",
                ) from e
            raise
        images = response.get("Images", [])
        if not images:
            raise ActivityError(f"image {input.image_id} not found", reason="IMAGE_NOT_FOUND")

        image = images[0]
        root_device = image.get("RootDeviceName")
        for mapping in image.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == root_device and "Ebs" in mapping:
                return GetAMISizeOutput(ami_size=int(mapping["Ebs"]["VolumeSize"]))

        raise ActivityError(
            f"image {input.image_id} has no EBS root device",
            reason="IMAGE_NOT_FOUND",
        )


class SelectVolumeSizeInput(BaseModel):
    ami_size: int
    optional_volume_size: int = 0


class SelectVolumeSizeOutput(BaseModel):
    volume_size: int


class SelectVolumeSizeActivity(Activity):
    name = "eks-select-volume-size"
    output_model = SelectVolumeSizeOutput

    def __init__(self, default_volume_size: int = 0):
        self.default_volume_size = max(default_volume_size, 0)

    def execute(self, ctx: ActivityContext, input: SelectVolumeSizeInput) -> SelectVolumeSizeOutput:
        return SelectVolumeSizeOutput(
            volume_size=select_volume_size(
                input.ami_size, input.optional_volume_size, self.default_volume_size
            )
        )


class CalculateNodePoolVersionInput(BaseModel):
    image: str
    volume_size: int = 0


class CalculateNodePoolVersionOutput(BaseModel):
    version: str


class CalculateNodePoolVersionActivity(Activity):
    name = "eks-calculate-node-pool-version"
    output_model = CalculateNodePoolVersionOutput

    def execute(self, ctx: ActivityContext, input: CalculateNodePoolVersionInput) -> CalculateNodePoolVersionOutput:
        return CalculateNodePoolVersionOutput(version=node_pool_version(input.image, input.volume_size))
