import hashlib

from eksplane.errors import ConfigValidationError
from eksplane.models import ValidationErrorDetail

# Root volume size used when neither the request nor the configuration sets one
FALLBACK_VOLUME_SIZE = 50


def node_pool_version(image: str, volume_size: int) -> str:
    """Fingerprint of the launch inputs that require replacing the nodes.

    The digest only depends on the bytes of the inputs, so it is stable
    across processes and platforms.
    """
    h = hashlib.sha1()
    h.update(image.encode("utf-8"))
    h.update(str(volume_size).encode("utf-8"))
    return h.hexdigest()


def select_volume_size(ami_size: int, optional_volume_size: int = 0, default_volume_size: int = 0) -> int:
    """Root volume size in GB for a node pool.

    An explicit size wins over the configured default. Either must fit the
    AMI. Without both, the AMI size is used with a floor of 50 GB.
    """
    if optional_volume_size > 0:
        size, source = optional_volume_size, "explicitly set"
    elif default_volume_size > 0:
        size, source = default_volume_size, "default configured"
    else:
        return max(ami_size, FALLBACK_VOLUME_SIZE)

    if size < ami_size:
        raise ConfigValidationError(
            [
                ValidationErrorDetail(
                    field="node_volume_size",
                    message=(
                        f"selected volume size of {size} GB (source: {source}) "
                        f"is less than the AMI size of {ami_size} GB"
                    ),
                    value=str(size),
                )
            ]
        )
    return size
