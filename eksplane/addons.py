"""Selection of managed addon versions."""

import easysemver
from pydantic import BaseModel, Field


class InvalidAddonVersionError(ValueError):
    """An addon version is not a semantic version."""


class AddonVersion(BaseModel):
    """An available addon version and the cluster versions it supports."""

    version: str
    compatible_cluster_versions: list[str] = Field(default_factory=list)


def parse_version(version: str) -> easysemver.Version:
    """Parse a semantic version, tolerating the usual "v" prefix."""
    try:
        return easysemver.Version(version[1:] if version.startswith("v") else version)
    except (TypeError, ValueError) as e:
        raise InvalidAddonVersionError(f"invalid addon version {version!r}: {e}") from e


def addon_versions_from_response(response: dict) -> list[AddonVersion]:
    """Flatten an EKS DescribeAddonVersions response."""
    versions = []
    for addon in response.get("addons", []):
        for version in addon.get("addonVersions", []):
            versions.append(
                AddonVersion(
                    version=version["addonVersion"],
                    compatible_cluster_versions=[
                        c["clusterVersion"]
                        for c in version.get("compatibilities", [])
                        if c.get("clusterVersion")
                    ],
                )
            )
    return versions


def select_latest_version(available: list[AddonVersion], current: str, cluster_version: str) -> str:
    """Newest of the current version and the versions compatible with the cluster.

    Compatibility is an exact match on the cluster version. The original
    string of the winning version is returned, so the caller can compare
    it with ``current`` to detect that there is nothing to update.
    """
    latest = parse_version(current)
    selected = current

    for candidate in available:
        if cluster_version not in candidate.compatible_cluster_versions:
            continue
        version = parse_version(candidate.version)
        if version > latest:
            latest = version
            selected = candidate.version

    return selected
