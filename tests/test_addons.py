import pytest

from eksplane.addons import (
    AddonVersion,
    InvalidAddonVersionError,
    addon_versions_from_response,
    select_latest_version,
)

AVAILABLE = [
    AddonVersion(version="v1.8.0", compatible_cluster_versions=["1.18", "1.19"]),
    AddonVersion(version="v1.8.3", compatible_cluster_versions=["1.18", "1.19"]),
    AddonVersion(version="v1.8.5", compatible_cluster_versions=["1.19"]),
]


def test_latest_compatible_version():
    assert select_latest_version(AVAILABLE, "v1.7.0", "1.18") == "v1.8.3"
    assert select_latest_version(AVAILABLE, "v1.7.0", "1.19") == "v1.8.5"


def test_no_compatible_version_keeps_current():
    assert select_latest_version(AVAILABLE, "v1.7.0", "1.17") == "v1.7.0"


def test_current_is_newest():
    assert select_latest_version(AVAILABLE, "v1.9.0", "1.18") == "v1.9.0"


def test_invalid_current_version():
    with pytest.raises(InvalidAddonVersionError):
        select_latest_version(AVAILABLE, "latest", "1.18")


def test_versions_from_response():
    response = {
        "addons": [
            {
                "addonName": "coredns",
                "addonVersions": [
                    {
                        "addonVersion": "v1.8.3-eksbuild.1",
                        "compatibilities": [{"clusterVersion": "1.20"}, {"clusterVersion": "1.21"}],
                    },
                    {"addonVersion": "v1.8.0-eksbuild.1", "compatibilities": []},
                ],
            }
        ]
    }

    assert addon_versions_from_response(response) == [
        AddonVersion(version="v1.8.3-eksbuild.1", compatible_cluster_versions=["1.20", "1.21"]),
        AddonVersion(version="v1.8.0-eksbuild.1", compatible_cluster_versions=[]),
    ]
