"""EKS control plane and managed addon activities."""

import logging

from botocore.exceptions import ClientError
from pydantic import BaseModel

from eksplane.addons import addon_versions_from_response, select_latest_version
from eksplane.errors import ClusterUpdateFailedError
from eksplane.services.aws import AwsClientFactory, client_request_token, error_code, error_message
from eksplane.services.polling import poll_until
from eksplane.workflow import Activity, ActivityContext

logger = logging.getLogger(__name__)

UPDATE_SUCCESSFUL = "Successful"
UPDATE_FAILED_STATUSES = ("Failed", "Cancelled")


class EKSActivityInput(BaseModel):
    secret_id: str
    region: str
    cluster_name: str


class UpdateClusterVersionInput(EKSActivityInput):
    version: str


class UpdateOutput(BaseModel):
    # empty when there was nothing to update
    update_id: str = ""


class UpdateClusterVersionActivity(Activity):
    """Submit a Kubernetes version update of the control plane."""

    name = "eks-update-cluster-version"
    output_model = UpdateOutput

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    def execute(self, ctx: ActivityContext, input: UpdateClusterVersionInput) -> UpdateOutput:
        eks = self.clients.client("eks", input.secret_id, input.region)

        cluster = eks.describe_cluster(name=input.cluster_name)["cluster"]
        if cluster.get("version") == input.version:
            logger.info("Cluster %s already runs version %s", input.cluster_name, input.version)
            return UpdateOutput()

        response = eks.update_cluster_version(
            name=input.cluster_name,
            version=input.version,
            clientRequestToken=client_request_token(ctx.run_id, "version", input.version),
        )
        update_id = response["update"]["id"]
        logger.info(
            "Submitted version update %s of cluster %s to %s",
            update_id,
            input.cluster_name,
            input.version,
        )
        return UpdateOutput(update_id=update_id)


class WaitUpdateInput(EKSActivityInput):
    update_id: str
    addon_name: str = ""


class WaitUpdateActivity(Activity):
    """Wait for an EKS cluster or addon update to finish."""

    name = "eks-wait-update"

    def __init__(self, clients: AwsClientFactory, interval: float = 30, max_attempts: int = 120):
        self.clients = clients
        self.interval = interval
        self.max_attempts = max_attempts

    def execute(self, ctx: ActivityContext, input: WaitUpdateInput) -> None:
        kwargs = {"name": input.cluster_name, "updateId": input.update_id}
        if input.addon_name:
            kwargs["addonName"] = input.addon_name

        def _check() -> bool:
            eks = self.clients.client("eks", input.secret_id, input.region)
            update = eks.describe_update(**kwargs)["update"]
            status = update.get("status", "")
            if status == UPDATE_SUCCESSFUL:
                return True
            if status in UPDATE_FAILED_STATUSES:
                messages = [
                    f"{e.get('errorCode', '')}: {e.get('errorMessage', '')}"
                    for e in update.get("errors", [])
                ]
                raise ClusterUpdateFailedError(
                    f"update {input.update_id} of cluster {input.cluster_name} finished with status "
                    f"{status}: {'; '.join(messages) or 'no details'}",
                    details={"update_id": input.update_id, "status": status},
                )
            return False

        target = f"addon {input.addon_name}" if input.addon_name else "cluster"
        poll_until(
            ctx,
            _check,
            self.interval,
            self.max_attempts,
            f"update {input.update_id} of {target} {input.cluster_name}",
        )


class UpdateAddonInput(EKSActivityInput):
    kubernetes_version: str
    addon_name: str


class UpdateAddonOutput(BaseModel):
    update_id: str = ""
    addon_not_installed: bool = False


def is_addon_not_found(err: ClientError, addon_name: str, cluster_name: str) -> bool:
    return error_code(err) == "ResourceNotFoundException" or (
        error_message(err) == f"No addon: {addon_name} found in cluster: {cluster_name}"
    )


class UpdateAddonActivity(Activity):
    """Update an installed managed addon to the newest compatible version.

    Addons that are not installed on the cluster are left alone.
    """

    name = "eks-update-addon"
    output_model = UpdateAddonOutput

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    def execute(self, ctx: ActivityContext, input: UpdateAddonInput) -> UpdateAddonOutput:
        eks = self.clients.client("eks", input.secret_id, input.region)

        try:
            addon = eks.describe_addon(clusterName=input.cluster_name, addonName=input.addon_name)["addon"]
        except ClientError as e:
            if is_addon_not_found(e, input.addon_name, input.cluster_name):
                logger.info("Addon %s is not installed in cluster %s", input.addon_name, input.cluster_name)
                return UpdateAddonOutput(addon_not_installed=True)
            raise

        current_version = addon["addonVersion"]
        available = []
        paginator = eks.get_paginator("describe_addon_versions")
        for page in paginator.paginate(addonName=input.addon_name, kubernetesVersion=input.kubernetes_version):
            available.extend(addon_versions_from_response(page))

        selected = select_latest_version(available, current_version, input.kubernetes_version)
        if selected == current_version:
            logger.info(
                "Addon %s of cluster %s is at the newest version %s",
                input.addon_name,
                input.cluster_name,
                current_version,
            )
            return UpdateAddonOutput()

        logger.info(
            "Updating addon %s of cluster %s from %s to %s",
            input.addon_name,
            input.cluster_name,
            current_version,
            selected,
        )
        response = eks.update_addon(
            clusterName=input.cluster_name,
            addonName=input.addon_name,
            addonVersion=selected,
            resolveConflicts="OVERWRITE",
            clientRequestToken=client_request_token(ctx.run_id, "addon", input.addon_name),
        )
        return UpdateAddonOutput(update_id=response["update"]["id"])
