"""
Command line entry point.

Usage:
    python -m eksplane init-db

    python -m eksplane resume

    python -m eksplane update-version --cluster-id 1 --version 1.21

    python -m eksplane update-node-pool \
        --cluster-id 1 \
        --node-pool pool1 \
        --image ami-0123456789abcdef0 \
        --volume-size 80
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from eksplane.database import Database
from eksplane.errors import ConfigValidationError, NotFoundError, PreconditionFailedError
from eksplane.images import default_image_selector
from eksplane.models import ClusterVersionUpdateRequest, NodePoolUpdateOptions, NodePoolUpdateRequest
from eksplane.services.cloudformation import node_pool_stack_name
from eksplane.settings import get_settings
from eksplane.updater import ClusterUpdater
from eksplane.worker import build_worker

logger = logging.getLogger("eksplane")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eksplane", description="EKS cluster and node pool updates.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database tables")
    subparsers.add_parser("resume", help="Resume workflow runs interrupted by a restart")

    version = subparsers.add_parser("update-version", help="Upgrade the Kubernetes version of a cluster")
    version.add_argument("--cluster-id", type=int, required=True, help="Stored cluster ID")
    version.add_argument("--version", required=True, help="Target Kubernetes version (e.g. 1.21)")

    node_pool = subparsers.add_parser("update-node-pool", help="Roll a node pool to a new image or volume size")
    node_pool.add_argument("--cluster-id", type=int, required=True, help="Stored cluster ID")
    node_pool.add_argument("--node-pool", required=True, help="Node pool name")
    node_pool.add_argument("--image", default="", help="New node image, the current one when omitted")
    node_pool.add_argument("--volume-size", type=int, default=0, help="Root volume size in GB")
    node_pool.add_argument("--max-batch-size", type=int, default=0, help="Instances replaced at once")
    node_pool.add_argument("--max-surge", type=int, default=0, help="Instances kept in service during the update")

    return parser


def _resume(worker) -> int:
    """Wait for every resumed run, returns the number of failed ones."""
    handles = worker.resume_pending()
    logger.info("Resuming %d workflow runs", len(handles))
    failed = 0
    for handle in handles:
        try:
            handle.result()
        except Exception as e:
            logger.error("Workflow %s (run %s) failed: %s", handle.workflow_id, handle.run_id, e)
            failed += 1
    return failed


def main(argv=None) -> None:
    load_dotenv()
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = _parser().parse_args(argv)
    database = Database(settings.database_url)

    if args.command == "init-db":
        logger.info("Database initialized at %s", settings.database_url)
        return

    worker = build_worker(settings, database)
    if args.command == "resume":
        try:
            failed = _resume(worker)
        finally:
            worker.shutdown()
        if failed:
            sys.exit(1)
        return

    updater = ClusterUpdater(database, worker, image_selector=default_image_selector())

    try:
        cluster = database.get_cluster(args.cluster_id)
        if args.command == "update-version":
            handle = updater.update_version(
                ClusterVersionUpdateRequest(
                    organization_id=cluster.organization_id,
                    region=cluster.region,
                    secret_id=cluster.secret_id,
                    cluster_id=cluster.id,
                    cluster_name=cluster.name,
                    version=args.version,
                )
            )
        else:
            handle = updater.update_node_pool(
                NodePoolUpdateRequest(
                    secret_id=cluster.secret_id,
                    region=cluster.region,
                    stack_name=node_pool_stack_name(cluster.name, args.node_pool),
                    organization_id=cluster.organization_id,
                    cluster_id=cluster.id,
                    cluster_name=cluster.name,
                    node_pool_name=args.node_pool,
                    node_volume_size=args.volume_size,
                    node_image=args.image,
                    options=NodePoolUpdateOptions(max_batch_size=args.max_batch_size, max_surge=args.max_surge),
                    cluster_tags=cluster.tags,
                )
            )
        result = handle.result()
    except (ConfigValidationError, NotFoundError, PreconditionFailedError) as e:
        logger.error("%s", e)
        sys.exit(2)
    except Exception as e:
        logger.error("Workflow failed: %s", e)
        sys.exit(1)
    finally:
        worker.shutdown()

    logger.info("Workflow completed: %s", result)


if __name__ == "__main__":
    main()
