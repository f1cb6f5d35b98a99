from __future__ import annotations

import typer
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from pydantic import ValidationError

from kdm.config import DrainOptions
from kdm.exceptions import DrainError
from kdm.k8s.client import KubeClient, load_kube_config
from kdm.k8s.drain import DrainHelper, pod_ref
from kdm.k8s.occupancy import gpu_pod_filter
from kdm.logger import DEFAULT_FORMAT, logger, setup_logger

app = typer.Typer(
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Drain K8s pods on a node which have been allocated NVIDIA GPU",
)


def drain_gpu_pods(
    kube_client: KubeClient, node_name: str, opts: DrainOptions, dry_run: bool = False
) -> None:
    """
    Evicts the pods on a node that request NVIDIA GPUs.

    Only extended resource requests are considered. DaemonSet pods are left
    alone.

    Args:
        kube_client (KubeClient): The cluster client.
        node_name (str): The node to drain.
        opts (DrainOptions): The drain parameters.
        dry_run (bool): Only list the pods that would be evicted.

    Raises:
        DrainError: If some GPU pods cannot be removed.
    """
    helper = DrainHelper.from_options(
        kube_client.core_v1, opts, additional_filters=[gpu_pod_filter()]
    )

    logger.info("Getting pods for deletion...")
    delete_list = helper.get_pods_for_deletion(node_name)
    pods = delete_list.pods()
    for pod in pods:
        logger.info(f"  {pod_ref(pod)}")

    warnings = delete_list.warnings()
    if warnings:
        logger.debug(f"Warnings: {warnings}")

    errors = delete_list.errors()
    if errors:
        logger.info("ERROR: following errors met when getting pods for deletion")
        for error in errors:
            logger.info(f"  {error}")
        raise DrainError("error getting pods for deletion")

    if not pods:
        logger.info("No pods to delete. Exiting.")

    if dry_run:
        return

    logger.debug("Evicting NVIDIA pods...")
    helper.delete_or_evict_pods(pods)


@app.command()
def nvdrain(
    node_name: str = typer.Option(
        "", "--node-name", envvar="NODE_NAME", help="The name of the node to drain"
    ),
    debug: bool = typer.Option(
        False, "--debug", envvar="NVDRAIN_DEBUG", help="Enable debug-level logging"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        envvar="NVDRAIN_DRY_RUN",
        help="Print list of pods to be evicted",
    ),
    kubeconfig: str = typer.Option(
        "", "--kubeconfig", envvar="KUBECONFIG", help="Absolute path to the kubeconfig file"
    ),
    delete_emptydir_data: bool = typer.Option(
        False,
        "--delete-emptydir-data",
        envvar="NVDRAIN_DELETE_EMPTYDIR_DATA",
        help="Continue even if there are pods using emptyDir",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        envvar="NVDRAIN_USE_FORCE",
        help="Continue even if there are pods not managed by a ReplicationController, "
        "ReplicaSet, Job, DaemonSet, or StatefulSet",
    ),
    timeout: str = typer.Option(
        "0s",
        "--timeout",
        "-t",
        envvar="NVDRAIN_TIMEOUT_SECONDS",
        help="The length of time to wait before giving up, zero means infinite",
    ),
    grace_period: int = typer.Option(
        -1,
        "--grace-period",
        envvar="NVDRAIN_GRACE_PERIOD",
        help="Period of time in seconds given to each pod to terminate gracefully. "
        "If negative, the default value specified in the pod will be used.",
    ),
) -> None:
    """
    Drains the pods that have been allocated NVIDIA GPUs from a node.
    """
    setup_logger(debug, DEFAULT_FORMAT)

    if not node_name:
        logger.error("missing required flags 'node-name'")
        raise typer.Exit(1)

    try:
        opts = DrainOptions(
            force=force,
            delete_emptydir_data=delete_emptydir_data,
            timeout=timeout,
            grace_period_seconds=grace_period,
        )
    except ValidationError as e:
        logger.error(f"error parsing --timeout flag: {e.errors()[0]['msg']}")
        raise typer.Exit(1)

    try:
        load_kube_config(kubeconfig)
        drain_gpu_pods(KubeClient(), node_name, opts, dry_run)
    except (DrainError, ApiException, ConfigException) as e:
        logger.error(f"Error: {e}")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
