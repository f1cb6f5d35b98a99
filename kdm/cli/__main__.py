from __future__ import annotations

import signal
from typing import Any, Callable, Dict

import typer
from kubernetes.config.config_exception import ConfigException
from pydantic import ValidationError

from kdm import __version__
from kdm.config import DriverManagerConfig
from kdm.constants import OPERATOR_NAMESPACE
from kdm.context import Context
from kdm.exceptions import DriverManagerError
from kdm.host.driver import HostDriver
from kdm.k8s.client import KubeClient
from kdm.logger import DEFAULT_FORMAT, logger, setup_logger
from kdm.manager import DriverManager


def version_callback(version: bool) -> None:
    if version:
        typer.echo(f"kdm version: {__version__}")
        raise typer.Exit()


cli = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@cli.callback()
def global_options(
    ctx: typer.Context,
    node_name: str = typer.Option(
        "", "--node-name", envvar="NODE_NAME", help="The name of the node to manage."
    ),
    drain_use_force: bool = typer.Option(
        False, envvar="DRAIN_USE_FORCE", help="Use force when draining the node."
    ),
    drain_pod_selector_label: str = typer.Option(
        "",
        "--drain-pod-selector-label",
        envvar="DRAIN_POD_SELECTOR_LABEL",
        help="Only drain pods matching this label selector.",
    ),
    drain_timeout_seconds: str = typer.Option(
        "0s",
        "--drain-timeout-seconds",
        envvar="DRAIN_TIMEOUT_SECONDS",
        help="Time to wait for a drain before giving up, e.g. 300, 300s or 5m. Zero means no limit.",
    ),
    drain_delete_emptydir_data: bool = typer.Option(
        False,
        envvar="DRAIN_DELETE_EMPTYDIR_DATA",
        help="Delete pods using emptyDir volumes when draining.",
    ),
    enable_auto_drain: bool = typer.Option(
        True,
        envvar="ENABLE_AUTO_DRAIN",
        help="Fall back to a full node drain when GPU pods cannot be evicted.",
    ),
    enable_gpu_pod_eviction: bool = typer.Option(
        True, envvar="ENABLE_GPU_POD_EVICTION", help="Evict pods using GPUs."
    ),
    operator_namespace: str = typer.Option(
        OPERATOR_NAMESPACE,
        "--operator-namespace",
        envvar="OPERATOR_NAMESPACE",
        help="Namespace the GPU operator is installed in.",
    ),
    node_label_for_gpu_pod_eviction: str = typer.Option(
        "",
        "--node-label-for-gpu-pod-eviction",
        envvar="NODE_LABEL_FOR_GPU_POD_EVICTION",
        help="Node selector label of custom operands that must be paused too.",
    ),
    gpu_direct_rdma_enabled: bool = typer.Option(
        False,
        envvar="GPU_DIRECT_RDMA_ENABLED",
        help="Wait for the MOFED driver before resuming the operands.",
    ),
    use_host_mofed: bool = typer.Option(
        False, envvar="USE_HOST_MOFED", help="MOFED is installed on the host."
    ),
    kubeconfig: str = typer.Option(
        "", "--kubeconfig", envvar="KUBECONFIG", help="Path to the kubeconfig file."
    ),
    driver_version: str = typer.Option(
        "",
        "--driver-version",
        envvar="DRIVER_VERSION",
        help="Desired driver version. The uninstall is skipped if it is already loaded.",
    ),
    force_reinstall: bool = typer.Option(
        False,
        envvar="FORCE_REINSTALL",
        help="Reinstall the driver even if the desired version is loaded.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", envvar="KDM_DEBUG", help="Enable verbose output"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    setup_logger(verbose, DEFAULT_FORMAT)
    # Validated when a command runs, so --help works without a node name
    ctx.obj = {
        "node_name": node_name,
        "drain_use_force": drain_use_force,
        "drain_pod_selector_label": drain_pod_selector_label,
        "drain_timeout": drain_timeout_seconds,
        "drain_delete_emptydir_data": drain_delete_emptydir_data,
        "enable_auto_drain": enable_auto_drain,
        "enable_gpu_pod_eviction": enable_gpu_pod_eviction,
        "operator_namespace": operator_namespace,
        "node_label_for_gpu_pod_eviction": node_label_for_gpu_pod_eviction,
        "gpu_direct_rdma_enabled": gpu_direct_rdma_enabled,
        "use_host_mofed": use_host_mofed,
        "kubeconfig": kubeconfig,
        "driver_version": driver_version,
        "force_reinstall": force_reinstall,
    }


def load_config(options: Dict[str, Any]) -> DriverManagerConfig:
    try:
        return DriverManagerConfig(**options)
    except ValidationError as e:
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            logger.error(f"Invalid value for {field}: {error['msg']}")
        raise typer.Exit(1)


def run_manager(
    config: DriverManagerConfig, action: Callable[[DriverManager], None]
) -> None:
    try:
        with Context(config) as kdm_ctx:
            manager = DriverManager(config, kdm_ctx.kube_client, kdm_ctx.host_driver)
            action(manager)
    except (DriverManagerError, ConfigException) as e:
        logger.error(f"Error: {e}")
        raise typer.Exit(1)


@cli.command("uninstall_driver")
def uninstall_driver(ctx: typer.Context) -> None:
    """
    Takes the GPU driver of the node out of service.
    """
    config = load_config(ctx.obj)
    run_manager(config, lambda manager: manager.uninstall_driver())


@cli.command("preflight_check")
def preflight_check(ctx: typer.Context) -> None:
    """
    Checks the node before a driver is installed.
    """
    config = load_config(ctx.obj)
    DriverManager(config, KubeClient(), HostDriver()).preflight_check()


def handle_sigterm(signum: int, frame: Any) -> None:
    logger.info("Received SIGTERM, shutting down")
    raise SystemExit(1)


def main() -> None:
    signal.signal(signal.SIGTERM, handle_sigterm)
    cli()


if __name__ == "__main__":
    main()
