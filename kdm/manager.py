"""
The driver lifecycle state machine.

``DriverManager.uninstall_driver`` takes the GPU driver of one node out of
service: it pauses the GPU operator operands, evicts GPU workloads, unloads
the kernel modules and hands the devices back before resuming the operands.
Any fatal step rolls the node's scheduling state back before raising.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, List, NoReturn, Optional, Tuple, Type

from kubernetes.client.exceptions import ApiException

from kdm.config import DrainOptions, DriverManagerConfig
from kdm.constants import (
    DEFAULT_GRACE_PERIOD,
    DRIVER_DEPLOY_LABEL,
    DRIVER_PRE_INSTALLED,
    DRIVER_UPGRADE_ANNOTATION,
    HOST_DRIVER_GRACE_PERIOD,
    POLL_INTERVAL,
)
from kdm.exceptions import (
    ComponentEvictionError,
    DeviceRebindError,
    DrainError,
    DriverCleanupError,
    DriverManagerError,
    DriverVersionError,
    GPUPodEvictionError,
    HostDriverPreinstalledError,
    LabelFetchError,
    NouveauUnloadError,
    RDMAWaitTimeoutError,
)
from kdm.host.driver import HostDriver
from kdm.k8s.client import KubeClient
from kdm.k8s.drain import EvictionResult
from kdm.labels import COMPONENTS, ComponentState
from kdm.logger import logger


class State(str, Enum):
    START = "Start"
    PREFLIGHT_SKIP_CHECK = "PreflightSkipCheck"
    LABELS_FETCHED = "LabelsFetched"
    COMPONENTS_EVICTED = "ComponentsEvicted"
    PODS_DRAINED = "PodsDrained"
    MODULES_UNLOADED = "ModulesUnloaded"
    DEVICES_REBOUND = "DevicesRebound"
    RDMA_WAITED = "RDMAWaited"
    RESCHEDULED = "Rescheduled"
    DONE = "Done"
    FAILED = "Failed"


class DriverManager:
    """
    Removes the GPU driver from a node and restores the node afterwards.

    Args:
        config (DriverManagerConfig): The run configuration.
        kube_client (KubeClient): Cluster operations.
        host_driver (HostDriver): Host operations.
        grace_period (float): Seconds to wait for each operand's pods to go away.
        poll_interval (float): Seconds between pod termination checks.
        host_driver_grace_period (float): Seconds to wait after disabling the
            containerized driver on a node with a host driver.
        rdma_timeout (Optional[float]): Seconds to wait for MOFED, None waits forever.
        sleep (Callable[[float], None]): Sleep function.
    """

    def __init__(
        self,
        config: DriverManagerConfig,
        kube_client: KubeClient,
        host_driver: HostDriver,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        poll_interval: float = POLL_INTERVAL,
        host_driver_grace_period: float = HOST_DRIVER_GRACE_PERIOD,
        rdma_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.kube_client = kube_client
        self.host_driver = host_driver
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.host_driver_grace_period = host_driver_grace_period
        self.rdma_timeout = rdma_timeout
        self._sleep = sleep

        self.components = ComponentState()
        self.state = State.START
        self.history: List[State] = [State.START]
        # Set once this run has cordoned or drained the node
        self._cordoned = False

    @property
    def node_name(self) -> str:
        return self.config.node_name

    def _transition(self, state: State) -> None:
        logger.debug(f"Driver manager state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _fail(
        self, error: DriverManagerError, cause: Optional[BaseException] = None
    ) -> NoReturn:
        self._transition(State.FAILED)
        self.cleanup_on_failure()
        if cause is None:
            raise error
        raise error from cause

    def preflight_check(self) -> None:
        logger.info("Performing preflight checks")
        logger.info("Preflight checks completed")

    def uninstall_driver(self) -> None:
        """
        Runs the whole uninstall sequence.

        Raises:
            HostDriverPreinstalledError: If the node runs a host-installed driver.
            LabelFetchError: If the node's labels cannot be read. Nothing has
                been changed at that point.
            DriverManagerError: If any later step fails. The node is uncordoned
                and the operands are resumed before this is raised.
        """
        logger.info("Starting driver uninstallation process")

        if self.host_driver.is_host_driver():
            logger.info(
                "NVIDIA GPU driver is already pre-installed on the node, disabling the containerized driver"
            )
            self._transition(State.FAILED)
            self.disable_containerized_driver()
            # Give the driver pod time to be removed
            self._sleep(self.host_driver_grace_period)
            raise HostDriverPreinstalledError(self.node_name)

        self._transition(State.PREFLIGHT_SKIP_CHECK)
        skip, reason = self.should_skip_uninstall()
        if skip:
            logger.info(f"Skipping driver uninstall: {reason}")
            self._transition(State.DONE)
            return

        try:
            self.fetch_current_labels()
            self.fetch_auto_upgrade_annotation()
        except LabelFetchError:
            self._transition(State.FAILED)
            raise
        self._transition(State.LABELS_FETCHED)

        # Operands must never touch the driver while it is swapped
        try:
            self.evict_gpu_operator_components()
        except (DriverManagerError, ApiException) as e:
            logger.error("Failed to evict GPU operator components, attempting cleanup")
            self._fail(
                ComponentEvictionError(f"failed to evict GPU operator components: {e}"), e
            )
        self._transition(State.COMPONENTS_EVICTED)

        drain_opts = self.config.drain_options()
        if self.gpu_pod_eviction_enabled():
            self._cordon()
            result = self.evict_gpu_pods(drain_opts)
            if not result.complete:
                logger.info("Failed to drain node of GPU pods")
                if not self.auto_drain_enabled():
                    self._fail(
                        GPUPodEvictionError(
                            "cannot proceed until all GPU pods are drained from the node"
                        )
                    )
                logger.info("Attempting node drain")
                self._drain_node(drain_opts)
                self._cleanup_driver()
        self._transition(State.PODS_DRAINED)

        if self.host_driver.is_driver_loaded():
            try:
                self.host_driver.cleanup_driver()
            except DriverManagerError as e:
                if not self.auto_drain_enabled():
                    logger.error("Failed to uninstall nvidia driver components")
                    self._fail(
                        DriverCleanupError(
                            f"failed to uninstall nvidia driver components: {e}"
                        ),
                        e,
                    )
                logger.info(
                    "Unable to cleanup driver modules, attempting again with node drain..."
                )
                self._drain_node(drain_opts)
                self._cleanup_driver()
            logger.info("Successfully uninstalled nvidia driver components")
        self._transition(State.MODULES_UNLOADED)

        try:
            self.host_driver.unbind_vfio_pci()
        except DeviceRebindError as e:
            logger.error("Unable to unbind vfio-pci driver from all devices")
            self._fail(e)
        self._transition(State.DEVICES_REBOUND)

        if self.gpu_direct_rdma_enabled():
            logger.info("GPUDirectRDMA is enabled, validating MOFED driver installation")
            try:
                self.host_driver.wait_for_mofed_driver(
                    self.config.use_host_mofed,
                    interval=self.poll_interval,
                    timeout=self.rdma_timeout,
                )
            except RDMAWaitTimeoutError as e:
                self._fail(e)
        self._transition(State.RDMA_WAITED)

        self.reschedule()
        self._transition(State.RESCHEDULED)

        if self.host_driver.is_nouveau_loaded():
            try:
                self.host_driver.unload_nouveau()
            except NouveauUnloadError as e:
                self._fail(e)
            logger.info("Successfully unloaded nouveau driver")

        self._transition(State.DONE)
        logger.info("Driver uninstallation completed successfully")

    def disable_containerized_driver(self) -> None:
        logger.info(
            f"Labeling node {self.node_name} with {DRIVER_DEPLOY_LABEL}={DRIVER_PRE_INSTALLED}"
        )
        try:
            self.kube_client.update_node_labels(
                self.node_name, {DRIVER_DEPLOY_LABEL: DRIVER_PRE_INSTALLED}
            )
        except ApiException as e:
            raise DriverManagerError(
                f"failed to disable containerized driver: {e}"
            ) from e

    def should_skip_uninstall(self) -> Tuple[bool, str]:
        """
        Decides whether the desired driver version is already loaded.

        If the driver is loaded but its version cannot be determined, the
        driver is reinstalled.
        """
        if self.config.force_reinstall:
            logger.info("Force reinstall is enabled, proceeding with driver uninstall")
            return False, ""

        if not self.host_driver.is_driver_loaded() or not self.config.driver_version:
            return False, ""

        try:
            version = self.host_driver.detect_driver_version()
        except DriverVersionError as e:
            logger.warning(f"Unable to determine installed driver version: {e}")
            logger.info(
                "Cannot verify driver version, proceeding with reinstall to ensure correct version is installed"
            )
            return False, ""

        if version != self.config.driver_version:
            logger.info(
                f"Installed driver version {version} does not match desired {self.config.driver_version}, proceeding with uninstall"
            )
            return False, ""

        logger.info(f"Installed driver version {version} matches desired version, skipping uninstall")
        return True, "desired version already present"

    def fetch_current_labels(self) -> None:
        logger.info("Fetching current component labels")
        try:
            labels = self.kube_client.get_node_labels(self.node_name)
        except ApiException as e:
            raise LabelFetchError(self.node_name, "labels", e) from e

        for component in COMPONENTS:
            value = labels.get(component.label, "")
            logger.info(f'Current value of "{component.label}"={value}')
            self.components.set(component.label, value)

        custom_label = self.config.node_label_for_gpu_pod_eviction
        if custom_label:
            value = labels.get(custom_label, "")
            logger.info(f'Current value of "{custom_label}"={value}')
            self.components.custom_label_value = value

    def fetch_auto_upgrade_annotation(self) -> None:
        try:
            value = self.kube_client.get_node_annotation_value(
                self.node_name, DRIVER_UPGRADE_ANNOTATION
            )
        except ApiException as e:
            raise LabelFetchError(self.node_name, DRIVER_UPGRADE_ANNOTATION, e) from e
        self.components.auto_upgrade_policy = value
        logger.info(f"Current value of AUTO_UPGRADE_POLICY_ENABLED={value}")

    def evict_gpu_operator_components(self) -> None:
        logger.info(
            "Shutting down all GPU clients on the current node by disabling their component-specific nodeSelector labels"
        )
        custom_label = self.config.node_label_for_gpu_pod_eviction
        if custom_label and self.components.custom_label_value:
            logger.info(
                f'Shutting down GPU clients using node selector label "{custom_label}"={self.components.custom_label_value}'
            )
        self.kube_client.update_node_labels(
            self.node_name, self.components.paused_labels(custom_label)
        )
        self.wait_for_pods_to_terminate()

    def wait_for_pods_to_terminate(self) -> None:
        for component, value in self.components.items():
            if not component.should_wait(value):
                continue
            logger.info(f"Waiting for {component.name} to shutdown")
            try:
                self.kube_client.wait_for_pod_termination(
                    {"app": component.app},
                    self.config.operator_namespace,
                    self.node_name,
                    self.grace_period,
                    interval=self.poll_interval,
                )
            except (DriverManagerError, ApiException) as e:
                logger.error(f"Failed to wait for {component.name} to shutdown: {e}")
                raise

    def auto_upgrade_policy_enabled(self) -> bool:
        if self.components.auto_upgrade_policy_enabled:
            return True
        logger.info("Auto upgrade policy of the GPU driver on the node is disabled")
        return False

    def auto_drain_enabled(self) -> bool:
        if self.auto_upgrade_policy_enabled():
            logger.info("Auto drain of the node is disabled by the upgrade policy")
            return False
        return self.config.enable_auto_drain

    def gpu_pod_eviction_enabled(self) -> bool:
        if self.auto_upgrade_policy_enabled():
            logger.info(
                f"Auto eviction of GPU pods on node {self.node_name} is disabled by the upgrade policy"
            )
            return False
        return self.config.enable_gpu_pod_eviction

    def gpu_direct_rdma_enabled(self) -> bool:
        if not self.config.gpu_direct_rdma_enabled:
            return False
        return self.host_driver.mellanox_devices_present()

    def evict_gpu_pods(self, drain_opts: DrainOptions) -> EvictionResult:
        logger.info(f"Draining node {self.node_name} of any GPU pods...")
        try:
            return self.kube_client.delete_or_evict_gpu_pods(self.node_name, drain_opts)
        except ApiException as e:
            logger.error(f"Failed to evict GPU pods: {e}")
            return EvictionResult(to_delete=-1, deleted=0, errors=[str(e)])

    def _cordon(self, error_cls: Type[DriverManagerError] = GPUPodEvictionError) -> None:
        try:
            changed = self.kube_client.cordon_node(self.node_name)
        except ApiException as e:
            self._fail(error_cls(f"failed to cordon node: {e}"), e)
        # A node cordoned before this run stays cordoned
        self._cordoned = self._cordoned or bool(changed)

    def _drain_node(self, drain_opts: DrainOptions) -> None:
        self._cordon(DrainError)
        try:
            self.kube_client.drain_node(self.node_name, drain_opts)
        except (DrainError, ApiException) as e:
            self._fail(DrainError(f"failed to drain node: {e}"), e)

    def _cleanup_driver(self) -> None:
        try:
            self.host_driver.cleanup_driver()
        except DriverManagerError as e:
            self._fail(DriverCleanupError(f"failed to cleanup NVIDIA driver: {e}"), e)

    def reschedule(self) -> None:
        """Uncordons the node if this run cordoned it and resumes the operands."""
        if self._cordoned:
            try:
                self.kube_client.uncordon_node(self.node_name)
            except Exception as e:
                logger.warning(f"Failed to uncordon node: {e}")

        logger.info(
            "Rescheduling all GPU clients on the current node by enabling their component-specific nodeSelector labels"
        )
        try:
            self.kube_client.update_node_labels(
                self.node_name,
                self.components.resumed_labels(self.config.node_label_for_gpu_pod_eviction),
            )
        except Exception as e:
            logger.warning(f"Failed to reschedule GPU operator components: {e}")

    def cleanup_on_failure(self) -> None:
        logger.info("Performing cleanup on failure")
        self.reschedule()
