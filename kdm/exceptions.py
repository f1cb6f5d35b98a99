"""Exceptions raised while managing the GPU driver on a node.

Every error that can abort a driver manager run derives from
``DriverManagerError`` so the CLI can report it and exit non-zero without
catching unrelated failures.
"""

from __future__ import annotations

from typing import List, Optional

from kdm.utils import format_seconds


class DriverManagerError(Exception):
    """Base exception for all driver manager errors."""

    pass


class HostDriverPreinstalledError(DriverManagerError):
    """Raised when the driver is installed on the host, outside the cluster.

    The caller is expected to stop retrying: the node has been labeled so the
    containerized driver is no longer scheduled there.
    """

    def __init__(self, node_name: str):
        self.node_name = node_name
        super().__init__(f"driver is pre-installed on host of node {node_name}")


class DriverVersionError(DriverManagerError):
    """Raised when the installed driver version cannot be determined."""

    pass


class LabelFetchError(DriverManagerError):
    """Raised when a node label or annotation cannot be read."""

    def __init__(self, node_name: str, key: str, cause: Exception):
        self.node_name = node_name
        self.key = key
        super().__init__(f"failed to get {key} of node {node_name}: {cause}")


class ComponentEvictionError(DriverManagerError):
    pass


class PodTerminationTimeoutError(DriverManagerError):
    """Raised when pods matching a selector are still on the node after the timeout."""

    def __init__(self, selector: str, namespace: str, node_name: str, timeout: float):
        self.selector = selector
        self.namespace = namespace
        self.node_name = node_name
        self.timeout = timeout
        super().__init__(
            f"timed out after {format_seconds(timeout)} waiting for pods {selector} in namespace "
            f"{namespace} to terminate on node {node_name}"
        )


class GPUPodEvictionError(DriverManagerError):
    pass


class DrainError(DriverManagerError):
    pass


class ModuleUnloadError(DriverManagerError):
    pass


class DriverInUseError(ModuleUnloadError):
    """Raised when kernel modules are still referenced and cannot be unloaded."""

    def __init__(self, busy_modules: Optional[List[str]] = None):
        self.busy_modules = busy_modules or []
        message = "could not unload NVIDIA driver kernel modules, driver is in use"
        if self.busy_modules:
            message = f"{message} ({', '.join(self.busy_modules)})"
        super().__init__(message)


class DriverCleanupError(DriverManagerError):
    pass


class DeviceRebindError(DriverManagerError):
    pass


class RDMAWaitTimeoutError(DriverManagerError):
    pass


class NouveauUnloadError(DriverManagerError):
    pass


class CacheSyncTimeoutError(DriverManagerError):
    """Raised when the ResourceClaim cache does not finish its initial listing in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"ResourceClaim cache did not sync within {format_seconds(timeout)}")
