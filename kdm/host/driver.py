"""
Host side of the driver lifecycle: probing the installed driver and tearing
down what the containerized driver left on the node.
"""

from __future__ import annotations

import os
import re
import subprocess
import time
from typing import List, Optional

from kdm.constants import (
    DRIVER_PID_FILE,
    DRIVER_ROOT,
    HOST_ROOT,
    MELLANOX_VENDOR_ID,
    MOFED_READY_FILE,
    POLL_INTERVAL,
)
from kdm.exceptions import (
    DeviceRebindError,
    DriverCleanupError,
    DriverVersionError,
    ModuleUnloadError,
    NouveauUnloadError,
    RDMAWaitTimeoutError,
)
from kdm.host.kmod import BASE_MODULE, KernelModules
from kdm.logger import logger
from kdm.utils import format_seconds, run_command

NOUVEAU_MODULE = "nouveau"
VERSION_DETECT_TIMEOUT = 10

_MOUNTINFO_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_path(path: str) -> str:
    return _MOUNTINFO_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), path)


class HostDriver:
    """
    Inspects and cleans up the NVIDIA driver on the host.

    Args:
        root (str): Root of the filesystem holding ``/sys`` and ``/proc``.
        kmods (Optional[KernelModules]): Kernel module helper, built from ``root`` if None.
        host_root (str): Where the host filesystem is mounted.
        driver_root (str): Root filesystem of the containerized driver.
        pid_file (str): PID file written by the driver container.
        mofed_ready_file (str): File created once the MOFED driver container is ready.
    """

    def __init__(
        self,
        root: str = "/",
        kmods: Optional[KernelModules] = None,
        host_root: str = HOST_ROOT,
        driver_root: str = DRIVER_ROOT,
        pid_file: str = DRIVER_PID_FILE,
        mofed_ready_file: str = MOFED_READY_FILE,
    ) -> None:
        self.root = root
        self.kmods = kmods or KernelModules(root)
        self.host_root = host_root
        self.driver_root = driver_root
        self.pid_file = pid_file
        self.mofed_ready_file = mofed_ready_file

    def _path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def is_host_driver(self) -> bool:
        """Checks if a driver is installed directly on the host."""
        try:
            result = run_command(
                [
                    "chroot",
                    self.host_root,
                    "nvidia-smi",
                    "--query-gpu=driver_version",
                    "--format=csv,noheader",
                ]
            )
        except (OSError, subprocess.SubprocessError):
            return False

        version = result.stdout.strip()
        if version:
            logger.info(f"Host driver detected: {version}")
            return True
        return False

    def is_driver_loaded(self) -> bool:
        return self.kmods.is_loaded(BASE_MODULE)

    def detect_driver_version(self) -> str:
        """
        Detects the version of the loaded NVIDIA driver.

        ``modinfo`` is run inside the driver root first. If that fails, the
        version is read from sysfs.

        Returns:
            str: The driver version.

        Raises:
            DriverVersionError: If no method yields a version.
        """
        chroot_error: Optional[Exception] = None
        try:
            result = run_command(
                ["chroot", self.driver_root, "modinfo", "-F", "version", BASE_MODULE],
                timeout=VERSION_DETECT_TIMEOUT,
                env={"LC_ALL": "C"},
            )
            version = result.stdout.strip()
            if version:
                logger.info(f"Driver version detected via chroot: {version}")
                return version
        except (OSError, subprocess.SubprocessError) as e:
            chroot_error = e

        version_file = self._path("sys", "module", BASE_MODULE, "version")
        try:
            with open(version_file) as f:
                version = f.read().strip()
            if version:
                logger.info(f"Driver version detected from {version_file}: {version}")
                return version
        except OSError:
            pass

        raise DriverVersionError(
            f"all version detection methods failed: chroot: {chroot_error}"
        )

    def _mounts_under(self, path: str) -> List[str]:
        mounts: List[str] = []
        with open(self._path("proc", "self", "mountinfo")) as f:
            for line in f:
                fields = line.split()
                if len(fields) < 5:
                    continue
                mount_point = _unescape_mount_path(fields[4])
                if mount_point == path or mount_point.startswith(path.rstrip("/") + "/"):
                    mounts.append(mount_point)
        # Deepest first
        return sorted(set(mounts), key=lambda m: m.count("/"), reverse=True)

    def unmount_rootfs(self) -> None:
        """
        Recursively unmounts the driver root filesystem.

        Raises:
            DriverCleanupError: If a mount cannot be unmounted.
        """
        logger.info("Unmounting NVIDIA driver rootfs")
        if not os.path.exists(self.driver_root):
            logger.info("Driver root directory does not exist, nothing to unmount")
            return

        try:
            mounts = self._mounts_under(self.driver_root)
        except OSError as e:
            raise DriverCleanupError(f"failed to read mount table: {e}") from e

        for mount_point in mounts:
            try:
                run_command(["umount", mount_point])
            except (OSError, subprocess.SubprocessError) as e:
                raise DriverCleanupError(
                    f"failed to recursively unmount {self.driver_root}: {e}"
                ) from e

        logger.info(f"Successfully unmounted {self.driver_root} and all its submounts")

    def cleanup_driver(self) -> None:
        """
        Unloads the driver modules, unmounts the driver root and removes the PID file.

        Raises:
            ModuleUnloadError: If the modules are in use or cannot be removed.
            DriverCleanupError: If the driver root cannot be unmounted.
        """
        logger.info("Cleaning up NVIDIA driver")
        self.kmods.unload_driver()
        self.unmount_rootfs()

        if os.path.exists(self.pid_file):
            try:
                os.remove(self.pid_file)
            except OSError as e:
                logger.warning(f"Failed to remove PID file {self.pid_file}: {e}")

    def is_nouveau_loaded(self) -> bool:
        return self.kmods.is_loaded(NOUVEAU_MODULE)

    def unload_nouveau(self) -> None:
        logger.info("Unloading nouveau driver")
        try:
            self.kmods.remove([NOUVEAU_MODULE])
        except ModuleUnloadError as e:
            raise NouveauUnloadError(f"failed to unload nouveau: {e}") from e

    def unbind_vfio_pci(self) -> None:
        """
        Unbinds the vfio-pci driver from all devices.

        When vfio-pci is not in use, no device is bound to a driver at this
        point and the call is a no-op.

        Raises:
            DeviceRebindError: If vfio-manage fails.
        """
        logger.info("Unbinding vfio-pci driver from all devices")
        try:
            run_command(["vfio-manage", "unbind", "--all"], timeout=None)
        except (OSError, subprocess.SubprocessError) as e:
            raise DeviceRebindError(f"failed to unbind vfio-pci: {e}") from e

    def mellanox_devices_present(self) -> bool:
        devices_dir = self._path("sys", "bus", "pci", "devices")
        try:
            entries = sorted(os.listdir(devices_dir))
        except OSError:
            return False

        for entry in entries:
            try:
                with open(os.path.join(devices_dir, entry, "vendor")) as f:
                    vendor = f.read().strip()
            except OSError:
                continue
            if vendor == MELLANOX_VENDOR_ID:
                logger.info(f"Mellanox device found at {entry}")
                return True

        logger.info("No Mellanox devices were found")
        return False

    def is_mofed_ready(self, use_host_mofed: bool) -> bool:
        if use_host_mofed:
            try:
                with open(self._path("proc", "modules")) as f:
                    return "mlx5_core" in f.read()
            except OSError as e:
                logger.warning(f"Failed to read /proc/modules: {e}")
                return False
        return os.path.exists(self.mofed_ready_file)

    def wait_for_mofed_driver(
        self,
        use_host_mofed: bool,
        interval: float = POLL_INTERVAL,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Blocks until the MOFED driver is ready.

        Args:
            use_host_mofed (bool): MOFED is installed on the host, so readiness
                means ``mlx5_core`` is loaded. Otherwise the MOFED container's
                ready file is checked.
            interval (float): Seconds between checks.
            timeout (Optional[float]): Seconds to wait, None waits forever.

        Raises:
            RDMAWaitTimeoutError: If the timeout expires first.
        """
        logger.info("Waiting for MOFED to be installed")
        start = time.monotonic()
        while not self.is_mofed_ready(use_host_mofed):
            if timeout is not None and time.monotonic() - start >= timeout:
                raise RDMAWaitTimeoutError(
                    f"MOFED driver was not ready within {format_seconds(timeout)}"
                )
            logger.info("Waiting for MOFED to be installed...")
            time.sleep(interval)
