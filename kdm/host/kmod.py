from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional

from kdm.exceptions import DriverInUseError, ModuleUnloadError
from kdm.logger import logger
from kdm.utils import run_command

BASE_MODULE = "nvidia"
VGPU_VFIO_MODULE = "nvidia_vgpu_vfio"

# Unload order, dependents first and the base module last
MODULES = [
    "nvidia_modeset",
    "nvidia_uvm",
    "nvidia_peermem",
    "nvidia_fs",
    VGPU_VFIO_MODULE,
    "gdrdrv",
    BASE_MODULE,
]


class ModuleInfo(NamedTuple):
    name: str
    size: int
    refcount: int
    used_by: str


@dataclass
class UnloadPlan:
    """
    Reference counts of the loaded driver modules, read right before unloading.

    Args:
        refcounts (Dict[str, int]): Reference count per loaded module.
        modules_to_remove (List[str]): Loaded modules, in removal order.
        dependent_count (int): Number of loaded modules other than the base one.
    """

    refcounts: Dict[str, int] = field(default_factory=dict)
    modules_to_remove: List[str] = field(default_factory=list)
    dependent_count: int = 0

    @property
    def base_refcount(self) -> int:
        return self.refcounts.get(BASE_MODULE, 0)

    def vgpu_exception(self) -> bool:
        # The vGPU VFIO module holds two references on the base module while
        # the vGPU manager is only partially installed.
        return (
            self.base_refcount == 2
            and self.base_refcount > self.dependent_count
            and VGPU_VFIO_MODULE in self.modules_to_remove
        )

    def in_use(self) -> bool:
        if self.vgpu_exception():
            return False
        if self.base_refcount > self.dependent_count:
            return True
        return any(
            count > 0 for name, count in self.refcounts.items() if name != BASE_MODULE
        )

    def busy_modules(self) -> List[str]:
        busy = [
            name
            for name in self.modules_to_remove
            if name != BASE_MODULE and self.refcounts[name] > 0
        ]
        if self.base_refcount > self.dependent_count:
            busy.append(BASE_MODULE)
        return busy


class KernelModules:
    """
    Reads and unloads the NVIDIA kernel modules.

    Args:
        root (str): Root of the filesystem holding ``/sys`` and ``/proc``.
    """

    def __init__(self, root: str = "/") -> None:
        self.root = root

    def _path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def refcount(self, module: str) -> Optional[int]:
        """Returns the module's reference count, or None if it is not loaded."""
        path = self._path("sys", "module", module, "refcnt")
        try:
            with open(path) as f:
                return int(f.read().strip() or 0)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise ModuleUnloadError(f"failed to read reference count of {module}: {e}") from e

    def is_loaded(self, module: str) -> bool:
        return os.path.exists(self._path("sys", "module", module, "refcnt"))

    def list(self, search_key: str = "") -> List[ModuleInfo]:
        """
        Logs the loaded modules from ``/proc/modules``.

        Args:
            search_key (str): Only lines containing this string are listed.

        Returns:
            List[ModuleInfo]: The modules that were listed.
        """
        modules: List[ModuleInfo] = []
        with open(self._path("proc", "modules")) as f:
            logger.info(f"{'Module':<20} {'Size':<10} {'Ref Count':<15} Used by")
            for line in f:
                if search_key and search_key not in line:
                    continue
                fields = line.split()
                if len(fields) < 4:
                    continue
                try:
                    info = ModuleInfo(fields[0], int(fields[1]), int(fields[2]), fields[3])
                except ValueError as e:
                    logger.warning(f"Error parsing module line {line.strip()}: {e}")
                    continue
                logger.info(
                    f"{info.name:<20} {info.size:<10} {info.refcount:<15} {info.used_by}"
                )
                modules.append(info)
        return modules

    def remove(self, modules: List[str]) -> None:
        """
        Removes the given modules with a single ``rmmod`` call.

        Raises:
            ModuleUnloadError: With rmmod's stderr if the removal fails.
        """
        try:
            result = run_command(["rmmod", *modules], check=False)
        except (OSError, subprocess.SubprocessError) as e:
            raise ModuleUnloadError(f"failed to run rmmod: {e}") from e
        if result.returncode != 0:
            raise ModuleUnloadError(result.stderr.strip())

    def plan(self) -> UnloadPlan:
        plan = UnloadPlan()
        for module in MODULES:
            count = self.refcount(module)
            if count is None:
                continue
            plan.refcounts[module] = count
            plan.modules_to_remove.append(module)
            if module != BASE_MODULE:
                plan.dependent_count += 1
        return plan

    def unload_driver(self) -> None:
        """
        Unloads the NVIDIA driver modules if nothing else holds them.

        Raises:
            DriverInUseError: If a module is still referenced. Nothing is removed.
            ModuleUnloadError: If rmmod fails.
        """
        logger.info("Unloading NVIDIA driver kernel modules")
        plan = self.plan()
        if not plan.modules_to_remove:
            logger.info("No NVIDIA driver kernel modules loaded")
            return

        if plan.vgpu_exception():
            logger.info(
                f"{VGPU_VFIO_MODULE} holds {plan.base_refcount} references on {BASE_MODULE}, proceeding"
            )

        if plan.in_use():
            logger.info("Could not unload NVIDIA driver kernel modules, driver is in use")
            try:
                self.list(BASE_MODULE)
            except OSError as e:
                logger.warning(f"Failed to list kernel modules: {e}")
            raise DriverInUseError(plan.busy_modules())

        self.remove(plan.modules_to_remove)
