"""
Node label encoding used to pause and resume GPU operator operands.

Every operand of the GPU operator is scheduled through a
``nvidia.com/gpu.deploy.<component>`` node selector label. While the driver is
being replaced, each label is rewritten to a "paused" value so the operand is
removed from the node, and afterwards it is rewritten back. The paused value
keeps the original value as a prefix, so a fresh process can resume from the
node's labels alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional, Tuple

from kdm.constants import (
    CONTAINER_TOOLKIT_DEPLOY_LABEL,
    DCGM_DEPLOY_LABEL,
    DCGM_EXPORTER_DEPLOY_LABEL,
    DEVICE_PLUGIN_DEPLOY_LABEL,
    GFD_DEPLOY_LABEL,
    MIG_MANAGER_DEPLOY_LABEL,
    NVSM_DEPLOY_LABEL,
    OPERATOR_VALIDATOR_DEPLOY_LABEL,
    PAUSED_STR,
    SANDBOX_DEVICE_PLUGIN_DEPLOY_LABEL,
    SANDBOX_VALIDATOR_DEPLOY_LABEL,
    VGPU_DEVICE_MANAGER_DEPLOY_LABEL,
)

_PAUSED_RE = re.compile(re.escape(PAUSED_STR) + "_?")


def pause(current_value: str) -> str:
    """
    Converts a component label value to its paused equivalent.

    An empty value or "false" means the component was disabled by the user and
    is returned unchanged. Pausing an already paused value is a no-op.

    Args:
        current_value (str): The current label value.

    Returns:
        str: The paused label value.

    Example:
        >>> pause("true")
        'paused-for-driver-upgrade'
        >>> pause("custom")
        'custom_paused-for-driver-upgrade'
    """
    if current_value == "" or current_value == "false":
        return current_value
    if current_value == "true":
        return PAUSED_STR
    if PAUSED_STR in current_value:
        return current_value
    return f"{current_value}_{PAUSED_STR}"


def resume(current_value: str) -> str:
    """
    Converts a paused component label value back to its original value.

    Args:
        current_value (str): The current label value.

    Returns:
        str: The resumed label value.

    Example:
        >>> resume("paused-for-driver-upgrade")
        'true'
        >>> resume("custom_paused-for-driver-upgrade")
        'custom'
    """
    if current_value == "false":
        return current_value
    if current_value == PAUSED_STR:
        return "true"
    return _PAUSED_RE.sub("", current_value).strip("_")


class WaitPolicy(str, Enum):
    ALWAYS = "always"
    IF_DEPLOYED = "if-deployed"
    NEVER = "never"


@dataclass(frozen=True)
class Component:
    """A GPU operator operand scheduled through a deploy label."""

    name: str
    label: str
    app: str
    wait: WaitPolicy = WaitPolicy.ALWAYS

    def should_wait(self, value: str) -> bool:
        if self.wait == WaitPolicy.ALWAYS:
            return True
        if self.wait == WaitPolicy.IF_DEPLOYED:
            return value != ""
        return False


COMPONENTS: Tuple[Component, ...] = (
    Component(
        "operator-validator", OPERATOR_VALIDATOR_DEPLOY_LABEL, "nvidia-operator-validator"
    ),
    Component(
        "container-toolkit",
        CONTAINER_TOOLKIT_DEPLOY_LABEL,
        "nvidia-container-toolkit-daemonset",
    ),
    Component(
        "device-plugin", DEVICE_PLUGIN_DEPLOY_LABEL, "nvidia-device-plugin-daemonset"
    ),
    Component("gpu-feature-discovery", GFD_DEPLOY_LABEL, "gpu-feature-discovery"),
    Component("dcgm-exporter", DCGM_EXPORTER_DEPLOY_LABEL, "nvidia-dcgm-exporter"),
    Component("dcgm", DCGM_DEPLOY_LABEL, "nvidia-dcgm"),
    Component(
        "mig-manager",
        MIG_MANAGER_DEPLOY_LABEL,
        "nvidia-mig-manager",
        WaitPolicy.IF_DEPLOYED,
    ),
    Component("nvsm", NVSM_DEPLOY_LABEL, "nvidia-nvsm", WaitPolicy.NEVER),
    Component(
        "sandbox-validator",
        SANDBOX_VALIDATOR_DEPLOY_LABEL,
        "nvidia-sandbox-validator",
        WaitPolicy.IF_DEPLOYED,
    ),
    Component(
        "sandbox-device-plugin",
        SANDBOX_DEVICE_PLUGIN_DEPLOY_LABEL,
        "nvidia-sandbox-device-plugin-daemonset",
        WaitPolicy.IF_DEPLOYED,
    ),
    Component(
        "vgpu-device-manager",
        VGPU_DEVICE_MANAGER_DEPLOY_LABEL,
        "nvidia-vgpu-device-manager",
        WaitPolicy.IF_DEPLOYED,
    ),
)

COMPONENTS_BY_LABEL: Dict[str, Component] = {c.label: c for c in COMPONENTS}


@dataclass
class ComponentState:
    """
    Observed label values of the GPU operator operands on one node.

    Populated at the start of an uninstall run and consumed when labels are
    paused and resumed. Values are keyed by label; a missing label reads as "".
    """

    values: Dict[str, str] = field(default_factory=dict)
    custom_label_value: str = ""
    auto_upgrade_policy: str = ""

    def set(self, label: str, value: str) -> None:
        if label not in COMPONENTS_BY_LABEL:
            raise KeyError(f"Unknown component label: {label}")
        self.values[label] = value

    def get(self, label: str) -> str:
        return self.values.get(label, "")

    def items(self) -> Iterator[Tuple[Component, str]]:
        for component in COMPONENTS:
            yield component, self.get(component.label)

    @property
    def auto_upgrade_policy_enabled(self) -> bool:
        return self.auto_upgrade_policy == "true"

    def _encode(
        self, encode: Callable[[str], str], custom_label: Optional[str]
    ) -> Dict[str, str]:
        labels: Dict[str, str] = {}
        for component, value in self.items():
            # An empty value stays empty, there is nothing to write
            if value == "":
                continue
            labels[component.label] = encode(value)
        if custom_label and self.custom_label_value != "":
            labels[custom_label] = encode(self.custom_label_value)
        return labels

    def paused_labels(self, custom_label: Optional[str] = None) -> Dict[str, str]:
        return self._encode(pause, custom_label)

    def resumed_labels(self, custom_label: Optional[str] = None) -> Dict[str, str]:
        return self._encode(resume, custom_label)
