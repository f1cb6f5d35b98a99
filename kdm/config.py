from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kdm.constants import OPERATOR_NAMESPACE
from kdm.utils import parse_duration


class KdmBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


def validate_duration(v: Union[str, int, float]) -> float:
    """
    Validates a duration given in seconds or as a duration string.

    Args:
        v (Union[str, int, float]): The value of the duration field.

    Returns:
        float: The duration in seconds.

    Raises:
        ValueError: If the value cannot be parsed or is negative.
    """
    return parse_duration(v)


class DrainOptions(KdmBaseModel):
    """
    Represents the parameters handed to the drain helper.
    """

    force: bool = Field(
        False,
        description="Continue even if there are pods not managed by a controller.",
    )
    delete_emptydir_data: bool = Field(
        False, description="Continue even if there are pods using emptyDir."
    )
    timeout: float = Field(
        0,
        description="Seconds to wait before giving up, zero means no limit.",
    )
    pod_selector: str = Field(
        "", description="Only drain pods matching this label selector."
    )
    grace_period_seconds: int = Field(
        -1,
        description="Termination grace period for each pod. Negative uses the pod's own value.",
    )

    @field_validator("timeout", mode="before")
    def validate_timeout(cls, v: Union[str, int, float]) -> float:
        return validate_duration(v)


class DriverManagerConfig(KdmBaseModel):
    """
    Represents the configuration of one driver manager run.

    The configuration is created once when the process starts and is never
    mutated afterwards.
    """

    node_name: str = Field(..., description="The name of the node to manage.")
    drain_use_force: bool = Field(False, description="Use force when draining nodes.")
    drain_pod_selector_label: str = Field(
        "", description="Pod selector label for draining."
    )
    drain_timeout: float = Field(
        0, description="Timeout for drain operations in seconds, zero means no limit."
    )
    drain_delete_emptydir_data: bool = Field(
        False, description="Delete emptyDir data during drain."
    )
    enable_auto_drain: bool = Field(True, description="Enable automatic node draining.")
    enable_gpu_pod_eviction: bool = Field(True, description="Enable GPU pod eviction.")
    operator_namespace: str = Field(
        OPERATOR_NAMESPACE,
        description="Namespace where the GPU operator is installed in.",
    )
    node_label_for_gpu_pod_eviction: str = Field(
        "",
        description="Node selector label used by custom operands that must be evicted too.",
    )
    gpu_direct_rdma_enabled: bool = Field(False, description="Enable GPU Direct RDMA.")
    use_host_mofed: bool = Field(False, description="Use host MOFED driver.")
    kubeconfig: str = Field("", description="Path to kubeconfig file.")
    driver_version: str = Field("", description="Desired NVIDIA driver version.")
    force_reinstall: bool = Field(
        False, description="Force driver reinstall regardless of current state."
    )

    @field_validator("node_name", mode="before")
    def validate_node_name(cls, v: str) -> str:
        if not v or not str(v).strip():
            raise ValueError("Node name is required")
        return str(v).strip()

    @field_validator("drain_timeout", mode="before")
    def validate_drain_timeout(cls, v: Union[str, int, float]) -> float:
        return validate_duration(v)

    def drain_options(self) -> DrainOptions:
        return DrainOptions(
            force=self.drain_use_force,
            delete_emptydir_data=self.drain_delete_emptydir_data,
            timeout=self.drain_timeout,
            pod_selector=self.drain_pod_selector_label,
        )
