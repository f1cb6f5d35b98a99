from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from kubernetes import client

from kdm.constants import NVIDIA_MIG_RESOURCE_PREFIX, NVIDIA_RESOURCE_NAME_PREFIX
from kdm.k8s.claim_cache import ResourceClaimCache
from kdm.k8s.drain import PodDeleteStatus


def gpu_in_resource_list(resources: Optional[Dict[str, Any]]) -> bool:
    for resource_name in resources or {}:
        if resource_name.startswith(
            NVIDIA_RESOURCE_NAME_PREFIX
        ) or resource_name.startswith(NVIDIA_MIG_RESOURCE_PREFIX):
            return True
    return False


def pod_uses_gpu(
    pod: client.V1Pod, claim_cache: Optional[ResourceClaimCache] = None
) -> bool:
    """
    Checks if a pod uses NVIDIA GPUs.

    Pods can get GPUs in two ways, and both are honored: extended resources
    from the device plugin (``nvidia.com/gpu``, ``nvidia.com/mig-*``) in the
    containers' limits or requests, or ResourceClaims allocated by the GPU DRA
    driver. The latter is answered from the ResourceClaim cache, so the check
    never calls the API server.

    Args:
        pod (client.V1Pod): The pod to check.
        claim_cache (Optional[ResourceClaimCache]): The cache of pods holding GPU
            claims. If None, only extended resources are checked.

    Returns:
        bool: True if the pod uses an NVIDIA GPU.
    """
    spec = pod.spec
    if spec is None:
        return False

    for container in spec.containers or []:
        resources = container.resources
        if resources is None:
            continue
        if gpu_in_resource_list(resources.limits) or gpu_in_resource_list(
            resources.requests
        ):
            return True

    if spec.resource_claims and claim_cache is not None:
        uid = pod.metadata.uid if pod.metadata else None
        if uid and claim_cache.pod_uses_nvidia_gpu(uid):
            return True

    return False


def gpu_pod_filter(
    claim_cache: Optional[ResourceClaimCache] = None,
) -> Callable[[client.V1Pod], PodDeleteStatus]:
    """Returns a drain filter that only lets GPU pods through."""

    def _filter(pod: client.V1Pod) -> PodDeleteStatus:
        if pod_uses_gpu(pod, claim_cache):
            return PodDeleteStatus.okay()
        return PodDeleteStatus.skip()

    return _filter
