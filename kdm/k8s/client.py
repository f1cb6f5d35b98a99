from __future__ import annotations

import time
from typing import Dict, Optional

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from kdm.config import DrainOptions
from kdm.constants import POLL_INTERVAL
from kdm.exceptions import DrainError, PodTerminationTimeoutError
from kdm.k8s.claim_cache import ResourceClaimCache
from kdm.k8s.drain import DrainHelper, EvictionResult, pod_ref
from kdm.k8s.occupancy import gpu_pod_filter, pod_uses_gpu
from kdm.logger import logger


def load_kube_config(kubeconfig: str = "") -> None:
    """
    Loads the Kubernetes client configuration.

    An explicit kubeconfig path wins. Otherwise the in-cluster service account
    is used, falling back to the default kubeconfig location when the process
    does not run inside a pod.
    """
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
        return
    try:
        k8s_config.load_incluster_config()
    except ConfigException:
        k8s_config.load_kube_config()


def selector_from_map(selector_map: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector_map.items()))


class KubeClient:
    """
    Cluster operations needed to take a node's GPU driver out of service.

    Args:
        core_v1 (Optional[client.CoreV1Api]): The API client, created on first use if None.
        claim_cache (Optional[ResourceClaimCache]): Cache answering whether a pod
            holds an NVIDIA GPU ResourceClaim.
    """

    def __init__(
        self,
        core_v1: Optional[client.CoreV1Api] = None,
        claim_cache: Optional[ResourceClaimCache] = None,
    ) -> None:
        self._core_v1 = core_v1
        self.claim_cache = claim_cache

    @property
    def core_v1(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api()
        return self._core_v1

    def get_node_labels(self, node_name: str) -> Dict[str, str]:
        node = self.core_v1.read_node(node_name)
        return dict(node.metadata.labels or {})

    def get_node_annotation_value(self, node_name: str, annotation: str) -> str:
        node = self.core_v1.read_node(node_name)
        return (node.metadata.annotations or {}).get(annotation, "")

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.01, max=1),
        retry=retry_if_exception_type(ApiException),
        reraise=True,
    )
    def update_node_labels(self, node_name: str, labels: Dict[str, str]) -> None:
        """
        Sets labels on a node with a strategic merge patch, leaving other labels alone.

        Args:
            node_name (str): The name of the node.
            labels (Dict[str, str]): The label keys and values to set.
        """
        if not labels:
            return
        try:
            self.core_v1.patch_node(node_name, {"metadata": {"labels": labels}})
        except ApiException as e:
            logger.warning(f"Failed to update labels on node {node_name}, retrying: {e}")
            raise

    def _drain_helper(self, opts: DrainOptions, **kwargs) -> DrainHelper:
        return DrainHelper.from_options(self.core_v1, opts, **kwargs)

    def cordon_node(self, node_name: str) -> bool:
        """Cordons the node. Returns False if it was already cordoned."""
        logger.info(f"Cordoning node {node_name}")
        return DrainHelper(self.core_v1).run_cordon_or_uncordon(node_name, True)

    def uncordon_node(self, node_name: str) -> bool:
        logger.info(f"Uncordoning node {node_name}")
        return DrainHelper(self.core_v1).run_cordon_or_uncordon(node_name, False)

    def wait_for_pod_termination(
        self,
        selector_map: Dict[str, str],
        namespace: str,
        node_name: str,
        timeout: float,
        interval: float = POLL_INTERVAL,
    ) -> None:
        """
        Waits until no pod matching the selector is left on the node.

        Raises:
            PodTerminationTimeoutError: If matching pods remain after the timeout.
        """
        selector = selector_from_map(selector_map)
        deadline = time.monotonic() + timeout
        while True:
            pods = self.core_v1.list_namespaced_pod(
                namespace,
                label_selector=selector,
                field_selector=f"spec.nodeName={node_name}",
            )
            if not pods.items:
                return
            if time.monotonic() >= deadline:
                raise PodTerminationTimeoutError(selector, namespace, node_name, timeout)
            time.sleep(interval)

    def drain_node(self, node_name: str, opts: DrainOptions) -> None:
        logger.info(f"Draining node {node_name}")
        self._drain_helper(opts).run_node_drain(node_name)

    def pod_uses_gpu(self, pod: client.V1Pod) -> bool:
        return pod_uses_gpu(pod, self.claim_cache)

    def delete_or_evict_gpu_pods(
        self, node_name: str, opts: DrainOptions
    ) -> EvictionResult:
        """
        Evicts the pods on a node that use NVIDIA GPUs.

        Pods are only evicted when every GPU pod passes the drain filters. If
        some cannot be removed (no controller without force, local storage
        without delete-emptydir-data) nothing is evicted and the result is
        incomplete, so the caller can fall back to a full drain.

        Args:
            node_name (str): The name of the node.
            opts (DrainOptions): The drain parameters.

        Returns:
            EvictionResult: How many GPU pods had to go and how many were removed.
        """
        logger.info(f"Draining node {node_name} of any GPU pods")
        helper = self._drain_helper(
            opts,
            pod_selector="",
            additional_filters=[gpu_pod_filter(self.claim_cache)],
        )

        logger.info("Identifying GPU pods to delete")
        pods = helper.list_node_pods(node_name)
        to_delete = sum(1 for pod in pods if self.pod_uses_gpu(pod))
        if to_delete == 0:
            logger.info("No GPU pods to delete. Exiting.")
            return EvictionResult(0, 0)

        delete_list = helper.get_pods_for_deletion(node_name)
        deletable = delete_list.pods()
        errors = delete_list.errors()
        if len(deletable) != to_delete:
            logger.error("Cannot delete all GPU pods")
            for error in errors:
                logger.error(f"error reported by drain helper: {error}")
            return EvictionResult(to_delete, 0, errors)

        for pod in deletable:
            logger.info(f"GPU pod - {pod_ref(pod)}")

        logger.info("Deleting GPU pods...")
        try:
            helper.delete_or_evict_pods(deletable)
        except DrainError as e:
            logger.error(f"Failed to delete all GPU pods: {e}")
            return EvictionResult(to_delete, 0, [str(e)])

        return EvictionResult(to_delete, len(deletable))
