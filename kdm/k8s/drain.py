"""
Node drain helper built on the Kubernetes CoreV1 API.

Mirrors what ``kubectl drain`` does: list the pods bound to a node, run them
through a chain of filters deciding whether each can be removed, then evict
(or delete) the remaining pods and wait for them to disappear.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from tenacity import Retrying, retry_if_exception, stop_after_delay, stop_never, wait_fixed

from kdm.config import DrainOptions
from kdm.exceptions import DrainError
from kdm.logger import logger
from kdm.utils import format_seconds

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

# Seconds between eviction attempts rejected by a PodDisruptionBudget
EVICTION_RETRY_INTERVAL = 5


class DeleteReason(str, Enum):
    OKAY = "okay"
    SKIP = "skip"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class PodDeleteStatus:
    delete: bool
    reason: DeleteReason
    message: str = ""

    @classmethod
    def okay(cls) -> PodDeleteStatus:
        return cls(True, DeleteReason.OKAY)

    @classmethod
    def skip(cls) -> PodDeleteStatus:
        return cls(False, DeleteReason.SKIP)

    @classmethod
    def warning(cls, message: str, delete: bool = True) -> PodDeleteStatus:
        return cls(delete, DeleteReason.WARNING, message)

    @classmethod
    def error(cls, message: str) -> PodDeleteStatus:
        return cls(False, DeleteReason.ERROR, message)


PodFilter = Callable[[client.V1Pod], PodDeleteStatus]


@dataclass(frozen=True)
class PodDelete:
    pod: client.V1Pod
    status: PodDeleteStatus


def pod_ref(pod: client.V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


class PodDeleteList:
    def __init__(self, items: Sequence[PodDelete]) -> None:
        self.items = list(items)

    def pods(self) -> List[client.V1Pod]:
        return [item.pod for item in self.items if item.status.delete]

    def _grouped(self, reason: DeleteReason) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for item in self.items:
            if item.status.reason == reason:
                grouped.setdefault(item.status.message, []).append(pod_ref(item.pod))
        return grouped

    def warnings(self) -> str:
        return "; ".join(
            f"{message}: {', '.join(pods)}"
            for message, pods in self._grouped(DeleteReason.WARNING).items()
        )

    def errors(self) -> List[str]:
        return [
            f"{message}: {', '.join(pods)}"
            for message, pods in self._grouped(DeleteReason.ERROR).items()
        ]


@dataclass(frozen=True)
class EvictionResult:
    """Outcome of evicting the GPU pods of a node."""

    to_delete: int
    deleted: int
    errors: Sequence[str] = ()

    @property
    def complete(self) -> bool:
        return self.deleted == self.to_delete


def _is_finished(pod: client.V1Pod) -> bool:
    phase = pod.status.phase if pod.status else None
    return phase in ("Succeeded", "Failed")


def _controller_ref(pod: client.V1Pod) -> Optional[Any]:
    for ref in pod.metadata.owner_references or []:
        if ref.controller:
            return ref
    return None


def _is_too_many_requests(e: BaseException) -> bool:
    return isinstance(e, ApiException) and e.status == 429


class DrainHelper:
    """
    Cordons nodes and removes their pods the way ``kubectl drain`` does.

    Args:
        core_v1 (client.CoreV1Api): The API client.
        force (bool): Delete pods not managed by a controller.
        delete_emptydir_data (bool): Delete pods using emptyDir volumes.
        ignore_all_daemonsets (bool): Skip DaemonSet pods instead of failing.
        timeout (float): Seconds to wait for the pods to go away, zero means no limit.
        grace_period_seconds (int): Grace period for each pod, negative uses the pod's.
        pod_selector (str): Only consider pods matching this label selector.
        additional_filters (Optional[List[PodFilter]]): Filters run after the built-in ones.
        disable_eviction (bool): Delete pods directly instead of using the eviction API.
        poll_interval (float): Seconds between checks while waiting for deletion.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        force: bool = False,
        delete_emptydir_data: bool = False,
        ignore_all_daemonsets: bool = True,
        timeout: float = 0,
        grace_period_seconds: int = -1,
        pod_selector: str = "",
        additional_filters: Optional[List[PodFilter]] = None,
        disable_eviction: bool = False,
        poll_interval: float = 1,
    ) -> None:
        self.core_v1 = core_v1
        self.force = force
        self.delete_emptydir_data = delete_emptydir_data
        self.ignore_all_daemonsets = ignore_all_daemonsets
        self.timeout = timeout
        self.grace_period_seconds = grace_period_seconds
        self.pod_selector = pod_selector
        self.additional_filters = additional_filters or []
        self.disable_eviction = disable_eviction
        self.poll_interval = poll_interval

    @classmethod
    def from_options(
        cls, core_v1: client.CoreV1Api, options: DrainOptions, **kwargs: Any
    ) -> DrainHelper:
        return cls(
            core_v1,
            force=options.force,
            delete_emptydir_data=options.delete_emptydir_data,
            timeout=options.timeout,
            grace_period_seconds=options.grace_period_seconds,
            pod_selector=options.pod_selector,
            **kwargs,
        )

    def run_cordon_or_uncordon(self, node_name: str, desired: bool) -> bool:
        """Marks the node (un)schedulable. Returns False if it already was."""
        node = self.core_v1.read_node(node_name)
        if bool(node.spec and node.spec.unschedulable) == desired:
            state = "cordoned" if desired else "uncordoned"
            logger.info(f"Node {node_name} already {state}")
            return False
        self.core_v1.patch_node(node_name, {"spec": {"unschedulable": desired}})
        return True

    def _filters(self) -> List[PodFilter]:
        return [
            self._daemonset_filter,
            self._mirror_pod_filter,
            self._local_storage_filter,
            self._unreplicated_filter,
            *self.additional_filters,
        ]

    def _daemonset_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        ref = _controller_ref(pod)
        if ref is None or ref.kind != "DaemonSet":
            return PodDeleteStatus.okay()
        if _is_finished(pod):
            return PodDeleteStatus.okay()
        if not self.ignore_all_daemonsets:
            return PodDeleteStatus.error(
                "cannot delete DaemonSet-managed Pods (use --ignore-daemonsets to ignore)"
            )
        return PodDeleteStatus.warning(
            "ignoring DaemonSet-managed Pods", delete=False
        )

    def _mirror_pod_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        if MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {}):
            return PodDeleteStatus.skip()
        return PodDeleteStatus.okay()

    def _local_storage_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        volumes = pod.spec.volumes if pod.spec else None
        if not any(v.empty_dir is not None for v in volumes or []):
            return PodDeleteStatus.okay()
        if _is_finished(pod):
            return PodDeleteStatus.okay()
        if not self.delete_emptydir_data:
            return PodDeleteStatus.error(
                "cannot delete Pods with local storage (use --delete-emptydir-data to override)"
            )
        return PodDeleteStatus.warning("deleting Pods with local storage")

    def _unreplicated_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        if _is_finished(pod) or _controller_ref(pod) is not None:
            return PodDeleteStatus.okay()
        if self.force:
            return PodDeleteStatus.warning("deleting Pods that declare no controller")
        return PodDeleteStatus.error(
            "cannot delete Pods that declare no controller (use --force to override)"
        )

    def filter_pod(self, pod: client.V1Pod) -> PodDeleteStatus:
        status = PodDeleteStatus.okay()
        for pod_filter in self._filters():
            status = pod_filter(pod)
            if not status.delete:
                break
        return status

    def list_node_pods(self, node_name: str) -> List[client.V1Pod]:
        kwargs: Dict[str, Any] = {"field_selector": f"spec.nodeName={node_name}"}
        if self.pod_selector:
            kwargs["label_selector"] = self.pod_selector
        return self.core_v1.list_pod_for_all_namespaces(**kwargs).items

    def get_pods_for_deletion(self, node_name: str) -> PodDeleteList:
        return PodDeleteList(
            [PodDelete(pod, self.filter_pod(pod)) for pod in self.list_node_pods(node_name)]
        )

    def _delete_options(self) -> Optional[client.V1DeleteOptions]:
        if self.grace_period_seconds < 0:
            return None
        return client.V1DeleteOptions(grace_period_seconds=self.grace_period_seconds)

    def _evict_pod(self, pod: client.V1Pod) -> None:
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(
                name=pod.metadata.name, namespace=pod.metadata.namespace
            ),
            delete_options=self._delete_options(),
        )
        self.core_v1.create_namespaced_pod_eviction(
            pod.metadata.name, pod.metadata.namespace, body
        )

    def _delete_pod(self, pod: client.V1Pod) -> None:
        kwargs: Dict[str, Any] = {}
        if self.grace_period_seconds >= 0:
            kwargs["grace_period_seconds"] = self.grace_period_seconds
        self.core_v1.delete_namespaced_pod(
            pod.metadata.name, pod.metadata.namespace, **kwargs
        )

    def delete_or_evict_pods(self, pods: Sequence[client.V1Pod]) -> None:
        """
        Evicts or deletes the given pods and waits until they are gone.

        Evictions rejected with 429 (a PodDisruptionBudget is not satisfied) are
        retried until the timeout expires.

        Raises:
            DrainError: If a pod cannot be removed or is still present after the timeout.
        """
        if not pods:
            return

        remove = self._delete_pod if self.disable_eviction else self._evict_pod
        retryer = Retrying(
            retry=retry_if_exception(_is_too_many_requests),
            wait=wait_fixed(EVICTION_RETRY_INTERVAL),
            stop=stop_after_delay(self.timeout) if self.timeout > 0 else stop_never,
            reraise=True,
        )

        for pod in pods:
            try:
                retryer(remove, pod)
                logger.info(f"Evicting pod {pod_ref(pod)}")
            except ApiException as e:
                if e.status == 404:
                    continue
                raise DrainError(f"error when evicting pod {pod_ref(pod)}: {e}") from e

        self.wait_for_delete(pods)

    def _pod_gone(self, pod: client.V1Pod) -> bool:
        try:
            current = self.core_v1.read_namespaced_pod(
                pod.metadata.name, pod.metadata.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return True
            raise
        return current.metadata.uid != pod.metadata.uid

    def wait_for_delete(self, pods: Sequence[client.V1Pod]) -> None:
        pending = list(pods)
        start = time.monotonic()
        while True:
            pending = [pod for pod in pending if not self._pod_gone(pod)]
            if not pending:
                return
            if self.timeout > 0 and time.monotonic() - start >= self.timeout:
                raise DrainError(
                    f"drain did not complete within {format_seconds(self.timeout)}, pods still present: "
                    f"{', '.join(pod_ref(p) for p in pending)}"
                )
            time.sleep(self.poll_interval)

    def run_node_drain(self, node_name: str) -> None:
        """Cordons the node and removes every pod the filters allow."""
        self.run_cordon_or_uncordon(node_name, True)

        delete_list = self.get_pods_for_deletion(node_name)
        errors = delete_list.errors()
        if errors:
            raise DrainError(
                f"cannot drain node {node_name}: {'; '.join(errors)}"
            )

        warnings = delete_list.warnings()
        if warnings:
            logger.warning(f"WARNING: {warnings}")

        self.delete_or_evict_pods(delete_list.pods())
