from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import fasteners
from kubernetes import client
from kubernetes import watch  # type: ignore
from kubernetes.client.exceptions import ApiException

from kdm.constants import (
    CLAIM_CACHE_RESYNC_PERIOD,
    CLAIM_CACHE_SYNC_TIMEOUT,
    NVIDIA_DRA_DRIVER_NAME,
)
from kdm.exceptions import CacheSyncTimeoutError
from kdm.logger import logger


class EventType(str, Enum):
    ADDED = "Added"
    UPDATED = "Updated"
    DELETED = "Deleted"


@dataclass(frozen=True)
class ClaimEvent:
    """A change to a ResourceClaim, as delivered to the cache's writer thread."""

    type: EventType
    obj: Any
    old: Any = None

    @classmethod
    def added(cls, obj: Any) -> ClaimEvent:
        return cls(EventType.ADDED, obj)

    @classmethod
    def updated(cls, old: Any, new: Any) -> ClaimEvent:
        return cls(EventType.UPDATED, new, old)

    @classmethod
    def deleted(cls, obj: Any) -> ClaimEvent:
        return cls(EventType.DELETED, obj)


# Queue markers, compared by identity
_SYNCED = object()
_STOP = object()


def claim_key(claim: Any) -> str:
    metadata = claim.metadata
    if metadata.uid:
        return str(metadata.uid)
    return f"{metadata.namespace}/{metadata.name}"


def is_nvidia_gpu_claim(claim: Any) -> bool:
    """
    Checks if a ResourceClaim is allocated by the NVIDIA GPU DRA driver.

    Args:
        claim (Any): The ResourceClaim.

    Returns:
        bool: True if any allocated device was provided by the GPU driver.
    """
    status = getattr(claim, "status", None)
    allocation = getattr(status, "allocation", None) if status else None
    if allocation is None or allocation.devices is None:
        return False

    for result in allocation.devices.results or []:
        if result.driver == NVIDIA_DRA_DRIVER_NAME:
            return True
    return False


def reserved_pod_uids(claim: Any) -> List[str]:
    status = getattr(claim, "status", None)
    if status is None:
        return []
    return [
        str(ref.uid) for ref in status.reserved_for or [] if ref.resource == "pods"
    ]


class ResourceClaimCache:
    """
    Index of pod UIDs that have reserved an NVIDIA GPU ResourceClaim.

    A watch thread lists and watches ResourceClaims cluster wide and turns the
    changes into ``ClaimEvent``s. A single consumer thread applies those events
    to the set of pod UIDs, which is the only place the set is written. Queries
    take the shared side of a reader/writer lock and never wait on I/O.
    """

    def __init__(
        self,
        api: Optional[client.ResourceV1Api] = None,
        sync_timeout: float = CLAIM_CACHE_SYNC_TIMEOUT,
        resync_period: float = CLAIM_CACHE_RESYNC_PERIOD,
        watch_timeout: int = 300,
        retry_interval: float = 5,
    ) -> None:
        self._api = api
        self.sync_timeout = sync_timeout
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.retry_interval = retry_interval

        self._lock = fasteners.ReaderWriterLock()
        self._pod_uids: Set[str] = set()
        self._synced = False

        self._events: queue.Queue[Any] = queue.Queue()
        # Last seen claim objects, owned by the watch thread
        self._known: Dict[str, Any] = {}

        self._stop_event = threading.Event()
        self._sync_event = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._threads: List[threading.Thread] = []

    @property
    def api(self) -> client.ResourceV1Api:
        if self._api is None:
            self._api = client.ResourceV1Api()
        return self._api

    def start(self) -> None:
        """
        Starts the watch and consumer threads and blocks until the initial
        listing of ResourceClaims has been applied.

        Raises:
            CacheSyncTimeoutError: If the initial listing does not complete
                within ``sync_timeout`` seconds.
        """
        consumer = threading.Thread(
            target=self._consume, name="claim-cache-consumer", daemon=True
        )
        watcher = threading.Thread(
            target=self._run_watch, name="claim-cache-watch", daemon=True
        )
        self._threads = [consumer, watcher]
        consumer.start()
        watcher.start()

        if not self._sync_event.wait(self.sync_timeout):
            self.stop()
            raise CacheSyncTimeoutError(self.sync_timeout)

        logger.info("ResourceClaim cache synced successfully")

    def stop(self, join_timeout: float = 5) -> None:
        """Stops consuming events. Queries keep answering from the last state."""
        self._stop_event.set()
        self._events.put(_STOP)
        if self._watch is not None:
            self._watch.stop()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(join_timeout)
        self._threads = []

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def is_synced(self) -> bool:
        with self._lock.read_lock():
            return self._synced

    def pod_uses_nvidia_gpu(self, pod_uid: str) -> bool:
        """Returns True if the pod with the given UID has reserved an NVIDIA GPU claim."""
        with self._lock.read_lock():
            return str(pod_uid) in self._pod_uids

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._pod_uids)

    def handle(self, event: ClaimEvent) -> None:
        if event.type == EventType.ADDED:
            self.update_pod_uids(event.obj, add=True)
        elif event.type == EventType.DELETED:
            self.update_pod_uids(event.obj, add=False)
        elif event.type == EventType.UPDATED:
            # Remove old pod UIDs and add new ones
            if event.old is not None:
                self.update_pod_uids(event.old, add=False)
            self.update_pod_uids(event.obj, add=True)

    def update_pod_uids(self, claim: Any, add: bool) -> None:
        """
        Adds or removes the pods reserved by a claim, if the claim was allocated
        by the NVIDIA GPU driver.
        """
        if not is_nvidia_gpu_claim(claim):
            return

        uids = reserved_pod_uids(claim)
        with self._lock.write_lock():
            if add:
                self._pod_uids.update(uids)
            else:
                self._pod_uids.difference_update(uids)

    def _consume(self) -> None:
        while True:
            item = self._events.get()
            if item is _STOP:
                return
            if item is _SYNCED:
                with self._lock.write_lock():
                    self._synced = True
                self._sync_event.set()
                continue
            try:
                self.handle(item)
            except (AttributeError, TypeError) as e:
                logger.warning(f"Ignoring malformed ResourceClaim event: {e}")

    def _run_watch(self) -> None:
        first_list = True
        while not self._stop_event.is_set():
            try:
                resource_version = self._relist()
                if first_list:
                    self._events.put(_SYNCED)
                    first_list = False
                self._stream(resource_version, time.monotonic() + self.resync_period)
            except ApiException as e:
                if e.status == 410:
                    logger.debug("ResourceClaim watch expired, relisting")
                    continue
                logger.warning(f"ResourceClaim watch failed, retrying: {e}")
                self._stop_event.wait(self.retry_interval)
            except Exception as e:
                if self._stop_event.is_set():
                    return
                logger.warning(f"ResourceClaim watch failed, retrying: {e}")
                self._stop_event.wait(self.retry_interval)

    def _relist(self) -> str:
        claims = self.api.list_resource_claim_for_all_namespaces()
        seen: Dict[str, Any] = {}
        for claim in claims.items or []:
            key = claim_key(claim)
            seen[key] = claim
            old = self._known.get(key)
            if old is None:
                self._events.put(ClaimEvent.added(claim))
            else:
                self._events.put(ClaimEvent.updated(old, claim))

        for key, old in self._known.items():
            if key not in seen:
                self._events.put(ClaimEvent.deleted(old))

        self._known = seen
        return claims.metadata.resource_version

    def _stream(self, resource_version: str, deadline: float) -> None:
        self._watch = watch.Watch()
        try:
            while not self._stop_event.is_set() and time.monotonic() < deadline:
                for event in self._watch.stream(
                    self.api.list_resource_claim_for_all_namespaces,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout,
                    allow_watch_bookmarks=True,
                ):
                    if self._stop_event.is_set():
                        return
                    event_type = event["type"]
                    obj = event["object"]
                    if event_type == "ERROR":
                        logger.warning(f"ResourceClaim watch error event: {obj}")
                        return
                    resource_version = obj.metadata.resource_version
                    if event_type == "BOOKMARK":
                        continue
                    self._on_watch_event(event_type, obj)
        finally:
            self._watch.stop()

    def _on_watch_event(self, event_type: str, claim: Any) -> None:
        key = claim_key(claim)
        old = self._known.get(key)
        if event_type == "DELETED":
            self._known.pop(key, None)
            self._events.put(ClaimEvent.deleted(old if old is not None else claim))
            return

        self._known[key] = claim
        if old is None:
            self._events.put(ClaimEvent.added(claim))
        else:
            self._events.put(ClaimEvent.updated(old, claim))
