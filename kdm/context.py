from __future__ import annotations

from types import TracebackType
from typing import Optional, Type

import fasteners

from kdm.config import DriverManagerConfig
from kdm.host.driver import HostDriver
from kdm.k8s.claim_cache import ResourceClaimCache
from kdm.k8s.client import KubeClient, load_kube_config
from kdm.logger import logger


class Context:
    """
    Process-wide state shared by the driver manager's components.

    Created once at startup. ``open`` loads the cluster credentials and starts
    the ResourceClaim cache; ``close`` stops the cache. Also usable as a
    context manager.
    """

    _kube_client: Optional[KubeClient]
    _claim_cache: Optional[ResourceClaimCache]

    def __init__(
        self,
        config: DriverManagerConfig,
        host_driver: Optional[HostDriver] = None,
    ) -> None:
        self.config = config
        self.host_driver = host_driver or HostDriver()
        self._kube_client = None
        self._claim_cache = None
        self._lock = fasteners.ReaderWriterLock()

    @property
    @fasteners.read_locked(lock="_lock")
    def kube_client(self) -> KubeClient:
        if self._kube_client is None:
            raise RuntimeError("Context is not open.")
        return self._kube_client

    @property
    @fasteners.read_locked(lock="_lock")
    def claim_cache(self) -> Optional[ResourceClaimCache]:
        return self._claim_cache

    @fasteners.write_locked(lock="_lock")
    def open(self, claim_cache: Optional[ResourceClaimCache] = None) -> Context:
        """
        Connects to the cluster and starts the ResourceClaim cache.

        Raises:
            CacheSyncTimeoutError: If the cache does not sync in time.
        """
        load_kube_config(self.config.kubeconfig)
        cache = claim_cache or ResourceClaimCache()
        cache.start()
        self._claim_cache = cache
        self._kube_client = KubeClient(claim_cache=cache)
        return self

    @fasteners.write_locked(lock="_lock")
    def close(self) -> None:
        if self._claim_cache is not None and not self._claim_cache.stopped:
            logger.debug("Stopping ResourceClaim cache")
            self._claim_cache.stop()

    def __enter__(self) -> Context:
        return self.open()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()
