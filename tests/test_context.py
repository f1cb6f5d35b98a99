from unittest.mock import MagicMock, patch

import pytest

from kdm.config import DriverManagerConfig
from kdm.context import Context
from kdm.exceptions import CacheSyncTimeoutError


def make_context() -> Context:
    return Context(
        DriverManagerConfig(node_name="gpu-node-1", kubeconfig="/etc/kubeconfig"),
        host_driver=MagicMock(),
    )


def test_kube_client_requires_open() -> None:
    ctx = make_context()
    with pytest.raises(RuntimeError):
        ctx.kube_client
    assert ctx.claim_cache is None


@patch("kdm.context.load_kube_config")
def test_open_and_close(mock_load: MagicMock) -> None:
    cache = MagicMock()
    cache.stopped = False
    ctx = make_context()

    assert ctx.open(claim_cache=cache) is ctx

    mock_load.assert_called_once_with("/etc/kubeconfig")
    cache.start.assert_called_once_with()
    assert ctx.claim_cache is cache
    assert ctx.kube_client.claim_cache is cache

    ctx.close()
    cache.stop.assert_called_once_with()


@patch("kdm.context.load_kube_config")
def test_close_skips_stopped_cache(mock_load: MagicMock) -> None:
    cache = MagicMock()
    cache.stopped = True
    ctx = make_context()
    ctx.open(claim_cache=cache)

    ctx.close()

    cache.stop.assert_not_called()


@patch("kdm.context.ResourceClaimCache")
@patch("kdm.context.load_kube_config")
def test_context_manager(mock_load: MagicMock, mock_cache_class: MagicMock) -> None:
    cache = mock_cache_class.return_value
    cache.stopped = False

    with make_context() as ctx:
        assert ctx.claim_cache is cache
        cache.stop.assert_not_called()

    cache.stop.assert_called_once_with()


@patch("kdm.context.load_kube_config")
def test_open_cache_sync_timeout(mock_load: MagicMock) -> None:
    cache = MagicMock()
    cache.start.side_effect = CacheSyncTimeoutError(60)
    ctx = make_context()

    with pytest.raises(CacheSyncTimeoutError):
        ctx.open(claim_cache=cache)

    with pytest.raises(RuntimeError):
        ctx.kube_client
