import subprocess
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from kdm.config import DriverManagerConfig
from kdm.constants import (
    DCGM_DEPLOY_LABEL,
    DEVICE_PLUGIN_DEPLOY_LABEL,
    DRIVER_DEPLOY_LABEL,
    DRIVER_UPGRADE_ANNOTATION,
    MIG_MANAGER_DEPLOY_LABEL,
    PAUSED_STR,
)
from kdm.exceptions import (
    ComponentEvictionError,
    DeviceRebindError,
    DrainError,
    DriverCleanupError,
    DriverInUseError,
    DriverVersionError,
    GPUPodEvictionError,
    HostDriverPreinstalledError,
    LabelFetchError,
    NouveauUnloadError,
    PodTerminationTimeoutError,
    RDMAWaitTimeoutError,
)
from kdm.host.driver import HostDriver
from kdm.k8s.drain import EvictionResult
from kdm.manager import DriverManager, State

NODE = "gpu-node-1"

LABELS = {DEVICE_PLUGIN_DEPLOY_LABEL: "true", DCGM_DEPLOY_LABEL: "true"}
PAUSED = {DEVICE_PLUGIN_DEPLOY_LABEL: PAUSED_STR, DCGM_DEPLOY_LABEL: PAUSED_STR}


def make_kube_client(
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    eviction: EvictionResult = EvictionResult(2, 2),
) -> MagicMock:
    node_labels = LABELS if labels is None else labels
    node_annotations = annotations or {}
    kube_client = MagicMock()
    kube_client.get_node_labels.return_value = dict(node_labels)
    kube_client.cordon_node.return_value = True
    kube_client.get_node_annotation_value.side_effect = (
        lambda node, key: node_annotations.get(key, "")
    )
    kube_client.delete_or_evict_gpu_pods.return_value = eviction
    return kube_client


def make_host_driver(loaded: bool = True) -> MagicMock:
    host_driver = MagicMock()
    host_driver.is_host_driver.return_value = False
    host_driver.is_driver_loaded.return_value = loaded
    host_driver.is_nouveau_loaded.return_value = False
    return host_driver


def make_manager(
    kube_client: MagicMock, host_driver: MagicMock, **config
) -> DriverManager:
    return DriverManager(
        DriverManagerConfig(node_name=NODE, **config),
        kube_client,
        host_driver,
        grace_period=1,
        poll_interval=0,
        host_driver_grace_period=60,
        sleep=MagicMock(),
    )


def label_updates(kube_client: MagicMock):
    return [c[0][1] for c in kube_client.update_node_labels.call_args_list]


def test_uninstall_driver() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    manager = make_manager(kube_client, host_driver)

    manager.uninstall_driver()

    assert manager.history == [
        State.START,
        State.PREFLIGHT_SKIP_CHECK,
        State.LABELS_FETCHED,
        State.COMPONENTS_EVICTED,
        State.PODS_DRAINED,
        State.MODULES_UNLOADED,
        State.DEVICES_REBOUND,
        State.RDMA_WAITED,
        State.RESCHEDULED,
        State.DONE,
    ]
    assert label_updates(kube_client) == [PAUSED, LABELS]
    kube_client.cordon_node.assert_called_once_with(NODE)
    kube_client.drain_node.assert_not_called()
    kube_client.uncordon_node.assert_called_once_with(NODE)
    host_driver.cleanup_driver.assert_called_once_with()
    host_driver.unbind_vfio_pci.assert_called_once_with()
    host_driver.wait_for_mofed_driver.assert_not_called()
    host_driver.unload_nouveau.assert_not_called()


def test_waits_for_deployed_components_only() -> None:
    kube_client = make_kube_client()
    manager = make_manager(kube_client, make_host_driver(), operator_namespace="ops")

    manager.uninstall_driver()

    waited = [c[0][0]["app"] for c in kube_client.wait_for_pod_termination.call_args_list]
    assert "nvidia-device-plugin-daemonset" in waited
    assert "nvidia-dcgm" in waited
    assert "nvidia-nvsm" not in waited
    assert "nvidia-mig-manager" not in waited
    assert all(c[0][1:3] == ("ops", NODE) for c in kube_client.wait_for_pod_termination.call_args_list)


def test_waits_for_mig_manager_when_deployed() -> None:
    kube_client = make_kube_client(labels={**LABELS, MIG_MANAGER_DEPLOY_LABEL: "true"})
    make_manager(kube_client, make_host_driver()).uninstall_driver()

    waited = [c[0][0]["app"] for c in kube_client.wait_for_pod_termination.call_args_list]
    assert "nvidia-mig-manager" in waited


def test_incomplete_eviction_falls_back_to_drain() -> None:
    kube_client = make_kube_client(eviction=EvictionResult(2, 1))
    host_driver = make_host_driver()
    # Loaded during the skip check, gone after the drain cleaned it up
    host_driver.is_driver_loaded.side_effect = [True, False]
    manager = make_manager(kube_client, host_driver)

    manager.uninstall_driver()

    assert manager.state == State.DONE
    kube_client.drain_node.assert_called_once()
    assert kube_client.drain_node.call_args[0][0] == NODE
    host_driver.cleanup_driver.assert_called_once_with()
    kube_client.uncordon_node.assert_called_once_with(NODE)


def test_incomplete_eviction_without_auto_drain() -> None:
    kube_client = make_kube_client(eviction=EvictionResult(2, 1))
    host_driver = make_host_driver()
    manager = make_manager(kube_client, host_driver, enable_auto_drain=False)

    with pytest.raises(GPUPodEvictionError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    kube_client.drain_node.assert_not_called()
    host_driver.cleanup_driver.assert_not_called()
    kube_client.uncordon_node.assert_called_once_with(NODE)
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_eviction_api_error_is_incomplete() -> None:
    kube_client = make_kube_client()
    kube_client.delete_or_evict_gpu_pods.side_effect = ApiException(status=500)
    manager = make_manager(kube_client, make_host_driver(), enable_auto_drain=False)

    with pytest.raises(GPUPodEvictionError):
        manager.uninstall_driver()


def test_cleanup_failure_retries_after_drain() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.cleanup_driver.side_effect = [DriverInUseError(["nvidia"]), None]
    manager = make_manager(kube_client, host_driver)

    manager.uninstall_driver()

    assert manager.state == State.DONE
    kube_client.drain_node.assert_called_once()
    assert host_driver.cleanup_driver.call_count == 2


def test_upgrade_policy_disables_eviction_and_drain() -> None:
    kube_client = make_kube_client(annotations={DRIVER_UPGRADE_ANNOTATION: "true"})
    host_driver = make_host_driver()
    host_driver.cleanup_driver.side_effect = DriverInUseError(["nvidia"])
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(DriverCleanupError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    kube_client.cordon_node.assert_not_called()
    kube_client.delete_or_evict_gpu_pods.assert_not_called()
    kube_client.drain_node.assert_not_called()
    kube_client.uncordon_node.assert_not_called()
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_host_driver_preinstalled() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.is_host_driver.return_value = True
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(HostDriverPreinstalledError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    kube_client.update_node_labels.assert_called_once_with(
        NODE, {DRIVER_DEPLOY_LABEL: "pre-installed"}
    )
    manager._sleep.assert_called_once_with(60)
    host_driver.cleanup_driver.assert_not_called()


def test_skip_when_desired_version_loaded() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.detect_driver_version.return_value = "550.54.15"
    manager = make_manager(kube_client, host_driver, driver_version="550.54.15")

    manager.uninstall_driver()

    assert manager.history == [State.START, State.PREFLIGHT_SKIP_CHECK, State.DONE]
    kube_client.update_node_labels.assert_not_called()
    host_driver.cleanup_driver.assert_not_called()


def test_should_skip_uninstall() -> None:
    host_driver = make_host_driver()
    host_driver.detect_driver_version.return_value = "535.104.05"
    manager = make_manager(make_kube_client(), host_driver, driver_version="550.54.15")
    assert manager.should_skip_uninstall() == (False, "")

    host_driver.detect_driver_version.side_effect = DriverVersionError("no modinfo")
    assert manager.should_skip_uninstall() == (False, "")

    host_driver.detect_driver_version.side_effect = None
    host_driver.detect_driver_version.return_value = "550.54.15"
    assert manager.should_skip_uninstall()[0]

    forced = make_manager(
        make_kube_client(), host_driver, driver_version="550.54.15", force_reinstall=True
    )
    assert forced.should_skip_uninstall() == (False, "")

    host_driver.is_driver_loaded.return_value = False
    assert manager.should_skip_uninstall() == (False, "")


def test_label_fetch_failure_changes_nothing() -> None:
    kube_client = make_kube_client()
    kube_client.get_node_labels.side_effect = ApiException(status=500)
    host_driver = make_host_driver()
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(LabelFetchError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    kube_client.update_node_labels.assert_not_called()
    kube_client.cordon_node.assert_not_called()
    host_driver.cleanup_driver.assert_not_called()


def test_component_eviction_failure_rolls_back() -> None:
    kube_client = make_kube_client()
    kube_client.wait_for_pod_termination.side_effect = PodTerminationTimeoutError(
        "app=nvidia-operator-validator", "gpu-operator", NODE, 1
    )
    manager = make_manager(kube_client, make_host_driver())

    with pytest.raises(ComponentEvictionError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    assert label_updates(kube_client) == [PAUSED, LABELS]
    kube_client.uncordon_node.assert_not_called()


def test_vfio_failure_rolls_back() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.unbind_vfio_pci.side_effect = DeviceRebindError("vfio-manage failed")
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(DeviceRebindError):
        manager.uninstall_driver()

    assert manager.history[-2:] == [State.MODULES_UNLOADED, State.FAILED]
    kube_client.uncordon_node.assert_called_once_with(NODE)
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_rollback_continues_when_uncordon_fails() -> None:
    kube_client = make_kube_client()
    kube_client.uncordon_node.side_effect = ApiException(status=500)
    host_driver = make_host_driver()
    host_driver.unbind_vfio_pci.side_effect = DeviceRebindError("vfio-manage failed")

    with pytest.raises(DeviceRebindError):
        make_manager(kube_client, host_driver).uninstall_driver()

    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_waits_for_mofed() -> None:
    host_driver = make_host_driver()
    host_driver.mellanox_devices_present.return_value = True
    manager = make_manager(
        make_kube_client(), host_driver, gpu_direct_rdma_enabled=True, use_host_mofed=True
    )

    manager.uninstall_driver()

    host_driver.wait_for_mofed_driver.assert_called_once_with(True, interval=0, timeout=None)


def test_skips_mofed_without_mellanox_devices() -> None:
    host_driver = make_host_driver()
    host_driver.mellanox_devices_present.return_value = False
    manager = make_manager(make_kube_client(), host_driver, gpu_direct_rdma_enabled=True)

    manager.uninstall_driver()

    host_driver.wait_for_mofed_driver.assert_not_called()


def test_unloads_nouveau() -> None:
    host_driver = make_host_driver()
    host_driver.is_nouveau_loaded.return_value = True
    manager = make_manager(make_kube_client(), host_driver)

    manager.uninstall_driver()

    host_driver.unload_nouveau.assert_called_once_with()
    assert manager.state == State.DONE


def test_custom_eviction_label() -> None:
    kube_client = make_kube_client(labels={**LABELS, "example.com/gpu-app": "true"})
    manager = make_manager(
        kube_client, make_host_driver(), node_label_for_gpu_pod_eviction="example.com/gpu-app"
    )

    manager.uninstall_driver()

    paused, resumed = label_updates(kube_client)
    assert paused["example.com/gpu-app"] == PAUSED_STR
    assert resumed["example.com/gpu-app"] == "true"


def test_node_labels_read_once() -> None:
    kube_client = make_kube_client()
    make_manager(kube_client, make_host_driver()).uninstall_driver()
    kube_client.get_node_labels.assert_called_once_with(NODE)


def test_keeps_node_cordoned_by_admin() -> None:
    kube_client = make_kube_client()
    kube_client.cordon_node.return_value = False
    manager = make_manager(kube_client, make_host_driver())

    manager.uninstall_driver()

    assert manager.state == State.DONE
    kube_client.uncordon_node.assert_not_called()
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_rdma_wait_timeout_rolls_back() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.mellanox_devices_present.return_value = True
    host_driver.wait_for_mofed_driver.side_effect = RDMAWaitTimeoutError(
        "MOFED driver was not ready within 10m0s"
    )
    manager = make_manager(kube_client, host_driver, gpu_direct_rdma_enabled=True)

    with pytest.raises(RDMAWaitTimeoutError):
        manager.uninstall_driver()

    assert manager.history[-2:] == [State.DEVICES_REBOUND, State.FAILED]
    kube_client.uncordon_node.assert_called_once_with(NODE)
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_nouveau_failure_rolls_back() -> None:
    kube_client = make_kube_client()
    host_driver = make_host_driver()
    host_driver.is_nouveau_loaded.return_value = True
    host_driver.unload_nouveau.side_effect = NouveauUnloadError("failed to unload nouveau")
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(NouveauUnloadError):
        manager.uninstall_driver()

    assert manager.history[-2:] == [State.RESCHEDULED, State.FAILED]
    assert label_updates(kube_client)[-1] == LABELS


def test_cordon_failure_rolls_back() -> None:
    kube_client = make_kube_client()
    kube_client.cordon_node.side_effect = ApiException(status=500)
    host_driver = make_host_driver()
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(GPUPodEvictionError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    kube_client.delete_or_evict_gpu_pods.assert_not_called()
    kube_client.uncordon_node.assert_not_called()
    host_driver.cleanup_driver.assert_not_called()
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_drain_failure_rolls_back() -> None:
    kube_client = make_kube_client(eviction=EvictionResult(2, 1))
    kube_client.drain_node.side_effect = DrainError(
        "cannot evict pod as it would violate the pod's disruption budget"
    )
    host_driver = make_host_driver()
    manager = make_manager(kube_client, host_driver)

    with pytest.raises(DrainError):
        manager.uninstall_driver()

    assert manager.state == State.FAILED
    host_driver.cleanup_driver.assert_not_called()
    kube_client.uncordon_node.assert_called_once_with(NODE)
    assert label_updates(kube_client) == [PAUSED, LABELS]


def test_rmmod_timeout_rolls_back(tmp_path: Path) -> None:
    module_dir = tmp_path / "sys" / "module" / "nvidia"
    module_dir.mkdir(parents=True)
    (module_dir / "refcnt").write_text("0\n")
    host_driver = HostDriver(
        root=str(tmp_path),
        host_root=str(tmp_path / "host"),
        driver_root=str(tmp_path / "run" / "nvidia" / "driver"),
        pid_file=str(tmp_path / "run" / "nvidia" / "nvidia-driver.pid"),
    )
    kube_client = make_kube_client()
    manager = make_manager(kube_client, host_driver, enable_auto_drain=False)

    with patch(
        "kdm.host.kmod.run_command",
        side_effect=subprocess.TimeoutExpired(["rmmod", "nvidia"], 60),
    ), patch("kdm.host.driver.run_command", side_effect=FileNotFoundError("chroot")):
        with pytest.raises(DriverCleanupError):
            manager.uninstall_driver()

    assert manager.history[-2:] == [State.PODS_DRAINED, State.FAILED]
    kube_client.uncordon_node.assert_called_once_with(NODE)
    assert label_updates(kube_client) == [PAUSED, LABELS]
