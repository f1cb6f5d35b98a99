import pytest

from kdm.constants import (
    DCGM_DEPLOY_LABEL,
    DEVICE_PLUGIN_DEPLOY_LABEL,
    MIG_MANAGER_DEPLOY_LABEL,
    NVSM_DEPLOY_LABEL,
    PAUSED_STR,
)
from kdm.labels import (
    COMPONENTS,
    COMPONENTS_BY_LABEL,
    ComponentState,
    WaitPolicy,
    pause,
    resume,
)


def test_pause() -> None:
    assert pause("true") == PAUSED_STR
    assert pause("custom") == f"custom_{PAUSED_STR}"
    assert pause("false") == "false"
    assert pause("") == ""


def test_pause_is_idempotent() -> None:
    assert pause(pause("true")) == PAUSED_STR
    assert pause(pause("custom")) == f"custom_{PAUSED_STR}"


def test_resume() -> None:
    assert resume(PAUSED_STR) == "true"
    assert resume(f"custom_{PAUSED_STR}") == "custom"
    assert resume("false") == "false"
    assert resume("true") == "true"
    assert resume("") == ""


@pytest.mark.parametrize("value", ["true", "custom", "a_b", "pre-installed", "1"])
def test_resume_reverses_pause(value: str) -> None:
    assert resume(pause(value)) == value


def test_component_table() -> None:
    assert len(COMPONENTS) == 11
    assert COMPONENTS_BY_LABEL[DEVICE_PLUGIN_DEPLOY_LABEL].app == (
        "nvidia-device-plugin-daemonset"
    )
    assert COMPONENTS_BY_LABEL[NVSM_DEPLOY_LABEL].wait == WaitPolicy.NEVER


def test_component_should_wait() -> None:
    dcgm = COMPONENTS_BY_LABEL[DCGM_DEPLOY_LABEL]
    mig_manager = COMPONENTS_BY_LABEL[MIG_MANAGER_DEPLOY_LABEL]
    nvsm = COMPONENTS_BY_LABEL[NVSM_DEPLOY_LABEL]

    assert dcgm.should_wait("")
    assert dcgm.should_wait("false")
    assert not mig_manager.should_wait("")
    assert mig_manager.should_wait("true")
    assert not nvsm.should_wait("true")


def test_component_state_set_unknown_label() -> None:
    state = ComponentState()
    with pytest.raises(KeyError):
        state.set("example.com/unknown", "true")


def test_component_state_paused_labels() -> None:
    state = ComponentState()
    state.set(DEVICE_PLUGIN_DEPLOY_LABEL, "true")
    state.set(DCGM_DEPLOY_LABEL, "false")
    state.set(MIG_MANAGER_DEPLOY_LABEL, "")
    state.custom_label_value = "custom"

    labels = state.paused_labels("example.com/gpu-workload")

    assert labels == {
        DEVICE_PLUGIN_DEPLOY_LABEL: PAUSED_STR,
        DCGM_DEPLOY_LABEL: "false",
        "example.com/gpu-workload": f"custom_{PAUSED_STR}",
    }


def test_component_state_custom_label_not_configured() -> None:
    state = ComponentState()
    state.custom_label_value = "custom"
    assert state.paused_labels() == {}
    assert state.paused_labels("") == {}


def test_component_state_resumed_labels() -> None:
    state = ComponentState()
    state.set(DEVICE_PLUGIN_DEPLOY_LABEL, PAUSED_STR)
    state.set(DCGM_DEPLOY_LABEL, "custom")

    assert state.resumed_labels() == {
        DEVICE_PLUGIN_DEPLOY_LABEL: "true",
        DCGM_DEPLOY_LABEL: "custom",
    }


def test_auto_upgrade_policy_enabled() -> None:
    state = ComponentState()
    assert not state.auto_upgrade_policy_enabled
    state.auto_upgrade_policy = "true"
    assert state.auto_upgrade_policy_enabled
