# Namespace the GPU operator is installed in, unless overridden
OPERATOR_NAMESPACE = "gpu-operator"

# Marker written into component deploy labels while the driver is swapped
PAUSED_STR = "paused-for-driver-upgrade"

NVIDIA_DOMAIN_PREFIX = "nvidia.com"

# Legacy device plugin resource names
NVIDIA_RESOURCE_NAME_PREFIX = f"{NVIDIA_DOMAIN_PREFIX}/gpu"
NVIDIA_MIG_RESOURCE_PREFIX = f"{NVIDIA_DOMAIN_PREFIX}/mig-"

# Driver name reported in ResourceClaim allocation results by the GPU DRA driver
NVIDIA_DRA_DRIVER_NAME = f"gpu.{NVIDIA_DOMAIN_PREFIX}"

DRIVER_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.driver"
OPERATOR_VALIDATOR_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.operator-validator"
CONTAINER_TOOLKIT_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.container-toolkit"
DEVICE_PLUGIN_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.device-plugin"
GFD_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.gpu-feature-discovery"
DCGM_EXPORTER_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.dcgm-exporter"
DCGM_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.dcgm"
MIG_MANAGER_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.mig-manager"
NVSM_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.nvsm"
SANDBOX_VALIDATOR_DEPLOY_LABEL = f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.sandbox-validator"
SANDBOX_DEVICE_PLUGIN_DEPLOY_LABEL = (
    f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.sandbox-device-plugin"
)
VGPU_DEVICE_MANAGER_DEPLOY_LABEL = (
    f"{NVIDIA_DOMAIN_PREFIX}/gpu.deploy.vgpu-device-manager"
)

# Value of the driver deploy label when the driver is managed outside the cluster
DRIVER_PRE_INSTALLED = "pre-installed"

# Node annotation set by the operator's upgrade controller
DRIVER_UPGRADE_ANNOTATION = f"{NVIDIA_DOMAIN_PREFIX}/gpu-driver-upgrade-enabled"

# Host paths
DRIVER_ROOT = "/run/nvidia/driver"
DRIVER_PID_FILE = "/run/nvidia/nvidia-driver.pid"
HOST_ROOT = "/host"
MOFED_READY_FILE = "/run/mellanox/drivers/.driver-ready"
MELLANOX_VENDOR_ID = "0x15b3"

# Seconds to wait for each operand's pods to leave the node
DEFAULT_GRACE_PERIOD = 5 * 60

# Seconds to wait after labeling a node whose driver is pre-installed
HOST_DRIVER_GRACE_PERIOD = 60

# Seconds between polls of pod and MOFED state
POLL_INTERVAL = 5

# Seconds allowed for the initial ResourceClaim listing
CLAIM_CACHE_SYNC_TIMEOUT = 60

# Seconds between full relists of ResourceClaims
CLAIM_CACHE_RESYNC_PERIOD = 30 * 60
