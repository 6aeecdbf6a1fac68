"""
Fixed values shared by the manifest builders, the planner and the CLI.

Ports, paths, label keys and resource-name suffixes live here so that the
builders and the discovery code always agree on what a cluster looks like.
"""

# =============================================================================
# Paths inside the storage image
# =============================================================================

APP_HOME = "/app"
STORE_HOME = "/app/store"
STORE_BIN = "/app/store/bin/store"
CONFIG_FILE_NAME = "cluster.yaml"
STORE_CONF_FILE = f"{STORE_HOME}/conf/{CONFIG_FILE_NAME}"
RPC_BIND_HOSTNAME = "0.0.0.0"
DEFAULT_CLUSTER_DOMAIN = "cluster.local"

# =============================================================================
# Ports
# =============================================================================

MASTER_RPC_PORT = 8995
MASTER_JOURNAL_PORT = 8996
MASTER_WEB_PORT = 9000
MASTER_WEB1_PORT = 9001
WORKER_RPC_PORT = 8997
WORKER_WEB_PORT = 9001

PORT_NAME_RPC = "rpc"
PORT_NAME_JOURNAL = "journal"
PORT_NAME_WEB = "web"
PORT_NAME_WEB1 = "web1"
PORT_NAME_WORKER = "worker"

# =============================================================================
# Probes and lifecycle
# =============================================================================

LIVENESS_INITIAL_DELAY = 15
LIVENESS_PERIOD = 300
LIVENESS_TIMEOUT = 60
LIVENESS_FAILURE_THRESHOLD = 5
GRACEFUL_SHUTDOWN_DELAY = 10

# =============================================================================
# Storage
# =============================================================================

DEFAULT_MASTER_STORAGE_SIZE = "10Gi"
DEFAULT_WORKER_STORAGE_SIZE = "20Gi"
DEFAULT_ACCESS_MODE = "ReadWriteOnce"
DEFAULT_BLOCK_SIZE = "128MB"
CONFIG_FILE_MODE = 0o644
VOLUME_MEDIUM_MEMORY = "Memory"

VOLUME_NAME_CONFIG = "conf"
VOLUME_NAME_META_DATA = "meta-data"
VOLUME_NAME_JOURNAL_DATA = "journal-data"
VOLUME_NAME_DATA_DIR_PREFIX = "data-dir-"

# =============================================================================
# Labels and names
# =============================================================================

LABEL_APP = "app"
LABEL_COMPONENT = "component"
LABEL_TYPE = "type"
LABEL_TYPE_VALUE = "kubetier-managed"
LABEL_SERVICE_TYPE = "service-type"

COMPONENT_MASTER = "master"
COMPONENT_WORKER = "worker"
COMPONENT_CONFIG = "config"

# Each tier runs exactly one container, named after the tier.
CONTAINER_NAME_MASTER = "master"
CONTAINER_NAME_WORKER = "worker"

SUFFIX_MASTER = "-master"
SUFFIX_WORKER = "-worker"
SUFFIX_HEADLESS = "-master-headless"
SUFFIX_CONFIG = "-config"

MAX_CLUSTER_ID_LENGTH = 45

# =============================================================================
# Pod scheduling
# =============================================================================

POD_MANAGEMENT_POLICY = "Parallel"
DNS_POLICY_HOST_NETWORK = "ClusterFirstWithHostNet"
TOPOLOGY_KEY_HOSTNAME = "kubernetes.io/hostname"
INIT_CONTAINER_IMAGE = "busybox:1.36"
ANTI_AFFINITY_WEIGHT = 100

# =============================================================================
# Enumerations accepted by the validator
# =============================================================================

SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")
IMAGE_PULL_POLICIES = ("Always", "IfNotPresent", "Never")

# =============================================================================
# Readiness polling
# =============================================================================

FAILURE_WAITING_REASONS = ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull")
MAX_RESTARTS_BEFORE_FAILURE = 5
RESTART_GRACE_SECONDS = 30


def master_name(cluster_id: str) -> str:
    return f"{cluster_id}{SUFFIX_MASTER}"


def worker_name(cluster_id: str) -> str:
    return f"{cluster_id}{SUFFIX_WORKER}"


def headless_name(cluster_id: str) -> str:
    return f"{cluster_id}{SUFFIX_HEADLESS}"


def configmap_name(cluster_id: str) -> str:
    return f"{cluster_id}{SUFFIX_CONFIG}"
