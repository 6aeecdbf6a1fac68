"""
Cluster Specification Models

ClusterSpec is the canonical, fully-resolved description of one cluster. It
is produced by the override resolver, checked by the validator and consumed
by the manifest builders. Nothing downstream of the resolver reads raw
configuration layers.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import (
    COMPONENT_MASTER,
    COMPONENT_WORKER,
    DEFAULT_CLUSTER_DOMAIN,
    DEFAULT_MASTER_STORAGE_SIZE,
    DEFAULT_WORKER_STORAGE_SIZE,
    IMAGE_PULL_POLICIES,
    SERVICE_TYPES,
)
from .errors import InvalidEnumValue
from .store_config import AppConfig

DEFAULT_IMAGE = "docker.io/kubetier/store:latest"

TIERS = (COMPONENT_MASTER, COMPONENT_WORKER)


class ServiceType(str, Enum):
    """
    Kubernetes Service types supported for the master service.

    Attributes:
        CLUSTER_IP: Reachable inside the cluster only
        NODE_PORT: Exposed on every node
        LOAD_BALANCER: Provisioned by the cloud provider
    """

    CLUSTER_IP = "ClusterIP"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"

    @classmethod
    def from_string(cls, value: str, field: str = "service.type") -> "ServiceType":
        """
        Convert a string to ServiceType.

        Raises:
            InvalidEnumValue: If value is not a supported service type
        """
        for service_type in cls:
            if service_type.value == value:
                return service_type
        raise InvalidEnumValue(field, value, SERVICE_TYPES)

    def __str__(self) -> str:
        return self.value


class ImagePullPolicy(str, Enum):
    ALWAYS = "Always"
    IF_NOT_PRESENT = "IfNotPresent"
    NEVER = "Never"

    @classmethod
    def from_string(cls, value: str, field: str = "image_pull_policy") -> "ImagePullPolicy":
        for policy in cls:
            if policy.value == value:
                return policy
        raise InvalidEnumValue(field, value, IMAGE_PULL_POLICIES)

    def __str__(self) -> str:
        return self.value


def _stringify_mapping(value: Any) -> Any:
    """YAML turns `cpu: 1` or `DEBUG: true` into numbers/bools; keep them as strings."""
    if not isinstance(value, dict):
        return value
    result = {}
    for key, item in value.items():
        if isinstance(item, bool):
            item = str(item).lower()
        elif isinstance(item, (int, float)):
            item = str(item)
        result[str(key)] = item
    return result


class ResourceSpec(BaseModel):
    """Container requests and limits keyed by resource name (cpu, memory)."""

    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)

    @field_validator("requests", "limits", mode="before")
    @classmethod
    def stringify_quantities(cls, v):
        return _stringify_mapping(v)


class TierSpec(BaseModel):
    """Settings shared by the master and worker tiers."""

    replicas: int
    image: str = DEFAULT_IMAGE
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    storage_class: Optional[str] = None
    storage_size: str = DEFAULT_MASTER_STORAGE_SIZE
    service_account: Optional[str] = None
    priority_class: Optional[str] = None
    dns_policy: Optional[str] = None
    graceful_shutdown: bool = True
    pod_template: Optional[str] = None  # Path the patch was loaded from
    pod_template_patch: Optional[Dict[str, Any]] = None

    @field_validator("labels", "annotations", "node_selector", "env", mode="before")
    @classmethod
    def stringify_values(cls, v):
        return _stringify_mapping(v)

    @field_validator("storage_size", mode="before")
    @classmethod
    def stringify_size(cls, v):
        return str(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else v


class MasterSpec(TierSpec):
    replicas: int = 3
    resources: ResourceSpec = Field(default_factory=lambda: ResourceSpec(
        requests={"cpu": "1000m", "memory": "2Gi"},
        limits={"cpu": "1000m", "memory": "2Gi"},
    ))


class WorkerSpec(TierSpec):
    replicas: int = 3
    storage_size: str = DEFAULT_WORKER_STORAGE_SIZE
    resources: ResourceSpec = Field(default_factory=lambda: ResourceSpec(
        requests={"cpu": "500m", "memory": "1Gi"},
        limits={"cpu": "500m", "memory": "1Gi"},
    ))
    host_network: bool = False
    init_container: bool = False
    anti_affinity: bool = False


class ServiceSpec(BaseModel):
    type: str = ServiceType.CLUSTER_IP.value
    annotations: Dict[str, str] = Field(default_factory=dict)
    external_ips: List[str] = Field(default_factory=list)
    session_affinity: Optional[str] = None
    load_balancer_source_ranges: List[str] = Field(default_factory=list)

    @field_validator("annotations", mode="before")
    @classmethod
    def stringify_annotations(cls, v):
        return _stringify_mapping(v)


class ClusterSpec(BaseModel):
    """
    Canonical description of one cluster.

    field_sources maps each dotted field path set by a configuration layer to
    that layer's name; paths missing from it still hold their defaults.
    """

    cluster_id: str
    namespace: str = "default"
    cluster_domain: str = DEFAULT_CLUSTER_DOMAIN
    image_pull_policy: str = ImagePullPolicy.IF_NOT_PRESENT.value
    image_pull_secrets: List[str] = Field(default_factory=list)
    master: MasterSpec = Field(default_factory=MasterSpec)
    worker: WorkerSpec = Field(default_factory=WorkerSpec)
    service: ServiceSpec = Field(default_factory=ServiceSpec)
    app_config: AppConfig = Field(default_factory=AppConfig)
    field_sources: Dict[str, str] = Field(default_factory=dict)

    def tier(self, name: str) -> TierSpec:
        """Return the master or worker tier by name."""
        if name == COMPONENT_MASTER:
            return self.master
        if name == COMPONENT_WORKER:
            return self.worker
        raise KeyError(name)

    def is_set(self, path: str) -> bool:
        """True when some configuration layer set the dotted field path or anything below it."""
        if path in self.field_sources:
            return True
        prefix = path + "."
        return any(source.startswith(prefix) for source in self.field_sources)
