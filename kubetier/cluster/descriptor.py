"""
Cluster Descriptor

The live state of one cluster as read from the API server. A descriptor is
discovered fresh at the start of every status, update and delete invocation
and is never cached.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..constants import (
    COMPONENT_MASTER,
    COMPONENT_WORKER,
    configmap_name,
    headless_name,
    master_name,
    worker_name,
)
from ..kubernetes.client import KubernetesClient
from ..kubernetes.helpers import get_cluster_selector

logger = logging.getLogger(__name__)


def find_container(statefulset: Any, name: str) -> Optional[Any]:
    """Return the named container of a StatefulSet pod template, if present."""
    if statefulset is None:
        return None
    containers = statefulset.spec.template.spec.containers or []
    for container in containers:
        if container.name == name:
            return container
    return None


def ready_replicas(statefulset: Any) -> int:
    if statefulset is None or statefulset.status is None:
        return 0
    return statefulset.status.ready_replicas or 0


@dataclass
class ClusterDescriptor:
    """
    Discovered live state of a cluster.

    Each resource attribute holds the live V1 object or None when the
    resource is absent.
    """

    cluster_id: str
    namespace: str
    configmap: Optional[Any] = None
    service: Optional[Any] = None
    headless_service: Optional[Any] = None
    master: Optional[Any] = None
    worker: Optional[Any] = None

    @property
    def found(self) -> bool:
        """True when at least one resource of the cluster exists."""
        return any(
            resource is not None
            for resource in (self.configmap, self.service, self.headless_service, self.master, self.worker)
        )

    def statefulset(self, tier: str) -> Optional[Any]:
        if tier == COMPONENT_MASTER:
            return self.master
        if tier == COMPONENT_WORKER:
            return self.worker
        raise KeyError(tier)

    def resource(self, kind: str, name: str) -> Optional[Any]:
        """Look up a live resource by kind and name."""
        by_name = {
            ("ConfigMap", configmap_name(self.cluster_id)): self.configmap,
            ("Service", master_name(self.cluster_id)): self.service,
            ("Service", headless_name(self.cluster_id)): self.headless_service,
            ("StatefulSet", master_name(self.cluster_id)): self.master,
            ("StatefulSet", worker_name(self.cluster_id)): self.worker,
        }
        return by_name.get((kind, name))

    @property
    def master_replicas(self) -> Optional[int]:
        return self.master.spec.replicas if self.master is not None else None

    @property
    def worker_replicas(self) -> Optional[int]:
        return self.worker.spec.replicas if self.worker is not None else None

    @property
    def master_ready(self) -> int:
        return ready_replicas(self.master)

    @property
    def worker_ready(self) -> int:
        return ready_replicas(self.worker)

    @property
    def images(self) -> Dict[str, Optional[str]]:
        """Current image of each tier container."""
        images = {}
        for tier in (COMPONENT_MASTER, COMPONENT_WORKER):
            container = find_container(self.statefulset(tier), tier)
            images[tier] = container.image if container is not None else None
        return images

    @property
    def volumes(self) -> Dict[str, List[str]]:
        """Pod volume names of each tier, in template order."""
        volumes = {}
        for tier in (COMPONENT_MASTER, COMPONENT_WORKER):
            statefulset = self.statefulset(tier)
            if statefulset is None:
                volumes[tier] = []
                continue
            volumes[tier] = [volume.name for volume in statefulset.spec.template.spec.volumes or []]
        return volumes

    @property
    def service_type(self) -> Optional[str]:
        return self.service.spec.type if self.service is not None else None

    @property
    def created_at(self) -> Optional[Any]:
        for resource in (self.master, self.configmap, self.worker):
            if resource is not None:
                return resource.metadata.creation_timestamp
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Summary suitable for status output."""
        return {
            "cluster_id": self.cluster_id,
            "namespace": self.namespace,
            "master": {
                "exists": self.master is not None,
                "replicas": self.master_replicas,
                "ready": self.master_ready,
                "image": self.images[COMPONENT_MASTER],
            },
            "worker": {
                "exists": self.worker is not None,
                "replicas": self.worker_replicas,
                "ready": self.worker_ready,
                "image": self.images[COMPONENT_WORKER],
            },
            "service": {
                "exists": self.service is not None,
                "type": self.service_type,
                "headless": self.headless_service is not None,
            },
            "configmap": self.configmap is not None,
            "volumes": self.volumes,
        }


def _by_name(resources: List[Any]) -> Dict[str, Any]:
    return {resource.metadata.name: resource for resource in resources}


async def discover(client: KubernetesClient, cluster_id: str, namespace: str) -> ClusterDescriptor:
    """
    Read the live resources of a cluster.

    The StatefulSet, Service and ConfigMap list calls are issued concurrently
    with the cluster's label selector.

    Args:
        client: Kubernetes client
        cluster_id: Cluster identifier
        namespace: Kubernetes namespace

    Returns:
        ClusterDescriptor; `found` is False when nothing matched
    """
    selector = get_cluster_selector(cluster_id)
    statefulsets, services, configmaps = await asyncio.gather(
        client.list("StatefulSet", namespace, selector),
        client.list("Service", namespace, selector),
        client.list("ConfigMap", namespace, selector),
    )

    statefulsets = _by_name(statefulsets)
    services = _by_name(services)
    configmaps = _by_name(configmaps)

    descriptor = ClusterDescriptor(
        cluster_id=cluster_id,
        namespace=namespace,
        configmap=configmaps.get(configmap_name(cluster_id)),
        service=services.get(master_name(cluster_id)),
        headless_service=services.get(headless_name(cluster_id)),
        master=statefulsets.get(master_name(cluster_id)),
        worker=statefulsets.get(worker_name(cluster_id)),
    )
    logger.debug(
        f"[K8S] Discovered {cluster_id} in {namespace}: "
        f"master={descriptor.master_replicas} worker={descriptor.worker_replicas}"
    )
    return descriptor
