"""
Manifest Builders

Pure functions mapping a validated ClusterSpec to Kubernetes resource
definitions:

- build_configmap: `<id>-config` holding the rendered storage configuration
- build_service: `<id>-master` client service and `<id>-master-headless`
  governing service
- build_master: `<id>-master` StatefulSet (metadata/journal quorum)
- build_worker: `<id>-worker` StatefulSet (data tier)

Pod templates are assembled in two steps: the builder describes its defaults
as a PodSpecFragment, the user's pod template (if any) is merged over it, and
the merged fragment is rendered together with the tier container. No builder
issues API calls.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import yaml
from kubernetes import client

from ..constants import (
    ANTI_AFFINITY_WEIGHT,
    APP_HOME,
    COMPONENT_CONFIG,
    COMPONENT_MASTER,
    COMPONENT_WORKER,
    CONFIG_FILE_MODE,
    CONFIG_FILE_NAME,
    CONTAINER_NAME_MASTER,
    CONTAINER_NAME_WORKER,
    DEFAULT_ACCESS_MODE,
    DNS_POLICY_HOST_NETWORK,
    INIT_CONTAINER_IMAGE,
    LABEL_SERVICE_TYPE,
    MASTER_WEB1_PORT,
    POD_MANAGEMENT_POLICY,
    PORT_NAME_JOURNAL,
    PORT_NAME_RPC,
    PORT_NAME_WEB,
    PORT_NAME_WEB1,
    PORT_NAME_WORKER,
    STORE_CONF_FILE,
    TOPOLOGY_KEY_HOSTNAME,
    VOLUME_MEDIUM_MEMORY,
    VOLUME_NAME_CONFIG,
    VOLUME_NAME_DATA_DIR_PREFIX,
    VOLUME_NAME_JOURNAL_DATA,
    VOLUME_NAME_META_DATA,
    configmap_name,
    headless_name,
    master_name,
    worker_name,
)
from ..models import ClusterSpec, TierSpec
from ..store_config import format_bytes, render_cluster_config, resolve_store_path
from .helpers import (
    build_env_vars,
    build_graceful_lifecycle,
    build_liveness_probe,
    build_resource_requirements,
    get_selector_labels,
    get_standard_labels,
)
from .merger import merge
from .template import PodSpecFragment, fragment_from_template, render_pod_template

logger = logging.getLogger(__name__)


@dataclass
class ManifestSet:
    """Every resource of one cluster, as synthesized from a ClusterSpec."""

    configmap: client.V1ConfigMap
    service: client.V1Service
    headless_service: client.V1Service
    master: client.V1StatefulSet
    worker: client.V1StatefulSet

    def resources(self) -> Iterator[Tuple[str, object]]:
        """(kind, resource) pairs in creation order."""
        yield "ConfigMap", self.configmap
        yield "Service", self.service
        yield "Service", self.headless_service
        yield "StatefulSet", self.master
        yield "StatefulSet", self.worker


# =============================================================================
# Shared pieces
# =============================================================================

def _config_volume(spec: ClusterSpec) -> client.V1Volume:
    return client.V1Volume(
        name=VOLUME_NAME_CONFIG,
        config_map=client.V1ConfigMapVolumeSource(
            name=configmap_name(spec.cluster_id),
            default_mode=CONFIG_FILE_MODE
        )
    )


def _config_mount() -> client.V1VolumeMount:
    return client.V1VolumeMount(
        name=VOLUME_NAME_CONFIG,
        mount_path=STORE_CONF_FILE,
        sub_path=CONFIG_FILE_NAME,
        read_only=True
    )


def _claim_template(
    name: str,
    spec: ClusterSpec,
    component: str,
    size: str,
    storage_class: Optional[str]
) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=name,
            labels=get_standard_labels(spec.cluster_id, component)
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=[DEFAULT_ACCESS_MODE],
            storage_class_name=storage_class,
            resources=client.V1ResourceRequirements(requests={"storage": size})
        )
    )


def _base_fragment(spec: ClusterSpec, tier: TierSpec, component: str, container_name: str) -> dict:
    """Fragment fields both tiers derive the same way."""
    labels = dict(tier.labels)
    labels.update(get_standard_labels(spec.cluster_id, component))
    return dict(
        container_name=container_name,
        env=tuple(build_env_vars(
            component, spec.cluster_id, spec.namespace, spec.cluster_domain, tier.env
        )),
        labels=labels,
        annotations=dict(tier.annotations),
        node_selector=dict(tier.node_selector) or None,
        priority_class_name=tier.priority_class,
        service_account_name=tier.service_account,
        dns_policy=tier.dns_policy,
        resources=build_resource_requirements(tier.resources.requests, tier.resources.limits),
        liveness_probe=build_liveness_probe(),
        lifecycle=build_graceful_lifecycle(component) if tier.graceful_shutdown else None,
    )


def _merged_fragment(spec: ClusterSpec, component: str, builder_fragment: PodSpecFragment) -> PodSpecFragment:
    tier = spec.tier(component)
    if not tier.pod_template_patch:
        return builder_fragment
    patch = fragment_from_template(
        tier.pod_template_patch, component, builder_fragment.container_name, tier.pod_template
    )
    return merge(builder_fragment, patch)


def _pull_secrets(spec: ClusterSpec) -> Optional[List[client.V1LocalObjectReference]]:
    return [client.V1LocalObjectReference(name=name) for name in spec.image_pull_secrets] or None


# =============================================================================
# Master
# =============================================================================

def master_fragment(spec: ClusterSpec) -> PodSpecFragment:
    """Builder defaults for the master pod."""
    app = spec.app_config
    return PodSpecFragment(
        volumes=(_config_volume(spec),),
        volume_mounts=(
            _config_mount(),
            client.V1VolumeMount(name=VOLUME_NAME_META_DATA, mount_path=resolve_store_path(app.master.meta_dir)),
            client.V1VolumeMount(name=VOLUME_NAME_JOURNAL_DATA, mount_path=resolve_store_path(app.journal.journal_dir)),
        ),
        **_base_fragment(spec, spec.master, COMPONENT_MASTER, CONTAINER_NAME_MASTER)
    )


def build_master(spec: ClusterSpec) -> client.V1StatefulSet:
    """
    Build the master StatefulSet.

    Args:
        spec: Validated cluster specification

    Returns:
        V1StatefulSet named `<id>-master`

    Raises:
        MergeError/ContainerNameMismatch: If the master pod template cannot be merged
    """
    app = spec.app_config
    fragment = _merged_fragment(spec, COMPONENT_MASTER, master_fragment(spec))

    container = client.V1Container(
        name=CONTAINER_NAME_MASTER,
        image=spec.master.image,
        image_pull_policy=spec.image_pull_policy,
        args=[COMPONENT_MASTER],
        working_dir=APP_HOME,
        ports=[
            client.V1ContainerPort(name=PORT_NAME_RPC, container_port=app.master.rpc_port, protocol="TCP"),
            client.V1ContainerPort(name=PORT_NAME_JOURNAL, container_port=app.journal.rpc_port, protocol="TCP"),
            client.V1ContainerPort(name=PORT_NAME_WEB, container_port=app.master.web_port, protocol="TCP"),
            client.V1ContainerPort(name=PORT_NAME_WEB1, container_port=MASTER_WEB1_PORT, protocol="TCP"),
        ]
    )

    selector = get_selector_labels(spec.cluster_id, COMPONENT_MASTER)
    pod_template = render_pod_template(
        fragment, container, selector,
        image_pull_secrets=_pull_secrets(spec)
    )

    return client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=client.V1ObjectMeta(
            name=master_name(spec.cluster_id),
            namespace=spec.namespace,
            labels=get_standard_labels(spec.cluster_id, COMPONENT_MASTER)
        ),
        spec=client.V1StatefulSetSpec(
            replicas=spec.master.replicas,
            service_name=headless_name(spec.cluster_id),
            pod_management_policy=POD_MANAGEMENT_POLICY,
            selector=client.V1LabelSelector(match_labels=selector),
            template=pod_template,
            volume_claim_templates=[
                _claim_template(VOLUME_NAME_META_DATA, spec, COMPONENT_MASTER,
                                spec.master.storage_size, spec.master.storage_class),
                _claim_template(VOLUME_NAME_JOURNAL_DATA, spec, COMPONENT_MASTER,
                                spec.master.storage_size, spec.master.storage_class),
            ]
        )
    )


# =============================================================================
# Worker
# =============================================================================

def worker_fragment(spec: ClusterSpec) -> PodSpecFragment:
    """Builder defaults for the worker pod: config plus one volume per data dir."""
    worker = spec.worker
    volumes = [_config_volume(spec)]
    mounts = [_config_mount()]

    for index, data_dir in enumerate(spec.app_config.data_dirs()):
        name = f"{VOLUME_NAME_DATA_DIR_PREFIX}{index}"
        if data_dir.is_memory:
            volumes.append(client.V1Volume(
                name=name,
                empty_dir=client.V1EmptyDirVolumeSource(
                    medium=VOLUME_MEDIUM_MEMORY,
                    size_limit=format_bytes(data_dir.capacity) if data_dir.capacity else None
                )
            ))
        mounts.append(client.V1VolumeMount(name=name, mount_path=data_dir.path))

    fields = _base_fragment(spec, worker, COMPONENT_WORKER, CONTAINER_NAME_WORKER)
    if worker.host_network and not worker.dns_policy:
        fields["dns_policy"] = DNS_POLICY_HOST_NETWORK

    affinity = None
    if worker.anti_affinity:
        affinity = client.V1Affinity(
            pod_anti_affinity=client.V1PodAntiAffinity(
                preferred_during_scheduling_ignored_during_execution=[
                    client.V1WeightedPodAffinityTerm(
                        weight=ANTI_AFFINITY_WEIGHT,
                        pod_affinity_term=client.V1PodAffinityTerm(
                            label_selector=client.V1LabelSelector(
                                match_labels=get_selector_labels(spec.cluster_id, COMPONENT_WORKER)
                            ),
                            topology_key=TOPOLOGY_KEY_HOSTNAME
                        )
                    )
                ]
            )
        )

    return PodSpecFragment(
        volumes=tuple(volumes),
        volume_mounts=tuple(mounts),
        security_context=client.V1SecurityContext(privileged=True),
        affinity=affinity,
        **fields
    )


def _wait_for_master_init_container(spec: ClusterSpec) -> client.V1Container:
    host = f"{master_name(spec.cluster_id)}-0.{headless_name(spec.cluster_id)}.{spec.namespace}.svc.{spec.cluster_domain}"
    port = spec.app_config.master.rpc_port
    return client.V1Container(
        name="wait-for-master",
        image=INIT_CONTAINER_IMAGE,
        command=["sh", "-c"],
        args=[f"until nc -z {host} {port}; do echo waiting for master; sleep 2; done"]
    )


def build_worker(spec: ClusterSpec) -> client.V1StatefulSet:
    """
    Build the worker StatefulSet.

    Memory data dirs become emptyDir volumes; every other data dir gets a
    volume claim template sized by its declared capacity, or the tier storage
    size when it declares none.

    Args:
        spec: Validated cluster specification

    Returns:
        V1StatefulSet named `<id>-worker`
    """
    worker = spec.worker
    app = spec.app_config
    fragment = _merged_fragment(spec, COMPONENT_WORKER, worker_fragment(spec))

    container = client.V1Container(
        name=CONTAINER_NAME_WORKER,
        image=worker.image,
        image_pull_policy=spec.image_pull_policy,
        args=[COMPONENT_WORKER],
        working_dir=APP_HOME,
        ports=[
            client.V1ContainerPort(name=PORT_NAME_RPC, container_port=app.worker.rpc_port, protocol="TCP"),
            client.V1ContainerPort(name=PORT_NAME_WEB, container_port=app.worker.web_port, protocol="TCP"),
        ]
    )

    claim_templates = []
    for index, data_dir in enumerate(app.data_dirs()):
        if data_dir.is_memory:
            continue
        size = format_bytes(data_dir.capacity) if data_dir.capacity else worker.storage_size
        claim_templates.append(_claim_template(
            f"{VOLUME_NAME_DATA_DIR_PREFIX}{index}", spec, COMPONENT_WORKER, size, worker.storage_class
        ))

    selector = get_selector_labels(spec.cluster_id, COMPONENT_WORKER)
    pod_template = render_pod_template(
        fragment, container, selector,
        image_pull_secrets=_pull_secrets(spec),
        init_containers=[_wait_for_master_init_container(spec)] if worker.init_container else None,
        host_network=True if worker.host_network else None
    )

    return client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=client.V1ObjectMeta(
            name=worker_name(spec.cluster_id),
            namespace=spec.namespace,
            labels=get_standard_labels(spec.cluster_id, COMPONENT_WORKER)
        ),
        spec=client.V1StatefulSetSpec(
            replicas=worker.replicas,
            service_name=worker_name(spec.cluster_id),
            pod_management_policy=POD_MANAGEMENT_POLICY,
            selector=client.V1LabelSelector(match_labels=selector),
            template=pod_template,
            volume_claim_templates=claim_templates or None
        )
    )


# =============================================================================
# Services and ConfigMap
# =============================================================================

def _master_service_ports(spec: ClusterSpec) -> List[client.V1ServicePort]:
    app = spec.app_config
    return [
        client.V1ServicePort(name=PORT_NAME_RPC, port=app.master.rpc_port, target_port=app.master.rpc_port, protocol="TCP"),
        client.V1ServicePort(name=PORT_NAME_JOURNAL, port=app.journal.rpc_port, target_port=app.journal.rpc_port, protocol="TCP"),
        client.V1ServicePort(name=PORT_NAME_WEB, port=app.master.web_port, target_port=app.master.web_port, protocol="TCP"),
    ]


def _client_service_ports(spec: ClusterSpec) -> List[client.V1ServicePort]:
    """Master ports plus the worker rpc port."""
    worker_port = spec.app_config.worker.rpc_port
    return _master_service_ports(spec) + [
        client.V1ServicePort(name=PORT_NAME_WORKER, port=worker_port, target_port=worker_port, protocol="TCP"),
    ]


def build_service(spec: ClusterSpec) -> Tuple[client.V1Service, client.V1Service]:
    """
    Build the master client Service and the headless governing Service.

    Returns:
        (service `<id>-master`, headless service `<id>-master-headless`)
    """
    service_spec = spec.service
    selector = get_selector_labels(spec.cluster_id, COMPONENT_MASTER)

    service = client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=master_name(spec.cluster_id),
            namespace=spec.namespace,
            labels=get_standard_labels(spec.cluster_id, COMPONENT_MASTER),
            annotations=dict(service_spec.annotations) or None
        ),
        spec=client.V1ServiceSpec(
            type=service_spec.type,
            selector=selector,
            ports=_client_service_ports(spec),
            session_affinity=service_spec.session_affinity,
            external_i_ps=list(service_spec.external_ips) or None,
            load_balancer_source_ranges=list(service_spec.load_balancer_source_ranges) or None
        )
    )

    headless_labels = get_standard_labels(spec.cluster_id, COMPONENT_MASTER)
    headless_labels[LABEL_SERVICE_TYPE] = "headless"
    headless = client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=headless_name(spec.cluster_id),
            namespace=spec.namespace,
            labels=headless_labels
        ),
        spec=client.V1ServiceSpec(
            cluster_ip="None",
            publish_not_ready_addresses=True,
            selector=selector,
            ports=_master_service_ports(spec)
        )
    )
    return service, headless


def build_configmap(spec: ClusterSpec) -> client.V1ConfigMap:
    """
    Build the ConfigMap holding the rendered storage configuration.

    The blob is stored under the fixed key `cluster.yaml` and mounted into
    both StatefulSets, so masters and workers read the same topology.
    """
    rendered = render_cluster_config(
        spec.app_config,
        spec.cluster_id,
        spec.namespace,
        spec.master.replicas,
        spec.cluster_domain
    )
    return client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=client.V1ObjectMeta(
            name=configmap_name(spec.cluster_id),
            namespace=spec.namespace,
            labels=get_standard_labels(spec.cluster_id, COMPONENT_CONFIG)
        ),
        data={CONFIG_FILE_NAME: yaml.dump(rendered, default_flow_style=False, sort_keys=False)}
    )


def build_manifests(spec: ClusterSpec) -> ManifestSet:
    """Synthesize every resource of the cluster; any merge error aborts the whole set."""
    service, headless = build_service(spec)
    manifests = ManifestSet(
        configmap=build_configmap(spec),
        service=service,
        headless_service=headless,
        master=build_master(spec),
        worker=build_worker(spec),
    )
    logger.debug(f"[BUILD] Synthesized manifests for {spec.cluster_id} in {spec.namespace}")
    return manifests
