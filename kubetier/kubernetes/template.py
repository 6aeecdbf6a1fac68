"""
Pod Templates and Pod Spec Fragments

A PodSpecFragment is the part of a pod template that both the builders and
user-supplied pod templates may contribute to: volumes, the tier container's
mounts and environment, scheduling and security settings, pod labels and
annotations. The builders describe their defaults as a fragment, the user's
template is parsed into a fragment, and the merger combines the two before
the fragment is rendered into a V1PodTemplateSpec.

Images, args, ports and replica counts are never part of a fragment; a pod
template cannot change them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from kubernetes import client

from ..errors import ContainerNameMismatch, DisallowedContainer, TemplateError
from .helpers import from_plain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PodSpecFragment:
    """
    Pod-spec-shaped settings for one tier container.

    Collections are tuples so a fragment is never modified after creation;
    merging produces a new fragment. Fields left as None are "not specified".
    """

    container_name: str
    volumes: Tuple[client.V1Volume, ...] = ()
    volume_mounts: Tuple[client.V1VolumeMount, ...] = ()
    env: Tuple[client.V1EnvVar, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    tolerations: Optional[Tuple[client.V1Toleration, ...]] = None
    security_context: Optional[client.V1SecurityContext] = None
    pod_security_context: Optional[client.V1PodSecurityContext] = None
    node_selector: Optional[Mapping[str, str]] = None
    affinity: Optional[client.V1Affinity] = None
    priority_class_name: Optional[str] = None
    service_account_name: Optional[str] = None
    dns_policy: Optional[str] = None
    resources: Optional[client.V1ResourceRequirements] = None
    liveness_probe: Optional[client.V1Probe] = None
    lifecycle: Optional[client.V1Lifecycle] = None

    def volume_names(self) -> List[str]:
        return [volume.name for volume in self.volumes]

    def mount_paths(self) -> Dict[str, str]:
        return {mount.name: mount.mount_path for mount in self.volume_mounts}


def load_pod_template(path: str) -> Dict[str, Any]:
    """
    Read a pod template YAML file.

    Raises:
        TemplateError: If the file is unreadable or not a YAML mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise TemplateError(path, str(e)) from e
    except yaml.YAMLError as e:
        raise TemplateError(path, f"invalid YAML: {e}") from e

    if not isinstance(document, dict):
        raise TemplateError(path, "expected a Pod or pod template mapping")
    logger.info(f"[TEMPLATE] Loaded pod template {path}")
    return document


def parse_pod_template(document: Mapping[str, Any], path: Optional[str] = None) -> client.V1PodTemplateSpec:
    """
    Parse a Pod manifest or pod template mapping into a V1PodTemplateSpec.

    Raises:
        TemplateError: Missing spec/containers or content the models reject
    """
    spec = document.get("spec")
    if not isinstance(spec, Mapping):
        raise TemplateError(path, "missing pod spec")
    if not spec.get("containers"):
        raise TemplateError(path, "pod spec defines no containers")

    try:
        return from_plain(
            {"metadata": document.get("metadata") or {}, "spec": spec},
            "V1PodTemplateSpec"
        )
    except (ValueError, TypeError) as e:
        raise TemplateError(path, str(e)) from e


def fragment_from_template(
    document: Mapping[str, Any],
    tier: str,
    container_name: str,
    path: Optional[str] = None
) -> PodSpecFragment:
    """
    Turn a user pod template into a fragment for the tier's container.

    Args:
        document: Raw pod template mapping
        tier: Tier name, for error context
        container_name: The one container the template may decorate
        path: File the template came from, for error context

    Returns:
        PodSpecFragment holding only what the template specified

    Raises:
        ContainerNameMismatch: The expected container is missing
        DisallowedContainer: Any other container or init container is present
        TemplateError: The template is not a valid pod specification
    """
    template = parse_pod_template(document, path)
    pod_spec = template.spec
    names = [container.name for container in pod_spec.containers]

    if container_name not in names:
        raise ContainerNameMismatch(tier, container_name, names)
    for name in names:
        if name != container_name:
            raise DisallowedContainer(tier, name)
    for init_container in pod_spec.init_containers or []:
        raise DisallowedContainer(tier, init_container.name)

    container = pod_spec.containers[names.index(container_name)]
    metadata = template.metadata or client.V1ObjectMeta()

    return PodSpecFragment(
        container_name=container_name,
        volumes=tuple(pod_spec.volumes or ()),
        volume_mounts=tuple(container.volume_mounts or ()),
        env=tuple(container.env or ()),
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
        tolerations=tuple(pod_spec.tolerations) if pod_spec.tolerations is not None else None,
        security_context=container.security_context,
        pod_security_context=pod_spec.security_context,
        node_selector=dict(pod_spec.node_selector) if pod_spec.node_selector is not None else None,
        affinity=pod_spec.affinity,
        priority_class_name=pod_spec.priority_class_name,
        service_account_name=pod_spec.service_account_name,
        dns_policy=pod_spec.dns_policy,
        resources=container.resources,
        liveness_probe=container.liveness_probe,
        lifecycle=container.lifecycle,
    )


def template_container_names(document: Optional[Mapping[str, Any]]) -> List[str]:
    """Container names declared in a raw template, without full parsing."""
    if not isinstance(document, Mapping):
        return []
    spec = document.get("spec")
    if not isinstance(spec, Mapping):
        return []
    containers = spec.get("containers") or []
    return [c.get("name") for c in containers if isinstance(c, Mapping)]


def render_pod_template(
    fragment: PodSpecFragment,
    container: client.V1Container,
    selector_labels: Mapping[str, str],
    **pod_spec_fields: Any
) -> client.V1PodTemplateSpec:
    """
    Render a merged fragment into a V1PodTemplateSpec.

    Args:
        fragment: Merged fragment for the tier
        container: Tier container carrying image, args and ports
        selector_labels: Labels the StatefulSet selector relies on; always win
        **pod_spec_fields: Extra V1PodSpec fields (init_containers, host_network, ...)

    Returns:
        V1PodTemplateSpec
    """
    container.volume_mounts = list(fragment.volume_mounts) or None
    container.env = list(fragment.env) or None
    container.security_context = fragment.security_context
    container.resources = fragment.resources
    container.liveness_probe = fragment.liveness_probe
    container.lifecycle = fragment.lifecycle

    labels = dict(fragment.labels)
    labels.update(selector_labels)

    pod_spec = client.V1PodSpec(
        containers=[container],
        volumes=list(fragment.volumes) or None,
        tolerations=list(fragment.tolerations) if fragment.tolerations is not None else None,
        security_context=fragment.pod_security_context,
        node_selector=dict(fragment.node_selector) if fragment.node_selector else None,
        affinity=fragment.affinity,
        priority_class_name=fragment.priority_class_name,
        service_account_name=fragment.service_account_name,
        dns_policy=fragment.dns_policy,
        **pod_spec_fields
    )

    return client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(
            labels=dict(sorted(labels.items())),
            annotations=dict(sorted(fragment.annotations.items())) or None
        ),
        spec=pod_spec
    )
