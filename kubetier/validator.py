"""
ClusterSpec Validator

Checks a resolved ClusterSpec before any manifest is built or any API call is
made. Each check raises its own ValidationError subclass; the first
violation wins.

On update the live ClusterDescriptor is passed in, and master.replicas must
equal the live value regardless of parity.
"""

import logging
import re
from typing import TYPE_CHECKING, Optional

from kubernetes.utils import parse_quantity

from .constants import (
    COMPONENT_MASTER,
    COMPONENT_WORKER,
    CONTAINER_NAME_MASTER,
    CONTAINER_NAME_WORKER,
    MAX_CLUSTER_ID_LENGTH,
)
from .errors import (
    ContainerNameMismatch,
    ImmutableFieldError,
    InvalidClusterId,
    InvalidFieldValue,
    InvalidResourceQuantity,
    ReplicaParityError,
)
from .kubernetes.template import template_container_names
from .models import ClusterSpec, ImagePullPolicy, ServiceType
from .store_config import parse_size_string

if TYPE_CHECKING:
    from .cluster.descriptor import ClusterDescriptor

logger = logging.getLogger(__name__)

_CLUSTER_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

EXPECTED_CONTAINERS = {
    COMPONENT_MASTER: CONTAINER_NAME_MASTER,
    COMPONENT_WORKER: CONTAINER_NAME_WORKER,
}


def validate_cluster_id(cluster_id: str) -> None:
    if len(cluster_id) > MAX_CLUSTER_ID_LENGTH:
        raise InvalidClusterId(cluster_id, f"longer than {MAX_CLUSTER_ID_LENGTH} characters")
    if not _CLUSTER_ID_PATTERN.match(cluster_id):
        raise InvalidClusterId(
            cluster_id,
            "must be lowercase alphanumerics or '-', starting and ending with an alphanumeric"
        )


def validate_quantity(field: str, value: Optional[str]) -> None:
    """A positive Kubernetes quantity: 500m, 2, 1.5Gi, 10G."""
    try:
        quantity = parse_quantity(value)
    except (ValueError, TypeError):
        raise InvalidResourceQuantity(field, value)
    if not quantity.is_finite() or quantity <= 0:
        raise InvalidResourceQuantity(field, value)


def _validate_master_replicas(spec: ClusterSpec, live: Optional["ClusterDescriptor"]) -> None:
    replicas = spec.master.replicas
    live_replicas = live.master_replicas if live is not None else None
    if live_replicas is not None and replicas != live_replicas:
        raise ImmutableFieldError("master.replicas", live_replicas, replicas)
    if replicas < 1 or replicas % 2 == 0:
        raise ReplicaParityError("master.replicas", replicas)


def _validate_resources(spec: ClusterSpec) -> None:
    for tier_name in (COMPONENT_MASTER, COMPONENT_WORKER):
        tier = spec.tier(tier_name)
        for section_name in ("requests", "limits"):
            section = getattr(tier.resources, section_name)
            for resource in sorted(section):
                validate_quantity(f"{tier_name}.resources.{section_name}.{resource}", section[resource])
        validate_quantity(f"{tier_name}.storage_size", tier.storage_size)


def _validate_data_dirs(spec: ClusterSpec) -> None:
    try:
        block_size = parse_size_string(spec.app_config.client.block_size)
    except ValueError:
        raise InvalidFieldValue("client.block_size", spec.app_config.client.block_size, "not a size")

    for index, entry in enumerate(spec.app_config.worker.data_dir):
        field = f"worker.data_dir[{index}]"
        try:
            data_dir = spec.app_config.data_dirs()[index]
        except ValueError as e:
            raise InvalidFieldValue(field, entry, str(e))
        if data_dir.is_memory and data_dir.capacity < block_size:
            raise InvalidFieldValue(
                field, entry,
                f"memory data dirs need a capacity of at least the block size ({spec.app_config.client.block_size})"
            )


def _validate_templates(spec: ClusterSpec) -> None:
    for tier_name, expected in EXPECTED_CONTAINERS.items():
        patch = spec.tier(tier_name).pod_template_patch
        if not patch:
            continue
        names = template_container_names(patch)
        if expected not in names:
            raise ContainerNameMismatch(tier_name, expected, names)


def validate(spec: ClusterSpec, live: Optional["ClusterDescriptor"] = None) -> None:
    """
    Validate a resolved ClusterSpec.

    Args:
        spec: Resolved specification
        live: Live descriptor when validating an update

    Raises:
        InvalidClusterId: cluster_id violates the resource-name grammar
        ImmutableFieldError: master.replicas differs from the live value
        ReplicaParityError: master.replicas is not a positive odd integer
        InvalidFieldValue: worker.replicas < 1 or a bad data dir
        InvalidEnumValue: Unknown service type or image pull policy
        InvalidResourceQuantity: cpu/memory/storage quantity does not parse
        ContainerNameMismatch: Pod template lacks the tier container
    """
    validate_cluster_id(spec.cluster_id)
    _validate_master_replicas(spec, live)
    if spec.worker.replicas < 1:
        raise InvalidFieldValue("worker.replicas", spec.worker.replicas, "must be at least 1")
    ServiceType.from_string(spec.service.type)
    ImagePullPolicy.from_string(spec.image_pull_policy)
    _validate_resources(spec)
    _validate_data_dirs(spec)
    _validate_templates(spec)
    logger.debug(f"[VALIDATE] {spec.cluster_id}: specification is valid")
