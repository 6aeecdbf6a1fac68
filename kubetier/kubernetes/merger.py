"""
Pod-Template Merger

Overlays a user pod template fragment onto a builder fragment. Every
PodSpecFragment field has an explicit, named merge strategy:

- union_by_name: volumes and env; on a name collision the template wins
- union_mounts_checked: volume mounts; like union_by_name, but a mount that
  both sides define must use the same path (MountPathMismatch otherwise)
- merge_mapping: labels and annotations; key union, template wins
- override: everything else; the template value replaces the builder value
  when the template specifies it

The merger never mutates its inputs. Any error aborts the merge, so a
partially merged fragment is never returned.
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from ..errors import ContainerNameMismatch, MountPathMismatch
from .template import PodSpecFragment

logger = logging.getLogger(__name__)

Strategy = Callable[[str, Any, Any], Any]


def override(field: str, builder_value: Any, patch_value: Any) -> Any:
    """Template value wins when present."""
    return builder_value if patch_value is None else patch_value


def merge_mapping(field: str, builder_value: Optional[Mapping], patch_value: Optional[Mapping]) -> Dict[str, Any]:
    """Key union, template wins on collisions."""
    merged = dict(builder_value or {})
    merged.update(patch_value or {})
    return merged


def union_by_name(field: str, builder_items: Sequence[Any], patch_items: Sequence[Any]) -> Tuple[Any, ...]:
    """
    Union of named items.

    Builder items keep their position (replaced in place on a collision);
    template-only items follow in template order.
    """
    patch_by_name = {item.name: item for item in patch_items or ()}
    merged = [patch_by_name.get(item.name, item) for item in builder_items or ()]
    builder_names = {item.name for item in builder_items or ()}
    merged.extend(item for item in patch_items or () if item.name not in builder_names)
    return tuple(merged)


def union_mounts_checked(field: str, builder_mounts: Sequence[Any], patch_mounts: Sequence[Any]) -> Tuple[Any, ...]:
    """
    Union of volume mounts with a mount-path consistency check.

    Raises:
        MountPathMismatch: A mount name present on both sides with different paths
    """
    builder_paths = {mount.name: mount.mount_path for mount in builder_mounts or ()}
    for mount in patch_mounts or ():
        builder_path = builder_paths.get(mount.name)
        if builder_path is not None and builder_path != mount.mount_path:
            raise MountPathMismatch(mount.name, builder_path, mount.mount_path)
    return union_by_name(field, builder_mounts, patch_mounts)


# Field -> strategy; every PodSpecFragment field except container_name is listed.
FIELD_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("volumes", union_by_name),
    ("volume_mounts", union_mounts_checked),
    ("env", union_by_name),
    ("labels", merge_mapping),
    ("annotations", merge_mapping),
    ("tolerations", override),
    ("security_context", override),
    ("pod_security_context", override),
    ("node_selector", override),
    ("affinity", override),
    ("priority_class_name", override),
    ("service_account_name", override),
    ("dns_policy", override),
    ("resources", override),
    ("liveness_probe", override),
    ("lifecycle", override),
)


def merge(builder_fragment: PodSpecFragment, patch: Optional[PodSpecFragment] = None) -> PodSpecFragment:
    """
    Merge a template fragment into a builder fragment.

    Args:
        builder_fragment: Fragment generated by a manifest builder
        patch: Fragment parsed from the user's pod template, if any

    Returns:
        New merged fragment (the builder fragment itself when patch is None)

    Raises:
        MergeError: Mount path mismatch
        ContainerNameMismatch: Fragments describe different containers
    """
    if patch is None:
        return builder_fragment

    if patch.container_name != builder_fragment.container_name:
        raise ContainerNameMismatch(
            builder_fragment.container_name,
            builder_fragment.container_name,
            [patch.container_name]
        )

    merged = {
        name: strategy(name, getattr(builder_fragment, name), getattr(patch, name))
        for name, strategy in FIELD_STRATEGIES
    }

    added = set(patch.volume_names()) - set(builder_fragment.volume_names())
    if added:
        logger.debug(f"[MERGE] {builder_fragment.container_name}: template adds volumes {sorted(added)}")

    return dataclasses.replace(builder_fragment, **merged)
