"""
Update Planner

Diffs the live ClusterDescriptor against freshly built manifests and turns
every difference into a PlanEntry:

- patch:  a mutable field changed; the entry carries its RFC 6902 ops
- reject: an immutable field changed; the whole plan is refused
- noop:   nothing to do

Entries are kept in apply order (ConfigMap, Services, master StatefulSet,
worker StatefulSet). A resource missing from the cluster is planned as a
patch of its `exists` field and is recreated from the manifest on apply.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import jsonpatch
from kubernetes.utils import parse_quantity

from ..constants import COMPONENT_MASTER, COMPONENT_WORKER, LABEL_APP
from ..errors import ImmutableFieldError, PatchConflict
from ..kubernetes.builders import ManifestSet
from ..kubernetes.helpers import to_plain
from .descriptor import ClusterDescriptor

logger = logging.getLogger(__name__)

PATCH = "patch"
REJECT = "reject"
NOOP = "noop"

CONTAINERS_PATH = "/spec/template/spec/containers"


@dataclass
class PlanEntry:
    """One field of one resource, with the action the update takes on it."""

    resource: str  # "<Kind>/<name>"
    field: str
    old: Any
    new: Any
    action: str
    ops: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.resource.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.resource.split("/", 1)[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "field": self.field,
            "old": self.old,
            "new": self.new,
            "action": self.action,
        }


@dataclass
class ResourcePatch:
    """The grouped change for one resource: JSON patch ops, or a full body to recreate."""

    kind: str
    name: str
    ops: List[Dict[str, Any]] = field(default_factory=list)
    body: Optional[Any] = None

    @property
    def recreate(self) -> bool:
        return self.body is not None


@dataclass
class UpdatePlan:
    """Ordered plan entries plus the live and desired documents they were derived from."""

    cluster_id: str
    namespace: str
    entries: List[PlanEntry] = field(default_factory=list)
    live_documents: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    desired_resources: Dict[str, Any] = field(default_factory=dict)

    @property
    def rejects(self) -> List[PlanEntry]:
        return [entry for entry in self.entries if entry.action == REJECT]

    @property
    def patch_entries(self) -> List[PlanEntry]:
        return [entry for entry in self.entries if entry.action == PATCH]

    @property
    def accepted(self) -> bool:
        return not self.rejects

    @property
    def verdict(self) -> str:
        return "accept" if self.accepted else "reject"

    @property
    def changed(self) -> bool:
        return bool(self.patch_entries)

    def raise_for_rejects(self) -> None:
        """
        Raises:
            ImmutableFieldError: For the first rejected entry, carrying this plan
        """
        if self.rejects:
            entry = self.rejects[0]
            raise ImmutableFieldError(entry.field, entry.old, entry.new, plan=self)

    def patches(self) -> List[ResourcePatch]:
        """
        Group patch entries per resource, in apply order.

        Every group of ops is applied to a copy of the live document first, so
        a plan that would not apply cleanly fails before any API call.

        Raises:
            ImmutableFieldError: The plan contains a reject
            PatchConflict: Ops do not apply to the live document
        """
        self.raise_for_rejects()

        grouped: Dict[str, ResourcePatch] = {}
        for entry in self.patch_entries:
            group = grouped.get(entry.resource)
            if group is None:
                group = ResourcePatch(entry.kind, entry.name)
                grouped[entry.resource] = group
            if entry.field == "exists":
                group.body = self.desired_resources[entry.resource]
            else:
                group.ops.extend(entry.ops)

        for resource, group in grouped.items():
            if group.recreate:
                continue
            try:
                jsonpatch.apply_patch(self.live_documents[resource], group.ops, in_place=False)
            except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as e:
                raise PatchConflict(group.kind, group.name, str(e)) from e

        return list(grouped.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "namespace": self.namespace,
            "verdict": self.verdict,
            "entries": [entry.to_dict() for entry in self.entries],
        }


# =============================================================================
# Comparison
# =============================================================================

def _is_empty(value: Any) -> bool:
    return value is None or value == {} or value == []


def _equal(old: Any, new: Any) -> bool:
    if _is_empty(old) and _is_empty(new):
        return True
    return old == new


def _covers(old: Any, new: Any, top: bool = True) -> bool:
    """
    True when the live value already carries everything the desired value sets.

    The API server fills in defaults (probe thresholds, port protocols,
    fieldRef apiVersion, volume defaultMode), so nested keys only present on
    the live side are ignored. At the top level an empty desired value still
    means "remove".
    """
    if _is_empty(new):
        return _is_empty(old) or not top
    if isinstance(new, dict):
        return isinstance(old, dict) and all(_covers(old.get(key), value, False) for key, value in new.items())
    if isinstance(new, list):
        return (
            isinstance(old, list)
            and len(old) == len(new)
            and all(_covers(o, n, False) for o, n in zip(old, new))
        )
    return old == new


def _defaulted(old: Any, new: Any) -> bool:
    """For fields the API server defaults when unset: unset desired accepts any live value."""
    return _is_empty(new) or _covers(old, new)


def _flag(old: Any, new: Any) -> bool:
    return bool(old) == bool(new)


def _quantity(value: Any) -> Any:
    try:
        return parse_quantity(value)
    except (ValueError, TypeError):
        return value


def _quantities(resources: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Decimal]]:
    resources = resources or {}
    normalized = {}
    for section in ("requests", "limits"):
        values = resources.get(section) or {}
        if values:
            normalized[section] = {name: _quantity(values[name]) for name in values}
    return normalized


def _resources_equal(old: Any, new: Any) -> bool:
    """cpu/memory compared by value: 1000m equals 1, 1Gi equals 1024Mi."""
    return _quantities(old) == _quantities(new)


def _claim_templates(document: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    summary = []
    for claim in (document or {}).get("spec", {}).get("volumeClaimTemplates") or []:
        spec = claim.get("spec") or {}
        storage = ((spec.get("resources") or {}).get("requests") or {}).get("storage")
        summary.append({
            "name": claim.get("metadata", {}).get("name"),
            "storage_class": spec.get("storageClassName"),
            "access_modes": sorted(spec.get("accessModes") or []),
            "size": _quantity(storage),
        })
    return sorted(summary, key=lambda claim: claim["name"] or "")


def _dig(document: Optional[Dict[str, Any]], *keys: Any) -> Any:
    node: Any = document
    for key in keys:
        if node is None:
            return None
        if isinstance(key, int):
            node = node[key] if isinstance(node, list) and key < len(node) else None
        else:
            node = node.get(key) if isinstance(node, dict) else None
    return node


def _container_index(document: Dict[str, Any], name: str) -> Optional[int]:
    for index, container in enumerate(_dig(document, "spec", "template", "spec", "containers") or []):
        if container.get("name") == name:
            return index
    return None


Comparison = Callable[[Any, Any], bool]

# (plan field, API key, equality) per section; entries are planned in this order
CONTAINER_FIELDS: List[Tuple[str, str, Comparison]] = [
    ("image", "image", _equal),
    ("image_pull_policy", "imagePullPolicy", _defaulted),
    ("resources", "resources", _resources_equal),
    ("env", "env", _covers),
    ("volume_mounts", "volumeMounts", _covers),
    ("args", "args", _covers),
    ("command", "command", _covers),
    ("working_dir", "workingDir", _covers),
    ("ports", "ports", _covers),
    ("security_context", "securityContext", _covers),
    ("liveness_probe", "livenessProbe", _covers),
    ("lifecycle", "lifecycle", _covers),
]

POD_FIELDS: List[Tuple[str, str, Comparison]] = [
    ("volumes", "volumes", _covers),
    ("node_selector", "nodeSelector", _equal),
    ("tolerations", "tolerations", _covers),
    ("affinity", "affinity", _covers),
    ("pod_security_context", "securityContext", _defaulted),
    ("service_account_name", "serviceAccountName", _covers),
    ("priority_class_name", "priorityClassName", _covers),
    ("dns_policy", "dnsPolicy", _defaulted),
    ("host_network", "hostNetwork", _flag),
    ("init_containers", "initContainers", _covers),
    ("image_pull_secrets", "imagePullSecrets", _covers),
]

SERVICE_FIELDS: List[Tuple[str, str, Comparison]] = [
    ("ports", "ports", _covers),
    ("session_affinity", "sessionAffinity", _defaulted),
    ("external_ips", "externalIPs", _covers),
    ("load_balancer_source_ranges", "loadBalancerSourceRanges", _covers),
]


# =============================================================================
# Planning
# =============================================================================

class _Planner:
    """Accumulates entries for one plan() call."""

    def __init__(self, current: ClusterDescriptor, desired: ManifestSet):
        self.current = current
        self.desired = desired
        self.plan = UpdatePlan(cluster_id=current.cluster_id, namespace=current.namespace)

    def compare(
        self,
        resource: str,
        field_name: str,
        old: Any,
        new: Any,
        path: str,
        equal: Comparison = _equal
    ) -> None:
        if equal(old, new):
            self.plan.entries.append(PlanEntry(resource, field_name, old, new, NOOP))
            return
        if _is_empty(new):
            op = {"op": "remove", "path": path}
        else:
            op = {"op": "add", "path": path, "value": new}
        self.plan.entries.append(PlanEntry(resource, field_name, old, new, PATCH, [op]))

    def fixed(
        self,
        resource: str,
        field_name: str,
        old: Any,
        new: Any,
        equal: Comparison = _equal
    ) -> None:
        action = NOOP if equal(old, new) else REJECT
        self.plan.entries.append(PlanEntry(resource, field_name, old, new, action))

    def track(self, kind: str, desired_obj: Any, live_obj: Any) -> Optional[Dict[str, Any]]:
        """Record a resource; returns its live document, or None after planning a recreate."""
        resource = f"{kind}/{desired_obj.metadata.name}"
        self.plan.desired_resources[resource] = desired_obj
        if live_obj is None:
            self.plan.entries.append(PlanEntry(resource, "exists", False, True, PATCH))
            return None
        live = to_plain(live_obj)
        self.plan.live_documents[resource] = live
        self.plan.entries.append(PlanEntry(resource, "exists", True, True, NOOP))
        return live

    # -------------------------------------------------------------------------

    def identity(self) -> None:
        resource = f"Cluster/{self.current.cluster_id}"
        labels = self.desired.master.metadata.labels or {}
        self.fixed(resource, "cluster_id", self.current.cluster_id, labels.get(LABEL_APP))
        self.fixed(resource, "namespace", self.current.namespace, self.desired.master.metadata.namespace)

    def configmap(self) -> None:
        live = self.track("ConfigMap", self.desired.configmap, self.current.configmap)
        if live is None:
            return
        want = to_plain(self.desired.configmap)
        self.compare(f"ConfigMap/{self.desired.configmap.metadata.name}", "config.data",
                     live.get("data"), want.get("data"), "/data")

    def services(self) -> None:
        live = self.track("Service", self.desired.service, self.current.service)
        if live is not None:
            want = to_plain(self.desired.service)
            resource = f"Service/{self.desired.service.metadata.name}"
            self.compare(resource, "service.type",
                         _dig(live, "spec", "type"), _dig(want, "spec", "type"), "/spec/type")
            self.compare(resource, "service.annotations",
                         _dig(live, "metadata", "annotations"), _dig(want, "metadata", "annotations"),
                         "/metadata/annotations")
            for field_name, key, equal in SERVICE_FIELDS:
                self.compare(resource, f"service.{field_name}",
                             _dig(live, "spec", key), _dig(want, "spec", key), f"/spec/{key}", equal)
        self.track("Service", self.desired.headless_service, self.current.headless_service)

    def statefulset(self, tier: str) -> None:
        desired_obj = self.desired.master if tier == COMPONENT_MASTER else self.desired.worker
        live = self.track("StatefulSet", desired_obj, self.current.statefulset(tier))
        if live is None:
            return
        want = to_plain(desired_obj)
        resource = f"StatefulSet/{desired_obj.metadata.name}"

        old_replicas = _dig(live, "spec", "replicas")
        new_replicas = _dig(want, "spec", "replicas")
        if tier == COMPONENT_MASTER:
            self.fixed(resource, "master.replicas", old_replicas, new_replicas)
        else:
            self.compare(resource, f"{tier}.replicas", old_replicas, new_replicas, "/spec/replicas")

        self.fixed(resource, f"{tier}.volume_claim_templates", _claim_templates(live), _claim_templates(want))

        self.container(resource, tier, live, want)

        pod = "/spec/template"
        self.compare(resource, f"{tier}.labels",
                     _dig(live, "spec", "template", "metadata", "labels"),
                     _dig(want, "spec", "template", "metadata", "labels"), f"{pod}/metadata/labels")
        self.compare(resource, f"{tier}.annotations",
                     _dig(live, "spec", "template", "metadata", "annotations"),
                     _dig(want, "spec", "template", "metadata", "annotations"), f"{pod}/metadata/annotations")
        for field_name, key, equal in POD_FIELDS:
            self.compare(resource, f"{tier}.{field_name}",
                         _dig(live, "spec", "template", "spec", key),
                         _dig(want, "spec", "template", "spec", key), f"{pod}/spec/{key}", equal)

    def container(self, resource: str, tier: str, live: Dict[str, Any], want: Dict[str, Any]) -> None:
        want_index = _container_index(want, tier)
        wanted = _dig(want, "spec", "template", "spec", "containers", want_index) or {}
        live_index = _container_index(live, tier)
        if live_index is None:
            # Tier container gone from the live template: put the whole list back
            self.compare(resource, f"{tier}.containers",
                         _dig(live, "spec", "template", "spec", "containers"),
                         _dig(want, "spec", "template", "spec", "containers"), CONTAINERS_PATH)
            return

        current = _dig(live, "spec", "template", "spec", "containers", live_index)
        path = f"{CONTAINERS_PATH}/{live_index}"
        for field_name, key, equal in CONTAINER_FIELDS:
            self.compare(resource, f"{tier}.{field_name}", current.get(key), wanted.get(key),
                         f"{path}/{key}", equal)


def plan(current: ClusterDescriptor, desired: ManifestSet) -> UpdatePlan:
    """
    Compute the update plan from live state to desired manifests.

    Args:
        current: Discovered live state
        desired: Manifests built from the resolved ClusterSpec

    Returns:
        UpdatePlan; `accepted` is False when any immutable field changed
    """
    planner = _Planner(current, desired)
    planner.identity()
    planner.configmap()
    planner.services()
    planner.statefulset(COMPONENT_MASTER)
    planner.statefulset(COMPONENT_WORKER)

    result = planner.plan
    logger.info(
        f"[UPDATE] Plan for {current.cluster_id}: {len(result.patch_entries)} patch, "
        f"{len(result.rejects)} reject, verdict {result.verdict}"
    )
    return result
