"""
Cluster Manager

Command layer for storage clusters on Kubernetes. Each command resolves the
configuration layers, validates, builds manifests and talks to the API server
through the KubernetesClient:

- deploy: create-only path, fails with AlreadyExists on a name clash
- update: discover -> plan -> apply grouped JSON patches
- status / list_clusters: read-only views of live state
- delete: remove the cluster's resources, optionally its PVCs

Every command runs under a deadline; expiry raises CommandTimeout and leaves
whatever state the API already accepted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import get_settings
from ..constants import (
    COMPONENT_MASTER,
    COMPONENT_WORKER,
    FAILURE_WAITING_REASONS,
    LABEL_APP,
    MAX_RESTARTS_BEFORE_FAILURE,
    RESTART_GRACE_SECONDS,
    VOLUME_NAME_DATA_DIR_PREFIX,
    VOLUME_NAME_META_DATA,
    configmap_name,
    headless_name,
    master_name,
    worker_name,
)
from ..errors import AlreadyExists, ClusterNotFound, CommandTimeout, InvalidFieldValue, ReadinessError
from ..kubernetes.builders import ManifestSet, build_manifests
from ..kubernetes.client import KubernetesClient
from ..kubernetes.helpers import get_cluster_selector, get_selector_labels
from ..models import ClusterSpec, ResourceSpec
from ..resolver import resolve
from ..validator import validate
from .descriptor import ClusterDescriptor, discover, find_container, ready_replicas
from .planner import UpdatePlan, plan

logger = logging.getLogger(__name__)


@dataclass
class ConfigLayers:
    """Raw inputs to the override resolver, as collected by the CLI."""

    file_config: Optional[Mapping[str, Any]] = None
    cli_flags: Optional[Mapping[str, Any]] = None
    dynamic_overrides: Optional[Sequence[str]] = None
    template_patches: Optional[Mapping[str, Any]] = None

    def resolve(self) -> ClusterSpec:
        return resolve(
            file_config=self.file_config,
            cli_flags=self.cli_flags,
            dynamic_overrides=self.dynamic_overrides,
            template_patches=self.template_patches,
        )


@dataclass
class ClusterSummary:
    """One row of list output."""

    cluster_id: str
    namespace: str
    master_ready: int
    master_total: int
    worker_ready: int
    worker_total: int
    created_at: Optional[Any] = None


def _live_resources(live: Any) -> Dict[str, Dict[str, str]]:
    if live is None or live.resources is None:
        return {}
    return {
        section: dict(getattr(live.resources, section) or {})
        for section in ("requests", "limits")
        if getattr(live.resources, section)
    }


def _tier_storage_claim(spec: ClusterSpec, tier: str, statefulset: Any) -> Optional[Any]:
    """The live claim template sized by the tier storage size, if any."""
    claims = {claim.metadata.name: claim for claim in statefulset.spec.volume_claim_templates or []}
    if tier == COMPONENT_MASTER:
        return claims.get(VOLUME_NAME_META_DATA)
    for index, data_dir in enumerate(spec.app_config.data_dirs()):
        if not data_dir.is_memory and not data_dir.capacity:
            return claims.get(f"{VOLUME_NAME_DATA_DIR_PREFIX}{index}")
    return None


def inherit_live_values(spec: ClusterSpec, current: ClusterDescriptor) -> ClusterSpec:
    """
    Fill fields no configuration layer set with their live values.

    An update only changes what was asked for; defaults never overwrite what
    the cluster is running.
    """
    updates: Dict[str, Any] = {}
    tiers: Dict[str, Dict[str, Any]] = {COMPONENT_MASTER: {}, COMPONENT_WORKER: {}}

    for tier in (COMPONENT_MASTER, COMPONENT_WORKER):
        statefulset = current.statefulset(tier)
        if statefulset is None:
            continue
        container = find_container(statefulset, tier)
        changes = tiers[tier]

        if not spec.is_set(f"{tier}.replicas") and statefulset.spec.replicas is not None:
            changes["replicas"] = statefulset.spec.replicas
        if container is not None:
            if not spec.is_set(f"{tier}.image") and container.image:
                changes["image"] = container.image
            if not spec.is_set(f"{tier}.resources"):
                resources = _live_resources(container)
                if resources:
                    changes["resources"] = ResourceSpec.model_validate(resources)
            if tier == COMPONENT_MASTER and not spec.is_set("image_pull_policy") and container.image_pull_policy:
                updates["image_pull_policy"] = container.image_pull_policy

        claim = _tier_storage_claim(spec, tier, statefulset)
        if claim is not None:
            if not spec.is_set(f"{tier}.storage_class"):
                changes["storage_class"] = claim.spec.storage_class_name
            requested = (claim.spec.resources.requests or {}) if claim.spec.resources else {}
            if not spec.is_set(f"{tier}.storage_size") and requested.get("storage"):
                changes["storage_size"] = requested["storage"]

    if current.service is not None and not spec.is_set("service.type") and current.service.spec.type:
        updates["service"] = spec.service.model_copy(update={"type": current.service.spec.type})

    for tier, changes in tiers.items():
        if changes:
            updates[tier] = spec.tier(tier).model_copy(update=changes)

    if not updates:
        return spec
    logger.debug(f"[UPDATE] Inherited live values for {spec.cluster_id}: {sorted(updates)}")
    return spec.model_copy(update=updates)


class ClusterManager:
    """
    Lifecycle manager for storage clusters.

    Features:
    - Layered configuration resolved into one ClusterSpec per invocation
    - Create-only deploy with optional storage class and readiness checks
    - Planned updates that refuse immutable changes before touching the cluster
    - Label-scoped discovery, listing and deletion
    """

    def __init__(self, client: KubernetesClient, timeout: Optional[float] = None):
        self.client = client
        self.settings = get_settings()
        self.timeout = timeout or self.settings.command_timeout_seconds

    async def _run(self, operation: str, coro: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"[K8S:MANAGER] ❌ {operation} timed out after {self.timeout}s")
            raise CommandTimeout(operation, self.timeout)

    # =========================================================================
    # DEPLOY
    # =========================================================================

    async def deploy(
        self,
        layers: ConfigLayers,
        wait: bool = True,
        check_storage: bool = True
    ) -> ClusterSpec:
        """
        Create a new cluster.

        Args:
            layers: Configuration inputs
            wait: Wait for both StatefulSets to become ready
            check_storage: Verify the referenced storage classes exist

        Returns:
            The resolved ClusterSpec that was deployed

        Raises:
            AlreadyExists: A resource of the cluster already exists
            ReadinessError: A pod failed while waiting
            CommandTimeout: The deadline expired
        """
        return await self._run("deploy", self._deploy(layers, wait, check_storage))

    async def _deploy(self, layers: ConfigLayers, wait: bool, check_storage: bool) -> ClusterSpec:
        spec = layers.resolve()
        validate(spec)
        manifests = build_manifests(spec)
        namespace = spec.namespace

        logger.info(f"[DEPLOY] Deploying cluster {spec.cluster_id} in namespace {namespace}")

        if check_storage:
            await self._check_storage_classes(spec)

        await self._check_absent(manifests, namespace)

        await asyncio.gather(
            self.client.create("ConfigMap", manifests.configmap, namespace),
            self.client.create("Service", manifests.service, namespace),
            self.client.create("Service", manifests.headless_service, namespace),
        )
        await self.client.create("StatefulSet", manifests.master, namespace)
        await self.client.create("StatefulSet", manifests.worker, namespace)

        if wait:
            await self.wait_for_ready(spec.cluster_id, namespace, COMPONENT_MASTER)
            await self.wait_for_ready(spec.cluster_id, namespace, COMPONENT_WORKER)

        logger.info(f"[DEPLOY] ✅ Cluster {spec.cluster_id} deployed")
        return spec

    async def _check_absent(self, manifests: ManifestSet, namespace: str) -> None:
        """Raise AlreadyExists for the first resource of the set that is already present."""
        # StatefulSets first so a full clash reports `<id>-master`
        resources = [
            ("StatefulSet", manifests.master),
            ("StatefulSet", manifests.worker),
            ("ConfigMap", manifests.configmap),
            ("Service", manifests.service),
            ("Service", manifests.headless_service),
        ]
        found = await asyncio.gather(
            *(self.client.get(kind, resource.metadata.name, namespace) for kind, resource in resources)
        )
        for (kind, resource), live in zip(resources, found):
            if live is not None:
                raise AlreadyExists(kind, resource.metadata.name, namespace)

    async def _check_storage_classes(self, spec: ClusterSpec) -> None:
        names = sorted({
            tier.storage_class for tier in (spec.master, spec.worker) if tier.storage_class
        })
        for name in names:
            if not await self.client.storage_class_exists(name):
                raise InvalidFieldValue("storage_class", name, "StorageClass does not exist")

    async def wait_for_ready(self, cluster_id: str, namespace: str, tier: str) -> None:
        """
        Poll a tier StatefulSet until all replicas are ready.

        Fails early when a pod is stuck in an image pull or crash loop, or
        keeps restarting past the grace period.

        Raises:
            ReadinessError: A pod is failing or the ready timeout elapsed
        """
        name = master_name(cluster_id) if tier == COMPONENT_MASTER else worker_name(cluster_id)
        selector = ",".join(f"{k}={v}" for k, v in get_selector_labels(cluster_id, tier).items())
        interval = self.settings.ready_poll_interval_seconds
        started = time.monotonic()
        deadline = started + self.settings.ready_timeout_seconds

        while True:
            statefulset = await self.client.get("StatefulSet", name, namespace)
            if statefulset is not None:
                desired = statefulset.spec.replicas or 0
                ready = ready_replicas(statefulset)
                if ready >= desired:
                    logger.info(f"[DEPLOY] {name} is ready ({ready}/{desired})")
                    return
                logger.info(f"[DEPLOY] Waiting for {name}: {ready}/{desired} ready")

            pods = await self.client.list("Pod", namespace, selector)
            failure = pod_failure(pods, time.monotonic() - started)
            if failure:
                raise ReadinessError(name, failure)

            if time.monotonic() >= deadline:
                raise ReadinessError(name, f"not ready after {self.settings.ready_timeout_seconds}s")
            await asyncio.sleep(interval)

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update(self, layers: ConfigLayers, dry_run: bool = False) -> UpdatePlan:
        """
        Update a running cluster.

        Args:
            layers: Configuration inputs
            dry_run: Return the plan without applying it

        Returns:
            The computed UpdatePlan

        Raises:
            ClusterNotFound: Nothing of the cluster exists
            ImmutableFieldError: The plan rejects a change (carries the plan)
        """
        return await self._run("update", self._update(layers, dry_run))

    async def _update(self, layers: ConfigLayers, dry_run: bool) -> UpdatePlan:
        spec = layers.resolve()
        current = await discover(self.client, spec.cluster_id, spec.namespace)
        if not current.found:
            raise ClusterNotFound(spec.cluster_id, spec.namespace)

        spec = inherit_live_values(spec, current)
        validate(spec)
        manifests = build_manifests(spec)

        # Immutable changes surface through the plan so the error carries it
        update_plan = plan(current, manifests)
        update_plan.raise_for_rejects()
        validate(spec, live=current)

        if dry_run:
            logger.info(f"[UPDATE] Dry run for {spec.cluster_id}: {len(update_plan.patch_entries)} change(s) planned")
            return update_plan

        await self.apply(update_plan, manifests)
        return update_plan

    async def apply(self, update_plan: UpdatePlan, manifests: ManifestSet) -> None:
        """Apply a plan: ConfigMap and Services together, then master, then worker."""
        patches = {f"{p.kind}/{p.name}": p for p in update_plan.patches()}
        if not patches:
            logger.info(f"[UPDATE] {update_plan.cluster_id} is up to date")
            return

        namespace = update_plan.namespace
        stages = [
            [("ConfigMap", manifests.configmap), ("Service", manifests.service), ("Service", manifests.headless_service)],
            [("StatefulSet", manifests.master)],
            [("StatefulSet", manifests.worker)],
        ]
        for stage in stages:
            calls = []
            for kind, resource in stage:
                resource_patch = patches.get(f"{kind}/{resource.metadata.name}")
                if resource_patch is None:
                    continue
                if resource_patch.recreate:
                    logger.info(f"[UPDATE] Recreating missing {kind} {resource_patch.name}")
                    calls.append(self.client.create(kind, resource_patch.body, namespace))
                else:
                    calls.append(self.client.patch(kind, resource_patch.name, namespace, resource_patch.ops))
            if calls:
                await asyncio.gather(*calls)

        logger.info(f"[UPDATE] ✅ Applied {len(update_plan.patch_entries)} change(s) to {update_plan.cluster_id}")

    # =========================================================================
    # STATUS / LIST
    # =========================================================================

    async def status(self, cluster_id: str, namespace: str) -> ClusterDescriptor:
        """
        Raises:
            ClusterNotFound: Nothing of the cluster exists
        """
        return await self._run("status", self._status(cluster_id, namespace))

    async def _status(self, cluster_id: str, namespace: str) -> ClusterDescriptor:
        current = await discover(self.client, cluster_id, namespace)
        if not current.found:
            raise ClusterNotFound(cluster_id, namespace)
        return current

    async def list_clusters(self, namespaces: Iterable[str]) -> List[ClusterSummary]:
        """List every kubetier cluster in the given namespaces, sorted by namespace and id."""
        return await self._run("list", self._list_clusters(list(namespaces)))

    async def _list_clusters(self, namespaces: List[str]) -> List[ClusterSummary]:
        selector = get_cluster_selector()
        summaries: List[ClusterSummary] = []

        for namespace in namespaces:
            configmaps, statefulsets = await asyncio.gather(
                self.client.list("ConfigMap", namespace, selector),
                self.client.list("StatefulSet", namespace, selector),
            )
            by_name = {s.metadata.name: s for s in statefulsets}
            cluster_ids = {
                (resource.metadata.labels or {}).get(LABEL_APP)
                for resource in list(configmaps) + list(statefulsets)
            }
            cluster_ids.discard(None)

            for cluster_id in cluster_ids:
                master = by_name.get(master_name(cluster_id))
                worker = by_name.get(worker_name(cluster_id))
                descriptor = ClusterDescriptor(
                    cluster_id=cluster_id,
                    namespace=namespace,
                    configmap=next((c for c in configmaps if c.metadata.name == configmap_name(cluster_id)), None),
                    master=master,
                    worker=worker,
                )
                summaries.append(ClusterSummary(
                    cluster_id=cluster_id,
                    namespace=namespace,
                    master_ready=descriptor.master_ready,
                    master_total=descriptor.master_replicas or 0,
                    worker_ready=descriptor.worker_ready,
                    worker_total=descriptor.worker_replicas or 0,
                    created_at=descriptor.created_at,
                ))

        return sorted(summaries, key=lambda s: (s.namespace, s.cluster_id))

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete(self, cluster_id: str, namespace: str, delete_pvcs: bool = False) -> List[str]:
        """
        Delete a cluster's resources.

        Args:
            cluster_id: Cluster identifier
            namespace: Kubernetes namespace
            delete_pvcs: Also delete PersistentVolumeClaims labelled with the cluster

        Returns:
            "<Kind>/<name>" of every resource actually deleted

        Raises:
            ClusterNotFound: Nothing of the cluster exists
        """
        return await self._run("delete", self._delete(cluster_id, namespace, delete_pvcs))

    async def _delete(self, cluster_id: str, namespace: str, delete_pvcs: bool) -> List[str]:
        current = await discover(self.client, cluster_id, namespace)
        if not current.found:
            raise ClusterNotFound(cluster_id, namespace)

        logger.info(f"[DELETE] Deleting cluster {cluster_id} in namespace {namespace}")
        deleted: List[str] = []

        statefulsets = [("StatefulSet", master_name(cluster_id)), ("StatefulSet", worker_name(cluster_id))]
        others = [
            ("Service", master_name(cluster_id)),
            ("Service", headless_name(cluster_id)),
            ("ConfigMap", configmap_name(cluster_id)),
        ]
        for group in (statefulsets, others):
            results = await asyncio.gather(*(self.client.delete(kind, name, namespace) for kind, name in group))
            deleted.extend(f"{kind}/{name}" for (kind, name), removed in zip(group, results) if removed)

        if delete_pvcs:
            claims = await self.client.list("PersistentVolumeClaim", namespace, f"{LABEL_APP}={cluster_id}")
            names = sorted(claim.metadata.name for claim in claims)
            results = await asyncio.gather(
                *(self.client.delete("PersistentVolumeClaim", name, namespace) for name in names)
            )
            deleted.extend(f"PersistentVolumeClaim/{name}" for name, removed in zip(names, results) if removed)
        else:
            logger.info(f"[DELETE] Keeping PersistentVolumeClaims of {cluster_id}")

        logger.info(f"[DELETE] ✅ Deleted {len(deleted)} resource(s) of {cluster_id}")
        return deleted


def pod_failure(pods: Iterable[Any], elapsed: float) -> Optional[str]:
    """
    Describe the first failing pod, if any.

    A pod fails when a container waits with a crash-loop or image-pull reason,
    or when it has restarted more than the allowed number of times once the
    grace period is over.
    """
    for pod in pods:
        statuses = (pod.status.container_statuses or []) if pod.status else []
        for status in statuses:
            waiting = status.state.waiting if status.state else None
            if waiting is not None and waiting.reason in FAILURE_WAITING_REASONS:
                return f"pod {pod.metadata.name} container {status.name}: {waiting.reason}"
            if elapsed > RESTART_GRACE_SECONDS and (status.restart_count or 0) > MAX_RESTARTS_BEFORE_FAILURE:
                return f"pod {pod.metadata.name} container {status.name} restarted {status.restart_count} times"
    return None
