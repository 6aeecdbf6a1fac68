"""
Kubernetes Client for Managing Storage Clusters

Thin async interface over the official Kubernetes client. Blocking API calls
are run with asyncio.to_thread so independent calls can be dispatched
concurrently, and every failure is translated into the kubetier ApiError
hierarchy at this boundary:

- get_* returns None on 404
- create_* raises AlreadyExists on 409
- delete_* returns False when the resource was already gone
- everything else raises ApiNotFound / ApiPermissionDenied /
  ApiTransientError / ApiError

Supported kinds: StatefulSet, Service, ConfigMap, PersistentVolumeClaim,
Pod (list only) and StorageClass (existence check).
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..config import get_settings
from ..errors import AlreadyExists, ApiError, ApiNotFound, ApiTransientError, KubeConfigError

logger = logging.getLogger(__name__)

# kind -> (API group attribute, method suffix)
_RESOURCE_APIS: Dict[str, Tuple[str, str]] = {
    "StatefulSet": ("apps_v1", "stateful_set"),
    "Service": ("core_v1", "service"),
    "ConfigMap": ("core_v1", "config_map"),
    "PersistentVolumeClaim": ("core_v1", "persistent_volume_claim"),
    "Pod": ("core_v1", "pod"),
}

Patch = Union[List[Dict[str, Any]], Dict[str, Any]]


def load_kube_config(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> None:
    """
    Load in-cluster configuration, falling back to a kubeconfig file.

    An explicit kubeconfig path or context skips the in-cluster attempt.

    Raises:
        KubeConfigError: If no configuration can be loaded
    """
    if not kubeconfig and not context:
        try:
            # In-cluster first (running as a Job or from a pod)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
            return
        except config.ConfigException:
            pass

    try:
        config.load_kube_config(config_file=kubeconfig, context=context)
        logger.info(f"Loaded kubeconfig {kubeconfig or '(default)'} context {context or '(current)'}")
    except (config.ConfigException, OSError) as e:
        logger.error(f"Failed to load Kubernetes config: {e}")
        raise KubeConfigError(f"Cannot load Kubernetes configuration: {e}") from e


class KubernetesClient:
    """
    Manages the Kubernetes resources of storage clusters.

    Methods take the resource kind explicitly so the manager and planner can
    drive every kind through the same create/get/patch/delete/list calls.
    """

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        request_timeout: Optional[float] = None,
        load_config: bool = True
    ):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        settings = get_settings()
        if load_config:
            load_kube_config(kubeconfig or settings.kubeconfig, context or settings.kube_context)

        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()
        self.storage_v1 = client.StorageV1Api()
        self.request_timeout = request_timeout or settings.request_timeout_seconds

        logger.info(f"Kubernetes client initialized (request timeout {self.request_timeout}s)")

    # =========================================================================
    # CALL PLUMBING
    # =========================================================================

    def _method(self, verb: str, kind: str) -> Callable:
        try:
            api_name, suffix = _RESOURCE_APIS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}")
        return getattr(getattr(self, api_name), f"{verb}_namespaced_{suffix}")

    async def _call(
        self,
        operation: str,
        kind: str,
        resource_name: Optional[str],
        fn: Callable,
        **kwargs: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(fn, _request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            raise ApiError.from_exception(e, operation, kind, resource_name) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApiTransientError(operation, kind, resource_name, None, str(e)) from e

    # =========================================================================
    # TYPED RESOURCE OPERATIONS
    # =========================================================================

    async def get(self, kind: str, name: str, namespace: str) -> Optional[Any]:
        """Read a resource; None if it does not exist."""
        try:
            return await self._call("get", kind, name, self._method("read", kind), name=name, namespace=namespace)
        except ApiNotFound:
            return None

    async def create(self, kind: str, body: Any, namespace: str) -> Any:
        """
        Create a resource.

        Raises:
            AlreadyExists: The API answered 409
        """
        name = body.metadata.name
        try:
            result = await self._call("create", kind, name, self._method("create", kind), namespace=namespace, body=body)
        except ApiError as e:
            if e.status == 409:
                raise AlreadyExists(kind, name, namespace) from e
            raise
        logger.info(f"[K8S] ✅ Created {kind.lower()}: {name}")
        return result

    async def patch(self, kind: str, name: str, namespace: str, body: Patch) -> Any:
        """
        Patch a resource.

        A list body is sent as an RFC 6902 JSON patch, a dict body as a
        strategic merge patch.
        """
        result = await self._call("patch", kind, name, self._method("patch", kind), name=name, namespace=namespace, body=body)
        logger.info(f"[K8S] ✅ Patched {kind.lower()}: {name}")
        return result

    async def delete(self, kind: str, name: str, namespace: str) -> bool:
        """Delete a resource; False if it was already gone."""
        try:
            await self._call("delete", kind, name, self._method("delete", kind), name=name, namespace=namespace)
        except ApiNotFound:
            logger.debug(f"[K8S] {kind} {name} already deleted")
            return False
        logger.info(f"[K8S] Deleted {kind.lower()}: {name}")
        return True

    async def list(self, kind: str, namespace: str, label_selector: str) -> List[Any]:
        """List resources in a namespace matching a label selector."""
        result = await self._call(
            "list", kind, None, self._method("list", kind),
            namespace=namespace, label_selector=label_selector
        )
        return list(result.items or [])

    # =========================================================================
    # STORAGE CLASSES
    # =========================================================================

    async def storage_class_exists(self, name: str) -> bool:
        """Check whether a StorageClass exists."""
        try:
            await self._call("get", "StorageClass", name, self.storage_v1.read_storage_class, name=name)
            return True
        except ApiNotFound:
            return False


# Global instance
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient(kubeconfig=kubeconfig, context=context)
    return _k8s_client_instance
