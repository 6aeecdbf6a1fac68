"""
Kubernetes Helpers for Cluster Manifests

Small, pure building blocks shared by the StatefulSet, Service and ConfigMap
builders:
- Labels: the identity labels every kubetier resource carries
- Environment: base, Downward API and per-tier variables
- Lifecycle/probes: graceful shutdown hook and TCP liveness probe
- Serialization: converting V1 models to plain API dicts and back

Nothing here talks to the API server.
"""

import json
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import client

from ..constants import (
    APP_HOME,
    GRACEFUL_SHUTDOWN_DELAY,
    LABEL_APP,
    LABEL_COMPONENT,
    LABEL_TYPE,
    LABEL_TYPE_VALUE,
    LIVENESS_FAILURE_THRESHOLD,
    LIVENESS_INITIAL_DELAY,
    LIVENESS_PERIOD,
    LIVENESS_TIMEOUT,
    PORT_NAME_RPC,
    RPC_BIND_HOSTNAME,
    STORE_BIN,
    STORE_CONF_FILE,
    STORE_HOME,
    headless_name,
    master_name,
)


# =============================================================================
# Labels
# =============================================================================

def get_selector_labels(cluster_id: str, component: str) -> Dict[str, str]:
    """Labels used in StatefulSet/Service selectors."""
    return {
        LABEL_APP: cluster_id,
        LABEL_COMPONENT: component,
    }


def get_standard_labels(cluster_id: str, component: str) -> Dict[str, str]:
    """
    Get standard labels for cluster resources.

    Args:
        cluster_id: Cluster identifier
        component: Component name (master, worker, config)

    Returns:
        Dict of labels
    """
    labels = get_selector_labels(cluster_id, component)
    labels[LABEL_TYPE] = LABEL_TYPE_VALUE
    return labels


def get_cluster_selector(cluster_id: Optional[str] = None) -> str:
    """Label selector string for all resources of one cluster (or all clusters)."""
    if cluster_id:
        return f"{LABEL_APP}={cluster_id},{LABEL_TYPE}={LABEL_TYPE_VALUE}"
    return f"{LABEL_TYPE}={LABEL_TYPE_VALUE}"


# =============================================================================
# Environment
# =============================================================================

def _field_ref_env(name: str, field_path: str) -> client.V1EnvVar:
    return client.V1EnvVar(
        name=name,
        value_from=client.V1EnvVarSource(
            field_ref=client.V1ObjectFieldSelector(api_version="v1", field_path=field_path)
        )
    )


def build_env_vars(
    component: str,
    cluster_id: str,
    namespace: str,
    cluster_domain: str,
    custom_vars: Optional[Mapping[str, str]] = None
) -> List[client.V1EnvVar]:
    """
    Build the container environment for a tier.

    Order: base paths, Downward API values, tier hostnames, then custom
    variables sorted by name.

    Args:
        component: "master" or "worker"
        cluster_id: Cluster identifier
        namespace: Kubernetes namespace
        cluster_domain: Cluster DNS domain
        custom_vars: User-supplied variables

    Returns:
        List of V1EnvVar
    """
    env = [
        client.V1EnvVar(name="APP_HOME", value=APP_HOME),
        client.V1EnvVar(name="STORE_HOME", value=STORE_HOME),
        client.V1EnvVar(name="STORE_CONF_FILE", value=STORE_CONF_FILE),
        client.V1EnvVar(name="RPC_BIND_HOSTNAME", value=RPC_BIND_HOSTNAME),
        _field_ref_env("POD_IP", "status.podIP"),
        _field_ref_env("POD_NAMESPACE", "metadata.namespace"),
        _field_ref_env("POD_NAME", "metadata.name"),
        client.V1EnvVar(name="POD_CLUSTER_DOMAIN", value=cluster_domain),
    ]

    governing_service = f"{headless_name(cluster_id)}.{namespace}.svc.{cluster_domain}"
    if component == "master":
        env.append(client.V1EnvVar(name="MASTER_HOSTNAME", value=f"$(POD_NAME).{governing_service}"))
    else:
        env.append(client.V1EnvVar(
            name="MASTER_HOSTNAME",
            value=f"{master_name(cluster_id)}-0.{governing_service}"
        ))
        # Workers have no governing service of their own
        env.append(client.V1EnvVar(name="WORKER_HOSTNAME", value="$(POD_IP)"))

    for name in sorted(custom_vars or {}):
        env.append(client.V1EnvVar(name=name, value=custom_vars[name]))

    return env


# =============================================================================
# Lifecycle and probes
# =============================================================================

def build_graceful_lifecycle(component: str) -> client.V1Lifecycle:
    """preStop hook that drains the process before the pod is killed."""
    stop_command = f"sleep {GRACEFUL_SHUTDOWN_DELAY} && {STORE_BIN} {component} stop || true"
    return client.V1Lifecycle(
        pre_stop=client.V1LifecycleHandler(
            _exec=client.V1ExecAction(command=["/bin/sh", "-c", stop_command])
        )
    )


def build_liveness_probe() -> client.V1Probe:
    """TCP liveness probe on the rpc port."""
    return client.V1Probe(
        tcp_socket=client.V1TCPSocketAction(port=PORT_NAME_RPC),
        initial_delay_seconds=LIVENESS_INITIAL_DELAY,
        period_seconds=LIVENESS_PERIOD,
        timeout_seconds=LIVENESS_TIMEOUT,
        failure_threshold=LIVENESS_FAILURE_THRESHOLD
    )


def build_resource_requirements(requests: Mapping[str, str], limits: Mapping[str, str]) -> Optional[client.V1ResourceRequirements]:
    if not requests and not limits:
        return None
    return client.V1ResourceRequirements(
        requests=dict(requests) or None,
        limits=dict(limits) or None
    )


# =============================================================================
# Serialization
# =============================================================================

class _InMemoryResponse:
    """Adapter letting ApiClient.deserialize read an in-memory document."""

    def __init__(self, document: Any):
        self.data = json.dumps(document, default=str)


@lru_cache()
def _api_client() -> client.ApiClient:
    return client.ApiClient()


def to_plain(obj: Any) -> Any:
    """Convert V1 models (or lists/dicts of them) to API-shaped plain data."""
    return _api_client().sanitize_for_serialization(obj)


def from_plain(document: Any, klass: str) -> Any:
    """
    Build a V1 model from API-shaped plain data.

    Args:
        document: camelCase mapping as found in YAML manifests
        klass: Model name, e.g. "V1PodTemplateSpec"

    Raises:
        ValueError/TypeError: If the models reject the document
    """
    return _api_client().deserialize(_InMemoryResponse(document), klass)
