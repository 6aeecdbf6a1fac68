"""
Kubernetes Module

This module contains everything that speaks Kubernetes resource types:
- KubernetesClient: async API access with structured errors
- Builders: ClusterSpec -> StatefulSets, Services, ConfigMap
- Templates: user pod templates parsed into PodSpecFragments
- Merger: per-field strategies overlaying a template on builder defaults

Pod template flow:
1. Builder describes its pod defaults as a PodSpecFragment
2. The user's pod template is parsed into a fragment for the tier container
3. merge() combines them (template wins, mount paths must agree)
4. The merged fragment is rendered into the StatefulSet pod template
"""

from .builders import (
    ManifestSet,
    build_configmap,
    build_manifests,
    build_master,
    build_service,
    build_worker,
    master_fragment,
    worker_fragment,
)
from .client import KubernetesClient, get_k8s_client, load_kube_config
from .helpers import get_cluster_selector, get_selector_labels, get_standard_labels, to_plain
from .merger import FIELD_STRATEGIES, merge
from .template import PodSpecFragment, fragment_from_template, load_pod_template

__all__ = [
    # Client
    "KubernetesClient",
    "get_k8s_client",
    "load_kube_config",
    # Builders
    "ManifestSet",
    "build_configmap",
    "build_manifests",
    "build_master",
    "build_service",
    "build_worker",
    "master_fragment",
    "worker_fragment",
    # Helpers
    "get_cluster_selector",
    "get_selector_labels",
    "get_standard_labels",
    "to_plain",
    # Templates and merging
    "FIELD_STRATEGIES",
    "PodSpecFragment",
    "fragment_from_template",
    "load_pod_template",
    "merge",
]
