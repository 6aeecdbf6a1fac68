"""
Test configuration and fixtures for pytest.

Fixtures cover resolved cluster specs, built manifests, live descriptors
derived from them, and an AsyncMock Kubernetes client.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Add the repository root to sys.path
repo_dir = Path(__file__).parent.parent
sys.path.insert(0, str(repo_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any kubetier imports read settings
    os.environ["KUBETIER_DEFAULT_NAMESPACE"] = "default"
    os.environ["KUBETIER_DEFAULT_IMAGE"] = "docker.io/kubetier/store:latest"
    os.environ["KUBETIER_READY_POLL_INTERVAL_SECONDS"] = "0"
    os.environ["KUBETIER_READY_TIMEOUT_SECONDS"] = "5"
    os.environ["KUBETIER_COMMAND_TIMEOUT_SECONDS"] = "30"
    os.environ.pop("KUBETIER_LOG_LEVEL", None)

    # Import and clear settings cache after env vars are set
    from kubetier.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes client code")


@pytest.fixture
def make_spec():
    """Resolve a ClusterSpec from CLI-style flags (plus optional file config and -D entries)."""
    from kubetier.resolver import resolve

    def _make(
        file_config: Optional[Dict[str, Any]] = None,
        dynamic: Optional[List[str]] = None,
        template_patches: Optional[Dict[str, Any]] = None,
        **flags: Any
    ):
        flags.setdefault("cluster_id", "demo")
        return resolve(
            file_config=file_config,
            cli_flags=flags,
            dynamic_overrides=dynamic,
            template_patches=template_patches,
        )

    return _make


@pytest.fixture
def deployed_spec(make_spec):
    """The spec of the end-to-end example: 3 masters, 2 workers, image foo:v1."""
    return make_spec(master_replicas=3, worker_replicas=2, image="foo:v1")


@pytest.fixture
def live_from():
    """Build a ClusterDescriptor whose live objects are the given manifests."""
    from kubetier.cluster.descriptor import ClusterDescriptor
    from kubetier.kubernetes.builders import build_manifests

    def _live(spec):
        manifests = build_manifests(spec)
        return ClusterDescriptor(
            cluster_id=spec.cluster_id,
            namespace=spec.namespace,
            configmap=manifests.configmap,
            service=manifests.service,
            headless_service=manifests.headless_service,
            master=manifests.master,
            worker=manifests.worker,
        )

    return _live


@pytest.fixture
def mock_client():
    """AsyncMock standing in for KubernetesClient."""
    k8s = AsyncMock()
    k8s.get = AsyncMock(return_value=None)
    k8s.create = AsyncMock(side_effect=lambda kind, body, namespace: body)
    k8s.patch = AsyncMock()
    k8s.delete = AsyncMock(return_value=True)
    k8s.list = AsyncMock(return_value=[])
    k8s.storage_class_exists = AsyncMock(return_value=True)
    return k8s


@pytest.fixture
def listing_client(mock_client):
    """Mock client whose list() serves the given live descriptor's resources."""

    def _serve(descriptor):
        resources = {
            "StatefulSet": [r for r in (descriptor.master, descriptor.worker) if r is not None],
            "Service": [r for r in (descriptor.service, descriptor.headless_service) if r is not None],
            "ConfigMap": [descriptor.configmap] if descriptor.configmap is not None else [],
        }

        async def _list(kind, namespace, label_selector):
            return list(resources.get(kind, []))

        mock_client.list = AsyncMock(side_effect=_list)
        return mock_client

    return _serve
