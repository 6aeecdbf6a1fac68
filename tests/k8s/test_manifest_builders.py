"""
Unit tests for the manifest builders.

Tests the StatefulSet, Service and ConfigMap manifests synthesized from a
ClusterSpec: names, labels, governing service, volumes and the rendered
storage configuration.
"""

import pytest
import yaml

pytest.importorskip("kubernetes")

from kubernetes import client

from kubetier.kubernetes.builders import (
    build_configmap,
    build_manifests,
    build_master,
    build_service,
    build_worker,
)
from kubetier.kubernetes.helpers import get_cluster_selector, to_plain


def _env(container):
    return {var.name: var for var in container.env}


@pytest.mark.unit
class TestNamesAndLabels:

    def test_resource_names(self, make_spec):
        manifests = build_manifests(make_spec())

        assert manifests.configmap.metadata.name == "demo-config"
        assert manifests.service.metadata.name == "demo-master"
        assert manifests.headless_service.metadata.name == "demo-master-headless"
        assert manifests.master.metadata.name == "demo-master"
        assert manifests.worker.metadata.name == "demo-worker"
        assert [kind for kind, _ in manifests.resources()] == [
            "ConfigMap", "Service", "Service", "StatefulSet", "StatefulSet"
        ]

    def test_every_resource_matches_cluster_selector(self, make_spec):
        manifests = build_manifests(make_spec(namespace="storage"))
        selector = dict(pair.split("=") for pair in get_cluster_selector("demo").split(","))

        for _, resource in manifests.resources():
            assert resource.metadata.namespace == "storage"
            for key, value in selector.items():
                assert resource.metadata.labels[key] == value

    def test_selector_labels_win_over_user_labels(self, make_spec):
        spec = make_spec(dynamic=["kubernetes.worker.labels=app=hijack,team=storage"])

        pod_labels = build_worker(spec).spec.template.metadata.labels

        assert pod_labels["app"] == "demo"
        assert pod_labels["component"] == "worker"
        assert pod_labels["team"] == "storage"


@pytest.mark.unit
class TestMaster:

    def test_statefulset_shape(self, make_spec):
        statefulset = build_master(make_spec(master_replicas=5, master_storage_class="fast"))

        assert isinstance(statefulset, client.V1StatefulSet)
        assert statefulset.spec.replicas == 5
        assert statefulset.spec.service_name == "demo-master-headless"
        assert statefulset.spec.pod_management_policy == "Parallel"
        claims = {c.metadata.name: c for c in statefulset.spec.volume_claim_templates}
        assert set(claims) == {"meta-data", "journal-data"}
        assert claims["meta-data"].spec.storage_class_name == "fast"
        assert claims["meta-data"].spec.resources.requests == {"storage": "10Gi"}

    def test_container(self, make_spec):
        container = build_master(make_spec(image="foo:v1")).spec.template.spec.containers[0]

        assert container.name == "master"
        assert container.image == "foo:v1"
        assert container.args == ["master"]
        assert {p.name: p.container_port for p in container.ports}["rpc"] == 8995
        assert container.liveness_probe.tcp_socket.port == "rpc"
        assert container.lifecycle.pre_stop is not None
        env = _env(container)
        assert env["MASTER_HOSTNAME"].value == "$(POD_NAME).demo-master-headless.default.svc.cluster.local"
        assert env["POD_IP"].value_from.field_ref.field_path == "status.podIP"

    def test_config_mounted_read_only(self, make_spec):
        container = build_master(make_spec()).spec.template.spec.containers[0]
        mounts = {m.name: m for m in container.volume_mounts}

        assert mounts["conf"].read_only is True
        assert mounts["conf"].sub_path == "cluster.yaml"
        assert mounts["meta-data"].mount_path == "/app/store/data/meta"

    def test_graceful_shutdown_disabled(self, make_spec):
        spec = make_spec(dynamic=["kubernetes.master.graceful-shutdown=false"])

        container = build_master(spec).spec.template.spec.containers[0]

        assert container.lifecycle is None


@pytest.mark.unit
class TestWorker:

    def test_default_data_dir_gets_claim_template(self, make_spec):
        statefulset = build_worker(make_spec(worker_replicas=2, worker_storage_size="50Gi"))

        assert statefulset.spec.replicas == 2
        assert statefulset.spec.service_name == "demo-worker"
        claims = statefulset.spec.volume_claim_templates
        assert [c.metadata.name for c in claims] == ["data-dir-0"]
        assert claims[0].spec.resources.requests == {"storage": "50Gi"}

    def test_memory_data_dir_uses_empty_dir(self, make_spec):
        spec = make_spec(file_config={"cluster": {"worker": {"data_dir": [
            "[MEM:1GB]/mnt/ramdisk",
            "[HDD:100GB]/data/hdd",
        ]}}})

        statefulset = build_worker(spec)
        volumes = {v.name: v for v in statefulset.spec.template.spec.volumes}

        assert volumes["data-dir-0"].empty_dir.medium == "Memory"
        assert volumes["data-dir-0"].empty_dir.size_limit == "1Gi"
        assert "data-dir-1" not in volumes
        claims = {c.metadata.name: c for c in statefulset.spec.volume_claim_templates}
        assert list(claims) == ["data-dir-1"]
        assert claims["data-dir-1"].spec.resources.requests == {"storage": "100Gi"}

    def test_worker_env_and_security(self, make_spec):
        container = build_worker(make_spec()).spec.template.spec.containers[0]
        env = _env(container)

        assert env["WORKER_HOSTNAME"].value == "$(POD_IP)"
        assert env["MASTER_HOSTNAME"].value == "demo-master-0.demo-master-headless.default.svc.cluster.local"
        assert container.security_context.privileged is True

    def test_host_network_and_options(self, make_spec):
        spec = make_spec(dynamic=[
            "kubernetes.worker.host-network=true",
            "kubernetes.worker.init-container=true",
            "kubernetes.worker.anti-affinity=true",
        ])

        pod_spec = build_worker(spec).spec.template.spec

        assert pod_spec.host_network is True
        assert pod_spec.dns_policy == "ClusterFirstWithHostNet"
        assert pod_spec.init_containers[0].name == "wait-for-master"
        term = pod_spec.affinity.pod_anti_affinity.preferred_during_scheduling_ignored_during_execution[0]
        assert term.pod_affinity_term.topology_key == "kubernetes.io/hostname"

    def test_custom_env_sorted_after_builtin(self, make_spec):
        spec = make_spec(dynamic=["kubernetes.worker.env.ZZZ=1", "kubernetes.worker.env.AAA=2"])

        names = [var.name for var in build_worker(spec).spec.template.spec.containers[0].env]

        assert names[-2:] == ["AAA", "ZZZ"]


@pytest.mark.unit
class TestServicesAndConfigMap:

    def test_services(self, make_spec):
        service, headless = build_service(make_spec(service_type="NodePort"))

        assert service.spec.type == "NodePort"
        assert [p.name for p in service.spec.ports] == ["rpc", "journal", "web", "worker"]
        assert {p.name: p.port for p in service.spec.ports}["worker"] == 8997
        assert [p.name for p in headless.spec.ports] == ["rpc", "journal", "web"]
        assert service.spec.selector == {"app": "demo", "component": "master"}
        assert headless.spec.cluster_ip == "None"
        assert headless.spec.publish_not_ready_addresses is True
        assert headless.metadata.labels["service-type"] == "headless"

    def test_service_options_serialize(self, make_spec):
        spec = make_spec(dynamic=[
            "kubernetes.service.external-ips=10.0.0.1",
            "kubernetes.service.load-balancer-source-ranges=10.0.0.0/8",
        ])

        service, _ = build_service(spec)
        document = to_plain(service)

        assert document["spec"]["externalIPs"] == ["10.0.0.1"]
        assert document["spec"]["loadBalancerSourceRanges"] == ["10.0.0.0/8"]

    def test_master_dns_uses_headless_service(self, make_spec):
        statefulset = build_master(make_spec(namespace="storage"))
        configmap = build_configmap(make_spec(namespace="storage"))

        rendered = yaml.safe_load(configmap.data["cluster.yaml"])

        assert statefulset.spec.service_name == "demo-master-headless"
        assert rendered["journal"]["journal_addrs"][0]["hostname"].startswith("demo-master-0.demo-master-headless.storage.")

    def test_configmap_blob(self, make_spec):
        configmap = build_configmap(make_spec(master_replicas=3, namespace="storage"))

        rendered = yaml.safe_load(configmap.data["cluster.yaml"])

        assert rendered["cluster_id"] == "demo"
        assert rendered["master"]["meta_dir"] == "/app/store/data/meta"
        assert [a["hostname"] for a in rendered["journal"]["journal_addrs"]] == [
            f"demo-master-{i}.demo-master-headless.storage.svc.cluster.local" for i in range(3)
        ]
        assert [a["id"] for a in rendered["journal"]["journal_addrs"]] == [1, 2, 3]
        assert len(rendered["client"]["master_addrs"]) == 3

    def test_build_is_deterministic(self, make_spec):
        first = to_plain(build_manifests(make_spec()).worker)
        second = to_plain(build_manifests(make_spec()).worker)

        assert first == second
