"""
Unit tests for pod templates and the pod-template merger.

Tests:
- Every fragment field has a merge strategy
- Volume additivity and template-wins collisions
- Mount-path consistency
- Disallowed and missing containers
"""

import dataclasses

import pytest

pytest.importorskip("kubernetes")

from kubernetes import client

from kubetier.errors import ContainerNameMismatch, DisallowedContainer, MountPathMismatch, TemplateError
from kubetier.kubernetes.builders import build_worker, master_fragment, worker_fragment
from kubetier.kubernetes.merger import FIELD_STRATEGIES, merge, merge_mapping, override, union_by_name
from kubetier.kubernetes.template import PodSpecFragment, fragment_from_template, load_pod_template


def _template(container, **pod_spec):
    return {"spec": dict(containers=[container], **pod_spec)}


@pytest.mark.unit
class TestStrategies:

    def test_every_fragment_field_has_a_strategy(self):
        fields = {f.name for f in dataclasses.fields(PodSpecFragment)} - {"container_name"}

        assert {name for name, _ in FIELD_STRATEGIES} == fields

    def test_override(self):
        assert override("dns_policy", "ClusterFirst", None) == "ClusterFirst"
        assert override("dns_policy", "ClusterFirst", "Default") == "Default"

    def test_merge_mapping(self):
        assert merge_mapping("labels", {"a": "1", "b": "2"}, {"b": "3", "c": "4"}) == {"a": "1", "b": "3", "c": "4"}

    def test_union_by_name_keeps_builder_order(self):
        builder = [client.V1Volume(name="a"), client.V1Volume(name="b")]
        patch = [client.V1Volume(name="c"), client.V1Volume(name="a", empty_dir=client.V1EmptyDirVolumeSource())]

        merged = union_by_name("volumes", builder, patch)

        assert [v.name for v in merged] == ["a", "b", "c"]
        assert merged[0].empty_dir is not None


@pytest.mark.unit
class TestMerge:

    def test_no_patch_returns_builder_fragment(self, make_spec):
        fragment = master_fragment(make_spec())

        assert merge(fragment) is fragment

    def test_volumes_are_additive(self, make_spec):
        spec = make_spec()
        builder = worker_fragment(spec)
        patch = fragment_from_template(
            _template(
                {"name": "worker", "volumeMounts": [{"name": "cache", "mountPath": "/cache"}]},
                volumes=[{"name": "cache", "emptyDir": {}}],
            ),
            "worker", "worker",
        )

        merged = merge(builder, patch)

        assert set(builder.volume_names()) <= set(merged.volume_names())
        assert "cache" in merged.volume_names()
        assert merged.mount_paths()["cache"] == "/cache"

    def test_inputs_not_mutated(self, make_spec):
        builder = worker_fragment(make_spec())
        before = builder.volume_names()
        patch = fragment_from_template(
            _template({"name": "worker"}, volumes=[{"name": "extra", "emptyDir": {}}]),
            "worker", "worker",
        )

        merge(builder, patch)

        assert builder.volume_names() == before

    def test_same_mount_path_accepted(self, make_spec):
        builder = master_fragment(make_spec())
        path = builder.mount_paths()["meta-data"]
        patch = fragment_from_template(
            _template({"name": "master", "volumeMounts": [{"name": "meta-data", "mountPath": path}]}),
            "master", "master",
        )

        merged = merge(builder, patch)

        assert merged.mount_paths()["meta-data"] == path

    def test_mount_path_mismatch(self, make_spec):
        builder = master_fragment(make_spec())
        patch = fragment_from_template(
            _template({"name": "master", "volumeMounts": [{"name": "meta-data", "mountPath": "/elsewhere"}]}),
            "master", "master",
        )

        with pytest.raises(MountPathMismatch) as exc_info:
            merge(builder, patch)

        assert exc_info.value.name == "meta-data"
        assert exc_info.value.builder_path == builder.mount_paths()["meta-data"]
        assert exc_info.value.patch_path == "/elsewhere"

    def test_labels_merge_and_scheduling_overrides(self, make_spec):
        builder = worker_fragment(make_spec())
        patch = fragment_from_template(
            {
                "metadata": {"labels": {"team": "storage"}, "annotations": {"note": "hot"}},
                "spec": {
                    "containers": [{"name": "worker"}],
                    "tolerations": [{"key": "dedicated", "operator": "Exists"}],
                    "nodeSelector": {"disk": "nvme"},
                },
            },
            "worker", "worker",
        )

        merged = merge(builder, patch)

        assert merged.labels["team"] == "storage"
        assert merged.labels["app"] == "demo"
        assert merged.annotations == {"note": "hot"}
        assert merged.node_selector == {"disk": "nvme"}
        assert merged.tolerations[0].key == "dedicated"
        # Not in the template: builder value kept
        assert merged.security_context.privileged is True

    def test_template_env_wins_by_name(self, make_spec):
        builder = worker_fragment(make_spec())
        patch = fragment_from_template(
            _template({"name": "worker", "env": [{"name": "POD_CLUSTER_DOMAIN", "value": "example.org"}]}),
            "worker", "worker",
        )

        merged = merge(builder, patch)
        env = {var.name: var.value for var in merged.env}

        assert env["POD_CLUSTER_DOMAIN"] == "example.org"
        assert [var.name for var in merged.env] == [var.name for var in builder.env]

    def test_fragments_for_different_containers(self, make_spec):
        builder = worker_fragment(make_spec())
        patch = PodSpecFragment(container_name="master")

        with pytest.raises(ContainerNameMismatch):
            merge(builder, patch)


@pytest.mark.unit
class TestTemplateParsing:

    def test_missing_tier_container(self):
        with pytest.raises(ContainerNameMismatch) as exc_info:
            fragment_from_template(_template({"name": "other"}), "worker", "worker")

        assert exc_info.value.found == ("other",)

    def test_extra_container_disallowed(self):
        document = {"spec": {"containers": [{"name": "worker"}, {"name": "sidecar"}]}}

        with pytest.raises(DisallowedContainer) as exc_info:
            fragment_from_template(document, "worker", "worker")

        assert exc_info.value.name == "sidecar"

    def test_init_container_disallowed(self):
        document = _template({"name": "worker"}, initContainers=[{"name": "setup"}])

        with pytest.raises(DisallowedContainer):
            fragment_from_template(document, "worker", "worker")

    def test_template_without_spec(self):
        with pytest.raises(TemplateError):
            fragment_from_template({"metadata": {}}, "worker", "worker")

    def test_load_pod_template(self, tmp_path):
        path = tmp_path / "worker.yaml"
        path.write_text(
            "apiVersion: v1\nkind: Pod\nspec:\n  containers:\n    - name: worker\n",
            encoding="utf-8",
        )

        document = load_pod_template(str(path))

        assert document["spec"]["containers"][0]["name"] == "worker"

    def test_load_pod_template_not_a_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("just a string\n", encoding="utf-8")

        with pytest.raises(TemplateError):
            load_pod_template(str(path))


@pytest.mark.unit
class TestTemplateInBuilder:

    def test_worker_statefulset_carries_template_volume(self, make_spec):
        spec = make_spec(template_patches={"worker": _template(
            {"name": "worker", "volumeMounts": [{"name": "cache", "mountPath": "/cache"}]},
            volumes=[{"name": "cache", "emptyDir": {}}],
        )})

        statefulset = build_worker(spec)
        pod_spec = statefulset.spec.template.spec

        assert "cache" in [v.name for v in pod_spec.volumes]
        assert "conf" in [v.name for v in pod_spec.volumes]
        assert "/cache" in [m.mount_path for m in pod_spec.containers[0].volume_mounts]
        # Template cannot change the image
        assert pod_spec.containers[0].image == spec.worker.image
