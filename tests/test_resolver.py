"""
Unit tests for the override resolver.

Covers layer precedence, determinism, dynamic -D keys, file config sections,
pod-template loading and the resolution errors.
"""

import pytest

from kubetier.errors import ConfigFileError, MalformedOverride, TemplateError, UnknownOverrideKey
from kubetier.resolver import (
    DYNAMIC_KEYS,
    LAYER_CLI,
    LAYER_DYNAMIC,
    LAYER_FILE,
    LAYER_TEMPLATE,
    load_config_file,
    parse_dynamic_overrides,
    resolve,
)


@pytest.mark.unit
class TestPrecedence:
    """file < CLI flags < dynamic overrides."""

    def test_defaults_without_layers(self):
        spec = resolve(cli_flags={"cluster_id": "demo"})

        assert spec.master.replicas == 3
        assert spec.worker.replicas == 3
        assert spec.namespace == "default"
        assert spec.service.type == "ClusterIP"
        assert spec.field_sources == {"cluster_id": LAYER_CLI}

    def test_cli_beats_file(self):
        spec = resolve(
            file_config={"kubernetes": {"worker": {"replicas": 2}}},
            cli_flags={"cluster_id": "demo", "worker_replicas": 4},
        )

        assert spec.worker.replicas == 4
        assert spec.field_sources["worker.replicas"] == LAYER_CLI

    def test_dynamic_beats_cli(self):
        spec = resolve(
            file_config={"kubernetes": {"worker": {"replicas": 2}}},
            cli_flags={"cluster_id": "demo", "worker_replicas": 4},
            dynamic_overrides=["kubernetes.worker.replicas=6"],
        )

        assert spec.worker.replicas == 6
        assert spec.field_sources["worker.replicas"] == LAYER_DYNAMIC

    def test_file_value_kept_when_not_overridden(self):
        spec = resolve(
            file_config={"kubernetes": {"cluster_id": "from-file", "worker": {"image": "foo:file"}}},
        )

        assert spec.cluster_id == "from-file"
        assert spec.worker.image == "foo:file"
        assert spec.field_sources["worker.image"] == LAYER_FILE

    def test_specific_flag_beats_generic_flag(self):
        spec = resolve(cli_flags={"cluster_id": "demo", "image": "foo:v1", "worker_image": "foo:v2"})

        assert spec.master.image == "foo:v1"
        assert spec.worker.image == "foo:v2"

    def test_specific_dynamic_key_beats_generic_key_regardless_of_order(self):
        spec = resolve(
            cli_flags={"cluster_id": "demo"},
            dynamic_overrides=[
                "kubernetes.worker.image=foo:worker",
                "kubernetes.container.image=foo:all",
            ],
        )

        assert spec.master.image == "foo:all"
        assert spec.worker.image == "foo:worker"


@pytest.mark.unit
class TestDeterminism:

    def test_same_inputs_give_identical_specs(self):
        layers = dict(
            file_config={"kubernetes": {"worker": {"labels": {"b": "2", "a": "1"}}}},
            cli_flags={"cluster_id": "demo", "master_replicas": 5},
            dynamic_overrides=["kubernetes.worker.env.B=2", "kubernetes.worker.env.A=1"],
        )

        first = resolve(**layers)
        second = resolve(**layers)

        assert first == second
        assert first.model_dump() == second.model_dump()
        assert list(first.worker.env) == ["A", "B"]

    def test_repeated_dynamic_key_keeps_last_value(self):
        spec = resolve(
            cli_flags={"cluster_id": "demo"},
            dynamic_overrides=["kubernetes.worker.replicas=2", "kubernetes.worker.replicas=7"],
        )

        assert spec.worker.replicas == 7

    def test_composite_key_replaces_whole_mapping(self):
        spec = resolve(
            file_config={"kubernetes": {"worker": {"labels": {"team": "storage", "tier": "hot"}}}},
            cli_flags={"cluster_id": "demo"},
            dynamic_overrides=["kubernetes.worker.labels=tier=cold"],
        )

        assert spec.worker.labels == {"tier": "cold"}
        assert spec.is_set("worker.labels")


@pytest.mark.unit
class TestDynamicOverrides:

    def test_registry_keys_are_unique(self):
        keys = [entry.key for entry in DYNAMIC_KEYS]
        assert len(keys) == len(set(keys))

    def test_cpu_cores_become_millicores(self):
        spec = resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.master.cpu=2"])

        assert spec.master.resources.requests["cpu"] == "2000m"
        assert spec.master.resources.limits["cpu"] == "2000m"

    def test_cpu_quantity_kept_verbatim(self):
        spec = resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.worker.cpu=750m"])

        assert spec.worker.resources.requests["cpu"] == "750m"

    def test_boolean_keys(self):
        spec = resolve(
            cli_flags={"cluster_id": "demo"},
            dynamic_overrides=["kubernetes.worker.host-network=true", "kubernetes.master.graceful-shutdown=no"],
        )

        assert spec.worker.host_network is True
        assert spec.master.graceful_shutdown is False

    def test_env_keys(self):
        spec = resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.master.env.JAVA_OPTS=-Xmx2g"])

        assert spec.master.env == {"JAVA_OPTS": "-Xmx2g"}
        assert spec.field_sources["master.env.JAVA_OPTS"] == LAYER_DYNAMIC

    def test_value_may_contain_equals_sign(self):
        parsed = parse_dynamic_overrides(["kubernetes.master.env.OPTS=a=b"])

        assert parsed == {"master.env.OPTS": "a=b"}

    def test_unknown_key_rejected(self):
        with pytest.raises(UnknownOverrideKey) as exc_info:
            resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.worker.colour=blue"])

        assert exc_info.value.key == "kubernetes.worker.colour"
        assert exc_info.value.layer == "dynamic"

    def test_key_outside_namespace_rejected(self):
        with pytest.raises(UnknownOverrideKey):
            parse_dynamic_overrides(["worker.replicas=3"])

    def test_entry_without_equals_is_malformed(self):
        with pytest.raises(MalformedOverride):
            parse_dynamic_overrides(["kubernetes.worker.replicas"])

    def test_non_integer_replicas_is_malformed(self):
        with pytest.raises(MalformedOverride) as exc_info:
            resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.worker.replicas=many"])

        assert exc_info.value.key == "kubernetes.worker.replicas"
        assert exc_info.value.value == "many"

    def test_bad_mapping_is_malformed(self):
        with pytest.raises(MalformedOverride):
            resolve(cli_flags={"cluster_id": "demo"}, dynamic_overrides=["kubernetes.worker.labels=novalue"])


@pytest.mark.unit
class TestFileLayer:

    def test_cluster_section_becomes_app_config(self):
        spec = resolve(
            file_config={"cluster": {"worker": {"data_dir": ["[MEM:1GB]/mnt/ramdisk"]}, "client": {"block_size": "64MB"}}},
            cli_flags={"cluster_id": "demo"},
        )

        assert spec.app_config.worker.data_dir == ["[MEM:1GB]/mnt/ramdisk"]
        assert spec.app_config.client.block_size == "64MB"

    def test_storage_section_then_tier_override(self):
        spec = resolve(
            file_config={"kubernetes": {
                "storage": {"storage_class": "fast", "size": "50Gi"},
                "worker": {"storage_size": "100Gi"},
            }},
            cli_flags={"cluster_id": "demo"},
        )

        assert spec.master.storage_class == "fast"
        assert spec.worker.storage_class == "fast"
        assert spec.master.storage_size == "50Gi"
        assert spec.worker.storage_size == "100Gi"

    def test_yaml_scalars_are_stringified(self):
        spec = resolve(
            file_config={"kubernetes": {"master": {"env": {"DEBUG": True, "PORT": 8080}}}},
            cli_flags={"cluster_id": "demo"},
        )

        assert spec.master.env == {"DEBUG": "true", "PORT": "8080"}

    def test_unknown_file_key_rejected(self):
        with pytest.raises(UnknownOverrideKey) as exc_info:
            resolve(file_config={"kubernetes": {"worker": {"colour": "blue"}}}, cli_flags={"cluster_id": "demo"})

        assert exc_info.value.layer == "file"

    def test_unknown_cli_flag_rejected(self):
        with pytest.raises(UnknownOverrideKey):
            resolve(cli_flags={"cluster_id": "demo", "colour": "blue"})

    def test_missing_cluster_id(self):
        with pytest.raises(MalformedOverride):
            resolve(cli_flags={"worker_replicas": 2})

    def test_load_config_file(self, tmp_path):
        path = tmp_path / "cluster.yaml"
        path.write_text("kubernetes:\n  cluster_id: demo\n  worker:\n    replicas: 4\n", encoding="utf-8")

        spec = resolve(file_config=load_config_file(str(path)))

        assert spec.cluster_id == "demo"
        assert spec.worker.replicas == 4

    def test_load_config_file_missing(self, tmp_path):
        with pytest.raises(ConfigFileError):
            load_config_file(str(tmp_path / "missing.yaml"))

    def test_load_config_file_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigFileError):
            load_config_file(str(path))


@pytest.mark.unit
class TestTemplateLayer:

    def test_template_file_loaded_through_loader(self):
        patch = {"spec": {"containers": [{"name": "worker"}]}}
        loaded = []

        def loader(path):
            loaded.append(path)
            return patch

        spec = resolve(
            cli_flags={"cluster_id": "demo", "worker_pod_template": "/tmp/worker.yaml"},
            loader=loader,
        )

        assert loaded == ["/tmp/worker.yaml"]
        assert spec.worker.pod_template_patch == patch
        assert spec.field_sources["worker.pod_template_patch"] == LAYER_TEMPLATE

    def test_explicit_patch_wins_over_file(self):
        patch = {"spec": {"containers": [{"name": "master"}]}}

        spec = resolve(
            cli_flags={"cluster_id": "demo", "master_pod_template": "/tmp/unused.yaml"},
            template_patches={"master": patch},
            loader=lambda path: pytest.fail("loader should not be called"),
        )

        assert spec.master.pod_template_patch == patch

    def test_missing_template_file(self, tmp_path):
        with pytest.raises(TemplateError):
            resolve(cli_flags={"cluster_id": "demo", "worker_pod_template": str(tmp_path / "nope.yaml")})

    def test_unknown_tier_rejected(self):
        with pytest.raises(UnknownOverrideKey):
            resolve(cli_flags={"cluster_id": "demo"}, template_patches={"proxy": {"spec": {}}})
