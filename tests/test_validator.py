"""
Unit tests for the ClusterSpec validator.
"""

import pytest

from kubetier.errors import (
    ContainerNameMismatch,
    ImmutableFieldError,
    InvalidClusterId,
    InvalidEnumValue,
    InvalidFieldValue,
    InvalidResourceQuantity,
    ReplicaParityError,
    ValidationError,
)
from kubetier.validator import validate, validate_cluster_id, validate_quantity


@pytest.mark.unit
class TestMasterReplicas:

    @pytest.mark.parametrize("replicas", [1, 3, 5])
    def test_odd_counts_accepted(self, make_spec, replicas):
        validate(make_spec(master_replicas=replicas))

    @pytest.mark.parametrize("replicas", [2, 4])
    def test_even_counts_rejected(self, make_spec, replicas):
        with pytest.raises(ReplicaParityError) as exc_info:
            validate(make_spec(master_replicas=replicas))

        assert isinstance(exc_info.value, InvalidEnumValue)
        assert exc_info.value.field == "master.replicas"
        assert exc_info.value.value == replicas

    def test_zero_rejected(self, make_spec):
        with pytest.raises(ReplicaParityError):
            validate(make_spec(master_replicas=0))

    def test_change_against_live_is_immutable(self, make_spec, live_from):
        live = live_from(make_spec(master_replicas=3))

        with pytest.raises(ImmutableFieldError) as exc_info:
            validate(make_spec(master_replicas=5), live=live)

        assert exc_info.value.field == "master.replicas"
        assert exc_info.value.old == 3
        assert exc_info.value.new == 5

    def test_unchanged_against_live_accepted(self, make_spec, live_from):
        live = live_from(make_spec(master_replicas=3))

        validate(make_spec(master_replicas=3, worker_replicas=8), live=live)


@pytest.mark.unit
class TestFields:

    def test_worker_replicas_must_be_positive(self, make_spec):
        with pytest.raises(InvalidFieldValue) as exc_info:
            validate(make_spec(worker_replicas=0))

        assert exc_info.value.field == "worker.replicas"

    def test_unknown_service_type(self, make_spec):
        with pytest.raises(InvalidEnumValue) as exc_info:
            validate(make_spec(service_type="ExternalName"))

        assert exc_info.value.field == "service.type"
        assert "LoadBalancer" in exc_info.value.allowed

    def test_unknown_pull_policy(self, make_spec):
        with pytest.raises(InvalidEnumValue) as exc_info:
            validate(make_spec(image_pull_policy="Sometimes"))

        assert exc_info.value.field == "image_pull_policy"

    def test_bad_cpu_quantity(self, make_spec):
        with pytest.raises(InvalidResourceQuantity) as exc_info:
            validate(make_spec(dynamic=["kubernetes.worker.cpu=lots"]))

        assert exc_info.value.field == "worker.resources.requests.cpu"
        assert exc_info.value.value == "lots"

    def test_bad_storage_size(self, make_spec):
        with pytest.raises(InvalidResourceQuantity) as exc_info:
            validate(make_spec(master_storage_size="ten gigs"))

        assert exc_info.value.field == "master.storage_size"

    def test_errors_share_validation_base(self, make_spec):
        with pytest.raises(ValidationError):
            validate(make_spec(service_type="Nope"))


@pytest.mark.unit
class TestQuantities:

    @pytest.mark.parametrize("value", ["500m", "2", "1.5Gi", "10G", "128974848"])
    def test_valid(self, value):
        validate_quantity("x", value)

    @pytest.mark.parametrize("value", ["", "abc", "-1", "0", None, "Infinity"])
    def test_invalid(self, value):
        with pytest.raises(InvalidResourceQuantity):
            validate_quantity("x", value)


@pytest.mark.unit
class TestClusterId:

    @pytest.mark.parametrize("cluster_id", ["demo", "a", "store-01", "x" * 45])
    def test_valid(self, cluster_id):
        validate_cluster_id(cluster_id)

    @pytest.mark.parametrize("cluster_id", ["Demo", "-demo", "demo-", "demo_1", "x" * 46])
    def test_invalid(self, cluster_id):
        with pytest.raises(InvalidClusterId) as exc_info:
            validate_cluster_id(cluster_id)

        assert exc_info.value.cluster_id == cluster_id


@pytest.mark.unit
class TestDataDirs:

    def test_memory_dir_smaller_than_block_size(self, make_spec):
        spec = make_spec(file_config={"cluster": {
            "worker": {"data_dir": ["[MEM:64MB]/mnt/ramdisk"]},
            "client": {"block_size": "128MB"},
        }})

        with pytest.raises(InvalidFieldValue) as exc_info:
            validate(spec)

        assert exc_info.value.field == "worker.data_dir[0]"

    def test_memory_dir_at_least_block_size(self, make_spec):
        spec = make_spec(file_config={"cluster": {
            "worker": {"data_dir": ["[MEM:1GB]/mnt/ramdisk", "[SSD]/data/ssd"]},
        }})

        validate(spec)

    def test_malformed_data_dir(self, make_spec):
        spec = make_spec(file_config={"cluster": {"worker": {"data_dir": ["[SSD:1GB:x]/data"]}}})

        with pytest.raises(InvalidFieldValue):
            validate(spec)


@pytest.mark.unit
class TestTemplates:

    def test_template_without_tier_container(self, make_spec):
        spec = make_spec(template_patches={"worker": {"spec": {"containers": [{"name": "sidecar"}]}}})

        with pytest.raises(ContainerNameMismatch) as exc_info:
            validate(spec)

        assert exc_info.value.tier == "worker"
        assert exc_info.value.expected == "worker"
        assert exc_info.value.found == ("sidecar",)

    def test_template_with_tier_container(self, make_spec):
        spec = make_spec(template_patches={"master": {"spec": {"containers": [{"name": "master"}]}}})

        validate(spec)
