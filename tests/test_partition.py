"""Tests for vector partitioning strategies and the set-once scheme."""

import logging

import pytest

from devvec_runtime.partition import (
    PartitionScheme,
    VectorPerfPartitioner,
    align_up,
    partition_by_weights,
    partition_equally,
    validate_partition,
)
from devvec_runtime.session import Session, SessionConfig
from tests.conftest import NumpyDevice


def _devices(count):
    return [NumpyDevice(f"d{i}") for i in range(count)]


# ---------------------------------------------------------------------------
# 1. Equal partitioning
# ---------------------------------------------------------------------------


class TestPartitionEqually:
    def test_single_device_owns_everything(self):
        assert partition_equally(10, _devices(1)) == [0, 10]

    def test_two_devices_aligned_chunks(self):
        # ceil(100 / 2) = 50 -> aligned to 64
        assert partition_equally(100, _devices(2)) == [0, 64, 100]

    def test_exact_multiple(self):
        assert partition_equally(128, _devices(2)) == [0, 64, 128]

    def test_tiny_vector_leaves_trailing_devices_empty(self):
        assert partition_equally(5, _devices(3)) == [0, 5, 5, 5]

    def test_zero_length(self):
        assert partition_equally(0, _devices(3)) == [0, 0, 0, 0]

    @pytest.mark.parametrize("n,count", [(1, 2), (17, 3), (1000, 4), (1 << 20, 3)])
    def test_invariants(self, n, count):
        part = partition_equally(n, _devices(count))
        validate_partition(part, n, count)
        for a in part[1:-1]:
            assert a % 16 == 0 or a == n


class TestAlignUp:
    def test_values(self):
        assert align_up(0) == 0
        assert align_up(1) == 16
        assert align_up(16) == 16
        assert align_up(50) == 64
        assert align_up(5, 4) == 8


class TestValidatePartition:
    def test_wrong_length(self):
        with pytest.raises(ValueError, match="boundaries"):
            validate_partition([0, 10], 10, 2)

    def test_wrong_endpoints(self):
        with pytest.raises(ValueError, match="span"):
            validate_partition([0, 5, 9], 10, 2)

    def test_decreasing(self):
        with pytest.raises(ValueError, match="non-decreasing"):
            validate_partition([0, 8, 4, 10], 10, 3)


# ---------------------------------------------------------------------------
# 2. Weighted partitioning
# ---------------------------------------------------------------------------


class TestWeightedPartition:
    def test_proportional_shares(self):
        part = partition_by_weights(1024, [1.0, 3.0])
        assert part == [0, 256, 1024]

    def test_equal_weights(self):
        assert partition_by_weights(100, [2.0, 2.0]) == [0, 64, 100]

    def test_zero_total_rejected(self):
        with pytest.raises(ValueError):
            partition_by_weights(10, [0.0, 0.0])

    def test_perf_partitioner_caches_weights(self):
        calls = []

        def measure(device, session):
            calls.append(device.name)
            return {"d0": 1.0, "d1": 3.0}[device.name]

        devices = _devices(2)
        partitioner = VectorPerfPartitioner(session=None, measure=measure)
        assert partitioner(1024, devices) == [0, 256, 1024]
        assert partitioner(2048, devices) == [0, 512, 2048]
        assert calls == ["d0", "d1"]

    def test_perf_partitioner_single_device_skips_benchmark(self):
        def measure(device, session):
            raise AssertionError("should not benchmark a single device")

        partitioner = VectorPerfPartitioner(session=None, measure=measure)
        assert partitioner(77, _devices(1)) == [0, 77]

    def test_default_measurement_runs_vector_add(self):
        session = Session(SessionConfig(partition_strategy=partition_equally))
        device = NumpyDevice("bench")
        partitioner = VectorPerfPartitioner(session)
        assert partitioner.weight(device) > 0
        assert device.builds == 1
        assert len(device.launches) == 2


# ---------------------------------------------------------------------------
# 3. Set-once scheme
# ---------------------------------------------------------------------------


class TestPartitionScheme:
    def test_default_installed_on_first_use(self):
        scheme = PartitionScheme(lambda: partition_equally)
        assert not scheme.is_set
        assert scheme(100, _devices(2)) == [0, 64, 100]
        assert scheme.function is partition_equally

    def test_second_set_is_ignored_with_warning(self, caplog):
        def first(n, devices):
            return partition_equally(n, devices)

        def second(n, devices):
            return [0] * len(devices) + [n]

        scheme = PartitionScheme(lambda: partition_equally)
        scheme.set(first)
        with caplog.at_level(logging.WARNING, logger="devvec_runtime.partition"):
            scheme.set(second)
        assert scheme.function is first
        assert "already set" in caplog.text

    def test_set_after_use_is_ignored(self):
        scheme = PartitionScheme(lambda: partition_equally)
        scheme(10, _devices(1))
        scheme.set(lambda n, devices: [0, n])
        assert scheme.function is partition_equally

    def test_invalid_strategy_output_rejected(self):
        scheme = PartitionScheme(lambda: (lambda n, devices: [0, n]))
        with pytest.raises(ValueError):
            scheme(10, _devices(2))

    def test_session_config_installs_strategy(self):
        session = Session(SessionConfig(partition_strategy=partition_equally))
        assert session.partition_scheme.function is partition_equally
        assert session.partition(100, _devices(2)) == [0, 64, 100]
