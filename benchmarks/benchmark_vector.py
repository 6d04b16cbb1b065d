"""Fused vector expression throughput on one or more CUDA streams/GPUs.

Times ``r = sqrt(a*a + b*b) + 2*sin(a)`` against the same computation done
as separate numpy passes on the host, for log-scale vector sizes.

Prerequisites:
    pip install -e '.[cuda]'

Usage:
    python benchmarks/benchmark_vector.py
    python benchmarks/benchmark_vector.py --max-size 67108864
    python benchmarks/benchmark_vector.py --queues-per-device 2
    python benchmarks/benchmark_vector.py --partition equal   # skip device benchmarking
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from devvec_compiler import functions as F  # noqa: E402
from devvec_runtime import LogicalVector, Session, SessionConfig, cuda_devices, partition_equally  # noqa: E402
from devvec_runtime.profiler import profile  # noqa: E402


def _log_scale_sizes(min_size: int, max_size: int) -> list[int]:
    sizes = []
    v = min_size
    while v < max_size:
        sizes.append(v)
        v *= 4
    sizes.append(max_size)
    return sizes


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--min-size", type=int, default=1 << 12)
    parser.add_argument("--max-size", type=int, default=1 << 24)
    parser.add_argument("--queues-per-device", type=int, default=1)
    parser.add_argument("--partition", choices=["perf", "equal"], default="perf")
    parser.add_argument("--iterations", type=int, default=20)
    parser.add_argument("-v", "--verbose", action="store_true", help="Log kernel sources and partitions")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    config = SessionConfig(partition_strategy=partition_equally if args.partition == "equal" else None)
    session = Session(config)
    devices = cuda_devices(queues_per_device=args.queues_per_device)
    print(f"Devices: {', '.join(d.name for d in devices)}")

    print(f"\n{'size':>10}  {'partition':<28} {'device ms':>10} {'numpy ms':>10} {'speedup':>8}")
    for n in _log_scale_sizes(args.min_size, args.max_size):
        x = np.random.rand(n).astype(np.float32)
        y = np.random.rand(n).astype(np.float32)
        a = LogicalVector(devices, x, session=session)
        b = LogicalVector(devices, y, session=session)
        r = LogicalVector(devices, n, dtype=np.float32, session=session)

        def run_device():
            r.assign(F.sqrt(a * a + b * b) + 2.0 * F.sin(a))
            r.synchronize()

        def run_numpy():
            return np.sqrt(x * x + y * y) + 2.0 * np.sin(x)

        dev = profile(run_device, warmup=2, iterations=args.iterations)
        host = profile(run_numpy, warmup=1, iterations=max(1, args.iterations // 4))
        np.testing.assert_allclose(r.to_numpy(), run_numpy(), rtol=1e-4, atol=1e-5)
        print(
            f"{n:>10}  {str(r.partition()):<28} {dev.total_ms:>10.3f} "
            f"{host.total_ms:>10.3f} {host.total_ms / dev.total_ms:>7.1f}x"
        )

    print(f"\nKernel cache: {len(session.kernel_cache)} entries, "
          f"{session.kernel_cache.builds} builds, {session.kernel_cache.hits} hits")


if __name__ == "__main__":
    main()
