# MIT License © 2025 Motohiro Suzuki
"""
diagnostics/bench_runner.py

Benchmark runner (ALWAYS prints results)

What it measures:
- keystream generation throughput (MB/s), which bounds how long a fill takes
- ledger overlap scan on a ledger file of N records

Run:
  python3 -m diagnostics.bench_runner
  python3 -m diagnostics.bench_runner --records 20000
"""

from __future__ import annotations

import argparse
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Callable

from keystick_core.key_material import KeyMaterial
from keystick_core.keystream import KeystreamGenerator
from keystick_core.ledger import FileLedgerStore


@dataclass(frozen=True)
class BenchResult:
    name: str
    ops: int
    seconds: float
    bytes_total: int

    @property
    def ops_per_sec(self) -> float:
        return self.ops / self.seconds if self.seconds > 0 else 0.0

    @property
    def mb_per_sec(self) -> float:
        return (self.bytes_total / (1024 * 1024)) / self.seconds if self.seconds > 0 else 0.0


def _now() -> float:
    return time.perf_counter()


def _bench_loop(name: str, ops: int, bytes_per_op: int, fn: Callable[[], None]) -> BenchResult:
    t0 = _now()
    for _ in range(ops):
        fn()
    t1 = _now()
    return BenchResult(name=name, ops=ops, seconds=(t1 - t0), bytes_total=ops * bytes_per_op)


def bench_keystream(ops: int = 256, block_size: int = 1024 * 1024) -> BenchResult:
    with KeyMaterial.generate() as material:
        gen = KeystreamGenerator(material)

    def _read() -> None:
        _ = gen.read(block_size)

    res = _bench_loop("KeystreamGenerator.read", ops=ops, bytes_per_op=block_size, fn=_read)
    gen.close()
    return res


def bench_ledger_scan(records: int = 10_000, ops: int = 20) -> BenchResult:
    with tempfile.TemporaryDirectory() as d:
        path = os.path.join(d, "ledger.log")
        store = FileLedgerStore(path)
        store.ensure_initialized()
        with open(path, "a", encoding="utf-8") as f:
            for i in range(records):
                f.write(f"/dev/bench|{i * 32}|32|k{i}|2025-01-01T00:00:00+00:00\n")
        size = os.path.getsize(path)

        def _scan() -> None:
            _ = store.check_overlap("/dev/bench", records * 32, 32)

        return _bench_loop(f"FileLedgerStore.check_overlap ({records} records)", ops=ops, bytes_per_op=size, fn=_scan)


def _print(r: BenchResult) -> None:
    print(f"  {r.name}: ops={r.ops} time={r.seconds:.4f}s ops/s={r.ops_per_sec:,.0f} MB/s={r.mb_per_sec:,.2f}")


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--blocks", type=int, default=256, help="1 MiB keystream blocks to generate")
    ap.add_argument("--records", type=int, default=10_000, help="ledger records to scan")
    args = ap.parse_args()
    if args.blocks <= 0 or args.records <= 0:
        raise SystemExit("--blocks and --records must be > 0")

    print("=== Keystick Bench Runner ===")
    print("")

    try:
        print("[KEYSTREAM]")
        _print(bench_keystream(ops=args.blocks))
    except Exception as e:
        print(f"[KEYSTREAM] bench failed: {e!r}")

    print("")

    try:
        print("[LEDGER]")
        _print(bench_ledger_scan(records=args.records))
    except Exception as e:
        print(f"[LEDGER] bench failed: {e!r}")

    print("")
    print("=== DONE ===")


if __name__ == "__main__":
    main()
