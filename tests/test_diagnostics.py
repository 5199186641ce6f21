# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import random

from diagnostics.bench_runner import bench_keystream, bench_ledger_scan
from diagnostics.fuzz_tester import FuzzStats, fuzz_allocation, fuzz_ledger_lines, fuzz_trailer_header


def test_fuzz_targets_hold() -> None:
    rng = random.Random(7)
    stats = FuzzStats()
    fuzz_ledger_lines(stats, rng, iters=300)
    fuzz_trailer_header(stats, rng, iters=300)
    fuzz_allocation(stats, rng, iters=200)

    assert stats.line_exceptions == 0
    assert stats.lines_parsed + stats.lines_skipped == 300
    assert stats.header_exceptions == 0
    assert stats.headers_rejected + stats.headers_accepted == 300
    assert stats.allocations > 0
    assert stats.overlaps_found == 0


def test_bench_smoke() -> None:
    r = bench_keystream(ops=2, block_size=4096)
    assert r.bytes_total == 8192
    s = bench_ledger_scan(records=50, ops=2)
    assert s.ops == 2
