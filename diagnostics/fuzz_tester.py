# MIT License © 2025 Motohiro Suzuki
"""
diagnostics/fuzz_tester.py

Lightweight fuzz (ALWAYS prints results)

Goals:
- Ledger line parser never raises on garbage, only skips
- Trailer header decoder rejects random bytes with TrailerError only
- Random mixes of auto and manual extents never produce an overlap

Run:
  python3 -m diagnostics.fuzz_tester
  python3 -m diagnostics.fuzz_tester --iters 5000 --seed 7
"""

from __future__ import annotations

import argparse
import os
import random
import traceback
from dataclasses import dataclass

from keystick_core.errors import TrailerError
from keystick_core.ledger import ExtentRecord, MemoryLedgerStore, extents_overlap
from keystick_core.trailer import HEADER_SIZE, TRAILER_MAGIC, TrailerHeader


@dataclass
class FuzzStats:
    iters: int = 0
    lines_parsed: int = 0
    lines_skipped: int = 0
    line_exceptions: int = 0

    headers_rejected: int = 0
    headers_accepted: int = 0
    header_exceptions: int = 0

    allocations: int = 0
    overlaps_found: int = 0


_ALPHABET = "0123456789|#- abcdefx/\t"


def _rand_line(rng: random.Random) -> str:
    n = rng.randint(0, 64)
    s = "".join(rng.choice(_ALPHABET) for _ in range(n))
    if rng.random() < 0.3:
        # near-valid records
        s = f"/dev/sd{rng.choice('abc')}|{rng.randint(-5, 99)}|{rng.randint(-5, 99)}|out|{s}"
    return s + "\n"


def fuzz_ledger_lines(stats: FuzzStats, rng: random.Random, iters: int = 2000) -> None:
    for _ in range(iters):
        stats.iters += 1
        try:
            rec = ExtentRecord.from_line(_rand_line(rng))
            if rec is None:
                stats.lines_skipped += 1
            else:
                stats.lines_parsed += 1
        except Exception:
            stats.line_exceptions += 1


def fuzz_trailer_header(stats: FuzzStats, rng: random.Random, iters: int = 2000) -> None:
    for _ in range(iters):
        stats.iters += 1
        n = rng.randint(0, HEADER_SIZE + 16)
        blob = os.urandom(n)
        if n >= 4 and rng.random() < 0.5:
            blob = TRAILER_MAGIC + blob[4:]
        try:
            TrailerHeader.from_bytes(blob)
            stats.headers_accepted += 1
        except TrailerError:
            stats.headers_rejected += 1
        except Exception:
            stats.header_exceptions += 1


def fuzz_allocation(stats: FuzzStats, rng: random.Random, iters: int = 500) -> None:
    store = MemoryLedgerStore()
    dev = "/dev/fuzz"
    for i in range(iters):
        stats.iters += 1
        length = rng.randint(1, 64)
        if rng.random() < 0.7:
            start = store.next_offset(dev)
        else:
            start = rng.randint(0, store.next_offset(dev) + 256)
        if store.check_overlap(dev, start, length) is None:
            store.append(dev, start, length, f"k{i}")
            stats.allocations += 1

    recs = store.records(dev)
    for a in range(len(recs)):
        for b in range(a + 1, len(recs)):
            if extents_overlap(recs[a].start, recs[a].length, recs[b].start, recs[b].length):
                stats.overlaps_found += 1


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--iters", type=int, default=2000, help="iterations per target")
    ap.add_argument("--seed", type=int, default=0, help="rng seed")
    args = ap.parse_args()
    if args.iters <= 0:
        raise SystemExit("--iters must be > 0")

    rng = random.Random(args.seed)
    print("=== Keystick Fuzz Tester ===")
    print("")

    stats = FuzzStats()
    try:
        fuzz_ledger_lines(stats, rng, iters=args.iters)
        print("[LEDGER] fuzz done")
        print(f"  parsed={stats.lines_parsed}")
        print(f"  skipped={stats.lines_skipped}")
        print(f"  exceptions={stats.line_exceptions}")
    except Exception as e:
        print(f"[LEDGER] fuzz failed: {e!r}")
        print(traceback.format_exc())

    print("")
    try:
        fuzz_trailer_header(stats, rng, iters=args.iters)
        print("[TRAILER] fuzz done")
        print(f"  rejected(as expected)={stats.headers_rejected}")
        print(f"  accepted={stats.headers_accepted}")
        print(f"  exceptions={stats.header_exceptions}")
    except Exception as e:
        print(f"[TRAILER] fuzz failed: {e!r}")
        print(traceback.format_exc())

    print("")
    try:
        fuzz_allocation(stats, rng, iters=max(1, args.iters // 4))
        print("[ALLOC] fuzz done")
        print(f"  allocations={stats.allocations}")
        print(f"  overlaps_found={stats.overlaps_found}")
    except Exception as e:
        print(f"[ALLOC] fuzz failed: {e!r}")
        print(traceback.format_exc())

    print("")
    print("=== DONE ===")


if __name__ == "__main__":
    main()
