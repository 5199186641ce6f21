# MIT License © 2025 Motohiro Suzuki
"""
Extract one key from a prepared stick and record it in the ledger.

- start omitted  -> next free offset from the ledger (watermark)
- length omitted -> 32 bytes (AES-256 key)
- -x hex output, -z gzip output (hex is applied before gzip)

Run:
  python3 run_extract.py /dev/sdc key.bin
  python3 run_extract.py /dev/sdc key.bin 0 32
  python3 run_extract.py /dev/sdc key.hex -x -z
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from diagnostics.logging_config import setup_logging
from keystick_core.config import StickConfig
from keystick_core.device import BlockDevice
from keystick_core.errors import ExitCode, ExtentConflict, KeystickError, TrailerError
from keystick_core.extractor import ExtractRequest, Extractor, keystream_limit_from_trailer
from keystick_core.ledger import FileLedgerStore


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Dump a keystream range from a device, with ledger record keeping")
    ap.add_argument("device", help="prepared block device")
    ap.add_argument("output", help="output file (also the ledger label)")
    ap.add_argument("start", nargs="?", default=None, help="start byte (default: next free offset)")
    ap.add_argument("length", nargs="?", default=None, help="length in bytes (default: 32)")
    ap.add_argument("-x", dest="hex_output", action="store_true", help="write hex text instead of raw bytes")
    ap.add_argument("-z", dest="compress", action="store_true", help="gzip the output (adds .gz)")
    ap.add_argument("--ledger", default=None, help="ledger file (default: $KEYSTICK_LEDGER or ~/.keystick_ledger.log)")
    ap.add_argument("--no-trailer", action="store_true",
                    help="extract from a device without a keystick trailer (extents bounded by device size only)")
    ap.add_argument("--allow-file", action="store_true", help="accept a regular file (disk image) as device")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def _print_conflict(e: ExtentConflict, args: argparse.Namespace) -> None:
    print(f"ERROR: {e.message}", file=sys.stderr)
    print("", file=sys.stderr)
    print("Suggestion: use the next available offset:", file=sys.stderr)
    print(f"  {sys.argv[0]} {args.device} {args.output} {e.suggested_offset} {e.length}", file=sys.stderr)
    print("", file=sys.stderr)
    print("Or omit the offset to auto-select:", file=sys.stderr)
    print(f"  {sys.argv[0]} {args.device} {args.output}", file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        cfg = StickConfig.from_env().with_overrides(ledger_path=args.ledger)
        ledger = FileLedgerStore(cfg.ledger_path)

        with BlockDevice(args.device, require_block=not args.allow_file) as dev:
            limit = keystream_limit_from_trailer(dev)
            if limit is None and not args.no_trailer:
                raise TrailerError(
                    f"{args.device} carries no keystick trailer, so the keystream region is unknown; "
                    "pass --no-trailer to bound extents by the device size only"
                )
            ext = Extractor(ledger, dev, device_id=args.device, keystream_limit=limit,
                            default_length=cfg.default_length)
            res = ext.extract(
                ExtractRequest(
                    output=args.output,
                    start=args.start,
                    length=args.length,
                    hex_output=args.hex_output,
                    compress=args.compress,
                )
            )
    except ExtentConflict as e:
        _print_conflict(e, args)
        return int(e.exit_code)
    except KeystickError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return int(e.exit_code)

    print("Done.")
    print(f"Extraction recorded in: {cfg.ledger_path}")
    print("")
    print("=== Extraction Summary ===")
    print(f"Device: {res.device_id}")
    print(f"Offset: {res.start}")
    print(f"Length: {res.length} bytes")
    print(f"Output: {res.output_path}")
    print(f"Next available offset: {res.next_offset}")

    if res.length == 32 and not args.hex_output and not args.compress:
        print("")
        print("To view this AES-256 key in hex format:")
        print(f"  xxd -p {res.output_path} | tr -d '\\n'")
    return int(ExitCode.OK)


if __name__ == "__main__":
    raise SystemExit(main())
