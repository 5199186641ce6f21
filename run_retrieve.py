# MIT License © 2025 Motohiro Suzuki
"""
Read the retrieval helper back from a prepared stick's reserved trailer,
checking header and checksum.

Run:
  python3 run_retrieve.py --metadata retrieve_helper_commands.txt
  python3 run_retrieve.py --device /dev/sdc
  python3 run_retrieve.py --device /dev/sdc --reserved 1G --block-size 1M
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from diagnostics.logging_config import setup_logging
from keystick_core.config import StickConfig
from keystick_core.device import BlockDevice
from keystick_core.errors import ExitCode, KeystickError
from keystick_core.trailer import RetrievalMetadata, find_trailer, locate_trailer, read_trailer, write_payload_file


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Retrieve the helper embedded in a stick's reserved trailer")
    ap.add_argument("--metadata", default=None, help="retrieval metadata file written at preparation")
    ap.add_argument("--device", default=None, help="device (overrides the metadata file)")
    ap.add_argument("--reserved", default=None, help="reserved size used at preparation (default: follow the locator)")
    ap.add_argument("--block-size", default=None, help="block size used at preparation (default: follow the locator)")
    ap.add_argument("--out", default="keystick_helper.pyz", help="output file")
    ap.add_argument("--allow-file", action="store_true", help="accept a regular file (disk image) as device")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        meta = RetrievalMetadata.load(args.metadata) if args.metadata else None
        device = args.device or (meta.device if meta else None)
        if device is None:
            print("ERROR: give --metadata or --device", file=sys.stderr)
            return int(ExitCode.INVALID_INPUT)

        with BlockDevice(device, require_block=not args.allow_file) as dev:
            if meta is not None:
                offset = meta.offset
                header, payload = read_trailer(dev, offset)
            elif args.reserved or args.block_size:
                cfg = StickConfig.from_env().with_overrides(block_size=args.block_size, reserved_size=args.reserved)
                offset = locate_trailer(dev, cfg.reserved_size, cfg.block_size)
                header, payload = read_trailer(dev, offset)
            else:
                offset, header, payload = find_trailer(dev)

        write_payload_file(args.out, payload)
    except KeystickError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return int(e.exit_code)

    print(f"Retrieved {header.payload_len} bytes from {device} at offset {offset} -> {args.out}")
    print(f"sha256: {header.checksum.hex()} (verified)")
    return int(ExitCode.OK)


if __name__ == "__main__":
    raise SystemExit(main())
