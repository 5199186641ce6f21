# MIT License © 2025 Motohiro Suzuki
"""
Prepare a stick: fill it with AES-256-CTR keystream, leaving a reserved
trailer at the end that carries the retrieval helper, then verify.

DESTROYS everything on the device outside the reserved trailer.

Run:
  python3 run_prepare.py -d /dev/sdd -k key.txt
  python3 run_prepare.py -d /dev/sdc -r 512M -p
"""

from __future__ import annotations

import argparse
import getpass
import logging
import shutil
import subprocess
import sys
from typing import Optional, Sequence

from diagnostics.logging_config import setup_logging
from keystick_core.config import StickConfig
from keystick_core.device import BlockDevice
from keystick_core.errors import ExitCode, KeystickError
from keystick_core.helper_payload import load_payload
from keystick_core.key_material import make_key_material
from keystick_core.keystream import PartialWrite, fill_device
from keystick_core.layout import compute_layout
from keystick_core.trailer import TrailerWriter
from keystick_core.verify import verify_layout

log = logging.getLogger("run_prepare")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Fill a block device with encrypted random bytes (keystream)")
    ap.add_argument("-d", "--device", required=True, help="target block device")
    ap.add_argument("-b", "--block-size", default=None, help="write block size, e.g. 1M (default 1M)")
    ap.add_argument("-k", "--key-file", default=None, help="save the 256-bit key and IV to this file")
    ap.add_argument("-r", "--reserved", default=None, help="reserved trailer size, e.g. 512M or 2G (default 1G)")
    ap.add_argument("-f", "--freeze", action="store_true", help="also issue hdparm --security-freeze")
    ap.add_argument("-n", "--no-verify", action="store_true", help="skip verification")
    ap.add_argument("-y", "--yes", action="store_true", help="non-interactive; do not ask for confirmation")
    ap.add_argument("-p", "--passphrase", action="store_true", help="derive key/IV from a passphrase")
    ap.add_argument("--payload", default=None, help="file to embed instead of the built-in retrieval helper")
    ap.add_argument("--retrieval-file", default=None, help="where to save retrieval metadata")
    ap.add_argument("--allow-file", action="store_true", help="accept a regular file (disk image) as device")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def security_freeze(device: str) -> None:
    if not sys.platform.startswith("linux"):
        log.warning("hdparm --security-freeze not supported on %s; skipping", sys.platform)
        return
    if shutil.which("hdparm") is None:
        log.warning("hdparm not found; skipping security freeze")
        return
    print("Issuing hdparm --security-freeze (may fail on some USB bridges)...")
    proc = subprocess.run(["hdparm", "--security-freeze", device], check=False)
    if proc.returncode != 0:
        log.warning("hdparm exited with status %d", proc.returncode)


def _confirm(device: str) -> bool:
    answer = input(f"Type YES to irrevocably wipe {device} (except reserved space): ")
    return answer.strip() == "YES"


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        cfg = StickConfig.from_env().with_overrides(
            block_size=args.block_size,
            reserved_size=args.reserved,
            retrieval_file=args.retrieval_file,
        )
        payload = load_payload(args.payload)

        with BlockDevice(args.device, writable=True, require_block=not args.allow_file) as dev:
            layout = compute_layout(dev.size, cfg.reserved_size)
            bs = cfg.block_size
            trailer = TrailerWriter(dev, layout, bs)
            trailer.check_capacity(len(payload))

            print(f"• Target device      : {args.device}")
            print(f"• Device size        : {layout.total_size} bytes")
            print(f"• Block size         : {bs} bytes")
            print(f"• Fill size          : {layout.fill_size} bytes")
            print(f"• Block count        : {layout.block_count(bs)} blocks "
                  f"(plus {layout.remainder(bs)} remainder bytes)")
            print(f"• Reserved space     : {layout.reserved_size} bytes")
            print(f"• Reserved range     : [{layout.reserved_range[0]}, {layout.reserved_range[1]})")
            print(f"• Trailer offset     : {trailer.offset} ({len(payload)} byte payload)")
            print(f"• Verify             : {'no' if args.no_verify else 'yes'}")
            print(f"• hdparm freeze      : {'yes' if args.freeze else 'no'}")
            print(f"• Key file           : {args.key_file or '(discard after run)'}")
            print(f"• Passphrase derive  : {'yes' if args.passphrase else 'no'}")
            print("")

            if not args.yes and not _confirm(args.device):
                print("Aborted.")
                return int(ExitCode.OK)

            passphrase = getpass.getpass("Enter passphrase for key derivation: ") if args.passphrase else None
            with make_key_material(passphrase) as material:
                del passphrase
                if args.key_file:
                    material.export(args.key_file)
                elif material.salt is not None:
                    print(f"Passphrase salt (needed to re-derive the key): {material.salt.hex()}")
                print("Writing encrypted random data... this takes a while.")
                fill = fill_device(dev, layout, bs, material)

            print("Writing retrieval helper to reserved space...")
            meta, header = trailer.write(payload)
            meta.save(cfg.retrieval_file, header)
            print(f"Retrieval metadata saved to {cfg.retrieval_file}")

            if args.freeze:
                security_freeze(args.device)

            if not args.no_verify:
                for sample in verify_layout(dev, layout):
                    print("")
                    print(f"Hex-dump of first {len(sample.preview)} bytes of {sample.name} area:")
                    for line in sample.hexdump():
                        print(line)
                    print(f"SHA-256 of first {sample.digest_len} bytes of {sample.name} area: {sample.sha256}")
                print("")
                print("To retrieve the helper from the device, use:")
                print(f"  {meta.dd_command()}")
    except KeystickError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return int(e.exit_code)

    if isinstance(fill, PartialWrite):
        print(f"ERROR: fill incomplete, {fill.written_bytes} of {fill.expected_bytes} bytes written",
              file=sys.stderr)
        for offset, length in fill.missing:
            print(f"  missing: offset {offset}, length {length}", file=sys.stderr)
        return int(ExitCode.IO_FAILURE)

    print("Done.")
    return int(ExitCode.OK)


if __name__ == "__main__":
    raise SystemExit(main())
