# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/extractor.py

One key extraction, as a linear state machine (no retries):

  ResolveOffset -> ResolveLength -> Validate -> CheckOverlap
  -> Read -> FormatOutput -> RecordLedger -> Done

Everything from ResolveOffset to RecordLedger runs under the ledger's
per-device lock, so two concurrent runs cannot both claim the same
watermark.

Output formats:
- raw bytes
- hex (lowercase hex + newline)
- gzip of the above; with both flags the order is hex first, then gzip,
  and the output label gets a ".gz" suffix
"""

from __future__ import annotations

import gzip
import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol

from keystick_core.config import AES256_KEY_LEN
from keystick_core.errors import ExtentConflict, ExtentOutOfRange, KeystickError, MalformedInput, OutputWriteFailure
from keystick_core.ledger import ExtentRecord, LedgerStore, check_field
from keystick_core.trailer import find_trailer

log = logging.getLogger(__name__)


class ReadableDevice(Protocol):
    path: str

    @property
    def size(self) -> int:
        ...

    def read_at(self, offset: int, length: int) -> bytes:
        ...


@dataclass(frozen=True)
class ExtractRequest:
    output: str
    start: Optional[int | str] = None
    length: Optional[int | str] = None
    hex_output: bool = False
    compress: bool = False


@dataclass(frozen=True)
class ExtractionResult:
    device_id: str
    start: int
    length: int
    output_path: str
    auto_offset: bool
    default_length: bool
    next_offset: int
    record: ExtentRecord


def parse_non_negative(field: str, value: int | str) -> int:
    if isinstance(value, bool):
        raise MalformedInput(field, "must be an integer")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str) and value.strip().isdigit():
        n = int(value.strip())
    else:
        raise MalformedInput(field, f"must be a non-negative integer, got {value!r}")
    if n < 0:
        raise MalformedInput(field, f"must be non-negative, got {n}")
    return n


def format_output(data: bytes, *, hex_output: bool, compress: bool) -> bytes:
    out = bytes(data)
    if hex_output:
        out = (out.hex() + "\n").encode("ascii")
    if compress:
        out = gzip.compress(out, mtime=0)
    return out


def output_path_for(label: str, compress: bool) -> str:
    return f"{label}.gz" if compress else label


def write_output(path: str, data: bytes) -> None:
    # key material: owner-only, and never over an earlier output
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError as e:
        raise OutputWriteFailure(path, OSError("output file already exists")) from e
    except OSError as e:
        raise OutputWriteFailure(path, e) from e
    try:
        view = memoryview(data)
        while view:
            n = os.write(fd, view)
            view = view[n:]
        os.fsync(fd)
    except OSError as e:
        raise OutputWriteFailure(path, e) from e
    finally:
        os.close(fd)


def keystream_limit_from_trailer(device: ReadableDevice) -> Optional[int]:
    """
    fill_size recorded in the device's trailer header, or None when the
    device carries no valid trailer.
    """
    try:
        _, header, _ = find_trailer(device)
    except KeystickError as e:
        log.debug("no trailer found on %s: %s", device.path, e)
        return None
    return header.fill_size


class Extractor:
    def __init__(
        self,
        ledger: LedgerStore,
        device: ReadableDevice,
        *,
        device_id: Optional[str] = None,
        keystream_limit: Optional[int] = None,
        default_length: int = AES256_KEY_LEN,
    ) -> None:
        self.ledger = ledger
        self.device = device
        self.device_id = check_field("device", device_id or device.path)
        self.keystream_limit = keystream_limit
        self.default_length = int(default_length)

    def _limit(self) -> int:
        if self.keystream_limit is not None:
            return self.keystream_limit
        log.warning("keystream size unknown for %s; only the device size (%d) bounds extents",
                    self.device_id, self.device.size)
        return self.device.size

    def extract(self, req: ExtractRequest) -> ExtractionResult:
        check_field("output", req.output)
        final_path = output_path_for(req.output, req.compress)
        check_field("output", final_path)

        self.ledger.ensure_initialized()
        with self.ledger.locked(self.device_id):
            # ResolveOffset
            auto_offset = req.start is None
            if auto_offset:
                start = self.ledger.next_offset(self.device_id)
                log.info("auto-detected next available offset: %d", start)
            else:
                start = parse_non_negative("start", req.start)

            # ResolveLength
            default_length = req.length is None
            if default_length:
                length = self.default_length
                log.info("using default length: %d bytes", length)
            else:
                length = parse_non_negative("length", req.length)

            # Validate
            if length == 0:
                raise MalformedInput("length", "must be positive")
            limit = self._limit()
            if start + length > limit:
                raise ExtentOutOfRange(start, length, limit)

            # CheckOverlap
            conflict = self.ledger.check_overlap(self.device_id, start, length)
            if conflict is not None:
                raise ExtentConflict(start, length, conflict, self.ledger.next_offset(self.device_id))

            # Read
            log.info("reading %d bytes from %s at offset %d", length, self.device_id, start)
            data = self.device.read_at(start, length)

            # FormatOutput
            write_output(final_path, format_output(data, hex_output=req.hex_output, compress=req.compress))

            # RecordLedger
            record = self.ledger.append(self.device_id, start, length, final_path)
            next_offset = self.ledger.next_offset(self.device_id)

        return ExtractionResult(
            device_id=self.device_id,
            start=start,
            length=length,
            output_path=final_path,
            auto_offset=auto_offset,
            default_length=default_length,
            next_offset=next_offset,
            record=record,
        )
