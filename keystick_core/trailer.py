# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/trailer.py

Reserved-trailer codec and writer.

Header (network order), immediately followed by the payload:
- magic        : 4s  b"KSTK"
- version      : u8
- flags        : u8
- header_size  : u16
- block_size   : u32
- payload_len  : u64
- fill_size    : u64
- total_size   : u64
- sha256       : 32s (of the payload)

The trailer starts at the first block boundary at or after fill_size,
so it can be read back with plain block addressing.

The last LOCATOR_SIZE bytes of the device hold a locator:
- magic        : 4s  b"KSTL"
- version      : u8
- flags        : u8
- locator_size : u16
- offset       : u64 (trailer header offset)

so readers find the trailer without knowing the reserved size or the
block size used at preparation.
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
from dataclasses import dataclass
from typing import Optional, Protocol

from keystick_core.errors import DeviceIOFailure, OutputWriteFailure, TrailerError, WriteFailure
from keystick_core.layout import DeviceLayout

log = logging.getLogger(__name__)

TRAILER_MAGIC = b"KSTK"
TRAILER_VERSION = 1

_HDR = struct.Struct("!4sBBHIQQQ32s")
HEADER_SIZE = _HDR.size

LOCATOR_MAGIC = b"KSTL"
_LOC = struct.Struct("!4sBBHQ")
LOCATOR_SIZE = _LOC.size


@dataclass(frozen=True)
class TrailerHeader:
    block_size: int
    payload_len: int
    fill_size: int
    total_size: int
    checksum: bytes
    version: int = TRAILER_VERSION
    flags: int = 0

    def to_bytes(self) -> bytes:
        return _HDR.pack(
            TRAILER_MAGIC,
            self.version & 0xFF,
            self.flags & 0xFF,
            HEADER_SIZE,
            self.block_size & 0xFFFFFFFF,
            self.payload_len,
            self.fill_size,
            self.total_size,
            bytes(self.checksum),
        )

    @staticmethod
    def from_bytes(b: bytes) -> "TrailerHeader":
        if len(b) < HEADER_SIZE:
            raise TrailerError(f"trailer header too short: {len(b)} < {HEADER_SIZE}")
        magic, version, flags, hsize, bsize, plen, fill, total, digest = _HDR.unpack(bytes(b[:HEADER_SIZE]))
        if magic != TRAILER_MAGIC:
            raise TrailerError(f"bad trailer magic: {magic!r}")
        if version != TRAILER_VERSION:
            raise TrailerError(f"unsupported trailer version: {version}")
        if hsize != HEADER_SIZE:
            raise TrailerError(f"trailer header size mismatch: {hsize}")
        if bsize == 0 or fill > total:
            raise TrailerError("trailer header has inconsistent layout fields")
        return TrailerHeader(
            block_size=bsize,
            payload_len=plen,
            fill_size=fill,
            total_size=total,
            checksum=digest,
            version=version,
            flags=flags,
        )

    def block_count(self) -> int:
        return -(-(HEADER_SIZE + self.payload_len) // self.block_size)

    def trailer_offset(self) -> int:
        return -(-self.fill_size // self.block_size) * self.block_size


def pack_locator(offset: int) -> bytes:
    return _LOC.pack(LOCATOR_MAGIC, TRAILER_VERSION, 0, LOCATOR_SIZE, offset)


def unpack_locator(b: bytes) -> int:
    if len(b) < LOCATOR_SIZE:
        raise TrailerError(f"locator too short: {len(b)} < {LOCATOR_SIZE}")
    magic, version, _flags, lsize, offset = _LOC.unpack(bytes(b[:LOCATOR_SIZE]))
    if magic != LOCATOR_MAGIC:
        raise TrailerError("no trailer locator at the end of the device")
    if version != TRAILER_VERSION or lsize != LOCATOR_SIZE:
        raise TrailerError(f"unsupported trailer locator (version {version}, size {lsize})")
    return offset


@dataclass(frozen=True)
class RetrievalMetadata:
    device: str
    offset: int
    block_size: int
    block_count: int

    def dd_command(self, out: str = "keystick_helper.pyz") -> str:
        return (
            f"sudo dd if={self.device} of={out} bs={self.block_size} "
            f"skip={self.offset // self.block_size} count={self.block_count}"
        )

    def render(self, header: Optional[TrailerHeader] = None) -> str:
        lines = [
            f"# Retrieval helper stored on {self.device}",
            f"device: {self.device}",
            f"offset: {self.offset}",
            f"block_size: {self.block_size}",
            f"block_count: {self.block_count}",
            "",
        ]
        if header is not None:
            lines += [
                f"# Reserved space starts at byte: {header.fill_size}",
                f"# Reserved space ends at byte: {header.total_size}",
                f"# Payload length: {header.payload_len} bytes (after a {HEADER_SIZE}-byte header)",
                f"# Payload sha256: {header.checksum.hex()}",
                "",
            ]
        lines += [
            "# Verified retrieval (checks header and checksum):",
            "python3 run_retrieve.py --metadata <this file> --out keystick_helper.pyz",
            "# Raw blocks (header included, strip the first "
            f"{HEADER_SIZE} bytes):",
            self.dd_command(),
        ]
        return "\n".join(lines) + "\n"

    def save(self, path: str, header: Optional[TrailerHeader] = None) -> None:
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(self.render(header))
        except OSError as e:
            raise OutputWriteFailure(path, e) from e

    @classmethod
    def load(cls, path: str) -> "RetrievalMetadata":
        fields: dict[str, str] = {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                for raw in f:
                    line = raw.strip()
                    if not line or line.startswith("#"):
                        continue
                    name, sep, value = line.partition(":")
                    if sep and name in ("device", "offset", "block_size", "block_count"):
                        fields[name] = value.strip()
        except OSError as e:
            raise TrailerError(f"cannot read retrieval metadata {path}: {e}") from e

        try:
            return cls(
                device=fields["device"],
                offset=int(fields["offset"]),
                block_size=int(fields["block_size"]),
                block_count=int(fields["block_count"]),
            )
        except (KeyError, ValueError) as e:
            raise TrailerError(f"{path}: incomplete retrieval metadata ({e})") from e


class TrailerDevice(Protocol):
    path: str

    @property
    def size(self) -> int:
        ...

    def write_at(self, offset: int, data: bytes) -> int:
        ...

    def read_at(self, offset: int, length: int) -> bytes:
        ...

    def sync(self) -> None:
        ...


class TrailerWriter:
    def __init__(self, device: TrailerDevice, layout: DeviceLayout, block_size: int) -> None:
        self.device = device
        self.layout = layout
        self.block_size = int(block_size)
        self.offset = layout.aligned_reserved_start(self.block_size)

    @property
    def locator_offset(self) -> int:
        return self.layout.total_size - LOCATOR_SIZE

    def check_capacity(self, payload_len: int) -> None:
        need = HEADER_SIZE + payload_len
        room = max(0, self.locator_offset - self.offset)
        if need > room:
            raise WriteFailure(
                "trailer",
                self.offset,
                ValueError(f"trailer needs {need} bytes but only {room} fit after the aligned offset"),
            )

    def write(self, payload: bytes) -> tuple[RetrievalMetadata, TrailerHeader]:
        """
        Write header + payload at the aligned trailer offset and sync.
        Any failure here is fatal (raises WriteFailure).
        """
        payload = bytes(payload)
        self.check_capacity(len(payload))
        header = TrailerHeader(
            block_size=self.block_size,
            payload_len=len(payload),
            fill_size=self.layout.fill_size,
            total_size=self.layout.total_size,
            checksum=hashlib.sha256(payload).digest(),
        )
        blob = header.to_bytes() + payload

        # pad to whole blocks only when the padding stays clear of the locator
        padded_len = header.block_count() * self.block_size
        if self.offset + padded_len <= self.locator_offset:
            blob += b"\x00" * (padded_len - len(blob))

        log.info("writing trailer: %d bytes at offset %d (%d block(s) of %d)",
                 len(blob), self.offset, header.block_count(), self.block_size)
        self._write("trailer", self.offset, blob)
        self._write("locator", self.locator_offset, pack_locator(self.offset))

        try:
            self.device.sync()
        except DeviceIOFailure as e:
            raise WriteFailure("trailer", self.offset, e) from e

        meta = RetrievalMetadata(
            device=self.device.path,
            offset=self.offset,
            block_size=self.block_size,
            block_count=header.block_count(),
        )
        return meta, header

    def _write(self, phase: str, offset: int, blob: bytes) -> None:
        try:
            n = self.device.write_at(offset, blob)
        except OSError as e:
            raise WriteFailure(phase, offset, e) from e
        if n != len(blob):
            raise WriteFailure(phase, offset + n, OSError(f"short write: {n} of {len(blob)} bytes"))


def read_trailer(device: TrailerDevice, offset: int) -> tuple[TrailerHeader, bytes]:
    """
    Read and validate the trailer at `offset`. Returns (header, payload).
    """
    if offset < 0 or offset + HEADER_SIZE > device.size:
        raise TrailerError(f"no room for a trailer header at offset {offset}")
    header = TrailerHeader.from_bytes(device.read_at(offset, HEADER_SIZE))
    if header.total_size != device.size:
        log.warning("trailer records device size %d but device is %d bytes", header.total_size, device.size)
    if offset + HEADER_SIZE + header.payload_len > device.size:
        raise TrailerError(f"trailer payload length {header.payload_len} runs past the end of the device")

    payload = device.read_at(offset + HEADER_SIZE, header.payload_len)
    if hashlib.sha256(payload).digest() != header.checksum:
        raise TrailerError("trailer payload checksum mismatch")
    return header, payload


def locate_trailer(device: TrailerDevice, reserved_size: int, block_size: int) -> int:
    layout = DeviceLayout(total_size=device.size, reserved_size=reserved_size)
    return layout.aligned_reserved_start(block_size)


def find_trailer(device: TrailerDevice) -> tuple[int, TrailerHeader, bytes]:
    """
    Follow the locator at the end of the device to the trailer.
    Returns (offset, header, payload); raises TrailerError when the
    device carries no consistent trailer.
    """
    if device.size < LOCATOR_SIZE + HEADER_SIZE:
        raise TrailerError(f"device too small to carry a trailer ({device.size} bytes)")
    offset = unpack_locator(device.read_at(device.size - LOCATOR_SIZE, LOCATOR_SIZE))
    header, payload = read_trailer(device, offset)
    if header.total_size != device.size or header.trailer_offset() != offset:
        raise TrailerError(
            f"trailer at offset {offset} does not match its layout "
            f"(fill_size {header.fill_size}, block_size {header.block_size}, total_size {header.total_size})"
        )
    return offset, header, payload


def write_payload_file(path: str, payload: bytes, executable: bool = True) -> None:
    mode = 0o755 if executable else 0o644
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    except OSError as e:
        raise OutputWriteFailure(path, e) from e
    try:
        view = memoryview(payload)
        while view:
            n = os.write(fd, view)
            view = view[n:]
    except OSError as e:
        raise OutputWriteFailure(path, e) from e
    finally:
        os.close(fd)
