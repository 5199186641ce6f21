# MIT License © 2025 Motohiro Suzuki
"""
Post-preparation spot checks: hex preview and SHA-256 of the start of
the fill region and of the reserved trailer.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Protocol

from keystick_core.layout import DeviceLayout

PREVIEW_BYTES = 64
DIGEST_BYTES = 1024 * 1024


class ReadableDevice(Protocol):
    def read_at(self, offset: int, length: int) -> bytes:
        ...


@dataclass(frozen=True)
class RegionSample:
    name: str
    offset: int
    preview: bytes
    sha256: str
    digest_len: int

    def hexdump(self) -> List[str]:
        lines = []
        for i in range(0, len(self.preview), 16):
            chunk = self.preview[i : i + 16]
            lines.append(f"{self.offset + i:08x}  " + " ".join(f"{b:02x}" for b in chunk))
        return lines


def sample_region(device: ReadableDevice, name: str, start: int, end: int) -> RegionSample:
    span = max(0, end - start)
    n = min(DIGEST_BYTES, span)
    data = device.read_at(start, n) if n else b""
    return RegionSample(
        name=name,
        offset=start,
        preview=data[:PREVIEW_BYTES],
        sha256=hashlib.sha256(data).hexdigest(),
        digest_len=n,
    )


def verify_layout(device: ReadableDevice, layout: DeviceLayout) -> List[RegionSample]:
    fill_start, fill_end = 0, layout.fill_size
    res_start, res_end = layout.reserved_range
    return [
        sample_region(device, "fill", fill_start, fill_end),
        sample_region(device, "reserved", res_start, res_end),
    ]
