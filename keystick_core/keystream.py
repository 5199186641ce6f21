# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/keystream.py

Keystream generation and the fill phase.

Generator:
- AES-256-CTR (cryptography) over os.urandom input, so the output is
  indistinguishable from random without the key and still depends on
  the OS CSPRNG if the key leaks

Filler:
- writes block_count blocks of B bytes, then the remainder at
  block_count * B
- a failing block is a warning, not an abort; the fill carries on
- bytes actually written are counted per block and reconciled against
  fill_size, yielding FillResult or PartialWrite
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from keystick_core.key_material import KeyMaterial
from keystick_core.layout import DeviceLayout

log = logging.getLogger(__name__)


class KeystreamGenerator:
    def __init__(self, material: KeyMaterial, entropy: Callable[[int], bytes] = os.urandom) -> None:
        self._enc = Cipher(algorithms.AES(material.key), modes.CTR(material.iv)).encryptor()
        self._entropy = entropy

    def read(self, n: int) -> bytes:
        if not isinstance(n, int) or n < 0:
            raise ValueError("n must be a non-negative int")
        if n == 0:
            return b""
        return self._enc.update(self._entropy(n))

    def close(self) -> None:
        self._enc.finalize()


class WritableDevice(Protocol):
    def write_at(self, offset: int, data: bytes) -> int:
        ...

    def sync(self) -> None:
        ...


@dataclass(frozen=True)
class FillResult:
    expected_bytes: int
    written_bytes: int
    block_count: int
    remainder: int
    missing: Tuple[Tuple[int, int], ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing and self.written_bytes == self.expected_bytes


@dataclass(frozen=True)
class PartialWrite(FillResult):
    """
    Fill finished but some ranges did not land. `missing` holds
    (offset, length) pairs that were not written.
    """

    warnings: Tuple[str, ...] = field(default_factory=tuple)


class KeystreamFiller:
    def __init__(
        self,
        device: WritableDevice,
        layout: DeviceLayout,
        block_size: int,
        *,
        progress_every: float = 0.10,
    ) -> None:
        self.device = device
        self.layout = layout
        self.block_size = int(block_size)
        self.block_count = layout.block_count(self.block_size)
        self.remainder = layout.remainder(self.block_size)
        self._progress_every = progress_every

    def fill(self, generator: KeystreamGenerator) -> FillResult:
        fill_size = self.layout.fill_size
        if self.remainder:
            log.warning(
                "fill size (%d bytes) is not a multiple of the block size (%d bytes); "
                "writing %d remainder bytes separately",
                fill_size, self.block_size, self.remainder,
            )

        written = 0
        missing: List[Tuple[int, int]] = []
        warnings: List[str] = []
        next_report = self._progress_every

        for i in range(self.block_count):
            offset = i * self.block_size
            written += self._write_range(offset, generator.read(self.block_size), missing, warnings)
            if fill_size and (offset + self.block_size) / fill_size >= next_report:
                log.info("fill progress %3.0f%% (%d / %d bytes)",
                         100.0 * (offset + self.block_size) / fill_size, offset + self.block_size, fill_size)
                next_report += self._progress_every

        if self.remainder:
            offset = self.block_count * self.block_size
            written += self._write_range(offset, generator.read(self.remainder), missing, warnings)

        self.device.sync()
        return self._reconcile(written, missing, warnings)

    def _write_range(self, offset: int, data: bytes, missing: List[Tuple[int, int]], warnings: List[str]) -> int:
        try:
            n = self.device.write_at(offset, data)
        except OSError as e:
            msg = f"write of {len(data)} bytes at offset {offset} failed: {e}"
            log.warning("%s; continuing", msg)
            warnings.append(msg)
            missing.append((offset, len(data)))
            return 0

        if n < len(data):
            msg = f"short write at offset {offset}: {n} of {len(data)} bytes"
            log.warning("%s; continuing", msg)
            warnings.append(msg)
            missing.append((offset + n, len(data) - n))
        return n

    def _reconcile(self, written: int, missing: List[Tuple[int, int]], warnings: List[str]) -> FillResult:
        expected = self.layout.fill_size
        if not missing and written == expected:
            log.info("fill complete: %d bytes written", written)
            return FillResult(
                expected_bytes=expected,
                written_bytes=written,
                block_count=self.block_count,
                remainder=self.remainder,
            )

        log.error("fill incomplete: %d of %d bytes written, %d range(s) missing",
                  written, expected, len(missing))
        return PartialWrite(
            expected_bytes=expected,
            written_bytes=written,
            block_count=self.block_count,
            remainder=self.remainder,
            missing=tuple(missing),
            warnings=tuple(warnings),
        )


def fill_device(
    device: WritableDevice,
    layout: DeviceLayout,
    block_size: int,
    material: KeyMaterial,
    *,
    entropy: Optional[Callable[[int], bytes]] = None,
) -> FillResult:
    gen = KeystreamGenerator(material, entropy or os.urandom)
    try:
        return KeystreamFiller(device, layout, block_size).fill(gen)
    finally:
        gen.close()
