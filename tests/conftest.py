# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest


class FakeDevice:
    """
    In-memory device. `fail_at` offsets raise OSError on write,
    `short_at` drops the last 100 bytes of that write.
    """

    def __init__(self, size: int, *, fail_at: Iterable[int] = (), short_at: Optional[int] = None) -> None:
        self.path = "/dev/fake"
        self.buf = bytearray(size)
        self.fail_at = set(fail_at)
        self.short_at = short_at
        self.syncs = 0
        self.writes: list[tuple[int, int]] = []

    @property
    def size(self) -> int:
        return len(self.buf)

    def write_at(self, offset: int, data: bytes) -> int:
        if offset in self.fail_at:
            raise OSError(5, "Input/output error")
        n = len(data)
        if offset == self.short_at:
            n -= 100
        self.buf[offset : offset + n] = data[:n]
        self.writes.append((offset, n))
        return n

    def read_at(self, offset: int, length: int) -> bytes:
        return bytes(self.buf[offset : offset + length])

    def sync(self) -> None:
        self.syncs += 1


@pytest.fixture
def fake_device() -> Callable[..., FakeDevice]:
    return FakeDevice


@pytest.fixture
def image(tmp_path: Path) -> Path:
    # 4 KiB disk image with a recognisable byte pattern
    p = tmp_path / "stick.img"
    p.write_bytes(bytes(range(256)) * 16)
    return p


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KEYSTICK_LEDGER", "KEYSTICK_BLOCK_SIZE", "KEYSTICK_RESERVED", "KEYSTICK_RETRIEVAL_FILE"):
        monkeypatch.delenv(name, raising=False)
