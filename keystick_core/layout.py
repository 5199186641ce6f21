# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/layout.py

Device layout (derived, never stored):

    [0, fill_size)             keystream fill region
    [fill_size, total_size)    reserved trailer

fill_size = total_size - reserved_size
"""

from __future__ import annotations

from dataclasses import dataclass

from keystick_core.errors import InvalidSize, ReservedSpaceExceedsDevice


@dataclass(frozen=True)
class DeviceLayout:
    total_size: int
    reserved_size: int

    def __post_init__(self) -> None:
        if not isinstance(self.total_size, int) or not isinstance(self.reserved_size, int):
            raise TypeError("total_size and reserved_size must be int")
        if self.total_size <= 0:
            raise InvalidSize(str(self.total_size), "device size must be positive")
        if self.reserved_size < 0:
            raise InvalidSize(str(self.reserved_size), "reserved size must be non-negative")
        if self.reserved_size > self.total_size:
            raise ReservedSpaceExceedsDevice(self.total_size, self.reserved_size)

    @property
    def fill_size(self) -> int:
        return self.total_size - self.reserved_size

    @property
    def reserved_range(self) -> tuple[int, int]:
        return (self.fill_size, self.total_size)

    def block_count(self, block_size: int) -> int:
        return self.fill_size // _check_block_size(block_size)

    def remainder(self, block_size: int) -> int:
        return self.fill_size % _check_block_size(block_size)

    def aligned_reserved_start(self, block_size: int) -> int:
        # first block boundary at or after the start of the reserved region
        b = _check_block_size(block_size)
        return -(-self.fill_size // b) * b


def _check_block_size(block_size: int) -> int:
    if not isinstance(block_size, int) or block_size <= 0:
        raise InvalidSize(str(block_size), "block size must be a positive integer")
    return block_size


def compute_layout(total_size: int, reserved_size: int) -> DeviceLayout:
    return DeviceLayout(total_size=int(total_size), reserved_size=int(reserved_size))
