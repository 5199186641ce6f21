# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/device.py

Byte-granular random access to a block device (or a disk image file).

- size comes from seeking to the end, which works for block devices and
  regular files alike
- reads/writes use pread/pwrite so no shared file position is involved
"""

from __future__ import annotations

import logging
import os
import stat
from typing import Optional

from keystick_core.errors import DeviceIOFailure, DeviceNotFound

log = logging.getLogger(__name__)


class BlockDevice:
    def __init__(self, path: str, *, writable: bool = False, require_block: bool = False) -> None:
        if not isinstance(path, str) or not path:
            raise TypeError("path must be a non-empty str")
        self.path = path
        self.writable = writable

        try:
            st = os.stat(path)
        except FileNotFoundError:
            raise DeviceNotFound(path) from None
        except OSError as e:
            raise DeviceNotFound(path, f"cannot stat ({e.strerror})") from e

        self.is_block_device = stat.S_ISBLK(st.st_mode)
        if require_block and not self.is_block_device:
            raise DeviceNotFound(path, "is not a block device")
        if not (self.is_block_device or stat.S_ISREG(st.st_mode)):
            raise DeviceNotFound(path, "is neither a block device nor a regular file")

        flags = os.O_RDWR if writable else os.O_RDONLY
        try:
            self._fd: Optional[int] = os.open(path, flags)
        except OSError as e:
            raise DeviceIOFailure(f"cannot open {path}: {e.strerror}", {"path": path}) from e

        try:
            self._size = os.lseek(self._fd, 0, os.SEEK_END)
        except OSError as e:
            self.close()
            raise DeviceIOFailure(f"cannot determine size of {path}: {e.strerror}", {"path": path}) from e

    @property
    def size(self) -> int:
        return self._size

    def _require_open(self) -> int:
        if self._fd is None:
            raise DeviceIOFailure(f"{self.path} is closed", {"path": self.path})
        return self._fd

    def read_at(self, offset: int, length: int) -> bytes:
        fd = self._require_open()
        if offset < 0 or length < 0:
            raise ValueError("offset and length must be non-negative")
        if offset + length > self._size:
            raise DeviceIOFailure(
                f"read out of bounds: offset={offset} length={length} device_size={self._size}",
                {"path": self.path, "offset": offset, "length": length},
            )

        out = bytearray()
        while len(out) < length:
            try:
                chunk = os.pread(fd, length - len(out), offset + len(out))
            except OSError as e:
                raise DeviceIOFailure(
                    f"read failed at offset {offset + len(out)}: {e.strerror}",
                    {"path": self.path, "offset": offset + len(out)},
                ) from e
            if not chunk:
                raise DeviceIOFailure(
                    f"short read at offset {offset}: wanted {length}, got {len(out)}",
                    {"path": self.path, "offset": offset},
                )
            out.extend(chunk)
        return bytes(out)

    def write_at(self, offset: int, data: bytes) -> int:
        """
        Write `data` at `offset`, continuing after short writes.
        Returns the number of bytes written; OSError propagates.
        """
        fd = self._require_open()
        if not self.writable:
            raise DeviceIOFailure(f"{self.path} is opened read-only", {"path": self.path})
        view = memoryview(data)
        done = 0
        while done < len(view):
            n = os.pwrite(fd, view[done:], offset + done)
            if n <= 0:
                break
            done += n
        return done

    def sync(self) -> None:
        fd = self._require_open()
        try:
            os.fsync(fd)
        except OSError as e:
            raise DeviceIOFailure(f"sync failed on {self.path}: {e.strerror}", {"path": self.path}) from e

    def close(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        except OSError as e:
            log.warning("close failed on %s: %s", self.path, e)
        finally:
            self._fd = None

    def __enter__(self) -> "BlockDevice":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
