# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/ledger.py

Extent ledger: append-only record of every keystream range handed out.

Record format (one per line):

    DEVICE|START|LENGTH|OUTPUT|TIMESTAMP

- lines starting with "#" are header/comments
- malformed lines are skipped, never treated as corruption
- records for different devices never interact
- next_offset is a watermark (max end), it never reclaims gaps

Concurrency:
- appends are a single write() on an O_APPEND descriptor, then fsync
- locked(device_id) is an exclusive advisory lock; callers hold it
  across resolve -> check -> read -> append
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol, runtime_checkable

from keystick_core.errors import LedgerIOFailure, MalformedInput

log = logging.getLogger(__name__)

LEDGER_HEADER = (
    "# Keystick Extent Ledger\n"
    "# Format: DEVICE|START|LENGTH|OUTPUT|TIMESTAMP\n"
)

_SEP = "|"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def extents_overlap(s1: int, l1: int, s2: int, l2: int) -> bool:
    # half-open [s1, s1+l1) vs [s2, s2+l2)
    return s1 < s2 + l2 and s2 < s1 + l1


def check_field(name: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise MalformedInput(name, "must be a non-empty string")
    if _SEP in value or "\n" in value or "\r" in value:
        raise MalformedInput(name, f"must not contain {_SEP!r} or line breaks")
    if name == "device" and value.startswith("#"):
        raise MalformedInput(name, "must not start with '#'")
    return value


@dataclass(frozen=True)
class ExtentRecord:
    device_id: str
    start: int
    length: int
    label: str
    timestamp: str

    @property
    def end(self) -> int:
        return self.start + self.length

    def overlaps(self, start: int, length: int) -> bool:
        return extents_overlap(self.start, self.length, start, length)

    def to_line(self) -> str:
        return _SEP.join((self.device_id, str(self.start), str(self.length), self.label, self.timestamp)) + "\n"

    @staticmethod
    def from_line(line: str) -> "ExtentRecord | None":
        s = line.rstrip("\r\n")
        if not s.strip() or s.lstrip().startswith("#"):
            return None
        parts = s.split(_SEP)
        if len(parts) != 5:
            return None
        dev, start_s, length_s, label, ts = parts
        if not dev:
            return None
        try:
            start = int(start_s)
            length = int(length_s)
        except ValueError:
            return None
        if start < 0 or length <= 0:
            return None
        return ExtentRecord(device_id=dev, start=start, length=length, label=label, timestamp=ts)


@runtime_checkable
class LedgerStore(Protocol):
    def ensure_initialized(self) -> None:
        ...

    def records(self, device_id: str) -> List[ExtentRecord]:
        ...

    def next_offset(self, device_id: str) -> int:
        ...

    def check_overlap(self, device_id: str, start: int, length: int) -> Optional[ExtentRecord]:
        ...

    def append(self, device_id: str, start: int, length: int, label: str) -> ExtentRecord:
        ...

    def locked(self, device_id: str) -> contextlib.AbstractContextManager[None]:
        ...


class _LedgerQueries:
    """
    Watermark and overlap queries shared by every store; subclasses
    provide records() and append().
    """

    def records(self, device_id: str) -> List[ExtentRecord]:
        raise NotImplementedError

    def next_offset(self, device_id: str) -> int:
        return max((r.end for r in self.records(device_id)), default=0)

    def check_overlap(self, device_id: str, start: int, length: int) -> Optional[ExtentRecord]:
        for r in self.records(device_id):
            if r.overlaps(start, length):
                return r
        return None

    @staticmethod
    def _make_record(device_id: str, start: int, length: int, label: str) -> ExtentRecord:
        check_field("device", device_id)
        check_field("output", label)
        if not isinstance(start, int) or not isinstance(length, int):
            raise TypeError("start and length must be int")
        if start < 0:
            raise MalformedInput("start", "must be non-negative")
        if length <= 0:
            raise MalformedInput("length", "must be positive")
        return ExtentRecord(device_id=device_id, start=start, length=length, label=label, timestamp=_utc_now_iso())


class FileLedgerStore(_LedgerQueries):
    def __init__(self, path: str) -> None:
        self.path = path
        self._thread_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def ensure_initialized(self) -> None:
        parent = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(parent, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return
        except OSError as e:
            raise LedgerIOFailure("initialize", self.path, e) from e
        try:
            os.write(fd, LEDGER_HEADER.encode("utf-8"))
            os.fsync(fd)
        except OSError as e:
            raise LedgerIOFailure("initialize", self.path, e) from e
        finally:
            os.close(fd)
        log.info("ledger initialized at %s", self.path)

    def _iter_lines(self) -> Iterator[str]:
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                yield from f
        except FileNotFoundError:
            return
        except OSError as e:
            raise LedgerIOFailure("read", self.path, e) from e

    def all_records(self) -> List[ExtentRecord]:
        out: List[ExtentRecord] = []
        for n, line in enumerate(self._iter_lines(), start=1):
            rec = ExtentRecord.from_line(line)
            if rec is None:
                if line.strip() and not line.lstrip().startswith("#"):
                    log.debug("skipping malformed ledger line %d in %s", n, self.path)
                continue
            out.append(rec)
        return out

    def records(self, device_id: str) -> List[ExtentRecord]:
        return [r for r in self.all_records() if r.device_id == device_id]

    def append(self, device_id: str, start: int, length: int, label: str) -> ExtentRecord:
        rec = self._make_record(device_id, start, length, label)
        data = rec.to_line().encode("utf-8")
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        except OSError as e:
            raise LedgerIOFailure("append", self.path, e) from e
        try:
            n = os.write(fd, data)
            if n != len(data):
                raise LedgerIOFailure("append", self.path, OSError(f"short write {n}/{len(data)}"))
            os.fsync(fd)
        except OSError as e:
            raise LedgerIOFailure("append", self.path, e) from e
        finally:
            os.close(fd)
        return rec

    def lock_path(self, device_id: str) -> str:
        tag = hashlib.sha256(device_id.encode("utf-8")).hexdigest()[:16]
        return f"{self.path}.{tag}.lock"

    def _thread_lock(self, device_id: str) -> threading.Lock:
        with self._guard:
            if device_id not in self._thread_locks:
                self._thread_locks[device_id] = threading.Lock()
            return self._thread_locks[device_id]

    @contextlib.contextmanager
    def locked(self, device_id: str) -> Iterator[None]:
        # flock covers other processes; the thread lock covers this one
        path = self.lock_path(device_id)
        with self._thread_lock(device_id):
            try:
                fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as e:
                raise LedgerIOFailure("lock", path, e) from e
            try:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    log.info("waiting for ledger lock on %s", device_id)
                    fcntl.flock(fd, fcntl.LOCK_EX)
                log.debug("ledger lock acquired for %s", device_id)
                yield
            finally:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                finally:
                    os.close(fd)


class MemoryLedgerStore(_LedgerQueries):
    def __init__(self, records: Optional[List[ExtentRecord]] = None) -> None:
        self._items: List[ExtentRecord] = list(records or [])
        self._initialized = False
        self._lock = threading.Lock()

    def ensure_initialized(self) -> None:
        self._initialized = True

    def records(self, device_id: str) -> List[ExtentRecord]:
        return [r for r in self._items if r.device_id == device_id]

    def append(self, device_id: str, start: int, length: int, label: str) -> ExtentRecord:
        rec = self._make_record(device_id, start, length, label)
        self._items.append(rec)
        return rec

    @contextlib.contextmanager
    def locked(self, device_id: str) -> Iterator[None]:
        with self._lock:
            yield

    def __len__(self) -> int:
        return len(self._items)
