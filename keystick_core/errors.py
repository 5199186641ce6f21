# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/errors.py

Error taxonomy for preparation, retrieval and extraction.

Every KeystickError carries an exit code so runner scripts can map
failures to process status without inspecting the message.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional


class ExitCode(IntEnum):
    OK = 0
    FAILURE = 1
    INVALID_INPUT = 2
    DEVICE_NOT_FOUND = 3
    EXTENT_CONFLICT = 4
    IO_FAILURE = 5


class KeystickError(Exception):
    exit_code: ExitCode = ExitCode.FAILURE

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class DeviceNotFound(KeystickError):
    exit_code = ExitCode.DEVICE_NOT_FOUND

    def __init__(self, path: str, reason: str = "not found") -> None:
        super().__init__(f"{path}: {reason}", {"path": path})
        self.path = path


class InvalidSize(KeystickError):
    exit_code = ExitCode.INVALID_INPUT

    def __init__(self, value: str, reason: str = "invalid size") -> None:
        super().__init__(f"{reason}: {value!r}", {"value": value})
        self.value = value


class ReservedSpaceExceedsDevice(KeystickError):
    exit_code = ExitCode.INVALID_INPUT

    def __init__(self, total_size: int, reserved_size: int) -> None:
        super().__init__(
            f"device size ({total_size} bytes) is smaller than reserved space ({reserved_size} bytes)",
            {"total_size": total_size, "reserved_size": reserved_size},
        )
        self.total_size = total_size
        self.reserved_size = reserved_size


class MalformedInput(KeystickError):
    exit_code = ExitCode.INVALID_INPUT

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}", {"field": field})
        self.field = field
        self.reason = reason


class ExtentConflict(KeystickError):
    """
    Requested extent overlaps an extent already recorded in the ledger.

    `record` is the first conflicting ExtentRecord found and
    `suggested_offset` the device watermark at the time of the check.
    """

    exit_code = ExitCode.EXTENT_CONFLICT

    def __init__(self, start: int, length: int, record: Any, suggested_offset: int) -> None:
        super().__init__(
            f"range overlap: requested offset {start}, length {length} (ends at {start + length}) "
            f"conflicts with offset {record.start}, length {record.length} (ends at {record.end}), "
            f"output {record.label!r} extracted {record.timestamp}",
            {"start": start, "length": length, "suggested_offset": suggested_offset},
        )
        self.start = start
        self.length = length
        self.record = record
        self.suggested_offset = suggested_offset


class ExtentOutOfRange(KeystickError):
    exit_code = ExitCode.INVALID_INPUT

    def __init__(self, start: int, length: int, limit: int) -> None:
        super().__init__(
            f"extent [{start}, {start + length}) extends past the keystream region (ends at {limit})",
            {"start": start, "length": length, "limit": limit},
        )
        self.start = start
        self.length = length
        self.limit = limit


class WriteFailure(KeystickError):
    exit_code = ExitCode.IO_FAILURE

    def __init__(self, phase: str, offset: int, cause: Optional[BaseException] = None) -> None:
        msg = f"{phase} write failed at offset {offset}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg, {"phase": phase, "offset": offset})
        self.phase = phase
        self.offset = offset
        self.cause = cause


class DeviceIOFailure(KeystickError):
    exit_code = ExitCode.IO_FAILURE


class LedgerIOFailure(KeystickError):
    exit_code = ExitCode.IO_FAILURE

    def __init__(self, operation: str, path: str, cause: Optional[BaseException] = None) -> None:
        msg = f"ledger {operation} failed: {path}"
        if cause is not None:
            msg += f" ({cause})"
        super().__init__(msg, {"operation": operation, "path": path})
        self.operation = operation
        self.path = path
        self.cause = cause


class TrailerError(KeystickError):
    exit_code = ExitCode.IO_FAILURE


class OutputWriteFailure(KeystickError):
    exit_code = ExitCode.IO_FAILURE

    def __init__(self, path: str, cause: Optional[BaseException] = None) -> None:
        msg = f"cannot write {path}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg, {"path": path})
        self.path = path
        self.cause = cause
