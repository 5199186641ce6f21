# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/config.py

Runtime configuration.

- defaults: 1M writes, 1G reserved tail, 32-byte keys
- environment overrides: KEYSTICK_LEDGER, KEYSTICK_BLOCK_SIZE,
  KEYSTICK_RESERVED, KEYSTICK_RETRIEVAL_FILE
- command-line flags override the environment (done by the runners)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from keystick_core.errors import InvalidSize

AES256_KEY_LEN = 32

_UNITS = {"": 1, "K": 1024, "M": 1024 * 1024, "G": 1024 * 1024 * 1024}
_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGkmg]?)\s*$")


def parse_size(value: str | int) -> int:
    """
    "4096" -> 4096, "1M" -> 1048576, "2G" -> 2147483648.
    """
    if isinstance(value, bool):
        raise InvalidSize(str(value))
    if isinstance(value, int):
        if value < 0:
            raise InvalidSize(str(value), "size must be non-negative")
        return value
    if not isinstance(value, str):
        raise TypeError(f"size must be str or int, got {type(value).__name__}")

    m = _SIZE_RE.match(value)
    if m is None:
        raise InvalidSize(value)
    return int(m.group(1)) * _UNITS[m.group(2).upper()]


def _read_size_env(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name, "").strip()
    if not v:
        return default
    try:
        return parse_size(v)
    except InvalidSize as e:
        raise InvalidSize(v, f"{name} must be a size like 4096, 512K, 1M or 2G") from e


def default_ledger_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".keystick_ledger.log")


@dataclass(frozen=True)
class StickConfig:
    ledger_path: str
    block_size: int = 1024 * 1024
    reserved_size: int = 1024 * 1024 * 1024
    default_length: int = AES256_KEY_LEN
    retrieval_file: str = "retrieve_helper_commands.txt"

    def __post_init__(self) -> None:
        if self.block_size <= 0:
            raise InvalidSize(str(self.block_size), "block size must be positive")
        if self.reserved_size < 0:
            raise InvalidSize(str(self.reserved_size), "reserved size must be non-negative")
        if self.default_length <= 0:
            raise ValueError("default_length must be positive")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StickConfig":
        e = os.environ if env is None else env
        base = cls(ledger_path=e.get("KEYSTICK_LEDGER", "").strip() or default_ledger_path())
        return replace(
            base,
            block_size=_read_size_env(e, "KEYSTICK_BLOCK_SIZE", base.block_size),
            reserved_size=_read_size_env(e, "KEYSTICK_RESERVED", base.reserved_size),
            retrieval_file=e.get("KEYSTICK_RETRIEVAL_FILE", "").strip() or base.retrieval_file,
        )

    def with_overrides(
        self,
        *,
        ledger_path: Optional[str] = None,
        block_size: Optional[str | int] = None,
        reserved_size: Optional[str | int] = None,
        retrieval_file: Optional[str] = None,
    ) -> "StickConfig":
        return replace(
            self,
            ledger_path=ledger_path or self.ledger_path,
            block_size=self.block_size if block_size is None else parse_size(block_size),
            reserved_size=self.reserved_size if reserved_size is None else parse_size(reserved_size),
            retrieval_file=retrieval_file or self.retrieval_file,
        )
