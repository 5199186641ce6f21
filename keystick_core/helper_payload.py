# MIT License © 2025 Motohiro Suzuki
"""
keystick_core/helper_payload.py

Builds the retrieval helper embedded in the reserved trailer: an
executable Python zip archive (shebang + zip) carrying keystick_core and
the extraction runner, so a prepared stick holds its own extraction tool.

    python3 keystick_helper.pyz /dev/sdc key.bin
"""

from __future__ import annotations

import importlib.util
import io
import zipfile
from pathlib import Path
from typing import Iterable, Optional

from keystick_core.errors import TrailerError

SHEBANG = b"#!/usr/bin/env python3\n"

_MAIN = (
    "# MIT License © 2025 Motohiro Suzuki\n"
    "from run_extract import main\n"
    "\n"
    "raise SystemExit(main())\n"
)

# the extraction path does not need the preparation-only modules
_EXCLUDE = {"keystream.py", "key_material.py", "helper_payload.py"}


def _project_root() -> Path:
    # keystick_core/helper_payload.py -> project root
    return Path(__file__).resolve().parents[1]


def _find_module_file(name: str) -> Optional[Path]:
    cand = _project_root() / f"{name}.py"
    if cand.is_file():
        return cand
    spec = importlib.util.find_spec(name)
    if spec is not None and spec.origin and Path(spec.origin).is_file():
        return Path(spec.origin)
    return None


def _core_files() -> Iterable[Path]:
    pkg = Path(__file__).resolve().parent
    return sorted(p for p in pkg.glob("*.py") if p.name not in _EXCLUDE)


def build_helper_archive() -> bytes:
    runner = _find_module_file("run_extract")
    if runner is None:
        raise TrailerError("cannot locate run_extract.py to build the retrieval helper")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("__main__.py", _MAIN)
        zf.writestr("keystick_core/__init__.py", "")
        for p in _core_files():
            zf.write(p, f"keystick_core/{p.name}")
        zf.write(runner, "run_extract.py")
        logcfg = _project_root() / "diagnostics" / "logging_config.py"
        if logcfg.is_file():
            zf.writestr("diagnostics/__init__.py", "")
            zf.write(logcfg, "diagnostics/logging_config.py")
    return SHEBANG + buf.getvalue()


def load_payload(path: Optional[str]) -> bytes:
    if path is None:
        return build_helper_archive()
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise TrailerError(f"cannot read helper payload {path}: {e}") from e
