"""Atomic file writes.

Every write goes to a temporary file in the target directory and is
moved into place with :func:`os.replace`, so readers see either the
old or the new content and never a partial file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_bytes(path: str | Path, data: bytes, mode: int | None = None) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def atomic_write_json(path: str | Path, data: Any, mode: int | None = None) -> None:  # noqa: ANN401
    payload = json.dumps(data, indent=2, sort_keys=False, default=str).encode("utf-8")
    atomic_write_bytes(path, payload + b"\n", mode)


def read_json(path: str | Path, default: Any = None) -> Any:  # noqa: ANN401
    try:
        with open(path, encoding="utf-8") as f:  # noqa: PTH123
            return json.load(f)
    except FileNotFoundError:
        return default
