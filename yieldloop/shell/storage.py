"""JSON document storage with write-new-then-replace semantics."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path


def read_json(path: str | Path) -> dict | None:
    """Return the parsed document, or None if it does not exist.

    Raises OSError / ValueError on unreadable or corrupt files; callers decide
    whether that is fatal.
    """
    p = Path(path)
    if not p.exists():
        return None
    data = json.loads(p.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"{p} does not hold a JSON object")
    return data


def atomic_write_json(path: str | Path, data: dict) -> None:
    """Write to a sibling temp file, fsync, then os.replace over the target."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=p.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, p)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
