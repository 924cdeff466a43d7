from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: Path, payload: Any, indent: int | None = 2) -> None:
    """Write ``payload`` to a sibling temp file, then rename it over ``path``."""
    ensure_dir(path.parent)
    separators = (",", ":") if indent is None else None
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=indent, separators=separators)
            handle.flush()
            os.fsync(handle.fileno())
        # mkstemp creates 0600; the published file is world-readable.
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def minified_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}.min{path.suffix or '.json'}")
