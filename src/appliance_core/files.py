from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from .log import get_logger

logger = get_logger("files")


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("json_read_failed", path=str(path), error=str(e))
        return default


def write_json(path: Path, payload: Any) -> None:
    """Replace `path` with `payload` as a whole file (write to a sibling temp file, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
