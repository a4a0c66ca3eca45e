"""JSON document helpers shared by the queue store, checkpoints and reports."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from uuid import uuid4


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting.

    The document is written to a sibling temp file, flushed to disk and renamed over the
    target, so readers see either the previous or the new version, never a torn write.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
    data = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def newest_first(paths: list[Path]) -> list[Path]:
    """Sort timestamp-named documents from newest to oldest."""

    return sorted(paths, key=lambda item: item.name, reverse=True)
