"""JSON file helpers: tolerant reads and atomic writes."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from switchyard.utils.log import get_logger

try:
    import fcntl

    HAS_FCNTL = True
except ImportError:  # Windows
    HAS_FCNTL = False


logger = get_logger()


def read_json_file(path: Path) -> Optional[Any]:
    """Return the parsed JSON content of ``path``, or None if missing or unparseable."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        logger.warning(
            "[json_io] Failed to read JSON file: %s: %s",
            type(exc).__name__,
            exc,
            extra={"path": str(path)},
        )
        return None


def write_json_atomic(path: Path, data: Dict[str, Any], *, mode: Optional[int] = None) -> None:
    """Atomically write JSON content to disk.

    The content goes to a temporary file in the same directory which is then
    renamed over ``path``, so readers see either the old or the new document.
    ``mode`` is applied to the temporary file before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(data, indent=2, ensure_ascii=False)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    finally:
        with contextlib.suppress(OSError):
            if os.path.exists(temp_path):
                os.unlink(temp_path)


@contextlib.contextmanager
def exclusive_file_lock(path: Path) -> Iterator[None]:
    """Hold an advisory exclusive lock on ``<path>.lock`` for the duration of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    with open(lock_path, "a", encoding="utf-8") as handle:
        if not HAS_FCNTL:
            yield
            return
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            with contextlib.suppress(OSError):
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
