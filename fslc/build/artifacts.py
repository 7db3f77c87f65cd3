"""Artifact writing and output-path ownership.

Every file the build produces is written to a temporary sibling and renamed
into place, so a reader never observes a partially written artifact.
"""

import os
import tempfile
import threading
from pathlib import Path

from loguru import logger

from fslc.compiler.errors import BuildError


def atomic_write(path: str | Path, data: bytes | str) -> Path:
    """Write ``data`` to ``path`` through a temporary sibling and a rename.

    Args:
        path: Destination file
        data: File contents; text is encoded as UTF-8

    Returns:
        The destination path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode("utf-8")

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug(f"Wrote {path} ({len(data)} bytes)")
    return path


class OutputRegistry:
    """Thread-safe registry of which binary owns each output path.

    Two binaries of one build claiming the same path is a planning error.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[Path, str] = {}

    def claim(self, path: str | Path, owner: str) -> None:
        """Record ``owner`` as the producer of ``path``.

        Raises:
            BuildError: If another owner already claimed the path
        """
        key = Path(path).resolve()
        with self._lock:
            current = self._owners.setdefault(key, owner)
        if current != owner:
            raise BuildError(
                f"output path {path} is written by both {current} and {owner}"
            )

    def owner(self, path: str | Path) -> str | None:
        with self._lock:
            return self._owners.get(Path(path).resolve())

    def clear(self) -> None:
        with self._lock:
            self._owners.clear()
