"""Incremental build cache.

One row per input file lives in ``<cache_dir>/rows/<sha1(input path)>.json``.
A row records the key the file was built with, the files it included and the
outputs it produced. Only the worker building a file writes its row, and the
row is written after every artifact, so an interrupted build never leaves a
row that claims outputs it did not finish.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import arrow
from loguru import logger

from fslc.build.artifacts import atomic_write


def path_digest(path: str | Path) -> str:
    """Stable row file name for an input path."""
    return hashlib.sha1(str(Path(path).resolve()).encode("utf-8")).hexdigest()


def compute_key(
    input_path: str | Path, includes: list[str], arguments: dict[str, Any]
) -> str:
    """Hash an input path, the contents of it and its includes, and the arguments.

    A missing file hashes as a marker, so deleting an include changes the key.
    """
    digest = hashlib.sha256()
    digest.update(str(Path(input_path).resolve()).encode("utf-8"))
    for name in [str(input_path), *sorted(includes)]:
        digest.update(b"\0file\0")
        digest.update(str(name).encode("utf-8"))
        try:
            digest.update(Path(name).read_bytes())
        except OSError:
            digest.update(b"\0missing\0")
    digest.update(b"\0args\0")
    digest.update(json.dumps(arguments, sort_keys=True, default=str).encode("utf-8"))
    return digest.hexdigest()


@dataclass
class CacheRow:
    """Cache record of one input file."""

    input: str
    key: str
    includes: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    built_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheRow":
        return cls(
            input=data["input"],
            key=data["key"],
            includes=list(data.get("includes", [])),
            outputs=list(data.get("outputs", [])),
            built_at=data.get("built_at", ""),
        )


class BuildCache:
    """Row store of the incremental build."""

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir)
        self.rows_dir = self.cache_dir / "rows"

    def row_path(self, input_path: str | Path) -> Path:
        return self.rows_dir / f"{path_digest(input_path)}.json"

    def load(self, input_path: str | Path) -> CacheRow | None:
        """Read the row of an input file; unreadable rows count as missing."""
        path = self.row_path(input_path)
        if not path.exists():
            return None
        try:
            return CacheRow.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable cache row {path}: {e}")
            return None

    def store(
        self,
        input_path: str | Path,
        key: str,
        includes: list[str],
        outputs: list[str],
    ) -> CacheRow:
        """Write the row of an input file. Call after every output is in place."""
        row = CacheRow(
            input=str(Path(input_path).resolve()),
            key=key,
            includes=sorted(includes),
            outputs=sorted(outputs),
            built_at=arrow.utcnow().isoformat(),
        )
        atomic_write(self.row_path(input_path), json.dumps(asdict(row), indent=2) + "\n")
        return row

    def invalidate(self, input_path: str | Path) -> None:
        self.row_path(input_path).unlink(missing_ok=True)

    def is_fresh(self, input_path: str | Path, arguments: dict[str, Any]) -> bool:
        """Whether a file can be skipped: same key and every output present."""
        row = self.load(input_path)
        if row is None:
            return False
        if compute_key(input_path, row.includes, arguments) != row.key:
            return False
        missing = [o for o in row.outputs if not Path(o).exists()]
        if missing:
            logger.debug(f"{input_path}: cached outputs missing ({', '.join(missing)})")
            return False
        return True
