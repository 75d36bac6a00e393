"""
upscaler/inference/output_sink.py
===================================
Persists encoded outputs under ``{output_root}/{selector.namespace}/``.

File names are ``{stem}_upscaled_{YYYYMMDD_HHMMSS}.png``. Two uploads with
the same stem finishing within the same second overwrite each other;
second resolution is kept for compatibility with existing output folders.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import TYPE_CHECKING, Callable

from upscaler.inference.errors import PersistenceError

if TYPE_CHECKING:
    from upscaler.inference.registry import ModelSelector

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(frozen=True)
class StoredArtifact:
    path: Path
    filename: str


def base_name(source_name: str) -> str:
    """Stem of the last path component, with either separator style."""
    name = PureWindowsPath(PurePosixPath(source_name or "").name).name
    stem = PurePosixPath(name).stem.strip()
    return stem if stem and stem not in {".", ".."} else "image"


class OutputSink:

    def __init__(self, root: Path, clock: Callable[[], datetime] = datetime.now) -> None:
        self.root = Path(root)
        self._clock = clock

    def directory_for(self, selector: "ModelSelector") -> Path:
        return self.root / selector.namespace

    def filename_for(self, source_name: str) -> str:
        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        return f"{base_name(source_name)}_upscaled_{timestamp}.png"

    def persist(self, encoded: bytes, source_name: str, selector: "ModelSelector") -> StoredArtifact:
        directory = self.directory_for(selector)
        filename = self.filename_for(source_name)
        path = directory / filename
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(encoded)
        except (OSError, ValueError) as exc:
            # ValueError: pathlib rejects names with embedded NUL bytes
            raise PersistenceError(f"Could not write {path}: {exc}") from exc

        logger.info("Stored [%s] as %s (%d bytes)", source_name, path, len(encoded))
        return StoredArtifact(path=path, filename=filename)
