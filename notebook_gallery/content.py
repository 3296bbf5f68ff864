"""Notebook documents on disk, one {uuid}.ipynb per notebook."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

SUFFIX = ".ipynb"


class ContentStore:
    """File cache of raw notebook documents."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, uuid: str) -> Path:
        return self.directory / f"{uuid}{SUFFIX}"

    def uuid_for(self, path: Path) -> str | None:
        """Inverse of path_for. None for files that aren't notebook documents."""
        path = Path(path)
        if path.suffix != SUFFIX or path.name.startswith("."):
            return None
        return path.stem

    def exists(self, uuid: str) -> bool:
        return self.path_for(uuid).exists()

    def read(self, uuid: str) -> bytes | None:
        """Raw document bytes, or None if the file is missing.

        Decoding is left to the parser, which reports bad encodings as
        format errors.
        """
        path = self.path_for(uuid)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def write(self, uuid: str, content: str) -> Path:
        """Write a document atomically (temp file + rename)."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(uuid)
        fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=".nb_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug(f"Wrote notebook content {path}")
        return path

    def remove(self, uuid: str) -> bool:
        """Delete a document. A missing file is not an error.

        Returns:
            True if a file was removed.
        """
        try:
            self.path_for(uuid).unlink()
            return True
        except FileNotFoundError:
            return False
