"""Durable storage for the personalized model artifact.

The store owns a single canonical path. Saves go through a temporary file in
the same directory and an ``os.replace``, so a crash mid-write never leaves a
truncated artifact at the canonical path.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from moodtracker.ml.artifact import ArtifactError, read_artifact, write_artifact

if TYPE_CHECKING:
    from moodtracker.ml.artifact import ModelArtifact

logger = logging.getLogger(__name__)


class ModelStoreError(RuntimeError):
    """Raised when the updated artifact cannot be persisted."""


class ModelStore:
    """Persists and loads the updated model at a fixed path."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def exists(self) -> bool:
        return self._path.is_file()

    def save(self, artifact: ModelArtifact) -> Path:
        """Atomically write ``artifact`` to the canonical path.

        The temporary copy is read back before it is published, so only a
        loadable artifact can ever replace the previous one.

        Raises:
            ModelStoreError: If writing, verifying or renaming fails.
        """
        directory = self._path.parent
        replacing = self.exists
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.stem}-", suffix=".tmp", dir=directory)
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as fh:
                    write_artifact(artifact, fh)
                    fh.flush()
                    os.fsync(fh.fileno())
                read_artifact(tmp_path)
                os.replace(tmp_path, self._path)
            finally:
                tmp_path.unlink(missing_ok=True)
        except (OSError, ArtifactError) as exc:
            raise ModelStoreError(f"Could not save the updated model to {self._path}: {exc}") from exc

        logger.info(
            "Updated model v%s %s %s",
            artifact.version,
            "replaced at" if replacing else "saved to",
            self._path,
        )
        return self._path

    def load(self) -> ModelArtifact | None:
        """Return the persisted artifact, or None when missing or unreadable."""
        if not self.exists:
            logger.debug("No updated model at %s", self._path)
            return None
        try:
            return read_artifact(self._path)
        except ArtifactError as exc:
            logger.warning("Ignoring unreadable updated model: %s", exc)
            return None

    def clear(self) -> bool:
        """Delete the persisted artifact. Returns True if a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ModelStoreError(f"Could not remove {self._path}: {exc}") from exc
        logger.info("Removed updated model at %s", self._path)
        return True
