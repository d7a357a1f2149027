"""Turn (image, label) pairs into training records for the active model.

Encoding is best effort: a sample that cannot be resized, written, or made
to satisfy the model's image constraint is dropped with a log line instead
of aborting the batch.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from moodtracker.ml.preprocessing import (
    ImageDecodeError,
    read_conforming_image,
    resize_to_constraint,
    write_png,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    import numpy as np
    from numpy.typing import NDArray

    from moodtracker.ml.model_provider import LoadedModel, ModelProvider

logger = logging.getLogger(__name__)

LabelPolicy = Literal["free_text", "vocabulary"]


@dataclass(frozen=True)
class Sample:
    """A user-supplied image with its corrective label."""

    image: NDArray[np.uint8]
    label: str


@dataclass(frozen=True)
class TrainingRecord:
    """One model-ready (input, target) pair."""

    image: NDArray[np.uint8]
    target: str
    source_path: Path


class SampleEncoder:
    """Encodes samples against the provider's current model."""

    def __init__(
        self,
        provider: ModelProvider,
        *,
        scratch_dir: Path | None = None,
        label_policy: LabelPolicy = "free_text",
        input_name: str = "image",
    ) -> None:
        self._provider = provider
        self._scratch_dir = scratch_dir or Path(tempfile.gettempdir()) / "moodtracker"
        self._label_policy = label_policy
        self._input_name = input_name

    @property
    def scratch_dir(self) -> Path:
        return self._scratch_dir

    def encode(self, image: NDArray[np.generic], label: str, model: LoadedModel | None = None) -> TrainingRecord | None:
        """Encode one sample, or return None if it cannot be used.

        ``model`` is the model the record will be applied to. It defaults to
        the provider's current model.
        """
        target = label.strip()
        if not target:
            logger.warning("Dropping sample with an empty label")
            return None

        artifact = (model or self._provider.current()).artifact
        constraint = artifact.constraint
        if constraint.feature_name != self._input_name:
            logger.warning("Input feature %r not found in model %s", self._input_name, artifact.name)
            return None

        if self._label_policy == "vocabulary" and target not in artifact.labels:
            logger.warning("Dropping sample: label %r is not in the model vocabulary %s", target, artifact.labels)
            return None

        try:
            resized = resize_to_constraint(image, constraint)
        except ImageDecodeError as exc:
            logger.warning("Dropping sample: %s", exc)
            return None

        try:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot create scratch directory %s: %s", self._scratch_dir, exc)
            return None

        path = self._scratch_dir / f"{uuid.uuid4().hex}.png"
        try:
            write_png(resized, path)
        except OSError as exc:
            logger.warning("Failed to write image data to %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None

        try:
            value = read_conforming_image(path, constraint)
        except ImageDecodeError as exc:
            logger.warning("Dropping sample: %s", exc)
            path.unlink(missing_ok=True)
            return None

        return TrainingRecord(image=value, target=target, source_path=path)

    def encode_batch(self, samples: Iterable[Sample], model: LoadedModel | None = None) -> list[TrainingRecord]:
        records = [self.encode(sample.image, sample.label, model) for sample in samples]
        return [record for record in records if record is not None]

    @staticmethod
    def discard(records: Iterable[TrainingRecord]) -> None:
        """Remove the transient files behind ``records``."""
        for record in records:
            try:
                record.source_path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", record.source_path, exc)
