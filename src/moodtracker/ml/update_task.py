"""Incremental update of a nearest-neighbour classifier."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from moodtracker.ml.artifact import ArtifactError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from moodtracker.ml.artifact import ModelArtifact
    from moodtracker.ml.model_provider import LoadedModel
    from moodtracker.ml.sample_encoder import TrainingRecord

logger = logging.getLogger(__name__)


class UpdateTaskError(RuntimeError):
    """Raised when training records cannot be applied to a model."""


def apply_update(model: LoadedModel, records: Sequence[TrainingRecord]) -> ModelArtifact:
    """Add ``records`` as exemplars and return the revised artifact.

    The input artifact is left untouched. Labels outside the vocabulary
    become new classes.

    Raises:
        UpdateTaskError: If there are no records, a record does not match the
            input constraint, or its embedding does not fit the model.
    """
    if not records:
        raise UpdateTaskError("No training records to apply")

    artifact = model.artifact
    expected = artifact.constraint.shape
    vectors = []
    for record in records:
        if record.image.shape != expected:
            raise UpdateTaskError(f"Record image shape {record.image.shape} does not match model input {expected}")
        vectors.append(model.embedder.embed(record.image))

    try:
        updated = artifact.extended(np.stack(vectors), [record.target for record in records])
    except ArtifactError as exc:
        raise UpdateTaskError(str(exc)) from exc

    logger.info(
        "Updated %s v%s -> v%s with %d record(s), %d exemplars total",
        artifact.name,
        artifact.version,
        updated.version,
        len(records),
        updated.size,
    )
    return updated
