"""Emotion classification over the active model.

The model head is a weighted k-nearest-neighbour vote over stored exemplar
embeddings. Classification never raises on bad input: failures come back as
the "Unknown" sentinel with a ``failure`` reason the caller can inspect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from moodtracker.ml.preprocessing import ImageDecodeError, decode_image, resize_to_constraint

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from moodtracker.ml.artifact import ModelArtifact
    from moodtracker.ml.model_provider import ModelProvider

logger = logging.getLogger(__name__)

_EPSILON = 1e-6


class ClassificationFailure(StrEnum):
    DECODE_FAILED = "decode_failed"
    INFERENCE_FAILED = "inference_failed"
    NO_RESULT = "no_result"


@dataclass(frozen=True)
class ClassificationResult:
    """The top prediction for an image."""

    label: str
    confidence: float
    failure: ClassificationFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def label_scores(artifact: ModelArtifact, embedding: NDArray[np.float32]) -> NDArray[np.float64]:
    """Score every label in the vocabulary for one embedding.

    The ``neighbors`` closest exemplars vote with weight 1 / distance. Scores
    are normalized to sum to 1, or are all zero when the model has no
    exemplars.
    """
    scores = np.zeros(len(artifact.labels), dtype=np.float64)
    if artifact.size == 0:
        return scores

    distances = np.linalg.norm(artifact.embeddings - embedding[np.newaxis, :], axis=1)
    k = min(artifact.manifest.neighbors, artifact.size)
    nearest = np.argsort(distances, kind="stable")[:k]
    np.add.at(scores, artifact.targets[nearest], 1.0 / (distances[nearest] + _EPSILON))
    return scores / scores.sum()


class ClassifierService:
    """Classifies images with whatever model the provider currently serves."""

    def __init__(
        self,
        provider: ModelProvider,
        *,
        unknown_label: str = "Unknown",
        max_image_pixels: int | None = None,
    ) -> None:
        self._provider = provider
        self._unknown_label = unknown_label
        self._max_image_pixels = max_image_pixels

    def classify(self, image: NDArray[np.generic]) -> ClassificationResult:
        """Classify a decoded image.

        Args:
            image: HxWx3 RGB array of any size; it is resized to the model input.

        Returns:
            The top label with its confidence, or the sentinel on failure.
        """
        model = self._provider.current()
        artifact = model.artifact
        try:
            resized = resize_to_constraint(image, artifact.constraint)
        except ImageDecodeError as exc:
            logger.warning("Cannot classify image: %s", exc)
            return self._sentinel(ClassificationFailure.DECODE_FAILED)

        try:
            scores = label_scores(artifact, model.embedder.embed(resized))
        except Exception:  # noqa: BLE001 - engine errors are reported as "no result"
            logger.exception("Error during classification with %s v%s", artifact.name, artifact.version)
            return self._sentinel(ClassificationFailure.INFERENCE_FAILED)

        if not scores.any():
            logger.info("No classification result from %s v%s", artifact.name, artifact.version)
            return self._sentinel(ClassificationFailure.NO_RESULT)

        # argmax keeps the first maximum, so ties go to the earlier label.
        best = int(np.argmax(scores))
        confidence = min(1.0, max(0.0, float(scores[best])))
        return ClassificationResult(label=artifact.labels[best], confidence=confidence)

    def classify_bytes(self, image_bytes: bytes) -> ClassificationResult:
        """Decode an uploaded file and classify it."""
        try:
            image = decode_image(image_bytes, self._max_image_pixels)
        except ImageDecodeError as exc:
            logger.warning("Cannot classify image: %s", exc)
            return self._sentinel(ClassificationFailure.DECODE_FAILED)
        return self.classify(image)

    def _sentinel(self, failure: ClassificationFailure) -> ClassificationResult:
        return ClassificationResult(label=self._unknown_label, confidence=0.0, failure=failure)
