"""Tests for the classifier service."""

from __future__ import annotations

import numpy as np
import pytest
from conftest import ANGRY, HAPPY, PURPLE, SAD, build_artifact, png_bytes, solid_image

from moodtracker.ml.artifact import ModelArtifact
from moodtracker.ml.embedding import PixelEmbedder
from moodtracker.ml.image_classifier import (
    ClassificationFailure,
    ClassifierService,
    label_scores,
)
from moodtracker.ml.model_provider import ArtifactModelProvider, LoadedModel, ModelSource


class _StaticProvider:
    def __init__(self, loaded: LoadedModel) -> None:
        self._loaded = loaded

    def current(self) -> LoadedModel:
        return self._loaded

    def bundled(self) -> LoadedModel:
        return self._loaded

    def refresh(self) -> LoadedModel:
        return self._loaded


class _BrokenEmbedder:
    def embed(self, image: np.ndarray) -> np.ndarray:
        raise RuntimeError("accelerator fell over")


def _service(artifact: ModelArtifact, embedder: object | None = None) -> ClassifierService:
    loaded = LoadedModel(
        artifact=artifact,
        embedder=embedder or PixelEmbedder(artifact.manifest.embedder.grid),  # type: ignore[arg-type]
        source=ModelSource.BUNDLED,
    )
    return ClassifierService(_StaticProvider(loaded))


class TestClassify:
    @pytest.mark.parametrize(
        ("color", "expected"),
        [(SAD, "sad"), (HAPPY, "happy"), (ANGRY, "angry"), (PURPLE, "sad")],
    )
    def test_top_label(self, provider: ArtifactModelProvider, color: tuple[int, int, int], expected: str) -> None:
        result = ClassifierService(provider).classify(solid_image(color, width=500, height=300))
        assert result.ok
        assert result.label == expected
        assert 0.0 <= result.confidence <= 1.0

    def test_label_is_from_vocabulary(self, provider: ArtifactModelProvider) -> None:
        rng = np.random.default_rng(7)
        image = rng.integers(0, 256, size=(120, 90, 3), dtype=np.uint8)
        result = ClassifierService(provider).classify(image)
        assert result.label in provider.current().artifact.labels

    def test_ties_go_to_first_label(self) -> None:
        twin = solid_image(SAD)
        artifact = build_artifact({"sad": [twin], "happy": [twin]})
        result = _service(artifact).classify(twin)
        assert result.label == "sad"
        assert result.confidence == pytest.approx(0.5)

    def test_empty_model_returns_unknown(self) -> None:
        artifact = build_artifact({})
        result = _service(artifact).classify(solid_image(SAD))
        assert result.label == "Unknown"
        assert result.confidence == 0.0
        assert result.failure == ClassificationFailure.NO_RESULT

    def test_engine_error_returns_unknown(self, base_artifact: ModelArtifact) -> None:
        result = _service(base_artifact, _BrokenEmbedder()).classify(solid_image(SAD))
        assert result.label == "Unknown"
        assert result.confidence == 0.0
        assert result.failure == ClassificationFailure.INFERENCE_FAILED

    def test_unusable_array_returns_unknown(self, provider: ArtifactModelProvider) -> None:
        result = ClassifierService(provider).classify(np.zeros((0, 0, 3), dtype=np.uint8))
        assert result.failure == ClassificationFailure.DECODE_FAILED

    def test_custom_unknown_label(self, provider: ArtifactModelProvider) -> None:
        service = ClassifierService(provider, unknown_label="???")
        assert service.classify_bytes(b"nope").label == "???"


class TestClassifyBytes:
    def test_decodes_and_classifies(self, provider: ArtifactModelProvider) -> None:
        result = ClassifierService(provider).classify_bytes(png_bytes(solid_image(HAPPY)))
        assert result.label == "happy"

    def test_undecodable_bytes(self, provider: ArtifactModelProvider) -> None:
        result = ClassifierService(provider).classify_bytes(b"\x89PNG broken")
        assert result.label == "Unknown"
        assert result.confidence == 0.0
        assert result.failure == ClassificationFailure.DECODE_FAILED

    def test_pixel_limit(self, provider: ArtifactModelProvider) -> None:
        service = ClassifierService(provider, max_image_pixels=100)
        result = service.classify_bytes(png_bytes(solid_image(HAPPY)))
        assert result.failure == ClassificationFailure.DECODE_FAILED


class TestLabelScores:
    def test_scores_sum_to_one(self, base_artifact: ModelArtifact) -> None:
        embedding = base_artifact.embeddings[0]
        scores = label_scores(base_artifact, embedding)
        assert scores.shape == (3,)
        assert scores.sum() == pytest.approx(1.0)
        assert int(np.argmax(scores)) == 0

    def test_only_nearest_neighbours_vote(self) -> None:
        artifact = build_artifact(
            {"sad": [solid_image(SAD)] * 2, "happy": [solid_image(HAPPY)]},
            neighbors=2,
        )
        scores = label_scores(artifact, artifact.embeddings[0])
        assert scores[1] == 0.0
        assert scores[0] == pytest.approx(1.0)
