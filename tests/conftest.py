"""Shared fixtures: synthetic emotion images and a small bundled model."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from moodtracker.config import Settings
from moodtracker.ml.artifact import ArtifactManifest, EmbedderSpec, ImageConstraint, ModelArtifact, save_artifact
from moodtracker.ml.embedding import PixelEmbedder
from moodtracker.ml.model_provider import ArtifactModelProvider
from moodtracker.ml.model_store import ModelStore
from moodtracker.ml.preprocessing import resize_to_constraint

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

# Flat colours stand in for faces: the pixel embedder only sees hue.
SAD = (20, 30, 120)
HAPPY = (250, 210, 40)
ANGRY = (200, 20, 20)
# Closer to SAD than to anything else, but not identical to it.
PURPLE = (60, 20, 110)

GRID = 8


def solid_image(color: tuple[int, int, int], width: int = 64, height: int = 48) -> NDArray[np.uint8]:
    return np.full((height, width, 3), color, dtype=np.uint8)


def png_bytes(image: NDArray[np.uint8]) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format="PNG")
    return buffer.getvalue()


def build_artifact(
    exemplars: dict[str, list[NDArray[np.uint8]]],
    *,
    neighbors: int = 3,
    version: int = 1,
) -> ModelArtifact:
    constraint = ImageConstraint()
    embedder = PixelEmbedder(GRID)
    vectors = []
    targets = []
    for index, images in enumerate(exemplars.values()):
        for image in images:
            vectors.append(embedder.embed(resize_to_constraint(image, constraint)))
            targets.append(index)

    manifest = ArtifactManifest(
        name="EmotionsImageClassifier",
        version=version,
        input=constraint,
        labels=tuple(exemplars),
        embedder=EmbedderSpec(grid=GRID),
        neighbors=neighbors,
    )
    embeddings = np.stack(vectors) if vectors else np.zeros((0, GRID * GRID * 3), dtype=np.float32)
    return ModelArtifact(manifest=manifest, embeddings=embeddings, targets=np.asarray(targets))


@pytest.fixture()
def base_artifact() -> ModelArtifact:
    return build_artifact(
        {
            "sad": [solid_image(SAD)],
            "happy": [solid_image(HAPPY)],
            "angry": [solid_image(ANGRY)],
        }
    )


@pytest.fixture()
def settings(tmp_path: Path, base_artifact: ModelArtifact) -> Settings:
    models_dir = tmp_path / "models"
    models_dir.mkdir()
    save_artifact(base_artifact, models_dir / "EmotionsImageClassifier.npz")
    return Settings(
        models_dir=models_dir,
        storage_dir=tmp_path / "data",
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture()
def store(settings: Settings) -> ModelStore:
    return ModelStore(settings.updated_model_path)


@pytest.fixture()
def provider(settings: Settings, store: ModelStore) -> ArtifactModelProvider:
    return ArtifactModelProvider(settings, store)
