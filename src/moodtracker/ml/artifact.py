"""Model artifact: the versioned, single-file form of an updatable classifier.

An artifact is an ``.npz`` container holding a JSON manifest (input
constraint, output vocabulary, embedder description) next to the exemplar
embeddings of a k-nearest-neighbour head and, optionally, the bytes of an
ONNX feature extractor. Artifacts are never mutated: an update produces a
new artifact with a bumped version.
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class ArtifactError(ValueError):
    """Raised when an artifact is malformed or cannot be (de)serialized."""


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ImageConstraint(BaseModel):
    """Expected shape and format of the model's image input."""

    model_config = ConfigDict(frozen=True)

    feature_name: str = "image"
    width: int = Field(default=224, ge=1)
    height: int = Field(default=224, ge=1)
    pixel_format: Literal["RGB"] = "RGB"

    @property
    def shape(self) -> tuple[int, int, int]:
        return (self.height, self.width, 3)


class EmbedderKind(StrEnum):
    PIXEL = "pixel"
    ONNX = "onnx"


class EmbedderSpec(BaseModel):
    """How images are turned into feature vectors for the nearest-neighbour head."""

    model_config = ConfigDict(frozen=True)

    kind: EmbedderKind = EmbedderKind.PIXEL
    grid: int = Field(default=16, ge=1, description="Side of the pixel lattice (pixel embedder only)")

    @property
    def pixel_dim(self) -> int:
        """Width of the vectors produced by the pixel embedder."""
        return self.grid * self.grid * 3


class ArtifactManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: int = Field(default=1, ge=1)
    input: ImageConstraint = Field(default_factory=ImageConstraint)
    target_name: str = "target"
    labels: tuple[str, ...] = ()
    embedder: EmbedderSpec = Field(default_factory=EmbedderSpec)
    neighbors: int = Field(default=3, ge=1)


# ---------------------------------------------------------------------------
# Artifact
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelArtifact:
    """Manifest plus learned parameters of an updatable image classifier."""

    manifest: ArtifactManifest
    embeddings: NDArray[np.float32]
    targets: NDArray[np.int32]
    backbone: bytes | None = None

    def __post_init__(self) -> None:
        embeddings = np.array(self.embeddings, dtype=np.float32)
        if embeddings.size == 0:
            embeddings = embeddings.reshape(0, embeddings.shape[-1] if embeddings.ndim == 2 else 0)
        targets = np.array(self.targets, dtype=np.int32).reshape(-1)

        if embeddings.ndim != 2:
            raise ArtifactError(f"Embeddings must be 2-dimensional, got shape {embeddings.shape}")
        if embeddings.shape[0] != targets.shape[0]:
            raise ArtifactError(f"{embeddings.shape[0]} embeddings but {targets.shape[0]} targets")
        if targets.size and (targets.min() < 0 or targets.max() >= len(self.manifest.labels)):
            raise ArtifactError("Target index outside the label vocabulary")
        if self.manifest.embedder.kind == EmbedderKind.ONNX and not self.backbone:
            raise ArtifactError("ONNX embedder declared but no backbone stored")
        if self.manifest.embedder.kind == EmbedderKind.PIXEL and targets.size:
            expected = self.manifest.embedder.pixel_dim
            if embeddings.shape[1] != expected:
                raise ArtifactError(
                    f"Embedding dimension {embeddings.shape[1]} does not match the pixel embedder ({expected})"
                )

        embeddings.flags.writeable = False
        targets.flags.writeable = False
        object.__setattr__(self, "embeddings", embeddings)
        object.__setattr__(self, "targets", targets)

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def version(self) -> int:
        return self.manifest.version

    @property
    def constraint(self) -> ImageConstraint:
        return self.manifest.input

    @property
    def labels(self) -> tuple[str, ...]:
        return self.manifest.labels

    @property
    def size(self) -> int:
        """Number of stored exemplars."""
        return int(self.targets.shape[0])

    def extended(self, embeddings: NDArray[np.float32], target_labels: Sequence[str]) -> ModelArtifact:
        """Return a new artifact with extra exemplars and the next version number.

        Labels that are not yet part of the vocabulary are appended to it, in
        the order they are first seen.
        """
        new_embeddings = np.asarray(embeddings, dtype=np.float32)
        if new_embeddings.ndim != 2 or new_embeddings.shape[0] != len(target_labels):
            raise ArtifactError("Need exactly one embedding row per target label")
        if self.size and new_embeddings.shape[1] != self.embeddings.shape[1]:
            raise ArtifactError(
                f"Embedding dimension {new_embeddings.shape[1]} does not match model ({self.embeddings.shape[1]})"
            )

        labels = list(self.labels)
        index = {label: i for i, label in enumerate(labels)}
        new_targets: list[int] = []
        for label in target_labels:
            if label not in index:
                index[label] = len(labels)
                labels.append(label)
            new_targets.append(index[label])

        combined = new_embeddings if self.size == 0 else np.vstack([self.embeddings, new_embeddings])
        manifest = self.manifest.model_copy(update={"version": self.version + 1, "labels": tuple(labels)})
        return ModelArtifact(
            manifest=manifest,
            embeddings=combined,
            targets=np.concatenate([self.targets, np.asarray(new_targets, dtype=np.int32)]),
            backbone=self.backbone,
        )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def write_artifact(artifact: ModelArtifact, fh: BinaryIO) -> None:
    """Serialize an artifact into an open binary file."""
    arrays: dict[str, np.ndarray] = {
        "manifest": np.array(artifact.manifest.model_dump_json()),
        "embeddings": artifact.embeddings,
        "targets": artifact.targets,
    }
    if artifact.backbone is not None:
        arrays["backbone"] = np.frombuffer(artifact.backbone, dtype=np.uint8)
    np.savez(fh, **arrays)


def save_artifact(artifact: ModelArtifact, path: Path) -> None:
    """Write an artifact to ``path`` (not atomic, see ``ModelStore`` for that)."""
    with Path(path).open("wb") as fh:
        write_artifact(artifact, fh)


def read_artifact(path: Path) -> ModelArtifact:
    """Load and validate an artifact file.

    Raises:
        ArtifactError: If the file is missing, truncated, or inconsistent.
    """
    try:
        with np.load(path, allow_pickle=False) as data:
            manifest = ArtifactManifest.model_validate_json(str(data["manifest"].item()))
            backbone = data["backbone"].tobytes() if "backbone" in data.files else None
            artifact = ModelArtifact(
                manifest=manifest,
                embeddings=data["embeddings"],
                targets=data["targets"],
                backbone=backbone,
            )
    except ArtifactError:
        raise
    except (OSError, EOFError, KeyError, ValueError, zipfile.BadZipFile) as exc:
        raise ArtifactError(f"Cannot read model artifact {path}: {exc}") from exc

    logger.debug("Read artifact %s v%s (%d exemplars) from %s", artifact.name, artifact.version, artifact.size, path)
    return artifact
