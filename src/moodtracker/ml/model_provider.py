"""Model provider: locate, load and compile the active classifier.

Prefers the personalized artifact from the ``ModelStore`` and falls back to
the bundled artifact (downloaded from HuggingFace when configured and not yet
present). ONNX backbones are compiled into onnxruntime InferenceSessions
with device-specific execution providers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidProtobuf,
    RuntimeException,
)

from moodtracker.ml.artifact import ArtifactError, EmbedderKind, read_artifact
from moodtracker.ml.embedding import OnnxEmbedder, PixelEmbedder

if TYPE_CHECKING:
    from moodtracker.config import Settings
    from moodtracker.ml.artifact import ModelArtifact
    from moodtracker.ml.embedding import Embedder
    from moodtracker.ml.model_store import ModelStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Loaded model and provider protocol
# ---------------------------------------------------------------------------


class ModelSource(StrEnum):
    BUNDLED = "bundled"
    PERSONALIZED = "personalized"


@dataclass(frozen=True)
class LoadedModel:
    """An artifact together with its ready-to-run embedder."""

    artifact: ModelArtifact
    embedder: Embedder
    source: ModelSource


class ModelProvider(Protocol):
    """Protocol for resolving which model serves inference."""

    def current(self) -> LoadedModel:
        """Return the model currently used for inference."""
        ...

    def bundled(self) -> LoadedModel:
        """Return the model shipped with the application."""
        ...

    def refresh(self) -> LoadedModel:
        """Re-resolve the active model after the store changed."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class ArtifactModelProvider:
    """Loads artifacts from disk and swaps the active model on refresh."""

    def __init__(self, settings: Settings, store: ModelStore) -> None:
        self._settings = settings
        self._store = store

        self._lock = threading.Lock()
        self._bundled: LoadedModel | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

        self._current = self._resolve()

    # -- Public API ---------------------------------------------------------

    @property
    def is_personalized(self) -> bool:
        return self.current().source == ModelSource.PERSONALIZED

    def current(self) -> LoadedModel:
        with self._lock:
            return self._current

    def bundled(self) -> LoadedModel:
        """Return the bundled model, loading it on first use.

        Raises:
            ArtifactError: If the bundled artifact is unusable.
            FileNotFoundError: If it is missing and no download repo is configured.
        """
        with self._lock:
            if self._bundled is not None:
                return self._bundled

        path = self.ensure_bundled_downloaded()
        loaded = self.compile(read_artifact(path), ModelSource.BUNDLED)

        with self._lock:
            # Another thread may have loaded it while we were compiling.
            if self._bundled is None:
                self._bundled = loaded
                logger.info("Loaded bundled model %s v%s", loaded.artifact.name, loaded.artifact.version)
            return self._bundled

    def refresh(self) -> LoadedModel:
        loaded = self._resolve()
        with self._lock:
            self._current = loaded
        return loaded

    def ensure_bundled_downloaded(self) -> Path:
        """Download the bundled artifact from HuggingFace if not already present locally."""
        path = self._settings.bundled_model_path
        if path.exists():
            return path

        repo_id = self._settings.bundled_model_repo
        if repo_id is None:
            raise FileNotFoundError(f"Bundled model not found at {path} and MOODTRACKER_BUNDLED_MODEL_REPO is not set")

        self._settings.models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=self._settings.bundled_model_file,
                local_dir=str(self._settings.models_dir),
            )
        )
        logger.info("Downloaded bundled model to %s", downloaded)
        return downloaded

    def compile(self, artifact: ModelArtifact, source: ModelSource) -> LoadedModel:
        """Build the runtime embedder for ``artifact``.

        Raises:
            ArtifactError: If the ONNX backbone cannot be loaded, or its output
                width does not match the stored exemplars.
        """
        spec = artifact.manifest.embedder
        if spec.kind == EmbedderKind.PIXEL:
            return LoadedModel(artifact=artifact, embedder=PixelEmbedder(spec.grid), source=source)

        try:
            session = InferenceSession(
                artifact.backbone,
                sess_options=self._session_options,
                providers=self._providers,
            )
            embedder = OnnxEmbedder(session)
            width = embedder.embed(np.zeros(artifact.constraint.shape, dtype=np.uint8)).shape[0]
        except (Fail, InvalidArgument, InvalidProtobuf, RuntimeException) as exc:
            raise ArtifactError(f"Cannot load backbone of {artifact.name} v{artifact.version}: {exc}") from exc

        if artifact.size and width != artifact.embeddings.shape[1]:
            raise ArtifactError(
                f"Backbone of {artifact.name} v{artifact.version} produces {width}-d vectors, "
                f"exemplars are {artifact.embeddings.shape[1]}-d"
            )
        return LoadedModel(artifact=artifact, embedder=embedder, source=source)

    # -- Internal -----------------------------------------------------------

    def _resolve(self) -> LoadedModel:
        stored = self._store.load()
        if stored is not None:
            try:
                loaded = self.compile(stored, ModelSource.PERSONALIZED)
            except ArtifactError as exc:
                logger.warning("Falling back to bundled model: %s", exc)
            else:
                logger.info("Using personalized model %s v%s", stored.name, stored.version)
                return loaded

        return self.bundled()

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
