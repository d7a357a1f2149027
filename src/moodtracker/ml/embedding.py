"""Feature extractors that feed the nearest-neighbour head.

Implementations: down-sampled pixels (no backbone) and an ONNX backbone run
through onnxruntime.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

# ImageNet statistics, the usual normalization for vision backbones.
_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class Embedder(Protocol):
    """Protocol for image feature extractors."""

    def embed(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Return an L2-normalized feature vector.

        Args:
            image: HxWx3 RGB uint8 array already sized to the model input.

        Returns:
            1-D float32 vector.
        """
        ...


def l2_normalize(vector: NDArray[np.float32]) -> NDArray[np.float32]:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return (vector / norm).astype(np.float32)


class PixelEmbedder:
    """Averages the image onto a ``grid`` x ``grid`` lattice of RGB values."""

    def __init__(self, grid: int) -> None:
        self._grid = grid

    @property
    def dim(self) -> int:
        return self._grid * self._grid * 3

    def embed(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        small = Image.fromarray(np.ascontiguousarray(image)).resize((self._grid, self._grid), Image.Resampling.BOX)
        vector = np.asarray(small, dtype=np.float32).reshape(-1) / 255.0
        return l2_normalize(vector)


class OnnxEmbedder:
    """Runs an ONNX feature extractor and flattens its first output."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        self._input_name = session.get_inputs()[0].name

    def embed(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = (image.astype(np.float32) / 255.0 - _MEAN) / _STD
        tensor = np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
        outputs = self._session.run(None, {self._input_name: tensor})
        return l2_normalize(np.asarray(outputs[0], dtype=np.float32).reshape(-1))
