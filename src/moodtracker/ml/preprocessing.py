"""Image preprocessing: decoding, RGB coercion, resizing, PNG round-trips.

Every image handed to the classifier or the sample encoder goes through
``resize_to_constraint`` so that both see exactly the input the model
declares (224x224 RGB for the bundled model).
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

    from moodtracker.ml.artifact import ImageConstraint


class ImageDecodeError(ValueError):
    """Raised when image data cannot be interpreted as an RGB picture."""


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    EXIF orientation is applied so the array matches what a viewer shows.

    Args:
        image_bytes: Raw file bytes (any format Pillow understands).
        max_pixels: Optional upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image payload")

    try:
        img = Image.open(io.BytesIO(image_bytes))
    except (OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    with img:
        if max_pixels is not None and img.width * img.height > max_pixels:
            raise ImageDecodeError(f"Image has {img.width * img.height} pixels, limit is {max_pixels}")
        try:
            rgb = ImageOps.exif_transpose(img).convert("RGB")
        except (OSError, ValueError) as exc:
            raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    return np.array(rgb, dtype=np.uint8)


def as_rgb(image: NDArray[np.generic]) -> NDArray[np.uint8]:
    """Coerce grayscale, RGBA or non-uint8 arrays into HxWx3 uint8.

    Float arrays whose values all lie in [0, 1] are scaled to [0, 255]; any
    other array is clipped to that range.
    """
    array = np.asarray(image)
    if np.issubdtype(array.dtype, np.floating) and array.size and float(array.max()) <= 1.0:
        array = array * 255.0
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim == 3 and array.shape[2] == 1:
        array = np.repeat(array, 3, axis=2)
    if array.ndim != 3 or array.shape[2] not in (3, 4):
        raise ImageDecodeError(f"Unsupported image array shape {array.shape}")
    if array.shape[2] == 4:
        array = array[:, :, :3]
    if array.shape[0] == 0 or array.shape[1] == 0:
        raise ImageDecodeError("Image has no pixels")
    return array


def resize_to_constraint(image: NDArray[np.generic], constraint: ImageConstraint) -> NDArray[np.uint8]:
    """Stretch an image to the model's declared input size.

    An image that already has the target shape is returned as an unchanged
    copy, so resizing is idempotent.
    """
    rgb = as_rgb(image)
    if rgb.shape == constraint.shape:
        return rgb.copy()

    resized = Image.fromarray(np.ascontiguousarray(rgb)).resize(
        (constraint.width, constraint.height),
        Image.Resampling.BILINEAR,
    )
    return np.array(resized, dtype=np.uint8)


def encode_png(image: NDArray[np.uint8]) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(as_rgb(image)).save(buffer, format="PNG")
    return buffer.getvalue()


def write_png(image: NDArray[np.uint8], path: Path) -> None:
    path.write_bytes(encode_png(image))


def read_conforming_image(path: Path, constraint: ImageConstraint) -> NDArray[np.uint8]:
    """Read an image file and check it satisfies ``constraint`` exactly.

    Raises:
        ImageDecodeError: If the file is unreadable or its shape differs.
    """
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ImageDecodeError(f"Cannot read {path}: {exc}") from exc

    image = decode_image(data)
    if image.shape != constraint.shape:
        raise ImageDecodeError(
            f"Image {path.name} is {image.shape[1]}x{image.shape[0]}, model expects "
            f"{constraint.width}x{constraint.height}"
        )
    return image
