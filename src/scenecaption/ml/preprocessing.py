"""Image preprocessing: decoding, orientation metadata, and model input tensors."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from scenecaption.ml.orientation import OrientationTag, apply_orientation, orientation_from_raw

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

EXIF_ORIENTATION_TAG = 0x0112

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


class ImageConversionError(ValueError):
    """Raised when an image cannot be converted to a pixel buffer."""


@dataclass(frozen=True)
class SourceImage:
    """A decoded image exactly as stored, with its raw orientation value."""

    pixels: NDArray[np.uint8]
    orientation: int = 1


@dataclass(frozen=True)
class PixelBuffer:
    """Pixels handed to an inference engine, tagged with their orientation."""

    pixels: NDArray[np.uint8]
    orientation: OrientationTag

    def upright(self) -> NDArray[np.uint8]:
        """Return the pixels with the orientation applied."""
        return apply_orientation(self.pixels, self.orientation)


def decode_image(image_bytes: bytes, max_pixels: int) -> SourceImage:
    """Decode raw image bytes without applying the stored orientation.

    Args:
        image_bytes: Raw file bytes (any format Pillow can open).
        max_pixels: Upper bound on width * height.

    Returns:
        SourceImage with HxWx3 RGB uint8 pixels and the EXIF orientation
        (1 when the image carries none).

    Raises:
        ValueError: If the image cannot be decoded or exceeds the pixel limit.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ValueError(f"Image has {width * height} pixels, limit is {max_pixels}")
            orientation = int(img.getexif().get(EXIF_ORIENTATION_TAG, 1))
            pixels = np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc
    return SourceImage(pixels=pixels, orientation=orientation)


def to_pixel_buffer(image: SourceImage) -> PixelBuffer:
    """Convert a SourceImage into the buffer format inference engines expect.

    Raises:
        ImageConversionError: If the pixels are not a non-empty HxWx3 array
            or the orientation value is undefined.
    """
    try:
        tag = orientation_from_raw(image.orientation)
    except ValueError as exc:
        raise ImageConversionError(str(exc)) from exc

    pixels = np.asarray(image.pixels)
    if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise ImageConversionError(f"Expected a non-empty HxWx3 image, got shape {pixels.shape}")
    if pixels.dtype != np.uint8:
        if not np.issubdtype(pixels.dtype, np.number):
            raise ImageConversionError(f"Unsupported pixel dtype: {pixels.dtype}")
        pixels = np.clip(pixels, 0, 255).astype(np.uint8)
    return PixelBuffer(pixels=pixels, orientation=tag)


def prepare_input(
    pixels: NDArray[np.uint8],
    input_size: int,
    mean: Sequence[float] = IMAGENET_MEAN,
    std: Sequence[float] = IMAGENET_STD,
) -> NDArray[np.float32]:
    """Resize and normalize upright pixels into a 1x3xSxS float32 tensor."""
    resized = Image.fromarray(pixels).resize((input_size, input_size), Image.Resampling.BILINEAR)
    tensor = np.asarray(resized, dtype=np.float32) / 255.0
    tensor = (tensor - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
