"""Image orientation handling.

Raw orientation values follow the EXIF Orientation tag (0x0112), which is
also the numbering used by CGImagePropertyOrientation. Each value describes
how the stored pixels must be transformed to appear upright.
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray


class OrientationTag(IntEnum):
    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


_RAW_ORIENTATION_MAP: dict[int, OrientationTag] = {
    1: OrientationTag.UP,
    2: OrientationTag.UP_MIRRORED,
    3: OrientationTag.DOWN,
    4: OrientationTag.DOWN_MIRRORED,
    5: OrientationTag.LEFT_MIRRORED,
    6: OrientationTag.RIGHT,
    7: OrientationTag.RIGHT_MIRRORED,
    8: OrientationTag.LEFT,
}


def _transpose(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    return np.swapaxes(pixels, 0, 1)


# Row 0 is the top of the image; np.rot90 with k=1 rotates counter-clockwise.
_UPRIGHT_TRANSFORMS: dict[OrientationTag, Callable[[NDArray[np.uint8]], NDArray[np.uint8]]] = {
    OrientationTag.UP: lambda px: px,
    OrientationTag.UP_MIRRORED: np.fliplr,
    OrientationTag.DOWN: lambda px: np.rot90(px, 2),
    OrientationTag.DOWN_MIRRORED: np.flipud,
    OrientationTag.LEFT_MIRRORED: _transpose,
    OrientationTag.RIGHT: lambda px: np.rot90(px, -1),
    OrientationTag.RIGHT_MIRRORED: lambda px: _transpose(np.rot90(px, 2)),
    OrientationTag.LEFT: lambda px: np.rot90(px, 1),
}


def orientation_from_raw(raw: int) -> OrientationTag:
    """Map a raw orientation value (1-8) to its OrientationTag.

    Raises:
        ValueError: If the value is not one of the 8 defined orientations.
    """
    try:
        return _RAW_ORIENTATION_MAP[raw]
    except KeyError:
        raise ValueError(f"Unknown orientation value: {raw!r}") from None


def apply_orientation(pixels: NDArray[np.uint8], tag: OrientationTag) -> NDArray[np.uint8]:
    """Return the pixels transformed so that they display upright.

    Args:
        pixels: HxWx3 array as stored.
        tag: Orientation of the stored pixels.

    Returns:
        Contiguous HxWx3 (or WxHx3 for the rotated cases) upright array.
    """
    return np.ascontiguousarray(_UPRIGHT_TRANSFORMS[tag](pixels))
