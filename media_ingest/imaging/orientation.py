from typing import Optional, Tuple

from PIL import Image

from ..models import Rotation

# Pillow's ROTATE_* constants are counter-clockwise
_TRANSPOSE = {
    Rotation.CW90: Image.Transpose.ROTATE_270,
    Rotation.CW180: Image.Transpose.ROTATE_180,
    Rotation.CW270: Image.Transpose.ROTATE_90,
}


def apply_rotation(img: Image.Image, rotation: Optional[Rotation]) -> Image.Image:
    """
    Returns the image turned upright. Must run before face detection and crop
    planning, since both depend on the final geometry.
    """
    if rotation is None or rotation is Rotation.NONE:
        return img
    return img.transpose(_TRANSPOSE[rotation])


def display_dimensions(width: int, height: int, rotation: Optional[Rotation]) -> Tuple[int, int]:
    """(width, height) as displayed once the rotation is applied."""
    if rotation is not None and rotation.swaps_axes:
        return height, width
    return width, height
