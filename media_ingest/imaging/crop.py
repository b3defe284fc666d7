import math
from typing import Optional, Sequence

from .. import config
from ..models import BoundingBox, CropRegion


def largest_box(boxes: Sequence[BoundingBox]) -> BoundingBox:
    """Largest by (truncated) area; on ties the first one in detector order wins."""
    largest = boxes[0]
    area = 0
    for box in boxes:
        if box.area > area:
            area = box.area
            largest = box
    return largest


class CropPlanner:
    """
    Picks the region of an upright image that becomes the thumbnail.

    The thumbnail is a fixed 3:2 rectangle, so the region is 3:2 as well
    (up to ceiling rounding) and, when faces were found, slides along the
    long axis to keep the largest one as close to centred as possible.

    Args:
        clamp_far_edge: Also keep the region inside the right/bottom edge.
                        False reproduces the legacy one-sided clamp, which can
                        produce a region extending past the image.
    """

    def __init__(self, clamp_far_edge: bool = True):
        self.clamp_far_edge = clamp_far_edge
        self.ratio_w, self.ratio_h = config.THUMBNAIL_ASPECT

    def plan(self, width: int, height: int, boxes: Sequence[BoundingBox]) -> Optional[CropRegion]:
        """
        Returns:
            The crop region, or None when there is no subject to preserve and
            the renderer should do a plain centred fill-crop.
        """
        # 1. Already 3:2 (exact integer comparison, no float tolerance)
        if width * self.ratio_h == height * self.ratio_w:
            return CropRegion(0, 0, width, height)

        # 2. Nothing to keep in frame
        if not boxes:
            return None

        # 3. Centre on the largest face
        mid_x, mid_y = largest_box(boxes).midpoint

        if width * self.ratio_h > height * self.ratio_w:
            # Too wide: keep full height, narrow the width
            new_width = math.ceil(height * self.ratio_w / self.ratio_h)
            x = max(0, mid_x - new_width // 2)
            if self.clamp_far_edge:
                x = min(x, width - new_width)
            return CropRegion(x, 0, new_width, height)

        # Too narrow: keep full width, shorten the height
        new_height = math.ceil(width * self.ratio_h / self.ratio_w)
        y = max(0, mid_y - new_height // 2)
        if self.clamp_far_edge:
            y = min(y, height - new_height)
        return CropRegion(0, y, width, new_height)
