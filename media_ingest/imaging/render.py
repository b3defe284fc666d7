"""
Thumbnail and preview renditions.

Both are written as JPEG next to the copied original:
  <stem>_thumbnail.jpg   exactly 300x200
  <stem>_preview.jpg     bounded to 4096 wide / 2160 tall, aspect preserved
"""
import logging
import math
import shutil
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps

from .. import config
from ..exceptions import FileOperationError
from ..models import CropRegion

RESAMPLE = Image.Resampling.BICUBIC  # Catmull-Rom cubic


def rendition_path(original: Path, suffix: str) -> Path:
    return original.with_name(f"{original.stem}{suffix}{config.RENDITION_EXT}")


def save_jpeg(img: Image.Image, dest: Path, quality: int = config.JPEG_QUALITY):
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        img.convert("RGB").save(dest, format="JPEG", quality=quality, optimize=True)
    except OSError as e:
        raise FileOperationError(f"Failed to write {dest}: {e}") from e


class ThumbnailRenderer:
    def __init__(self,
                 size: Tuple[int, int] = config.THUMBNAIL_SIZE,
                 quality: int = config.JPEG_QUALITY):
        self.size = size
        self.quality = quality

    def render(self, img: Image.Image, region: Optional[CropRegion]) -> Image.Image:
        """
        Crops to the planned region and resamples to the exact thumbnail size.
        Without a region, falls back to a centred resize-to-fill.
        """
        if region is None:
            return ImageOps.fit(img, self.size, method=RESAMPLE, centering=(0.5, 0.5))
        return img.crop(region.box).resize(self.size, RESAMPLE)

    def write(self, img: Image.Image, region: Optional[CropRegion], dest: Path) -> Path:
        save_jpeg(self.render(img, region), dest, self.quality)
        logging.debug(f"Generated thumbnail: {dest}")
        return dest


class PreviewRenderer:
    """
    Downscales large frames for on-screen viewing.

    The fit is long-edge oriented rather than a symmetric bounding box:
    portrait frames are pinned to 2160 tall, everything else to 4096 wide.
    """

    def __init__(self,
                 max_width: int = config.PREVIEW_MAX_WIDTH,
                 max_height: int = config.PREVIEW_MAX_HEIGHT,
                 quality: int = config.JPEG_QUALITY):
        self.max_width = max_width
        self.max_height = max_height
        self.quality = quality

    def target_size(self, width: int, height: int) -> Optional[Tuple[int, int]]:
        """New (width, height), or None when the frame is already within bounds."""
        if width <= self.max_width and height <= self.max_height:
            return None
        if height > width:
            return math.ceil(self.max_height * (width / height)), self.max_height
        return self.max_width, math.ceil(self.max_width * (height / width))

    def write(self, img: Image.Image, dest: Path, source: Optional[Path] = None) -> Path:
        """
        Args:
            source: An unrotated JPEG whose bytes may be copied verbatim when
                    no resampling is needed.
        """
        target = self.target_size(*img.size)
        if target is not None:
            save_jpeg(img.resize(target, RESAMPLE), dest, self.quality)
        elif source is not None:
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, dest)
            except OSError as e:
                raise FileOperationError(f"Failed to copy {source} -> {dest}: {e}") from e
        else:
            save_jpeg(img, dest, self.quality)
        logging.debug(f"Generated preview: {dest}")
        return dest
