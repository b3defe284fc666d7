"""
Decoders that turn a media file into an upright RGB Pillow image.

  - Images: Pillow, orientation from the EXIF tag.
  - Raw images: full demosaic via rawpy (LibRaw applies the sensor flip itself).
  - Video: one raw rgb24 frame at the midpoint, extracted by ffmpeg.
"""
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import rawpy
from PIL import Image, UnidentifiedImageError

from .. import config
from ..exceptions import DecodeError, ExternalToolError
from ..metadata.extract import orientation_from_tags, read_exif_tags
from ..metadata.probe import VideoProbe
from ..models import Rotation
from .orientation import apply_rotation, display_dimensions


@dataclass
class DecodedMedia:
    """An upright RGB frame plus the rotation that was applied to get it."""
    image: Image.Image
    rotation: Rotation = Rotation.NONE


def read_orientation(path: Path) -> Rotation:
    try:
        tags = read_exif_tags(path)
    except Exception as e:
        logging.debug(f"No readable orientation for {path}: {e}")
        return Rotation.NONE
    return orientation_from_tags(tags) or Rotation.NONE


def decode_image(path: Path) -> DecodedMedia:
    try:
        with Image.open(path) as img:
            rgb = img.convert("RGB")
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Failed to open image {path}: {e}") from e

    rotation = read_orientation(path)
    return DecodedMedia(apply_rotation(rgb, rotation), rotation)


def decode_raw(path: Path) -> DecodedMedia:
    try:
        with rawpy.imread(str(path)) as raw:
            rgb = raw.postprocess()
    except (OSError, rawpy.LibRawError) as e:
        raise DecodeError(f"Failed to open raw image {path}: {e}") from e
    return DecodedMedia(Image.fromarray(rgb))


class VideoFrameExtractor:
    """Wraps the 'ffmpeg' command line utility. Must be on the system PATH."""

    def __init__(self, binary: str = config.FFMPEG_BIN):
        self.binary = binary

    def extract(self, path: Path, probe: VideoProbe, timeout: Optional[float] = None) -> DecodedMedia:
        """
        Grabs a single frame at the probe's snapshot time.

        ffmpeg auto-rotates frames, so the bytes come out in display order:
        the declared buffer size must use the rotation-swapped dimensions and
        no further rotation is applied.
        """
        cmd = [
            self.binary,
            "-loglevel", "quiet",
            "-ss", str(probe.snapshot_time),
            "-i", str(path),
            "-frames:v", "1",
            "-f", "image2pipe",
            "-pix_fmt", "rgb24",
            "-vcodec", "rawvideo",
            "-",
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
        except FileNotFoundError as e:
            raise ExternalToolError(f"{self.binary} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(f"{self.binary} timed out after {timeout}s on {path}") from e

        if proc.returncode != 0:
            raise ExternalToolError(f"{self.binary} exited with {proc.returncode} for {path}")

        width, height = display_dimensions(probe.width, probe.height, probe.rotation)
        return DecodedMedia(frame_from_bytes(proc.stdout, width, height))


def frame_from_bytes(data: bytes, width: int, height: int) -> Image.Image:
    expected = width * height * 3
    if len(data) != expected:
        raise DecodeError(
            f"Video frame is {len(data)} bytes, expected {expected} for {width}x{height} rgb24"
        )
    return Image.frombytes("RGB", (width, height), data)
