import logging
from datetime import datetime, timezone
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import exifread
import rawpy
from PIL import Image, UnidentifiedImageError

from .. import config
from ..exceptions import ExternalToolError, MetadataExtractionError, UnknownFormatError
from ..models import (
    CaptureMetadata,
    FormatKind,
    ImageFields,
    MediaClass,
    Rotation,
    VideoFields,
)
from ..scanning.classify import classify
from .geo import Geocoder, ReverseGeocoder, dms_to_decimal, make_location
from .probe import VideoProbe, VideoProber

EXIF_ORIENTATION_MAP = {
    1: Rotation.NONE,
    3: Rotation.CW180,
    6: Rotation.CW90,
    8: Rotation.CW270,
}


def read_exif_tags(path: Path) -> Dict[str, Any]:
    """Returns exifread's tag dict; empty when the file has no tag block."""
    with path.open('rb') as f:
        # details=False skips maker notes, which we never read
        return exifread.process_file(f, details=False)


def orientation_from_tags(tags: Dict[str, Any]) -> Optional[Rotation]:
    """Mirrored orientations (2, 4, 5, 7) are not handled and map to None."""
    tag = tags.get('Image Orientation')
    if tag is None:
        return None
    try:
        return EXIF_ORIENTATION_MAP.get(int(tag.values[0]))
    except (IndexError, TypeError, ValueError):
        return None


def demosaic_dimensions(path: Path) -> Tuple[int, int]:
    """Runs a full sensor demosaic and returns the true (width, height)."""
    with rawpy.imread(str(path)) as raw:
        rgb = raw.postprocess()
    height, width = rgb.shape[:2]
    return int(width), int(height)


class MetadataExtractor:
    """
    Unified interface for extracting capture metadata from media files.

    Strategies:
      - Images: embedded EXIF via 'exifread' -> falls back to Pillow for dimensions only.
      - Raw images: same as images, with dimensions corrected by a 'rawpy'
        demosaic when the header reports implausibly small values.
      - Video: 'ffprobe' JSON report.
    """

    def __init__(self,
                 geocoder: Optional[Geocoder] = None,
                 prober: Optional[VideoProber] = None):
        self.geocoder = geocoder if geocoder is not None else ReverseGeocoder()
        self.prober = prober or VideoProber()

    def extract(self,
                path: Path,
                kind: Optional[FormatKind] = None,
                probe: Optional[VideoProbe] = None,
                timeout: Optional[float] = None) -> CaptureMetadata:
        """
        Args:
            kind: Format of the file; derived from the name when omitted.
            probe: An ffprobe report already gathered for this video, to avoid
                   running the tool twice.
        """
        kind = kind or classify(path.name)
        if kind is None:
            raise UnknownFormatError(f"Unknown file type: {path}")

        media_class = kind.media_class
        if media_class is MediaClass.VIDEO:
            return self.get_video_metadata(path, probe=probe, timeout=timeout)
        if media_class is MediaClass.RAW_IMAGE:
            return self.get_raw_metadata(path)
        return self.get_image_metadata(path)

    def get_image_metadata(self, path: Path) -> CaptureMetadata:
        try:
            return self._extract_exif_metadata(path)
        except MetadataExtractionError as e:
            logging.debug(f"EXIF extraction failed for {path}, using decoded dimensions: {e}")
        return self._simple_image_metadata(path)

    def get_raw_metadata(self, path: Path) -> CaptureMetadata:
        try:
            metadata = self._extract_exif_metadata(path)
        except MetadataExtractionError as e:
            logging.debug(f"EXIF extraction failed for {path}, using demosaic dimensions: {e}")
            return self._simple_raw_metadata(path)

        # Fast header parsing misreports dimensions for some raw formats
        if metadata.width < config.RAW_MIN_WIDTH or metadata.height < config.RAW_MIN_HEIGHT:
            width, height = self._demosaic(path)
            logging.debug(
                f"Raw header reported {metadata.width}x{metadata.height} for {path}; "
                f"demosaic gives {width}x{height}"
            )
            metadata = CaptureMetadata(
                width=width,
                height=height,
                type_specific=metadata.type_specific,
                captured_at=metadata.captured_at,
                rotation=metadata.rotation,
                gps=metadata.gps,
            )
        return metadata

    def get_video_metadata(self,
                           path: Path,
                           probe: Optional[VideoProbe] = None,
                           timeout: Optional[float] = None) -> CaptureMetadata:
        if probe is None:
            try:
                probe = self.prober.probe(path, timeout=timeout)
            except ExternalToolError as e:
                raise MetadataExtractionError(str(e)) from e

        gps = None
        if probe.coordinates is not None:
            gps = make_location(probe.coordinates[0], probe.coordinates[1], self.geocoder)

        return CaptureMetadata(
            width=probe.width,
            height=probe.height,
            type_specific=VideoFields(duration=probe.duration, framerate=probe.framerate),
            captured_at=probe.creation_time,
            rotation=probe.rotation,
            gps=gps,
        )

    # --- Internal Extraction Helpers ---

    def _extract_exif_metadata(self, path: Path) -> CaptureMetadata:
        try:
            tags = read_exif_tags(path)
        except Exception as e:
            # exifread raises a variety of errors on truncated/odd containers
            raise MetadataExtractionError(f"ExifRead failed for {path}: {e}") from e

        if not tags:
            raise MetadataExtractionError(f"No EXIF block in {path}")

        dims = self._dimensions(tags)
        if dims is None:
            raise MetadataExtractionError(f"No pixel dimensions in EXIF of {path}")

        fields = ImageFields(
            exposure_time=self._exposure_time(tags),
            aperture=self._aperture(tags),
            iso=self._first_int(tags, 'EXIF ISOSpeedRatings'),
            flash=self._flash(tags),
        )
        return CaptureMetadata(
            width=dims[0],
            height=dims[1],
            type_specific=fields,
            captured_at=self._parse_exif_date(tags),
            rotation=orientation_from_tags(tags),
            gps=self._gps(tags),
        )

    def _simple_image_metadata(self, path: Path) -> CaptureMetadata:
        try:
            with Image.open(path) as img:
                width, height = img.size
        except (OSError, UnidentifiedImageError) as e:
            raise MetadataExtractionError(f"Could not open image {path}: {e}") from e
        return CaptureMetadata(width=width, height=height)

    def _simple_raw_metadata(self, path: Path) -> CaptureMetadata:
        width, height = self._demosaic(path)
        return CaptureMetadata(width=width, height=height)

    def _demosaic(self, path: Path) -> Tuple[int, int]:
        try:
            return demosaic_dimensions(path)
        except (OSError, rawpy.LibRawError) as e:
            raise MetadataExtractionError(f"Raw decode failed for {path}: {e}") from e

    def _dimensions(self, tags: Dict[str, Any]) -> Optional[Tuple[int, int]]:
        for width_tag, height_tag in config.DIMENSION_TAGS:
            width = self._first_int(tags, width_tag)
            height = self._first_int(tags, height_tag)
            if width and height:
                return width, height
        return None

    def _first_int(self, tags: Dict[str, Any], name: str) -> Optional[int]:
        tag = tags.get(name)
        if tag is None:
            return None
        try:
            return int(tag.values[0])
        except (IndexError, TypeError, ValueError):
            return None

    def _first_ratio(self, tags: Dict[str, Any], name: str) -> Optional[Fraction]:
        tag = tags.get(name)
        if tag is None:
            return None
        try:
            return Fraction(tag.values[0])
        except (IndexError, TypeError, ValueError, ZeroDivisionError):
            return None

    def _exposure_time(self, tags: Dict[str, Any]) -> Optional[Fraction]:
        return self._first_ratio(tags, 'EXIF ExposureTime')

    def _aperture(self, tags: Dict[str, Any]) -> Optional[float]:
        # ApertureValue is APEX encoded: f-number = 2^(Av/2)
        apex = self._first_ratio(tags, 'EXIF ApertureValue')
        if apex is not None:
            return 2 ** (float(apex) / 2)
        f_number = self._first_ratio(tags, 'EXIF FNumber')
        if f_number is not None:
            return float(f_number)
        return None

    def _flash(self, tags: Dict[str, Any]) -> Optional[bool]:
        value = self._first_int(tags, 'EXIF Flash')
        if value is None:
            return None
        return value in config.FLASH_FIRED_VALUES

    def _gps(self, tags: Dict[str, Any]):
        lat_tag = tags.get('GPS GPSLatitude')
        lon_tag = tags.get('GPS GPSLongitude')
        if lat_tag is None or lon_tag is None:
            return None

        lat_ref = tags.get('GPS GPSLatitudeRef')
        lon_ref = tags.get('GPS GPSLongitudeRef')
        try:
            lat = dms_to_decimal(lat_tag.values, str(lat_ref) if lat_ref is not None else None)
            lon = dms_to_decimal(lon_tag.values, str(lon_ref) if lon_ref is not None else None)
        except (TypeError, ValueError, ZeroDivisionError):
            return None
        return make_location(lat, lon, self.geocoder)

    def _parse_exif_date(self, tags: Dict[str, Any]) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    # EXIF format is usually "YYYY:MM:DD HH:MM:SS"
                    dt_str = str(tags[tag]).strip().replace(':', '-', 2)
                    dt = datetime.strptime(dt_str, "%Y-%m-%d %H:%M:%S")
                    return dt.replace(tzinfo=timezone.utc)
                except ValueError:
                    continue
        return None
