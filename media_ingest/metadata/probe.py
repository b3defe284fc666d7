import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .. import config
from ..exceptions import ExternalToolError, MetadataExtractionError
from ..models import Rotation
from .geo import parse_iso6709

ROTATE_TAG_MAP = {
    "90": Rotation.CW90,
    "180": Rotation.CW180,
    "270": Rotation.CW270,
}


@dataclass(frozen=True)
class VideoProbe:
    """The parts of an ffprobe report the pipeline cares about."""
    width: int
    height: int
    duration: float
    rotation: Optional[Rotation] = None
    framerate: Optional[float] = None
    creation_time: Optional[datetime] = None
    coordinates: Optional[Tuple[float, float]] = None

    @property
    def snapshot_time(self) -> float:
        # Midpoint avoids leading black frames and trailing credits
        return self.duration / 2.0


class VideoProber:
    """Wraps the 'ffprobe' command line utility. Must be on the system PATH."""

    def __init__(self, binary: str = config.FFPROBE_BIN):
        self.binary = binary

    def probe(self, path: Path, timeout: Optional[float] = None) -> VideoProbe:
        return parse_probe_output(self.run(path, timeout=timeout))

    def run(self, path: Path, timeout: Optional[float] = None) -> Dict[str, Any]:
        cmd = [
            self.binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
        except FileNotFoundError as e:
            raise ExternalToolError(f"{self.binary} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(f"{self.binary} timed out after {timeout}s on {path}") from e

        if proc.returncode != 0:
            raise ExternalToolError(f"{self.binary} exited with {proc.returncode} for {path}")

        try:
            data = json.loads(proc.stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ExternalToolError(f"{self.binary} produced malformed output for {path}: {e}") from e
        if not isinstance(data, dict):
            raise ExternalToolError(f"{self.binary} output for {path} is not a JSON object")
        return data


def parse_probe_output(data: Dict[str, Any]) -> VideoProbe:
    """
    Builds a VideoProbe from ffprobe's JSON report.

    Requires format.duration and exactly one video stream; everything else
    is optional and left as None when missing or unparsable.
    """
    fmt = data.get("format")
    if not isinstance(fmt, dict):
        raise MetadataExtractionError("ffprobe report has no 'format' object")

    try:
        duration = float(fmt["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise MetadataExtractionError(f"Missing or invalid duration: {fmt.get('duration')!r}") from e

    tags = fmt.get("tags") or {}

    streams = [s for s in data.get("streams") or [] if s.get("codec_type") == "video"]
    if len(streams) != 1:
        raise MetadataExtractionError(f"Expected exactly one video stream, found {len(streams)}")
    stream = streams[0]

    try:
        width = int(stream["width"])
        height = int(stream["height"])
    except (KeyError, TypeError, ValueError) as e:
        raise MetadataExtractionError("Video stream has no usable width/height") from e

    return VideoProbe(
        width=width,
        height=height,
        duration=duration,
        rotation=_stream_rotation(stream),
        framerate=_parse_float(tags.get(config.VIDEO_FRAMERATE_TAG)),
        creation_time=_parse_creation_time(tags.get("creation_time")),
        coordinates=_container_coordinates(tags),
    )


def _stream_rotation(stream: Dict[str, Any]) -> Optional[Rotation]:
    rotate = (stream.get("tags") or {}).get("rotate")
    if rotate is not None:
        return ROTATE_TAG_MAP.get(str(rotate).strip(), Rotation.NONE)

    # Newer ffprobe releases report a display matrix instead of the tag.
    # Its rotation is counter-clockwise, so -90 means 90 clockwise.
    for side_data in stream.get("side_data_list") or []:
        if "rotation" in side_data:
            try:
                degrees = int(round(-float(side_data["rotation"]))) % 360
            except (TypeError, ValueError):
                return Rotation.NONE
            return ROTATE_TAG_MAP.get(str(degrees), Rotation.NONE)
    return None


def _container_coordinates(tags: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    for key in config.VIDEO_GPS_TAGS:
        value = tags.get(key)
        if value:
            coords = parse_iso6709(str(value))
            if coords is None:
                logging.debug(f"Unparsable GPS tag {key}={value!r}")
            return coords
    return None


def _parse_creation_time(value: Optional[str]) -> Optional[datetime]:
    """RFC 3339 timestamp, normalized to UTC and truncated to whole seconds."""
    if not value:
        return None
    clean = value.strip()
    if clean.endswith(("Z", "z")):
        clean = clean[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(clean)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def _parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
