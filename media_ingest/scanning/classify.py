from pathlib import Path
from typing import Optional, Union

from .. import config
from ..models import FormatKind


def classify(file_name: Union[str, Path]) -> Optional[FormatKind]:
    """
    Maps a file name to its FormatKind using the extension only.
    Returns None for anything we don't ingest (the caller skips it).
    """
    name = Path(file_name).name
    # AppleDouble resource forks carry media extensions but no media
    if name.startswith("._"):
        return None
    return config.EXT_TO_FORMAT.get(Path(name).suffix.lower())
