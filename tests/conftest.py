import sqlite3

import numpy as np
import pytest
from PIL import Image

from media_ingest.database.schema import init_schema
from media_ingest.database.ops import DBOperations
from media_ingest.imaging.faces import DetectionBackend


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:", check_same_thread=False)
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def db_ops(conn):
    """Returns a DBOperations instance attached to the in-memory DB."""
    return DBOperations(conn)


class FixedBackend(DetectionBackend):
    """Returns the same (y1, x1, y2, x2) boxes for every frame."""

    name = "fixed"

    def __init__(self, boxes=(), scores=None):
        self.boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        if scores is None:
            scores = [0.99] * len(self.boxes)
        self.scores = np.asarray(scores, dtype=np.float32)
        self.calls = []

    def run(self, bgr, min_size, thresholds, factor):
        self.calls.append(bgr.shape)
        return self.boxes, self.scores


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a solid-colour image file and returning its path."""
    def _make(name, size=(600, 400), color=(120, 160, 200), exif=None):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        img = Image.new("RGB", size, color)
        kwargs = {"exif": exif} if exif is not None else {}
        img.save(path, **kwargs)
        return path
    return _make
