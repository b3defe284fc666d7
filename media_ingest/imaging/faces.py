"""
Face detection capability boundary.

The detector is an adapter around an injectable backend that honours a fixed
tensor contract:

    input:   float32 [H, W, 3] array in BGR channel order,
             min_size (px), three-stage thresholds, scale-pyramid factor
    output:  N x 4 boxes as (y1, x1, y2, x2), and N confidence scores

Everything downstream works with BoundingBox in (x1, y1, x2, y2) order.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .. import config
from ..exceptions import DetectionError
from ..models import BoundingBox


class DetectionBackend(ABC):
    """Abstract base class for face-detection backends."""

    name: str = "base"

    @abstractmethod
    def run(self,
            bgr: np.ndarray,
            min_size: float,
            thresholds: Sequence[float],
            factor: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Returns:
            (boxes, scores): an N x 4 array of (y1, x1, y2, x2) and a length-N array.
        """


class NullBackend(DetectionBackend):
    """Never finds a face. Used when detection is switched off."""

    name = "null"

    def run(self, bgr, min_size, thresholds, factor):
        return np.zeros((0, 4), dtype=np.float32), np.zeros((0,), dtype=np.float32)


class MtcnnBackend(DetectionBackend):
    """
    MTCNN face detection backend using facenet-pytorch.

    The model is loaded on first use and cached per hyperparameter set,
    since facenet-pytorch binds them at construction time.
    """

    name = "mtcnn"

    def __init__(self, use_gpu: bool = False):
        self._use_gpu = use_gpu
        self._detectors: Dict[Tuple[Any, ...], Any] = {}

    def _load_model(self, min_size: float, thresholds: Sequence[float], factor: float):
        key = (min_size, tuple(thresholds), factor)
        if key in self._detectors:
            return self._detectors[key]

        try:
            import torch
            from facenet_pytorch import MTCNN
        except ImportError:
            logging.error("facenet-pytorch not installed. Install with: pip install 'media-ingest[faces]'")
            raise

        device = torch.device("cuda" if self._use_gpu and torch.cuda.is_available() else "cpu")
        detector = MTCNN(
            min_face_size=int(min_size),
            thresholds=list(thresholds),
            factor=factor,
            keep_all=True,
            device=device,
        )
        logging.info(f"MTCNN backend loaded on {device}")
        self._detectors[key] = detector
        return detector

    def run(self, bgr, min_size, thresholds, factor):
        detector = self._load_model(min_size, thresholds, factor)

        # facenet-pytorch expects RGB uint8 pixels
        rgb = np.ascontiguousarray(bgr[..., ::-1]).clip(0, 255).astype(np.uint8)
        boxes, probs = detector.detect(Image.fromarray(rgb))
        if boxes is None:
            return np.zeros((0, 4), dtype=np.float32), np.zeros((0,), dtype=np.float32)

        boxes = np.asarray(boxes, dtype=np.float32)
        # (x1, y1, x2, y2) -> (y1, x1, y2, x2)
        return boxes[:, [1, 0, 3, 2]], np.asarray(probs, dtype=np.float32)


class FaceDetector:
    """
    Adapts an RGB Pillow image to the backend contract and normalizes results.
    Concurrent invocations are bounded because backends are usually a shared,
    stateful model session.
    """

    def __init__(self,
                 backend: Optional[DetectionBackend] = None,
                 min_size: float = config.FACE_MIN_SIZE,
                 thresholds: Sequence[float] = config.FACE_THRESHOLDS,
                 factor: float = config.FACE_SCALE_FACTOR,
                 max_concurrent: int = config.FACE_MAX_CONCURRENT):
        self.backend = backend or MtcnnBackend()
        self.min_size = min_size
        self.thresholds = tuple(thresholds)
        self.factor = factor
        self._slots = threading.BoundedSemaphore(max(1, max_concurrent))

    def detect(self, img: Image.Image) -> List[BoundingBox]:
        """Zero faces is a normal result; backend failures raise DetectionError."""
        bgr = to_bgr_array(img)

        with self._slots:
            try:
                boxes, scores = self.backend.run(bgr, self.min_size, self.thresholds, self.factor)
            except Exception as e:
                raise DetectionError(f"{self.backend.name} backend failed: {e}") from e

        return normalize_boxes(boxes, scores)


def to_bgr_array(img: Image.Image) -> np.ndarray:
    rgb = np.asarray(img.convert("RGB"), dtype=np.float32)
    return np.ascontiguousarray(rgb[..., ::-1])


def normalize_boxes(boxes, scores) -> List[BoundingBox]:
    try:
        boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as e:
        raise DetectionError(f"Malformed backend output: {e}") from e
    if len(boxes) != len(scores):
        raise DetectionError(f"Backend returned {len(boxes)} boxes but {len(scores)} scores")

    return [
        BoundingBox(x1=float(x1), y1=float(y1), x2=float(x2), y2=float(y2), confidence=float(score))
        for (y1, x1, y2, x2), score in zip(boxes, scores)
    ]
