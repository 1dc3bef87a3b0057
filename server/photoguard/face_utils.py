"""
Face Detection Utilities

Face regions are produced by an external detector and consumed by the
anonymization engine and the face signature generator.

The detector backend is heavyweight (cascade or dlib model files), so it
is loaded lazily, at most once per process, and every concurrent caller
awaits the same in-flight load. When the backend cannot be loaded or
fails on an image, a centered heuristic box is returned instead so that
capture is never blocked.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from photoguard.config import DetectorConfig

logger = logging.getLogger(__name__)


class FaceDetectionError(Exception):
    """Raised by a detector backend that cannot run."""
    pass


class Keypoint(BaseModel):
    """Named facial landmark in source-image pixel coordinates."""
    name: str
    x: float
    y: float


class FaceRegion(BaseModel):
    """
    Axis-aligned face bounding box in source-image pixel coordinates.

    Boxes are not validated against the image: they may overlap, extend
    past the edges or be degenerate. Consumers clamp and skip as needed.
    """
    x: float = Field(..., description="Top-left X coordinate")
    y: float = Field(..., description="Top-left Y coordinate")
    width: float = Field(..., description="Bounding box width")
    height: float = Field(..., description="Bounding box height")
    confidence: float = Field(default=1.0, description="Detection confidence", ge=0.0, le=1.0)
    keypoints: List[Keypoint] = Field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary (box and confidence only)."""
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence
        }


def fallback_region(width: int, height: int, confidence: float = 0.5) -> FaceRegion:
    """Centered heuristic face box used when no detector is available."""
    return FaceRegion(
        x=width * 0.3,
        y=height * 0.15,
        width=width * 0.4,
        height=height * 0.5,
        confidence=confidence
    )


# ============================================================================
# Face Detector Interface
# ============================================================================

class FaceDetectorInterface:
    """Interface that detection implementations must follow."""

    def detect_faces(self, pixels: np.ndarray) -> List[FaceRegion]:
        """Detect faces in an RGB(A) uint8 array of shape (height, width, channels)."""
        raise NotImplementedError


class HaarFaceDetector(FaceDetectorInterface):
    """
    Face detector using the frontal-face Haar cascade bundled with OpenCV.

    The cascade reports no per-face score, so every box gets a fixed
    confidence.
    """

    CASCADE = "haarcascade_frontalface_default.xml"
    CONFIDENCE = 0.9

    def __init__(self, scale_factor: float = 1.1, min_neighbors: int = 5):
        import cv2

        self._cv2 = cv2
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.classifier = cv2.CascadeClassifier(cv2.data.haarcascades + self.CASCADE)
        if self.classifier.empty():
            raise FaceDetectionError(f"Could not load cascade {self.CASCADE}")

    def detect_faces(self, pixels: np.ndarray) -> List[FaceRegion]:
        gray = self._cv2.cvtColor(
            np.ascontiguousarray(pixels[..., :3]), self._cv2.COLOR_RGB2GRAY
        )
        boxes = self.classifier.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors
        )
        return [
            FaceRegion(x=int(x), y=int(y), width=int(w), height=int(h), confidence=self.CONFIDENCE)
            for (x, y, w, h) in boxes
        ]


class DlibFaceDetector(FaceDetectorInterface):
    """
    Face detector using dlib via the face_recognition library.

    Each face carries one keypoint per landmark feature (chin, eyes,
    nose tip, ...), placed at the centroid of that feature's points.

    Args:
        model: "hog" (faster, CPU) or "cnn" (more accurate, needs GPU)
    """

    def __init__(self, model: str = "hog"):
        import face_recognition

        self._fr = face_recognition
        self.model = model

    def detect_faces(self, pixels: np.ndarray) -> List[FaceRegion]:
        rgb = np.ascontiguousarray(pixels[..., :3])

        # Returns list of (top, right, bottom, left) tuples
        face_locations = self._fr.face_locations(rgb, model=self.model)
        landmarks = self._fr.face_landmarks(rgb, face_locations)

        faces = []
        for (top, right, bottom, left), features in zip(face_locations, landmarks):
            keypoints = [
                Keypoint(
                    name=name,
                    x=float(np.mean([p[0] for p in points])),
                    y=float(np.mean([p[1] for p in points]))
                )
                for name, points in features.items() if points
            ]
            faces.append(FaceRegion(
                x=left,
                y=top,
                width=right - left,
                height=bottom - top,
                confidence=1.0,  # dlib doesn't provide confidence scores
                keypoints=keypoints
            ))
        return faces


def detector_factory(config: DetectorConfig) -> Callable[[], FaceDetectorInterface]:
    """Return a zero-argument constructor for the configured backend."""
    if config.backend == "dlib":
        return lambda: DlibFaceDetector(model=config.dlib_model)
    if config.backend == "haar":
        return HaarFaceDetector
    raise ValueError(f"Unknown detector backend: {config.backend}")


# ============================================================================
# Lazy, single-flight detector
# ============================================================================

class LazyFaceDetector:
    """
    Asynchronous face detector that loads its backend on first use.

    Concurrent callers during initialization await the same load task and
    observe the same backend instance afterwards. A failed load is logged
    and not retried; from then on every call returns the fallback region.
    """

    def __init__(
        self,
        factory: Callable[[], FaceDetectorInterface],
        fallback_confidence: float = 0.5
    ):
        self._factory = factory
        self.fallback_confidence = fallback_confidence
        self._backend: Optional[FaceDetectorInterface] = None
        self._failed = False
        self._load_task: Optional[asyncio.Future] = None

    @property
    def is_loaded(self) -> bool:
        return self._backend is not None

    @property
    def backend_name(self) -> str:
        if self._backend is not None:
            return type(self._backend).__name__
        return "fallback" if self._failed else "not loaded"

    async def load(self) -> Optional[FaceDetectorInterface]:
        """Load the backend once; returns None when it is unavailable."""
        if self._backend is not None or self._failed:
            return self._backend

        if self._load_task is None:
            self._load_task = asyncio.ensure_future(asyncio.to_thread(self._initialize))

        return await asyncio.shield(self._load_task)

    def _initialize(self) -> Optional[FaceDetectorInterface]:
        try:
            backend = self._factory()
        except Exception:
            logger.exception("Face detector failed to load, using heuristic fallback")
            self._failed = True
            return None

        logger.info(f"Face detector loaded: {type(backend).__name__}")
        self._backend = backend
        return backend

    def fallback(self, pixels: np.ndarray) -> List[FaceRegion]:
        height, width = pixels.shape[:2]
        return [fallback_region(width, height, self.fallback_confidence)]

    async def detect_faces(self, pixels: np.ndarray) -> List[FaceRegion]:
        """Detect faces; never raises, may return an empty list."""
        backend = await self.load()
        if backend is None:
            return self.fallback(pixels)

        try:
            faces = await asyncio.to_thread(backend.detect_faces, pixels)
        except Exception:
            logger.exception("Face detection failed, using heuristic fallback")
            return self.fallback(pixels)

        logger.debug(f"Detected {len(faces)} face(s)")
        return faces
