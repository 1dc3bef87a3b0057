import asyncio
import time

import numpy as np
import pytest
from pydantic import ValidationError

from photoguard.config import DetectorConfig
from photoguard.face_utils import (
    FaceDetectionError, FaceDetectorInterface, FaceRegion, HaarFaceDetector,
    LazyFaceDetector, detector_factory, fallback_region
)


class FailingDetector(FaceDetectorInterface):
    def detect_faces(self, pixels):
        raise RuntimeError("backend crashed")


def blank_pixels(width=200, height=100):
    return np.zeros((height, width, 3), dtype=np.uint8)


def test_fallback_region():
    region = fallback_region(200, 100)

    assert (region.x, region.y, region.width, region.height) == pytest.approx((60, 15, 80, 50))
    assert region.confidence == 0.5


def test_confidence_must_be_a_probability():
    with pytest.raises(ValidationError):
        FaceRegion(x=0, y=0, width=10, height=10, confidence=1.5)


def test_regions_may_be_degenerate():
    region = FaceRegion(x=-5, y=-5, width=0, height=-3)
    assert region.to_dict() == {"x": -5, "y": -5, "width": 0, "height": -3, "confidence": 1.0}


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        detector_factory(DetectorConfig(backend="yolo"))


def test_haar_backend_finds_nothing_in_blank_image():
    detector = detector_factory(DetectorConfig(backend="haar"))()

    assert isinstance(detector, HaarFaceDetector)
    assert detector.detect_faces(blank_pixels()) == []


def test_load_is_single_flight(stub_detector):
    calls = []

    def factory():
        calls.append(1)
        time.sleep(0.05)
        return stub_detector()

    lazy = LazyFaceDetector(factory)

    async def run():
        return await asyncio.gather(*(lazy.load() for _ in range(5)))

    backends = asyncio.run(run())

    assert len(calls) == 1
    assert all(backend is backends[0] for backend in backends)
    assert lazy.is_loaded
    assert lazy.backend_name == "StubDetector"


def test_detect_uses_loaded_backend(stub_detector):
    lazy = LazyFaceDetector(stub_detector)
    faces = asyncio.run(lazy.detect_faces(blank_pixels()))

    assert faces == [FaceRegion(x=30, y=20, width=40, height=50, confidence=0.9)]


def test_backend_may_find_no_faces(stub_detector):
    lazy = LazyFaceDetector(lambda: stub_detector(faces=[]))
    assert asyncio.run(lazy.detect_faces(blank_pixels())) == []


def test_failed_load_falls_back_and_is_not_retried():
    calls = []

    def factory():
        calls.append(1)
        raise FaceDetectionError("no model files")

    lazy = LazyFaceDetector(factory, fallback_confidence=0.5)

    async def run():
        first = await lazy.detect_faces(blank_pixels())
        second = await lazy.detect_faces(blank_pixels())
        return first, second

    first, second = asyncio.run(run())

    assert first == second == [fallback_region(200, 100, 0.5)]
    assert len(calls) == 1
    assert not lazy.is_loaded
    assert lazy.backend_name == "fallback"


def test_backend_error_falls_back():
    lazy = LazyFaceDetector(FailingDetector, fallback_confidence=0.4)
    faces = asyncio.run(lazy.detect_faces(blank_pixels(50, 40)))

    assert faces == [fallback_region(50, 40, 0.4)]
    # The backend stays loaded; only that call fell back
    assert lazy.is_loaded


def test_not_loaded_until_first_use(stub_detector):
    lazy = LazyFaceDetector(stub_detector)

    assert not lazy.is_loaded
    assert lazy.backend_name == "not loaded"
