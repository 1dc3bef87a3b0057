import io
import os
import tempfile

# Settings are read once per process, before photoguard is imported
_tmp_dir = tempfile.mkdtemp(prefix="photoguard-tests-")
os.environ["PHOTOGUARD_DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp_dir, 'test.db')}"
os.environ["PHOTOGUARD_CONFIG"] = os.path.join(_tmp_dir, "missing.yaml")

import numpy as np
import pytest
from PIL import Image

from photoguard.database import SessionLocal, PhotoRecord, init_db
from photoguard.face_utils import FaceDetectorInterface, FaceRegion
from photoguard.image_processor import RasterImage


class StubDetector(FaceDetectorInterface):
    """Returns a fixed list of faces."""

    def __init__(self, faces=None):
        self.faces = faces if faces is not None else [
            FaceRegion(x=30, y=20, width=40, height=50, confidence=0.9)
        ]

    def detect_faces(self, pixels):
        return list(self.faces)


@pytest.fixture
def random_raster():
    rng = np.random.default_rng(42)
    return RasterImage(pixels=rng.integers(0, 256, (200, 200, 3), dtype=np.uint8))


@pytest.fixture
def gradient_raster():
    x = np.linspace(0, 255, 120)
    y = np.linspace(0, 255, 100)
    gray = (np.add.outer(y, x) / 2).astype(np.uint8)
    return RasterImage(pixels=np.stack([gray, gray[:, ::-1], gray], axis=2))


@pytest.fixture
def jpeg_bytes(gradient_raster):
    buffer = io.BytesIO()
    Image.fromarray(gradient_raster.pixels).save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


@pytest.fixture
def face():
    return FaceRegion(x=30, y=20, width=40, height=50, confidence=0.9)


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.query(PhotoRecord).delete()
        session.commit()
        session.close()


@pytest.fixture
def stub_detector():
    return StubDetector
