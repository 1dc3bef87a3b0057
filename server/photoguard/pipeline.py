"""
End-to-end photo processing.

A captured image is decoded once. Faces are detected (or supplied by the
caller), then the raster flows independently into the anonymization
engine and the two fingerprint generators. Acceptance into a batch runs
the authoritative duplicate check and stores the verdict with the photo.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.orm import Session

from photoguard.database import PhotoRecord, add_photo, get_batch_fingerprints
from photoguard.duplicates import (
    CheckMode, DuplicateDetector, DuplicateVerdict, PhotoFingerprint
)
from photoguard.face_utils import FaceRegion, LazyFaceDetector
from photoguard.fingerprint import (
    compute_image_hash, generate_face_signature, round_half_up
)
from photoguard.image_processor import (
    ImageProcessor, RasterImage, encode_jpeg, load_raster
)
from photoguard.models import PhotoMetadata

logger = logging.getLogger(__name__)


class ProcessedPhoto(BaseModel):
    """Everything derived from one captured image."""
    original_image: bytes
    blurred_image: bytes
    image_format: str = "jpeg"
    faces: List[FaceRegion]
    image_hash: str
    face_signature: str
    confidence: int

    @property
    def faces_detected(self) -> int:
        return len(self.faces)

    def fingerprint(self, photo_id: Optional[str] = None) -> PhotoFingerprint:
        return PhotoFingerprint(
            photo_id=photo_id,
            image_hash=self.image_hash,
            face_signature=self.face_signature
        )

    def to_metadata(self, verdict: Optional[DuplicateVerdict] = None) -> PhotoMetadata:
        verdict = verdict or DuplicateVerdict(is_unique=True)
        return PhotoMetadata(
            faces_detected=self.faces_detected,
            face_locations=self.faces,
            face_signature=self.face_signature,
            image_hash=self.image_hash,
            is_unique=verdict.is_unique,
            similar_to_photo_id=verdict.matched_photo_id,
            similarity_score=verdict.similarity_score,
            confidence=self.confidence
        )


def detection_confidence(faces: List[FaceRegion]) -> int:
    """Mean detector confidence scaled to 0-100; 0 without faces."""
    if not faces:
        return 0
    return round_half_up(sum(face.confidence for face in faces) / len(faces) * 100)


def fingerprint_photo(image: RasterImage, faces: List[FaceRegion]) -> PhotoFingerprint:
    """Image hash and face signature of a raster."""
    return PhotoFingerprint(
        image_hash=compute_image_hash(image),
        face_signature=generate_face_signature(faces, image.width, image.height)
    )


class PhotoPipeline:
    """
    Runs detection, anonymization and fingerprinting for one photo.

    Invocations share no mutable state apart from the detector, so
    different photos can be processed concurrently.
    """

    def __init__(
        self,
        detector: LazyFaceDetector,
        processor: ImageProcessor,
        jpeg_quality: int = 85
    ):
        self.detector = detector
        self.processor = processor
        self.jpeg_quality = jpeg_quality

    async def process(
        self,
        image_bytes: bytes,
        faces: Optional[List[FaceRegion]] = None
    ) -> ProcessedPhoto:
        """
        Process a captured image.

        Args:
            image_bytes: Encoded image
            faces: Face regions from the caller; detected when None

        Raises:
            ImageDecodingError: If the bytes are not an image
        """
        raster = load_raster(image_bytes)

        if faces is None:
            faces = await self.detector.detect_faces(raster.pixels)

        return await asyncio.to_thread(self.process_raster, raster, faces, image_bytes)

    def process_raster(
        self,
        raster: RasterImage,
        faces: List[FaceRegion],
        original_image: bytes = b""
    ) -> ProcessedPhoto:
        """Synchronous part of the pipeline, for an already decoded raster."""
        anonymized = self.processor.anonymize(raster, faces)
        fingerprint = fingerprint_photo(raster, faces)

        return ProcessedPhoto(
            original_image=original_image,
            blurred_image=encode_jpeg(anonymized, self.jpeg_quality),
            faces=faces,
            image_hash=fingerprint.image_hash,
            face_signature=fingerprint.face_signature,
            confidence=detection_confidence(faces)
        )


class BatchAcceptor:
    """
    Accepts photos into batches.

    Read-then-append is serialized per batch so that two concurrent
    near-duplicates cannot both be accepted as unique. The lock is
    process-local and only lives while the batch has callers.
    """

    def __init__(
        self,
        authoritative: Optional[DuplicateDetector] = None,
        advisory: Optional[DuplicateDetector] = None
    ):
        self.authoritative = authoritative or DuplicateDetector(mode=CheckMode.AUTHORITATIVE)
        self.advisory = advisory or DuplicateDetector(mode=CheckMode.ADVISORY)
        # batch_id -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _batch_lock(self, batch_id: str):
        """Hold the batch lock; it is dropped once no caller needs it."""
        with self._registry_lock:
            entry = self._locks.setdefault(batch_id, [threading.Lock(), 0])
            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[batch_id]

    def accept(
        self,
        db: Session,
        batch_id: str,
        processed: ProcessedPhoto
    ) -> Tuple[PhotoRecord, DuplicateVerdict]:
        """Run the authoritative check and store the photo with its verdict."""
        with self._batch_lock(batch_id):
            existing = get_batch_fingerprints(db, batch_id)
            verdict = self.authoritative.check(processed.fingerprint(), existing)
            record = add_photo(
                db,
                batch_id,
                processed.blurred_image,
                processed.to_metadata(verdict),
                original_image=processed.original_image or None
            )

        logger.info(
            f"Accepted {record.id} into batch {batch_id} "
            f"({'unique' if verdict.is_unique else 'duplicate of ' + str(verdict.matched_photo_id)})"
        )
        return record, verdict

    def precheck(
        self,
        db: Session,
        batch_id: str,
        fingerprint: PhotoFingerprint
    ) -> DuplicateVerdict:
        """Advisory verdict; not serialized and not stored."""
        return self.advisory.check(fingerprint, get_batch_fingerprints(db, batch_id))
