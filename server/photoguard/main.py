"""
PhotoGuard - FastAPI Backend
============================

Face anonymization and duplicate detection for captured photos.

Endpoints:
- POST /anonymize                          - Blur faces, return base64 image + fingerprints
- POST /anonymize/raw                      - Blur faces, return raw JPEG bytes
- POST /fingerprint                        - Image hash and face signature only
- POST /batches/{batch_id}/duplicates/check - Advisory duplicate pre-check
- POST /batches/{batch_id}/photos          - Accept a photo (authoritative check)
- GET  /batches/{batch_id}/photos          - List accepted photos
- GET  /photos/{photo_id}/image            - Anonymized image of a photo
- DELETE /photos/{photo_id}                 - Delete a photo
- GET  /health                             - Health check
"""

import time
import logging
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, UploadFile, Form, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from photoguard import __version__
from photoguard.config import configure_logging, get_settings
from photoguard.database import (
    get_db, init_db, delete_photo, get_photo_by_id, get_photo_count, get_batch_photo_count,
    list_batch_photos, PhotoRecord
)
from photoguard.duplicates import CheckMode, DuplicateDetector, PhotoFingerprint
from photoguard.face_utils import FaceRegion, LazyFaceDetector, detector_factory
from photoguard.fingerprint import SignatureMetric
from photoguard.image_processor import ImageDecodingError, ImageProcessor, image_to_base64
from photoguard.models import (
    AnonymizeResponse, FingerprintResponse, DuplicateCheckRequest, DuplicateCheckResponse,
    DuplicateWarning, PhotoInfo, PhotoAcceptResponse, PhotoListResponse,
    HealthResponse, ErrorResponse, ErrorCode
)
from photoguard.pipeline import BatchAcceptor, PhotoPipeline, ProcessedPhoto

logger = logging.getLogger(__name__)


# ============================================================================
# Application Setup
# ============================================================================

settings = get_settings()

face_detector = LazyFaceDetector(
    detector_factory(settings.detector),
    fallback_confidence=settings.detector.fallback_confidence
)
pipeline = PhotoPipeline(
    face_detector,
    ImageProcessor(settings.anonymization),
    jpeg_quality=settings.anonymization.jpeg_quality
)

_metric = SignatureMetric(settings.duplicate_detection.signature_metric)
acceptor = BatchAcceptor(
    authoritative=DuplicateDetector(
        threshold=settings.duplicate_detection.authoritative_threshold,
        mode=CheckMode.AUTHORITATIVE,
        signature_metric=_metric
    ),
    advisory=DuplicateDetector(
        threshold=settings.duplicate_detection.advisory_threshold,
        mode=CheckMode.ADVISORY,
        signature_metric=_metric
    )
)

_faces_adapter = TypeAdapter(List[FaceRegion])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    configure_logging(settings.log_level)
    logger.info("PhotoGuard starting up...")
    init_db()
    logger.info("Database initialized")
    logger.info(f"Face detector backend: {settings.detector.backend} (loaded on first use)")
    yield
    logger.info("PhotoGuard shutting down...")


app = FastAPI(
    title="PhotoGuard API",
    description="""
    ## Photo Anonymization & Duplicate Detection

    ### How it works:
    1. **Detect** faces in the captured photo (or accept boxes from the client)
    2. **Anonymize** every face: pixelation, repeated blur, noise, pixelation
    3. **Fingerprint** the photo: 256-bit image hash + face signature
    4. **Accept** the photo into a batch, flagging near-duplicates

    ### Duplicate thresholds:
    - `advisory` pre-check: 85% by default
    - `authoritative` check on acceptance: 80% by default
    """,
    version=__version__,
    lifespan=lifespan
)

# CORS - allow capture clients to connect
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Helpers
# ============================================================================

def parse_faces(faces: Optional[str]) -> Optional[List[FaceRegion]]:
    """Parse caller-supplied face regions (JSON list); None means detect."""
    if faces is None or faces == "":
        return None
    try:
        return _faces_adapter.validate_json(faces)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.INVALID_FACES, "message": str(e)}
        )


async def run_pipeline(image: UploadFile, faces: Optional[str]) -> ProcessedPhoto:
    face_regions = parse_faces(faces)
    image_bytes = await image.read()

    try:
        return await pipeline.process(image_bytes, face_regions)
    except ImageDecodingError as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.INVALID_IMAGE, "message": str(e)}
        )


def photo_info(photo: PhotoRecord) -> PhotoInfo:
    return PhotoInfo(
        photo_id=photo.id,
        batch_id=photo.batch_id,
        captured_at=photo.captured_at,
        metadata=photo.to_metadata()
    )


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@app.get("/", tags=["Info"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "PhotoGuard API",
        "version": __version__,
        "description": "Photo Anonymization & Duplicate Detection",
        "face_detector": face_detector.backend_name,
        "hash_bits": 256,
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=HealthResponse, tags=["Info"])
async def health_check(db: Session = Depends(get_db)):
    """Check system health."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        database_connected=True,
        face_detector_loaded=face_detector.is_loaded,
        face_detector=face_detector.backend_name,
        total_photos=get_photo_count(db)
    )


# ============================================================================
# Processing Endpoints
# ============================================================================

@app.post(
    "/anonymize",
    response_model=AnonymizeResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Processing"]
)
async def anonymize_image(
    image: UploadFile = File(..., description="Captured photo"),
    faces: Optional[str] = Form(
        None,
        description="JSON list of face regions; detected on the server if omitted"
    ),
    return_coordinates: bool = Form(
        False,
        description="Include face coordinates in response"
    )
):
    """
    Anonymize every face in a photo and fingerprint it.

    A photo without faces is returned unchanged (re-encoded); whether
    that is acceptable is up to the caller.
    """
    start_time = time.time()

    try:
        processed = await run_pipeline(image, faces)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Anonymization failed")
        raise HTTPException(
            status_code=500,
            detail={"error_code": ErrorCode.PROCESSING_ERROR, "message": str(e)}
        )

    return AnonymizeResponse(
        status="success",
        faces_detected=processed.faces_detected,
        processed_image=image_to_base64(processed.blurred_image, processed.image_format),
        image_format=processed.image_format,
        image_hash=processed.image_hash,
        face_signature=processed.face_signature,
        confidence=processed.confidence,
        processing_time_ms=(time.time() - start_time) * 1000,
        faces=processed.faces if return_coordinates else None
    )


@app.post("/anonymize/raw", tags=["Processing"])
async def anonymize_image_raw(
    image: UploadFile = File(...),
    faces: Optional[str] = Form(None)
):
    """Anonymize a photo and return raw bytes (no base64)."""
    try:
        processed = await run_pipeline(image, faces)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Anonymization failed")
        raise HTTPException(status_code=500, detail=str(e))

    return Response(
        content=processed.blurred_image,
        media_type=f"image/{processed.image_format}",
        headers={"X-Faces-Detected": str(processed.faces_detected)}
    )


@app.post("/fingerprint", response_model=FingerprintResponse, tags=["Processing"])
async def fingerprint_image(
    image: UploadFile = File(...),
    faces: Optional[str] = Form(None)
):
    """Compute the image hash and face signature of a photo."""
    processed = await run_pipeline(image, faces)
    return FingerprintResponse(
        image_hash=processed.image_hash,
        face_signature=processed.face_signature,
        faces_detected=processed.faces_detected,
        faces=processed.faces
    )


# ============================================================================
# Batch Endpoints
# ============================================================================

@app.post(
    "/batches/{batch_id}/duplicates/check",
    response_model=DuplicateCheckResponse,
    tags=["Batches"]
)
async def check_duplicates(
    batch_id: str,
    request: DuplicateCheckRequest,
    db: Session = Depends(get_db)
):
    """
    Advisory duplicate pre-check before submission.

    Nothing is stored, and a concurrent submission may still slip past;
    the authoritative check runs again on acceptance.
    """
    verdict = acceptor.precheck(
        db,
        batch_id,
        PhotoFingerprint(image_hash=request.image_hash, face_signature=request.face_signature)
    )
    return DuplicateCheckResponse(
        batch_id=batch_id,
        mode=CheckMode.ADVISORY,
        threshold=acceptor.advisory.threshold,
        compared_photos=get_batch_photo_count(db, batch_id),
        verdict=verdict
    )


@app.post(
    "/batches/{batch_id}/photos",
    response_model=PhotoAcceptResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Batches"]
)
async def accept_photo(
    batch_id: str,
    image: UploadFile = File(..., description="Captured photo"),
    faces: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    """
    Anonymize a photo and accept it into a batch.

    The duplicate verdict is computed against the photos already in the
    batch, in submission order, and stored with the new photo only.
    """
    processed = await run_pipeline(image, faces)

    if processed.faces_detected == 0 and settings.reject_faceless_photos:
        raise HTTPException(
            status_code=422,
            detail={
                "error_code": ErrorCode.NO_FACE_DETECTED,
                "message": "No face detected. Please retake the photo."
            }
        )

    try:
        record, verdict = acceptor.accept(db, batch_id, processed)
    except Exception as e:
        logger.exception("Failed to store photo")
        raise HTTPException(
            status_code=500,
            detail={"error_code": ErrorCode.DATABASE_ERROR, "message": str(e)}
        )

    return PhotoAcceptResponse(
        status="success",
        photo=photo_info(record),
        processed_image=image_to_base64(record.blurred_image, processed.image_format),
        duplicate_warning=None if verdict.is_unique else DuplicateWarning(
            similarity_score=verdict.similarity_score,
            similar_to_photo_id=verdict.matched_photo_id
        )
    )


@app.get("/batches/{batch_id}/photos", response_model=PhotoListResponse, tags=["Batches"])
async def list_photos(batch_id: str, db: Session = Depends(get_db)):
    """List the photos of a batch, newest first."""
    photos = list_batch_photos(db, batch_id)
    return PhotoListResponse(
        batch_id=batch_id,
        count=len(photos),
        photos=[photo_info(p) for p in photos]
    )


@app.get("/photos/{photo_id}/image", tags=["Batches"])
async def get_photo_image(photo_id: str, db: Session = Depends(get_db)):
    """Anonymized image of an accepted photo."""
    photo = get_photo_by_id(db, photo_id)

    if not photo:
        raise HTTPException(status_code=404, detail={"error_code": ErrorCode.PHOTO_NOT_FOUND})

    return Response(content=photo.blurred_image, media_type="image/jpeg")


@app.delete("/photos/{photo_id}", tags=["Batches"])
async def remove_photo(photo_id: str, db: Session = Depends(get_db)):
    """
    Permanently delete an accepted photo.

    Later photos keep the verdicts they were accepted with.
    """
    if not delete_photo(db, photo_id):
        raise HTTPException(status_code=404, detail={"error_code": ErrorCode.PHOTO_NOT_FOUND})

    logger.info(f"Deleted photo {photo_id}")
    return {"status": "success", "photo_id": photo_id}


# ============================================================================
# Run Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("photoguard.main:app", host="0.0.0.0", port=8000, reload=True)
