"""
Pydantic Models for API Request/Response Validation

These define the contract between the capture client and the server.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from typing import Literal

from photoguard.duplicates import CheckMode, DuplicateVerdict
from photoguard.face_utils import FaceRegion


# ============================================================================
# Stored Photo Metadata
# ============================================================================

class PhotoMetadata(BaseModel):
    """Detection and fingerprint metadata stored with every accepted photo."""
    faces_detected: int = Field(0, ge=0)
    face_locations: List[FaceRegion] = Field(default_factory=list)
    face_signature: str = ""
    image_hash: str = ""
    is_unique: bool = True
    similar_to_photo_id: Optional[str] = None
    similarity_score: int = Field(0, ge=0, le=100)
    confidence: int = Field(0, ge=0, le=100, description="Mean detector confidence (0-100)")


# ============================================================================
# Processing Endpoint Models
# ============================================================================

class AnonymizeResponse(BaseModel):
    """Response from the anonymization endpoint."""
    status: str = Field(..., example="success")
    faces_detected: int = Field(..., description="Total faces found in image")
    processed_image: str = Field(..., description="Base64-encoded anonymized image")
    image_format: str = Field(..., example="jpeg")
    image_hash: str = Field(..., description="256-bit perceptual hash of the original")
    face_signature: str = Field(..., description="Signature of the first face, empty if none")
    confidence: int = Field(..., description="Mean detector confidence (0-100)")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")
    faces: Optional[List[FaceRegion]] = Field(
        None,
        description="Detected faces (if return_coordinates=true)"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "status": "success",
                "faces_detected": 2,
                "processed_image": "data:image/jpeg;base64,...",
                "image_format": "jpeg",
                "image_hash": "0110...",
                "face_signature": "sig_30_15_40_50_80",
                "confidence": 90,
                "processing_time_ms": 234.5
            }
        }


class FingerprintResponse(BaseModel):
    """Response from the fingerprint endpoint."""
    image_hash: str
    face_signature: str
    faces_detected: int
    faces: List[FaceRegion]


# ============================================================================
# Duplicate Detection Models
# ============================================================================

class DuplicateCheckRequest(BaseModel):
    """Fingerprints of a photo about to be submitted."""
    image_hash: str = ""
    face_signature: str = ""


class DuplicateCheckResponse(BaseModel):
    """Verdict of a duplicate check."""
    batch_id: str
    mode: CheckMode
    threshold: int
    compared_photos: int
    verdict: DuplicateVerdict


class DuplicateWarning(BaseModel):
    """Attached to an accepted photo that duplicates an earlier one."""
    is_duplicate: bool = True
    similarity_score: int
    similar_to_photo_id: Optional[str]


# ============================================================================
# Batch Photo Models
# ============================================================================

class PhotoInfo(BaseModel):
    """An accepted photo (never includes the original image)."""
    photo_id: str
    batch_id: str
    captured_at: datetime
    metadata: PhotoMetadata


class PhotoAcceptResponse(BaseModel):
    """Response from photo acceptance."""
    status: str = Field(..., example="success")
    photo: PhotoInfo
    processed_image: str = Field(..., description="Base64-encoded anonymized image")
    duplicate_warning: Optional[DuplicateWarning] = None


class PhotoListResponse(BaseModel):
    """Photos of a batch, newest first."""
    batch_id: str
    count: int
    photos: List[PhotoInfo]


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., example="healthy")
    version: str = Field(..., example="1.0.0")
    database_connected: bool
    face_detector_loaded: bool
    face_detector: str
    total_photos: int


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    status: Literal["error"] = "error"
    error_code: str
    message: str
    details: Optional[dict] = None

    class Config:
        json_schema_extra = {
            "example": {
                "status": "error",
                "error_code": "NO_FACE_DETECTED",
                "message": "No face was detected in the uploaded image",
                "details": {"image_size": "1920x1080"}
            }
        }


# Error codes
class ErrorCode:
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_FACES = "INVALID_FACES"
    PHOTO_NOT_FOUND = "PHOTO_NOT_FOUND"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
