"""
Duplicate detection within a batch.

A new photo is compared against every photo already accepted into the
same batch, in submission order. The first photo whose image hash or
face signature similarity reaches the threshold is reported as the
match. Earlier photos are never re-evaluated when a later duplicate
arrives.

The same detector serves both call sites:

- ADVISORY: pre-check before upload, no ordering guarantee
- AUTHORITATIVE: check on acceptance, serialized per batch
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from photoguard.fingerprint import SignatureMetric, compare_face_signatures, compare_hashes

logger = logging.getLogger(__name__)


class CheckMode(str, Enum):
    """Where the duplicate check runs."""
    ADVISORY = "advisory"
    AUTHORITATIVE = "authoritative"


class PhotoFingerprint(BaseModel):
    """Fingerprints of one photo."""
    photo_id: Optional[str] = None
    image_hash: str = ""
    face_signature: str = ""


class SimilarityBreakdown(BaseModel):
    """Result of comparing two photos."""
    hash_similarity: int = Field(..., ge=0, le=100)
    face_similarity: int = Field(..., ge=0, le=100)

    @property
    def score(self) -> int:
        return max(self.hash_similarity, self.face_similarity)


class DuplicateVerdict(BaseModel):
    """Unique/duplicate verdict for a new photo."""
    is_unique: bool
    matched_photo_id: Optional[str] = None
    similarity_score: int = Field(0, ge=0, le=100)

    def to_dict(self) -> dict:
        return {
            "is_unique": self.is_unique,
            "matched_photo_id": self.matched_photo_id,
            "similarity_score": self.similarity_score
        }


class DuplicateDetector:
    """
    Core comparison engine for photo fingerprints.

    Default thresholds:
    - Advisory: 85
    - Authoritative: 80

    The two defaults differ the same way the capture client and the server
    always have; pass an explicit threshold to use one value everywhere.
    """

    DEFAULT_THRESHOLDS = {
        CheckMode.ADVISORY: 85,
        CheckMode.AUTHORITATIVE: 80,
    }

    def __init__(
        self,
        threshold: Optional[int] = None,
        mode: CheckMode = CheckMode.AUTHORITATIVE,
        signature_metric: SignatureMetric = SignatureMetric.LINEAR
    ):
        self.mode = mode
        self.signature_metric = signature_metric
        self.threshold = threshold if threshold is not None else self.DEFAULT_THRESHOLDS[mode]

    def compare(self, candidate: PhotoFingerprint, existing: PhotoFingerprint) -> SimilarityBreakdown:
        """Compare both fingerprints of two photos."""
        return SimilarityBreakdown(
            hash_similarity=compare_hashes(candidate.image_hash, existing.image_hash),
            face_similarity=compare_face_signatures(
                candidate.face_signature,
                existing.face_signature,
                self.signature_metric
            )
        )

    def is_duplicate(self, breakdown: SimilarityBreakdown) -> bool:
        return (
            breakdown.hash_similarity >= self.threshold
            or breakdown.face_similarity >= self.threshold
        )

    def check(
        self,
        candidate: PhotoFingerprint,
        existing_photos: Iterable[PhotoFingerprint]
    ) -> DuplicateVerdict:
        """
        Scan ``existing_photos`` in submission order.

        Returns:
            The first match as a duplicate verdict, or a unique verdict
            carrying the highest similarity observed.
        """
        highest = 0

        for photo in existing_photos:
            breakdown = self.compare(candidate, photo)
            highest = max(highest, breakdown.score)

            if self.is_duplicate(breakdown):
                logger.info(
                    f"{self.mode.value} check: duplicate of {photo.photo_id} "
                    f"(hash {breakdown.hash_similarity}%, face {breakdown.face_similarity}%)"
                )
                return DuplicateVerdict(
                    is_unique=False,
                    matched_photo_id=photo.photo_id,
                    similarity_score=breakdown.score
                )

        logger.debug(f"{self.mode.value} check: unique (highest similarity {highest}%)")
        return DuplicateVerdict(is_unique=True, similarity_score=highest)
