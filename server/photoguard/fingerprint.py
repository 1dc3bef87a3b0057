"""
Photo fingerprints for duplicate detection.

Two fingerprints are derived from every photo:

- Image hash: a 256-bit average hash of the full image. The image is
  converted to 8-bit luminance with Pillow (ITU-R 601-2 luma), resized
  to 16x16 with Lanczos resampling by ImageHash, and each sample emits
  1 when strictly brighter than the mean, in row-major order. The
  resizer is fixed so that every component produces identical hashes.

- Face signature: position, size and shape of the first detected face
  relative to the image, e.g. ``sig_30_15_40_50_80``, optionally followed
  by ``_kp12:40:33`` (keypoint distances from the box centre as a
  percentage of the box width).

Both are pure functions of their inputs and comparisons never raise.
"""

import math
import logging
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

import imagehash

from photoguard.face_utils import FaceRegion
from photoguard.image_processor import RasterImage

logger = logging.getLogger(__name__)

HASH_SIZE = 16
SIGNATURE_PREFIX = "sig"
KEYPOINT_TAG = "kp"

# Largest total field difference still scored above zero by the linear metric
MAX_SIGNATURE_DIFF = 300


class SignatureMetric(str, Enum):
    """Supported face signature comparisons."""
    LINEAR = "linear"        # Sum of absolute field differences
    COMPOSITE = "composite"  # Aspect ratio (0.4) + keypoint distances (0.6)


class FaceSignature(NamedTuple):
    rel_x: int
    rel_y: int
    rel_w: int
    rel_h: int
    aspect_ratio: int
    keypoints: Tuple[int, ...] = ()

    @property
    def fields(self) -> Tuple[int, int, int, int, int]:
        return (self.rel_x, self.rel_y, self.rel_w, self.rel_h, self.aspect_ratio)


def round_half_up(value: float) -> int:
    """Round .5 away from negative infinity, independent of banker's rounding."""
    return int(math.floor(value + 0.5))


# ============================================================================
# Image hash
# ============================================================================

def compute_image_hash(image: RasterImage) -> str:
    """256-character '0'/'1' average hash of the whole image."""
    gray = image.to_pil().convert("L")
    bits = imagehash.average_hash(gray, hash_size=HASH_SIZE).hash.flatten()
    return "".join("1" if bit else "0" for bit in bits)


def compare_hashes(hash1: Optional[str], hash2: Optional[str]) -> int:
    """Percentage of matching bit positions; 0 for missing or mismatched hashes."""
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return 0

    matches = sum(1 for a, b in zip(hash1, hash2) if a == b)
    return round_half_up(matches / len(hash1) * 100)


# ============================================================================
# Face signature
# ============================================================================

def _keypoint_distances(face: FaceRegion) -> List[int]:
    if face.width <= 0:
        return []

    cx = face.x + face.width / 2
    cy = face.y + face.height / 2
    return [
        round_half_up(math.hypot(kp.x - cx, kp.y - cy) / face.width * 100)
        for kp in face.keypoints
    ]


def generate_face_signature(
    faces: List[FaceRegion],
    image_width: int,
    image_height: int
) -> str:
    """
    Signature of the first face in ``faces``.

    Only the first face is used; the rest are ignored. Returns "" when
    there is no face, the first face has no area or the image has none.
    """
    if not faces or image_width <= 0 or image_height <= 0:
        return ""

    face = faces[0]
    if face.width <= 0 or face.height <= 0:
        return ""

    rel_x = round_half_up(face.x / image_width * 100)
    rel_y = round_half_up(face.y / image_height * 100)
    rel_w = round_half_up(face.width / image_width * 100)
    rel_h = round_half_up(face.height / image_height * 100)
    aspect_ratio = round_half_up(face.width / face.height * 100)

    signature = f"{SIGNATURE_PREFIX}_{rel_x}_{rel_y}_{rel_w}_{rel_h}_{aspect_ratio}"

    distances = _keypoint_distances(face)
    if distances:
        signature += f"_{KEYPOINT_TAG}" + ":".join(str(d) for d in distances)

    return signature


def parse_face_signature(signature: Optional[str]) -> Optional[FaceSignature]:
    """Parse a signature; None when it is empty or malformed."""
    if not signature:
        return None

    parts = signature.split("_")
    if parts[0] != SIGNATURE_PREFIX or len(parts) not in (6, 7):
        return None

    try:
        values = [int(p) for p in parts[1:6]]
        keypoints: Tuple[int, ...] = ()
        if len(parts) == 7:
            if not parts[6].startswith(KEYPOINT_TAG):
                return None
            encoded = parts[6][len(KEYPOINT_TAG):]
            keypoints = tuple(int(d) for d in encoded.split(":")) if encoded else ()
    except ValueError:
        return None

    return FaceSignature(*values, keypoints=keypoints)


def _linear_similarity(sig1: FaceSignature, sig2: FaceSignature) -> int:
    total_diff = sum(abs(a - b) for a, b in zip(sig1.fields, sig2.fields))
    return round_half_up(max(0.0, 100 - total_diff / MAX_SIGNATURE_DIFF * 100))


def _composite_similarity(sig1: FaceSignature, sig2: FaceSignature) -> int:
    ratio1 = sig1.aspect_ratio / 100
    ratio2 = sig2.aspect_ratio / 100
    largest = max(ratio1, ratio2)
    ratio_similarity = 1 - abs(ratio1 - ratio2) / largest if largest > 0 else 0.0
    ratio_similarity = max(0.0, ratio_similarity)

    keypoint_similarity = 0.5
    kp1, kp2 = sig1.keypoints, sig2.keypoints
    if kp1 and len(kp1) == len(kp2):
        diff = sum(abs(a - b) for a, b in zip(kp1, kp2))
        keypoint_similarity = max(0.0, 1 - diff / (len(kp1) * 50))

    return round_half_up((ratio_similarity * 0.4 + keypoint_similarity * 0.6) * 100)


def compare_face_signatures(
    signature1: Optional[str],
    signature2: Optional[str],
    metric: SignatureMetric = SignatureMetric.LINEAR
) -> int:
    """Similarity of two face signatures (0-100); 0 when either is unusable."""
    sig1 = parse_face_signature(signature1)
    sig2 = parse_face_signature(signature2)
    if sig1 is None or sig2 is None:
        return 0

    if metric == SignatureMetric.LINEAR:
        return _linear_similarity(sig1, sig2)
    elif metric == SignatureMetric.COMPOSITE:
        return _composite_similarity(sig1, sig2)
    else:
        raise ValueError(f"Unknown metric: {metric}")
