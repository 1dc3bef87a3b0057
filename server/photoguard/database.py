"""
Database module for accepted photos and their fingerprints.
Uses SQLite for simplicity - can be swapped for PostgreSQL in production.

A batch is an opaque id here; batch lifecycle is managed elsewhere.
"""

import uuid
import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, LargeBinary, Boolean, JSON
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from cryptography.fernet import Fernet

from photoguard.config import get_settings
from photoguard.duplicates import PhotoFingerprint
from photoguard.face_utils import FaceRegion
from photoguard.models import PhotoMetadata

logger = logging.getLogger(__name__)

# Database setup
DATABASE_URL = get_settings().database_url
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class EncryptionManager:
    """
    Encrypts original (unblurred) photos before they are stored.

    Originals are write-only: nothing in the service reads them back, so
    only a holder of the key can recover them.
    """

    def __init__(self, key: Optional[str] = None):
        # In production, load this from environment variable or secure vault
        self.key = key
        if not self.key:
            # Generate a new key if none exists (for development)
            self.key = Fernet.generate_key()
            logger.warning(
                "Generated new encryption key. Set PHOTOGUARD_ENCRYPTION_KEY in production!"
            )
        else:
            self.key = self.key.encode() if isinstance(self.key, str) else self.key

        self.cipher = Fernet(self.key)

    def encrypt_image(self, image_bytes: bytes) -> bytes:
        return self.cipher.encrypt(image_bytes)


# Global encryption manager
encryption_manager = EncryptionManager(get_settings().encryption_key)


class PhotoRecord(Base):
    """
    A photo accepted into a batch.

    ``seq`` preserves submission order, which duplicate detection relies on.
    The duplicate verdict is written once, at acceptance, and never
    recomputed when later photos arrive.
    """
    __tablename__ = "photos"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False, index=True)
    batch_id = Column(String, nullable=False, index=True)
    captured_at = Column(DateTime, default=datetime.utcnow)

    original_image = Column(LargeBinary, nullable=True)  # Encrypted, write-only
    blurred_image = Column(LargeBinary, nullable=False)

    faces_detected = Column(Integer, default=0)
    face_locations = Column(JSON, default=list)
    face_signature = Column(String, default="")
    image_hash = Column(String, default="")
    is_unique = Column(Boolean, default=True)
    similar_to_photo_id = Column(String, nullable=True)
    similarity_score = Column(Integer, default=0)
    confidence = Column(Integer, default=0)

    def set_original(self, image_bytes: bytes):
        """Encrypt and store the original image."""
        self.original_image = encryption_manager.encrypt_image(image_bytes)

    def to_fingerprint(self) -> PhotoFingerprint:
        return PhotoFingerprint(
            photo_id=self.id,
            image_hash=self.image_hash or "",
            face_signature=self.face_signature or ""
        )

    def to_metadata(self) -> PhotoMetadata:
        return PhotoMetadata(
            faces_detected=self.faces_detected or 0,
            face_locations=[FaceRegion(**face) for face in (self.face_locations or [])],
            face_signature=self.face_signature or "",
            image_hash=self.image_hash or "",
            is_unique=self.is_unique,
            similar_to_photo_id=self.similar_to_photo_id,
            similarity_score=self.similarity_score or 0,
            confidence=self.confidence or 0
        )


def init_db():
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ============================================================================
# Database Operations
# ============================================================================

def add_photo(
    db: Session,
    batch_id: str,
    blurred_image: bytes,
    metadata: PhotoMetadata,
    original_image: Optional[bytes] = None
) -> PhotoRecord:
    """
    Store an accepted photo.

    Args:
        db: Database session
        batch_id: Batch the photo belongs to
        blurred_image: Anonymized, encoded image
        metadata: Detection, fingerprint and verdict metadata
        original_image: Unblurred image, stored encrypted

    Returns:
        The created PhotoRecord
    """
    photo = PhotoRecord(
        id=f"pho_{uuid.uuid4().hex[:12]}",
        batch_id=batch_id,
        blurred_image=blurred_image,
        faces_detected=metadata.faces_detected,
        face_locations=[face.model_dump() for face in metadata.face_locations],
        face_signature=metadata.face_signature,
        image_hash=metadata.image_hash,
        is_unique=metadata.is_unique,
        similar_to_photo_id=metadata.similar_to_photo_id,
        similarity_score=metadata.similarity_score,
        confidence=metadata.confidence
    )
    if original_image is not None:
        photo.set_original(original_image)

    db.add(photo)
    db.commit()
    db.refresh(photo)

    return photo


def get_batch_fingerprints(db: Session, batch_id: str) -> List[PhotoFingerprint]:
    """Fingerprints of a batch's accepted photos in submission order."""
    photos = (
        db.query(PhotoRecord)
        .filter(PhotoRecord.batch_id == batch_id)
        .order_by(PhotoRecord.seq.asc())
        .all()
    )
    return [photo.to_fingerprint() for photo in photos]


def list_batch_photos(db: Session, batch_id: str) -> List[PhotoRecord]:
    """Photos of a batch, newest first."""
    return (
        db.query(PhotoRecord)
        .filter(PhotoRecord.batch_id == batch_id)
        .order_by(PhotoRecord.seq.desc())
        .all()
    )


def get_photo_by_id(db: Session, photo_id: str) -> Optional[PhotoRecord]:
    """Get a specific photo by ID."""
    return db.query(PhotoRecord).filter(PhotoRecord.id == photo_id).first()


def get_batch_photo_count(db: Session, batch_id: str) -> int:
    return db.query(PhotoRecord).filter(PhotoRecord.batch_id == batch_id).count()


def get_photo_count(db: Session) -> int:
    """Get total number of stored photos."""
    return db.query(PhotoRecord).count()


def delete_photo(db: Session, photo_id: str) -> bool:
    """
    Permanently delete a photo.
    Verdicts already stored on later photos are left as they are.
    """
    photo = get_photo_by_id(db, photo_id)
    if photo:
        db.delete(photo)
        db.commit()
        return True
    return False

