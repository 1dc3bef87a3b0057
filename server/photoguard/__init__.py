"""
PhotoGuard - Photo Anonymization & Duplicate Detection
======================================================

Obscures faces in captured photos before they are distributed, and
fingerprints every photo so that resubmissions within a batch are caught.

Components:
- config.py: Settings (YAML file + environment overrides)
- face_utils.py: Face regions and the lazily loaded face detector
- image_processor.py: Anonymization engine (pixelate, blur, noise, pixelate)
- fingerprint.py: Perceptual image hash and face signatures
- duplicates.py: Duplicate detector (advisory and authoritative checks)
- database.py: SQLite storage for accepted photos and their fingerprints
- pipeline.py: End-to-end photo processing and batch acceptance
- models.py: Pydantic request/response models
- main.py: FastAPI application
- cli.py: Command line interface
"""

__version__ = "1.0.0"
