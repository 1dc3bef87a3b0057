"""
Configuration for the anonymization and duplicate-detection pipeline.

Settings live in an optional YAML file (``PHOTOGUARD_CONFIG``) and can be
overridden per deployment with environment variables.
"""

import os
import logging
from dataclasses import dataclass, field, asdict, fields
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class AnonymizationConfig:
    """Configuration for the face anonymization layers"""
    pixel_size: int = 14  # Block size of the first pixelation pass
    blur_passes: int = 3
    blur_radius: int = 4
    padding_percent: float = 15.0  # Margin added around each face box
    noise_amplitude: int = 15  # Noise range is [-amplitude, +amplitude]
    jpeg_quality: int = 85


@dataclass
class DuplicateDetectionConfig:
    """Configuration for duplicate detection"""
    # The advisory pre-check and the authoritative check on acceptance
    # historically used different thresholds. Both are kept configurable.
    advisory_threshold: int = 85
    authoritative_threshold: int = 80
    signature_metric: str = "linear"  # Options: linear, composite


@dataclass
class DetectorConfig:
    """Configuration for the face detector collaborator"""
    backend: str = "haar"  # Options: haar, dlib
    dlib_model: str = "hog"  # Options: hog, cnn
    fallback_confidence: float = 0.5


@dataclass
class Settings:
    """System-wide configuration"""
    database_url: str = "sqlite:///./photoguard.db"
    encryption_key: Optional[str] = None
    log_level: str = "INFO"
    reject_faceless_photos: bool = True

    anonymization: AnonymizationConfig = field(default_factory=AnonymizationConfig)
    duplicate_detection: DuplicateDetectionConfig = field(
        default_factory=DuplicateDetectionConfig
    )
    detector: DetectorConfig = field(default_factory=DetectorConfig)

    def save(self, path: str = "photoguard.yaml"):
        """Save configuration to YAML file"""
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "photoguard.yaml") -> 'Settings':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        config.database_url = config_dict.get('database_url', config.database_url)
        config.encryption_key = config_dict.get('encryption_key', config.encryption_key)
        config.log_level = config_dict.get('log_level', config.log_level)
        config.reject_faceless_photos = config_dict.get(
            'reject_faceless_photos', config.reject_faceless_photos
        )

        if 'anonymization' in config_dict:
            config.anonymization = _section(AnonymizationConfig, config_dict['anonymization'])
        if 'duplicate_detection' in config_dict:
            config.duplicate_detection = _section(
                DuplicateDetectionConfig, config_dict['duplicate_detection']
            )
        if 'detector' in config_dict:
            config.detector = _section(DetectorConfig, config_dict['detector'])

        return config

    @classmethod
    def from_env(cls) -> 'Settings':
        """Load the YAML file named by PHOTOGUARD_CONFIG, then apply env overrides."""
        config = cls.load(os.getenv("PHOTOGUARD_CONFIG", "photoguard.yaml"))

        config.database_url = os.getenv("PHOTOGUARD_DATABASE_URL", config.database_url)
        config.encryption_key = os.getenv("PHOTOGUARD_ENCRYPTION_KEY", config.encryption_key)
        config.log_level = os.getenv("PHOTOGUARD_LOG_LEVEL", config.log_level)

        return config


def _section(section_cls, values: dict):
    """Build a config section, ignoring unknown keys."""
    known = {f.name for f in fields(section_cls)}
    return section_cls(**{k: v for k, v in (values or {}).items() if k in known})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings."""
    return Settings.from_env()


def configure_logging(level: str = "INFO"):
    """Install a console handler on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
