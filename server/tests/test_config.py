import logging

import yaml

from photoguard.config import Settings, configure_logging


def test_missing_file_gives_defaults(tmp_path):
    settings = Settings.load(str(tmp_path / "nope.yaml"))

    assert settings == Settings()
    assert settings.anonymization.pixel_size == 14
    assert settings.duplicate_detection.advisory_threshold == 85
    assert settings.duplicate_detection.authoritative_threshold == 80


def test_save_and_load(tmp_path):
    path = str(tmp_path / "photoguard.yaml")
    settings = Settings(log_level="DEBUG")
    settings.anonymization.noise_amplitude = 5
    settings.detector.backend = "dlib"

    settings.save(path)

    assert Settings.load(path) == settings


def test_partial_sections_keep_defaults(tmp_path):
    path = tmp_path / "photoguard.yaml"
    path.write_text(yaml.dump({
        "duplicate_detection": {"advisory_threshold": 90, "unknown_key": 1},
        "reject_faceless_photos": False
    }))

    settings = Settings.load(str(path))

    assert settings.duplicate_detection.advisory_threshold == 90
    assert settings.duplicate_detection.authoritative_threshold == 80
    assert settings.reject_faceless_photos is False
    assert settings.anonymization.blur_radius == 4


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "photoguard.yaml"
    path.write_text("")

    assert Settings.load(str(path)) == Settings()


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "photoguard.yaml"
    path.write_text(yaml.dump({"database_url": "sqlite:///from-file.db", "log_level": "WARNING"}))

    monkeypatch.setenv("PHOTOGUARD_CONFIG", str(path))
    monkeypatch.setenv("PHOTOGUARD_DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.delenv("PHOTOGUARD_LOG_LEVEL", raising=False)

    settings = Settings.from_env()

    assert settings.database_url == "sqlite:///from-env.db"
    assert settings.log_level == "WARNING"


def test_configure_logging_accepts_unknown_level():
    configure_logging("not-a-level")
    assert logging.getLogger("photoguard").getEffectiveLevel() <= logging.CRITICAL
