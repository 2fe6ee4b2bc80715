"""Tests for curation settings loading."""

import pytest
from pydantic import ValidationError

from src.curation.config import CurationSettings, get_settings


class TestCurationSettings:
    """Tests for CurationSettings defaults and environment overrides."""

    def test_defaults_use_in_memory_storage(self):
        """Test that default values are loaded when env vars not set."""
        settings = CurationSettings()

        assert settings.database_url is None
        assert settings.transformation_url is None
        assert settings.lease_stale_seconds == 3600
        assert settings.similarity_threshold == 0.85
        assert settings.max_gate_attempts == 10
        assert settings.max_retries == 3
        assert settings.event_sinks == ["logging", "metrics"]
        assert settings.auto_approve is False

    def test_settings_load_from_env(self, monkeypatch):
        """Test that CURATION_ prefixed variables override defaults."""
        monkeypatch.setenv("CURATION_DATABASE_URL", "postgresql://curation:pw@db:5432/curation")
        monkeypatch.setenv("CURATION_MAX_RETRIES", "5")
        monkeypatch.setenv("CURATION_AUTO_APPROVE", "true")
        monkeypatch.setenv("CURATION_EVENT_SINKS", '["logging"]')
        monkeypatch.setenv("CURATION_TRANSFORMATION_URL", "http://transformer:8000")

        settings = get_settings()

        assert settings.database_url == "postgresql://curation:pw@db:5432/curation"
        assert settings.max_retries == 5
        assert settings.auto_approve is True
        assert settings.event_sinks == ["logging"]
        assert settings.transformation_url == "http://transformer:8000"

    def test_blank_database_url_means_in_memory(self, monkeypatch):
        monkeypatch.setenv("CURATION_DATABASE_URL", "  ")

        assert get_settings().database_url is None

    @pytest.mark.parametrize(
        "field,value",
        [
            ("database_url", "mysql://db/curation"),
            ("transformation_url", "transformer:8000"),
            ("similarity_threshold", 1.5),
            ("mapping_min_confidence", -0.1),
            ("max_gate_attempts", 0),
            ("max_gate_attempts", 11),
            ("max_retries", -1),
            ("lease_stale_seconds", 0),
            ("batch_size", 0),
            ("event_sinks", ["logging", "kinesis"]),
            ("port", 70000),
        ],
    )
    def test_invalid_values_are_rejected(self, field, value):
        """Test that out-of-range values fail validation."""
        with pytest.raises(ValidationError):
            CurationSettings(**{field: value})

    def test_pool_bounds_must_be_consistent(self):
        with pytest.raises(ValidationError):
            CurationSettings(db_min_pool_size=5, db_max_pool_size=2)
        with pytest.raises(ValidationError):
            CurationSettings(db_min_pool_size=0)
