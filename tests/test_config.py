"""
Tests for configuration loading and validation.
"""

import json

import pytest
from pydantic import ValidationError

from cascade_toolkit.config import (
    CascadeConfig,
    ChecksumAlgorithm,
    StorageBackend,
    configure,
    get_config,
    set_config,
)


class TestCascadeConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        """Test the default retention, thresholds and backend."""
        config = CascadeConfig()
        assert config.snapshot_retention_days == 30
        assert config.large_deletion_threshold == 100
        assert config.massive_deletion_threshold == 1000
        assert config.records_per_batch == 100
        assert config.seconds_per_batch == 2
        assert config.storage_backend == StorageBackend.SQL
        assert config.checksum_algorithm == ChecksumAlgorithm.SHA256
        assert config.emergency_rollback_enabled is False

    def test_environment_normalized(self):
        """Test environment names are validated and lower-cased."""
        assert CascadeConfig(environment="Test").environment == "test"
        with pytest.raises(ValidationError):
            CascadeConfig(environment="moon")

    def test_threshold_ordering(self):
        """Test the cumulative threshold cannot sit below the per-relationship one."""
        with pytest.raises(ValidationError):
            CascadeConfig(large_deletion_threshold=500, massive_deletion_threshold=100)

    def test_positive_values_required(self):
        """Test retention and batch sizes must be positive."""
        with pytest.raises(ValidationError):
            CascadeConfig(snapshot_retention_days=0)
        with pytest.raises(ValidationError):
            CascadeConfig(records_per_batch=-1)

    def test_section_helpers(self):
        """Test grouped configuration views."""
        config = CascadeConfig(snapshot_retention_days=7)
        assert config.get_snapshot_config()["retention_days"] == 7
        assert config.get_impact_config()["seconds_per_batch"] == 2
        assert config.to_dict()["storage_backend"] == "sql"


class TestConfigSources:
    """Test loading configuration from the environment and files."""

    def test_from_env(self, monkeypatch):
        """Test CASCADE_ variables are coerced to field types."""
        monkeypatch.setenv("CASCADE_SNAPSHOT_RETENTION_DAYS", "7")
        monkeypatch.setenv("CASCADE_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("CASCADE_AUDIT_ENABLED", "false")
        monkeypatch.setenv("CASCADE_REGISTRY_FILE", "/etc/cascade/registry.yaml")

        config = CascadeConfig.from_env()

        assert config.snapshot_retention_days == 7
        assert config.storage_backend == StorageBackend.MEMORY
        assert config.audit_enabled is False
        assert config.registry_file == "/etc/cascade/registry.yaml"

    def test_from_env_invalid_value(self, monkeypatch):
        """Test invalid raw values are reported by validation."""
        monkeypatch.setenv("CASCADE_SNAPSHOT_RETENTION_DAYS", "soon")
        with pytest.raises(ValidationError):
            CascadeConfig.from_env()

    def test_from_json_file(self, tmp_path):
        """Test loading a JSON configuration file."""
        path = tmp_path / "cascade.json"
        path.write_text(json.dumps({"environment": "staging", "audit_page_limit": 50}))

        config = CascadeConfig.from_file(path)

        assert config.environment == "staging"
        assert config.audit_page_limit == 50

    def test_from_yaml_file(self, tmp_path):
        """Test loading a YAML configuration file."""
        path = tmp_path / "cascade.yaml"
        path.write_text("checksum_algorithm: sha512\nprimary_collection: members\n")

        config = CascadeConfig.from_file(str(path))

        assert config.checksum_algorithm == ChecksumAlgorithm.SHA512
        assert config.primary_collection == "members"


class TestGlobalConfig:
    """Test the process-wide configuration helpers."""

    def test_get_config_is_cached(self):
        """Test the global configuration is created once."""
        assert get_config() is get_config()

    def test_set_config(self):
        """Test replacing the global configuration."""
        config = CascadeConfig(environment="test")
        set_config(config)
        assert get_config() is config

    def test_configure_merges(self):
        """Test configure keeps earlier settings."""
        configure(environment="test")
        config = configure(snapshot_retention_days=10)
        assert config.environment == "test"
        assert config.snapshot_retention_days == 10
        assert get_config() is config
