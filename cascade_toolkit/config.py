"""
Configuration module for Cascade Toolkit.

Provides centralized configuration management for deletion, snapshot,
orphan-repair and audit features.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class StorageBackend(str, Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQL = "sql"


class ChecksumAlgorithm(str, Enum):
    """Supported checksum algorithms for snapshot and audit integrity."""

    SHA256 = "sha256"
    SHA512 = "sha512"


class CascadeConfig(BaseModel):
    """Central configuration for cascade deletion and consistency features.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (CASCADE_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = CascadeConfig(snapshot_retention_days=14)
        >>> config = CascadeConfig.from_env()
        >>> config = CascadeConfig.from_file("cascade.yaml")

    Note:
        Thresholds only drive advisory warnings in previews. They never block
        an execution on their own.
    """

    # General settings
    application_name: str = Field(
        "Records Application", description="Name of the application for audit logs"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )

    # Storage settings
    storage_backend: StorageBackend = Field(
        StorageBackend.SQL, description="Document store backend"
    )
    database_url: str = Field(
        "sqlite:///./cascade.db", description="Connection string for the SQL backend"
    )
    registry_file: Optional[str] = Field(
        None, description="YAML file declaring relationships (built-in if unset)"
    )
    primary_collection: str = Field(
        "students", description="Primary collection handled by default"
    )

    # Snapshot settings
    snapshot_retention_days: int = Field(
        30, description="Days a deletion snapshot can be used for rollback", gt=0
    )
    snapshot_collection: str = Field(
        "deletion_snapshots", description="Collection holding deletion snapshots"
    )

    # Impact analysis settings
    large_deletion_threshold: int = Field(
        100, description="Cascade count of one relationship raising HIGH", gt=0
    )
    massive_deletion_threshold: int = Field(
        1000, description="Cumulative cascade count raising CRITICAL", gt=0
    )
    records_per_batch: int = Field(
        100, description="Records processed per throughput unit", gt=0
    )
    seconds_per_batch: int = Field(
        2, description="Estimated seconds per throughput unit", gt=0
    )

    # Audit settings
    audit_enabled: bool = Field(True, description="Enable deletion audit logging")
    audit_collection: str = Field(
        "deletion_audit_log", description="Collection holding audit entries"
    )
    audit_page_limit: int = Field(
        100, description="Default page size when listing audit entries", gt=0, le=1000
    )

    # Integrity settings
    checksum_algorithm: ChecksumAlgorithm = Field(
        ChecksumAlgorithm.SHA256, description="Algorithm for integrity checksums"
    )

    # Executor settings
    emergency_rollback_enabled: bool = Field(
        False, description="Attempt a rollback when an execution aborts"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("massive_deletion_threshold")
    @classmethod
    def validate_massive_threshold(cls, v: int, info: ValidationInfo) -> int:
        """The cumulative threshold must not be below the per-relationship one."""
        large = info.data.get("large_deletion_threshold")
        if large is not None and v < large:
            raise ValueError(
                "massive_deletion_threshold must be >= large_deletion_threshold"
            )
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "CASCADE_") -> "CascadeConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation

            # Handle Optional types
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            try:
                if field_type is bool:
                    config_dict[field_name] = value.lower() in (
                        "true",
                        "1",
                        "yes",
                        "on",
                    )
                elif field_type is int:
                    config_dict[field_name] = int(value)
                elif isinstance(field_type, type) and issubclass(field_type, Enum):
                    config_dict[field_name] = field_type(value)
                else:
                    config_dict[field_name] = value
            except (ValueError, TypeError):
                # Let pydantic report the invalid raw value
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "CascadeConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration instance
        """
        file_path = Path(path)
        text = file_path.read_text(encoding="utf-8")

        if file_path.suffix.lower() in (".yaml", ".yml"):
            import yaml

            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        return cls.model_validate(data)

    def get_snapshot_config(self) -> Dict[str, Any]:
        """Get snapshot-related configuration."""
        return {
            "retention_days": self.snapshot_retention_days,
            "collection": self.snapshot_collection,
            "checksum_algorithm": self.checksum_algorithm,
        }

    def get_impact_config(self) -> Dict[str, Any]:
        """Get impact analysis thresholds."""
        return {
            "large_deletion_threshold": self.large_deletion_threshold,
            "massive_deletion_threshold": self.massive_deletion_threshold,
            "records_per_batch": self.records_per_batch,
            "seconds_per_batch": self.seconds_per_batch,
        }


# Global configuration instance
_config: Optional[CascadeConfig] = None


def get_config() -> CascadeConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        try:
            _config = CascadeConfig.from_env()
        except Exception:
            # Fall back to default configuration
            _config = CascadeConfig.model_validate({})

    return _config


def set_config(config: Optional[CascadeConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set, or None to reload from the environment
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> CascadeConfig:
    """
    Configure the toolkit with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = CascadeConfig(**kwargs)
    else:
        config_dict = _config.model_dump()
        config_dict.update(kwargs)
        _config = CascadeConfig(**config_dict)

    return _config
