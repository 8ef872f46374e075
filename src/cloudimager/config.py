"""
Configuration management for cloudimager package.

Settings are read from ``./cloudimager.toml`` or ``~/.cloudimager.toml``
(first match wins) and can be overridden through environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import tomli
from pydantic import BaseModel, Field, ValidationError, field_validator

from .core.formatting import DEFAULT_FILE_NAME_FORMAT

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "cloudimager.toml"

# Environment variable to (section, key) in the configuration
ENVIRONMENT_OVERRIDES = {
    "CLOUDIMAGER_UPLOAD_DIRECTORY": ("defaults", "upload_directory"),
    "CLOUDIMAGER_FILE_NAME_FORMAT": ("defaults", "file_name_format"),
    "CLOUDIMAGER_RETURN_TYPE": ("defaults", "return_type"),
    "AWS_BUCKET": ("s3", "bucket"),
    "AWS_REGION": ("s3", "region"),
    "AWS_ACCESS_KEY": ("s3", "access_key_id"),
    "AWS_SECRET_KEY": ("s3", "secret_access_key"),
}


class OutputDefaults(BaseModel):
    """Defaults for where and how variants are written."""

    upload_directory: Path = Field(
        default_factory=lambda: Path.cwd() / "uploads",
        description="Directory local outlets write to",
    )

    file_name_format: str = Field(
        default=DEFAULT_FILE_NAME_FORMAT, description="File name template", min_length=1
    )

    return_type: str = Field(
        default="relative",
        description="Reference style of local outlets",
        pattern="^(relative|url|absolute)$",
    )

    include_size: bool = Field(
        default=False, description="Return image dimensions with references"
    )

    @field_validator("upload_directory")
    @classmethod
    def resolve_upload_directory(cls, v: Path) -> Path:
        """Resolve the upload directory to an absolute path."""
        return Path(v).expanduser().resolve()


class S3Settings(BaseModel):
    """Object storage settings; when present the default outlet uploads to S3."""

    bucket: str = Field(..., description="Bucket variants are uploaded to")
    region: Optional[str] = Field(default=None, description="AWS region")
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = Field(
        default=None, description="Endpoint of an S3 compatible service"
    )
    base_url: Optional[str] = Field(
        default=None, description="Public URL prefix of the bucket"
    )
    upload_directory: Optional[str] = Field(
        default=None, description="Key prefix for uploaded variants"
    )

    @field_validator("bucket")
    @classmethod
    def validate_bucket(cls, v: str) -> str:
        """Validate that the bucket name is not blank."""
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("S3 bucket name cannot be empty")
        return cleaned


class Settings(BaseModel):
    """Complete cloudimager configuration."""

    defaults: OutputDefaults = Field(default_factory=OutputDefaults)
    s3: Optional[S3Settings] = None


async def load_config() -> Settings:
    """
    Load configuration from TOML files and environment variables.

    Returns:
        Settings: The validated configuration; defaults when nothing is set

    Raises:
        ValueError: If a configuration file is malformed or validation fails
    """
    config_paths = [Path.cwd() / CONFIG_FILE_NAME, Path.home() / f".{CONFIG_FILE_NAME}"]

    config_data: Dict[str, Any] = {}
    for config_path in config_paths:
        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    config_data = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ValueError(f"Invalid TOML syntax in {config_path}: {e}") from e
            logger.info(f"Loaded configuration from {config_path}")
            break

    _apply_environment_overrides(config_data)

    try:
        return Settings(**config_data)
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed: {e}") from e


def _apply_environment_overrides(config_data: Dict[str, Any]) -> None:
    # The s3 section only exists when a bucket is configured somewhere
    has_s3 = "s3" in config_data or bool(os.getenv("AWS_BUCKET"))

    for variable, (section, key) in ENVIRONMENT_OVERRIDES.items():
        value = os.getenv(variable)
        if not value:
            continue
        if section == "s3" and not has_s3:
            continue
        config_data.setdefault(section, {})[key] = value
