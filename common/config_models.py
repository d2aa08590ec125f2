"""
Pydantic models for global configuration structure.
This module defines all the nested configuration models used by the Config class.
Each model corresponds to a section in the global_config.yaml file and provides
type validation and structure for the configuration data.
"""

from typing import Literal

from pydantic import BaseModel, Field


class BackendTimeoutConfig(BaseModel):
    """Per-stage timeouts (seconds) for calls to the rendering service."""

    version_seconds: float
    metadata_seconds: float
    upload_seconds: float
    generate_seconds: float
    fetch_seconds: float
    preview_seconds: float


class MemeBackendConfig(BaseModel):
    """Rendering service connection configuration."""

    base_url: str
    variant: Literal["auto", "fast", "rs"]
    timeouts: BackendTimeoutConfig


class TemplateCacheConfig(BaseModel):
    """Template metadata cache configuration."""

    snapshot_path: str
    eager_info: bool
    info_concurrency: int


class ArgumentsConfig(BaseModel):
    """Argument validation policy."""

    tolerate_excess: bool


class ImagesConfig(BaseModel):
    """Image argument fetching configuration."""

    max_bytes: int
    timeout_seconds: float
    avatar_url_template: str


class ResolverConfig(BaseModel):
    """Template lookup configuration."""

    # scope -> template keys hidden in that scope ("*" applies everywhere)
    deny_list: dict[str, list[str]] = Field(default_factory=dict)


class ServerConfig(BaseModel):
    """Server configuration."""

    allowed_origins: list[str]


class LoggingLocationConfig(BaseModel):
    """Location information display configuration for logging."""

    enabled: bool
    show_file: bool
    show_function: bool
    show_line: bool
    show_for_info: bool
    show_for_debug: bool
    show_for_warning: bool
    show_for_error: bool


class LoggingFormatConfig(BaseModel):
    """Logging format configuration."""

    show_time: bool
    show_invocation_id: bool
    location: LoggingLocationConfig


class LoggingLevelsConfig(BaseModel):
    """Logging level configuration."""

    debug: bool
    info: bool
    warning: bool
    error: bool
    critical: bool


class LoggingConfig(BaseModel):
    """Complete logging configuration."""

    verbose: bool
    format: LoggingFormatConfig
    levels: LoggingLevelsConfig
