"""
Senja Sync Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with SENJA_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from senja_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        endpoint_url="https://script.google.com/macros/s/.../exec",
        transport={"max_retries": 2},
    )
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Limits(BaseModel):
    """Size limits imposed by the spreadsheet backend."""

    max_cell_chars: int = Field(
        default=50_000,
        ge=1,
        description="Maximum characters a single spreadsheet cell accepts",
    )
    chunk_safety_margin: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Fraction of the cell ceiling used per chunk (80% -> 40k chars)",
    )
    max_payload_chars: int = Field(
        default=2_500_000,
        ge=1,
        description="Outbound payload size above which a warning is logged",
    )

    @property
    def chunk_size(self) -> int:
        """Characters per chunk after applying the safety margin."""
        return max(1, int(self.max_cell_chars * self.chunk_safety_margin))


class TransportOptions(BaseModel):
    """HTTP transport behavior."""

    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout enforced by the HTTP client",
    )
    max_retries: int = Field(
        default=0,
        ge=0,
        le=10,
        description="Additional attempts on transient failures (0 = no retry)",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay for exponential backoff between retries",
    )
    max_backoff_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay",
    )


class CacheOptions(BaseModel):
    """Local cache persistence."""

    backend: str = Field(
        default="file",
        pattern="^(file|memory)$",
        description="Storage backend: file (JSON blobs on disk) or memory",
    )
    directory: Path = Field(
        default=Path(".senja-cache"),
        description="Directory holding one JSON blob per collection",
    )
    namespace: str = Field(
        default="senja.v1",
        min_length=1,
        description="Versioned key namespace for persisted blobs",
    )


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    keep_unpushed_writes: bool = Field(
        default=True,
        description=(
            "Re-apply local writes whose push failed after a pull-replace "
            "(False = only writes still in flight survive a pull)"
        ),
    )
    pull_on_start: bool = Field(
        default=True,
        description="Pull from the remote when the engine is entered as a context manager",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for Senja Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (SENJA_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export SENJA_SYNC_ENDPOINT_URL="https://script.google.com/macros/s/.../exec"
        export SENJA_SYNC_TRANSPORT__MAX_RETRIES=3
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="SENJA_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    endpoint_url: str = Field(
        default="",
        description="Web app URL of the spreadsheet backend",
    )

    # Nested configs
    limits: Limits = Field(default_factory=Limits)
    transport: TransportOptions = Field(default_factory=TransportOptions)
    cache: CacheOptions = Field(default_factory=CacheOptions)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("endpoint_url", mode="before")
    @classmethod
    def strip_endpoint(cls, v: Any) -> str:
        """Tolerate surrounding whitespace from copy-pasted URLs."""
        if v is None:
            return ""
        return str(v).strip()

    @model_validator(mode="after")
    def check_backoff(self) -> Self:
        """Keep the backoff cap at or above the base delay."""
        if self.transport.max_backoff_seconds < self.transport.retry_backoff_seconds:
            self.transport.max_backoff_seconds = self.transport.retry_backoff_seconds
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        if path.suffix in (".toml", ".tml"):
            # Basic TOML serialization, top-level keys before tables
            lines = []
            tables = []
            for key, value in data.items():
                if isinstance(value, dict):
                    tables.append(f"\n[{key}]")
                    for k, v in value.items():
                        tables.append(f"{k} = {json.dumps(v)}")
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            path.write_text("\n".join(lines + tables) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_endpoint(self) -> list[str]:
        """Validate that the remote endpoint is usable. Returns list of errors."""
        errors = []
        if not self.endpoint_url:
            errors.append("endpoint_url is required")
        elif not self.endpoint_url.startswith(("http://", "https://")):
            errors.append("endpoint_url must be an http(s) URL")
        return errors


# Convenience function for loading settings
def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
