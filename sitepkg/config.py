"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import ENV_PREFIX


class Settings(BaseSettings):
    """Command line defaults loaded from ``SITEPKG_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        extra="ignore",
    )

    # Manifest and tarball
    root: Optional[str] = None
    manifest: Optional[str] = None
    tarball: Optional[str] = None
    compression: Literal["none", "gzip", "zstd"] = "none"

    # Keys
    keyfile: Optional[str] = None
    key_secret: Optional[str] = None

    # Behaviour
    ignore_missing: bool = False
    ignore_missing_tarball: bool = False
    ownership: Literal["name", "numeric", "skip"] = "name"

    # Logging
    log_level: str = "INFO"
    log_file: str = "/dev/stderr"
    json_log_level: str = "INFO"
    json_log_file: str = "/dev/null"


def get_settings() -> Settings:
    """Read the environment afresh; nothing is cached between calls."""
    return Settings()
