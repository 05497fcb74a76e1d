"""
Process configuration.

Values come from environment variables, optionally overridden by command-line
flags in ``app.main()``:

    GALARIE_MEDIA_ROOT            root directory containing tagged media (required)
    GALARIE_CACHE_DIR             cache directory for index.json       (./.cache)
    GALARIE_HOST / GALARIE_PORT   HTTP bind address                     (0.0.0.0:8080)
    GALARIE_ENV                   deployment environment tag            (development)
    GALARIE_CACHE_TTL_SECONDS     reuse a cache younger than this       (3600)
    GALARIE_CORS_ALLOWED_ORIGINS  comma-separated origins               (none)
    LOG_LEVEL                     loguru level                          (INFO)
"""

import os
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError


def _split_csv(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


class AppConfig(BaseModel):
    """Validated configuration shared across the application."""

    media_root: Path = Field(..., description="Root directory containing tagged media files")
    cache_dir: Path = Field(Path(".cache"), description="Directory for the index cache file")
    host: str = Field("0.0.0.0", description="HTTP bind host")
    port: int = Field(8080, ge=0, le=65535, description="HTTP bind port")
    environment: str = Field("development", description="Deployment environment tag")
    log_level: str = Field("INFO", description="Loguru level name")
    cache_ttl_seconds: float = Field(3600, ge=0, description="Staleness TTL for cache reuse; 0 disables reuse")
    cors_allowed_origins: List[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "AppConfig":
        """Build from environment variables; keyword overrides win when not None."""
        env = os.environ if env is None else env
        media_root = env.get("GALARIE_MEDIA_ROOT")

        values = {
            "media_root": media_root,
            "cache_dir": env.get("GALARIE_CACHE_DIR", "./.cache"),
            "host": env.get("GALARIE_HOST", "0.0.0.0"),
            "port": env.get("GALARIE_PORT", "8080"),
            "environment": env.get("GALARIE_ENV", "development"),
            "log_level": env.get("LOG_LEVEL", "INFO"),
            "cache_ttl_seconds": env.get("GALARIE_CACHE_TTL_SECONDS", "3600"),
            "cors_allowed_origins": _split_csv(env.get("GALARIE_CORS_ALLOWED_ORIGINS")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})

        if not values["media_root"]:
            raise ConfigError("GALARIE_MEDIA_ROOT is not set")
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc

    def validate_paths(self) -> "AppConfig":
        """Require the media root to exist and create the cache directory."""
        if not self.media_root.is_dir():
            raise ConfigError(f"media root '{self.media_root}' does not exist or is not accessible")
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"failed to create cache dir '{self.cache_dir}': {exc}") from exc
        return self
