"""
Centralized settings for the Task Tracker service.

Settings are read from an optional YAML file and then from environment
variables (environment wins). The backend URL and the backend anonymous API
key are required; startup fails with ConfigurationError when either is
missing.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASK_TRACKER"

REQUIRED_SECRETS = ("backend_url", "backend_anon_key")


class ConfigurationError(Exception):
    """Fatal startup error: the service cannot boot with this configuration."""


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix.upper()}"


class Settings(BaseModel):
    """Service configuration."""

    backend_url: str = Field(description="Record store location, e.g. sqlite:///data/tasks.db")
    backend_anon_key: str = Field(description="API key clients must present in the apikey header")
    host: str = "127.0.0.1"
    port: int = Field(8080, ge=1, le=65535)
    log_level: str = "INFO"
    signup_redirect_url: str = "http://localhost:8080/signin"

    @field_validator("backend_url", "backend_anon_key")
    @classmethod
    def validate_secret(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def database_path(self) -> str:
        """Filesystem path of the SQLite database named by backend_url."""
        url = self.backend_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):] or ":memory:"
        if url.startswith("sqlite://"):
            return ":memory:"
        if "://" in url:
            raise ConfigurationError(f"Unsupported backend URL scheme: {url.split('://', 1)[0]}")
        return url


def _read_yaml(config_file: Path) -> Dict[str, Any]:
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {config_file}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_file}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a YAML dictionary")
    return data


def load_settings(config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from an optional YAML file overlaid with environment variables.

    Args:
        config_file: Optional path to a YAML mapping of setting names to values
        environ: Environment mapping, defaults to os.environ

    Raises:
        ConfigurationError: missing secrets, unreadable file or invalid values
    """
    if environ is None:
        environ = dict(os.environ)

    values: Dict[str, Any] = {}
    if config_file:
        values.update(_read_yaml(Path(config_file)))

    for name in Settings.model_fields:
        raw = environ.get(_k(name))
        if raw is not None and raw.strip() != "":
            values[name] = raw

    missing = [name for name in REQUIRED_SECRETS if not str(values.get(name) or "").strip()]
    if missing:
        env_names = ", ".join(_k(name) for name in missing)
        raise ConfigurationError(f"Missing required backend configuration: {env_names}")

    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")

    logger.debug(
        f"Settings loaded (backend_url set: {bool(settings.backend_url)}, "
        f"anon key set: {bool(settings.backend_anon_key)})"
    )
    return settings
