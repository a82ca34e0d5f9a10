"""Configuration management for firmware rollouts."""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv


class ProbeConfig(BaseModel):
    """Connectivity probe settings."""
    timeout: float = Field(default=5.0, gt=0, le=120)  # Per-device, seconds


class UpdateConfig(BaseModel):
    """Update phase settings."""
    poll_interval: float = Field(default=3.0, gt=0, le=60)
    upload_timeout: float = Field(default=300.0, gt=0)  # Whole upload, seconds
    request_timeout: float = Field(default=10.0, gt=0)  # Install trigger and status polls
    chunk_size: int = Field(default=64 * 1024, ge=1024)


class DeviceApiConfig(BaseModel):
    """HTTP surface exposed by the devices."""
    scheme: str = "http"
    status_path: str = "/update/status"
    upload_path: str = "/update"
    start_path: str = "/update/start"
    upload_field: str = "file"  # Multipart field carrying the firmware

    @field_validator("scheme")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        v = v.lower()
        if v not in ("http", "https"):
            raise ValueError(f"Unsupported scheme: {v}")
        return v

    @field_validator("status_path", "upload_path", "start_path")
    @classmethod
    def leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None


class Config(BaseModel):
    """Main configuration class."""
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    device_api: DeviceApiConfig = Field(default_factory=DeviceApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def expand_env_vars(obj):
    """Recursively expand environment variables in a dict."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        pattern = re.compile(r'\$\{([^}]+)\}')
        def replacer(match):
            return os.getenv(match.group(1), match.group(0))
        return pattern.sub(replacer, obj)
    return obj


def load_config(config_path: str = "config.yaml", env_file: str = ".env") -> Config:
    """Load configuration from YAML file and environment variables.

    Args:
        config_path: Path to the YAML configuration file.
        env_file: Path to the .env file for environment variables.

    Returns:
        Config object with all settings.
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    return Config(**expand_env_vars(raw_config))


# Global config instance (set by the CLI)
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
