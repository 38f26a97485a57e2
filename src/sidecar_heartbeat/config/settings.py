"""Configuration settings using Pydantic for validation."""

import ipaddress
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HeartbeatConfig(BaseModel):
    """Heartbeat channel and liveness check configuration."""
    interval_ms: int = Field(default=100, gt=0, description="Period of the liveness check")
    timeout_ms: int = Field(default=300, gt=0, description="Max silence before the frontend is considered gone")
    socket_dir: Optional[str] = Field(default=None, description="Directory for the socket, defaults to the temp dir")
    socket_prefix: str = Field(default="sidecar", description="Prefix of the socket file name")
    accept_timeout_ms: int = Field(default=500, gt=0, description="Bounded wait of the accept loop")
    read_chunk_size: int = Field(default=4096, gt=0, description="Max bytes per read on a heartbeat connection")

    @model_validator(mode="after")
    def validate_timeout(self):
        if self.timeout_ms <= self.interval_ms:
            raise ValueError("Heartbeat timeout must be greater than the heartbeat interval")
        return self

    @property
    def interval(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def accept_timeout(self) -> float:
        return self.accept_timeout_ms / 1000.0


class ShutdownConfig(BaseModel):
    """Graceful shutdown configuration."""
    grace_delay_ms: int = Field(default=100, ge=0, description="Pause between teardown and process exit")
    signals: List[str] = Field(default=["SIGTERM", "SIGINT"], description="OS signals that trigger shutdown")

    @field_validator("signals")
    @classmethod
    def validate_signals(cls, v):
        import signal

        for name in v:
            if not isinstance(getattr(signal, name, None), signal.Signals):
                raise ValueError(f"Unknown signal: {name}")
        return v

    @property
    def grace_delay(self) -> float:
        return self.grace_delay_ms / 1000.0


class HttpConfig(BaseModel):
    """Loopback HTTP heartbeat trigger configuration."""
    enabled: bool = Field(default=False, description="Serve the HTTP heartbeat route")
    host: str = Field(default="127.0.0.1", description="Loopback address to bind")
    port: int = Field(default=4001, ge=0, le=65535, description="Port of the HTTP trigger")
    heartbeat_path: str = Field(default="/heartbeat", description="Route counted as a heartbeat")

    @field_validator("host")
    @classmethod
    def validate_loopback(cls, v):
        if v == "localhost":
            return v
        try:
            address = ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"HTTP host must be a loopback address, got {v!r}")
        if not address.is_loopback:
            raise ValueError(f"HTTP host must be a loopback address, got {v!r}")
        return v

    @field_validator("heartbeat_path")
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("heartbeat_path must start with '/'")
        return v


class SupervisorConfig(BaseModel):
    """Parent-process supervision configuration."""
    watch_parent: bool = Field(default=False, description="Shut down when the parent process goes away")
    poll_interval_ms: int = Field(default=500, gt=0, description="Parent pid poll period")

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ["json", "text"]:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class SidecarSettings(BaseSettings):
    """Main sidecar settings."""

    model_config = SettingsConfigDict(
        env_prefix="SIDECAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="sidecar-heartbeat", description="Service name used in logs")
    app_name: str = Field(default="Sidecar Application", description="Application identifier for the endpoint path")

    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v):
        if not normalize_app_name(v):
            raise ValueError("app_name must contain at least one usable character")
        return v

    @property
    def endpoint_path(self) -> Path:
        return endpoint_path_for(
            self.app_name,
            prefix=self.heartbeat.socket_prefix,
            directory=self.heartbeat.socket_dir,
        )


def normalize_app_name(app_name: str) -> str:
    """Lowercase *app_name* and collapse whitespace and path separators to ``_``."""
    normalized = app_name.strip().lower()
    normalized = re.sub(r"[\s/\\]+", "_", normalized)
    return normalized.strip("_")


def endpoint_path_for(app_name: str, prefix: str = "sidecar", directory: Optional[str] = None) -> Path:
    """
    Derive the heartbeat socket path for an application.

    Example: ``/tmp/sidecar_heartbeat_my_app.sock`` for "My App".
    """
    base = Path(directory) if directory else Path(tempfile.gettempdir())
    return base / f"{prefix}_heartbeat_{normalize_app_name(app_name)}.sock"


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> SidecarSettings:
    """
    Load settings from a YAML config file and environment variables.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        SidecarSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return SidecarSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return SidecarSettings()
