from .settings import (
    HeartbeatConfig,
    HttpConfig,
    LoggingConfig,
    ShutdownConfig,
    SidecarSettings,
    SupervisorConfig,
    endpoint_path_for,
    load_settings,
    normalize_app_name,
)

__all__ = [
    "HeartbeatConfig",
    "HttpConfig",
    "LoggingConfig",
    "ShutdownConfig",
    "SidecarSettings",
    "SupervisorConfig",
    "endpoint_path_for",
    "load_settings",
    "normalize_app_name",
]
