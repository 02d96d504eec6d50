"""Core module: configuration shared by the API, services and migrations."""

from possession.core.config import (
    CollaboratorSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    LifecycleSettings,
    S3Settings,
    Settings,
)
from possession.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "CollaboratorSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "LifecycleSettings",
    "S3Settings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
