"""config/ — pydantic settings for autocycle."""

from autocycle.config.settings import (
    ActivitySpec,
    LoggingConfig,
    PersistenceConfig,
    SchedulerConfig,
    Settings,
    get_settings,
    load_settings,
)

__all__ = [
    "ActivitySpec",
    "LoggingConfig",
    "PersistenceConfig",
    "SchedulerConfig",
    "Settings",
    "get_settings",
    "load_settings",
]
