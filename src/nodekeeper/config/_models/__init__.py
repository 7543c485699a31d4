"""Configuration models.

This module provides Pydantic models for nodekeeper configuration sections
and the main Config container class.
"""

from nodekeeper.config._models._common import (
    ConfigSource,
    ConfigSourceName,
    LogFormat,
    LogLevel,
)
from nodekeeper.config._models._config import Config
from nodekeeper.config._models._logging import LoggingConfig
from nodekeeper.config._models._supervisor import RevivalSettings, SupervisorSettings

__all__ = [
    "Config",
    "ConfigSource",
    "ConfigSourceName",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "RevivalSettings",
    "SupervisorSettings",
]
