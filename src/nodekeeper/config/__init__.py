"""nodekeeper configuration.

This module provides the public API for configuration management, including
loading, validation, and typed access to configuration values.

Example:
    >>> from nodekeeper.config import Config
    >>> config = Config.load()
    >>> config.supervisor.revival.base_delay
    1.0
"""

from nodekeeper.exceptions import (
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
)

from ._defaults import DEFAULT_CONFIG
from ._discovery import LOCAL_CONFIG_NAME, discover_sources, get_user_config_path
from ._load import STRICT_CONFIG_ENV, safe_load_config
from ._loader import (
    ENV_PREFIX,
    deep_merge,
    parse_env_vars,
    parse_string_value,
    read_toml_file,
    set_nested_key,
)
from ._models import (
    Config,
    ConfigSource,
    ConfigSourceName,
    LogFormat,
    LoggingConfig,
    LogLevel,
    RevivalSettings,
    SupervisorSettings,
)

__all__ = [
    "DEFAULT_CONFIG",
    "ENV_PREFIX",
    "LOCAL_CONFIG_NAME",
    "STRICT_CONFIG_ENV",
    "Config",
    "ConfigError",
    "ConfigLoadError",
    "ConfigSource",
    "ConfigSourceName",
    "ConfigValidationError",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "RevivalSettings",
    "SupervisorSettings",
    "deep_merge",
    "discover_sources",
    "get_user_config_path",
    "parse_env_vars",
    "parse_string_value",
    "read_toml_file",
    "safe_load_config",
    "set_nested_key",
]
