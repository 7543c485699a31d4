"""Config file discovery utilities.

Sources, from highest to lowest precedence:

1. CLI overrides
2. ``NODEKEEPER_*`` environment variables
3. One config file: the explicit ``--config`` file if given, else
   ``./nodekeeper.toml`` in the working directory if present, else the
   platform user config file (``~/.config/nodekeeper/config.toml`` on Linux)
4. Built-in defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import platformdirs

from nodekeeper.utils import APP_NAME

from ._defaults import DEFAULT_CONFIG
from ._models._common import ConfigSource, ConfigSourceName

LOCAL_CONFIG_NAME = "nodekeeper.toml"


def get_user_config_path() -> Path:
    r"""Get platform-specific user config file path.

    - Linux: ``~/.config/nodekeeper/config.toml``
    - macOS: ``~/Library/Application Support/nodekeeper/config.toml``

    The path is returned regardless of whether the file exists.
    """
    return platformdirs.user_config_path(APP_NAME) / "config.toml"


def _file_exists(path: Path) -> bool:
    """Check if a file exists, treating permission errors as absence."""
    try:
        return path.is_file()
    except OSError:
        return False


def discover_sources(
    config_path: Path | None = None,
    *,
    cwd: Path | None = None,
    include_env: bool = True,
    cli_overrides: dict[str, Any] | None = None,  # pyright: ignore[reportExplicitAny]
) -> list[ConfigSource]:
    """Discover all configuration sources.

    Args:
        config_path: Explicit config file (``--config``).
        cwd: Directory searched for ``nodekeeper.toml``. Defaults to the
            current working directory.
        include_env: Include environment variables as a source.
        cli_overrides: Values given on the command line.

    Returns:
        ConfigSource objects in precedence order (highest first). The config
        file source is included even when the file does not exist.
    """
    sources: list[ConfigSource] = []

    if cli_overrides is not None:
        sources.append(
            ConfigSource(
                name=ConfigSourceName.CLI,
                path=None,
                exists=bool(cli_overrides),
                values=cli_overrides,
            )
        )

    if include_env:
        sources.append(
            ConfigSource(
                name=ConfigSourceName.ENV,
                path=None,
                exists=True,  # values are parsed during loading
                values={},
            )
        )

    local_path = (cwd or Path.cwd()) / LOCAL_CONFIG_NAME
    if config_path is not None:
        name, path = ConfigSourceName.FILE, config_path
    elif _file_exists(local_path):
        name, path = ConfigSourceName.LOCAL, local_path
    else:
        name, path = ConfigSourceName.USER, get_user_config_path()
    sources.append(
        ConfigSource(name=name, path=path, exists=_file_exists(path), values={})
    )

    sources.append(
        ConfigSource(
            name=ConfigSourceName.DEFAULT,
            path=None,
            exists=True,
            values=DEFAULT_CONFIG,
        )
    )

    return sources
