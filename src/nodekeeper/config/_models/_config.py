# pyright: reportExplicitAny=false, reportAny=false, reportUnknownVariableType=false, reportUnknownArgumentType=false
"""Configuration container with typed access.

This module provides the main Config class that serves as the primary
interface for accessing nodekeeper configuration values.
"""

from pathlib import Path
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from nodekeeper.config._defaults import DEFAULT_CONFIG
from nodekeeper.config._loader import deep_merge, parse_env_vars, read_toml_file
from nodekeeper.config._models._common import ConfigSource, ConfigSourceName
from nodekeeper.config._models._logging import LoggingConfig
from nodekeeper.config._models._supervisor import SupervisorSettings
from nodekeeper.exceptions import ConfigValidationError, NodeConfigInvalidError
from nodekeeper.supervisor._marshal import parse_node_config
from nodekeeper.supervisor._models import NodeConfig


def _validation_error(error: ValidationError, source: str | None) -> ConfigValidationError:
    """Convert the first pydantic error into a ConfigValidationError."""
    first = error.errors()[0]
    key = ".".join(str(part) for part in first["loc"])
    msg = f"Invalid configuration value for '{key}': {first['msg']}"
    return ConfigValidationError(
        msg,
        key=key,
        value=first.get("input"),
        expected=first["msg"],
        source=source,
    )


class Config(BaseModel):
    """Configuration container with typed access.

    Immutable. Use the factory methods (from_dict, from_file, load) so
    defaults are merged and errors are reported as ConfigError subclasses.

    Attributes:
        logging: The ``[logging]`` section.
        supervisor: The ``[supervisor]`` section.
        nodes: Raw ``[nodes.<name>]`` records; see node_configs().
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    nodes: dict[str, dict[str, Any]] = Field(default_factory=dict)

    _sources: tuple[ConfigSource, ...] = PrivateAttr(default=())

    @classmethod
    def _build(
        cls,
        data: dict[str, Any],
        *,
        sources: tuple[ConfigSource, ...] = (),
        source: str | None = None,
    ) -> Self:
        merged = deep_merge(DEFAULT_CONFIG, data)
        try:
            config = cls.model_validate(merged)
        except ValidationError as e:
            raise _validation_error(e, source) from e
        config._sources = sources
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create configuration from a dictionary merged over the defaults.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return cls._build(data)

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load configuration from a single TOML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigLoadError: If the file cannot be parsed.
            ConfigValidationError: If validation fails.
        """
        values = read_toml_file(path)
        source = ConfigSource(
            name=ConfigSourceName.FILE, path=path, exists=True, values=values
        )
        return cls._build(values, sources=(source,), source=str(path))

    @classmethod
    def load(
        cls,
        *,
        config_path: Path | None = None,
        cwd: Path | None = None,
        include_env: bool = True,
        cli_overrides: dict[str, Any] | None = None,
    ) -> Self:
        """Load merged configuration from all sources.

        Sources are merged in precedence order
        (defaults -> config file -> env -> cli).

        Args:
            config_path: Explicit config file; replaces file discovery.
            cwd: Directory searched for ``nodekeeper.toml``.
            include_env: Include ``NODEKEEPER_*`` environment variables.
            cli_overrides: Dict of CLI argument overrides.

        Returns:
            Merged configuration object.

        Raises:
            ConfigLoadError: If a config file cannot be parsed.
            ConfigValidationError: If the merged config fails validation.
        """
        from nodekeeper.config._discovery import discover_sources  # noqa: PLC0415

        sources = discover_sources(
            config_path,
            cwd=cwd,
            include_env=include_env,
            cli_overrides=cli_overrides,
        )

        merged: dict[str, Any] = {}
        loaded_sources: list[ConfigSource] = []

        # discovered highest-to-lowest, merged lowest-to-highest
        for source in reversed(sources):
            values: dict[str, Any] = {}
            if source.name in (ConfigSourceName.DEFAULT, ConfigSourceName.CLI):
                values = source.values
            elif source.name == ConfigSourceName.ENV:
                values = parse_env_vars()
            elif source.path is not None and source.exists:
                values = read_toml_file(source.path)

            loaded_sources.append(
                ConfigSource(
                    name=source.name,
                    path=source.path,
                    exists=source.exists,
                    values=values,
                )
            )
            if values:
                merged = deep_merge(merged, values)

        return cls._build(merged, sources=tuple(reversed(loaded_sources)))

    @property
    def sources(self) -> list[ConfigSource]:
        """Return the sources that contributed to this configuration.

        Sources are ordered from highest to lowest precedence.
        """
        return list(self._sources)

    def node_configs(self) -> list[NodeConfig]:
        """Parse the ``[nodes.<name>]`` tables into NodeConfigs, sorted by name.

        Raises:
            NodeConfigInvalidError: If a node table is malformed.
        """
        configs: list[NodeConfig] = []
        for name in sorted(self.nodes):
            record = dict(self.nodes[name])
            if record.setdefault("name", name) != name:
                msg = f"node table '{name}' declares a different name {record['name']!r}"
                raise NodeConfigInvalidError(msg, node_name=name, field="name")
            configs.append(parse_node_config(record))
        return configs

    def control_socket_path(self) -> Path:
        """Return the path the control API listens on."""
        return self.supervisor.control_socket_path()
