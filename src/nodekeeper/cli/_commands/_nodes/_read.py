"""Reading node configuration files for the create command."""

from __future__ import annotations

import tomllib
from typing import TYPE_CHECKING

from nodekeeper.exceptions import NodeConfigInvalidError
from nodekeeper.supervisor import parse_node_config
from nodekeeper.utils import load_json

if TYPE_CHECKING:
    from pathlib import Path

    from nodekeeper.supervisor import NodeConfig


def read_node_file(path: Path) -> NodeConfig:
    """Read a NodeConfig from a JSON, TOML or YAML file.

    The format follows the file suffix; unknown suffixes are read as JSON.

    Raises:
        OSError: If the file cannot be read.
        NodeConfigInvalidError: If the content is not a valid NodeConfig.
    """
    suffix = path.suffix.lower()
    data: object
    if suffix == ".toml":
        try:
            data = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as e:
            msg = f"{path}: invalid TOML: {e}"
            raise NodeConfigInvalidError(msg) from e
    elif suffix in {".yaml", ".yml"}:
        import yaml  # noqa: PLC0415

        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            msg = f"{path}: invalid YAML: {e}"
            raise NodeConfigInvalidError(msg) from e
    else:
        data = load_json(path.read_bytes())
        if data is None:
            msg = f"{path}: invalid JSON"
            raise NodeConfigInvalidError(msg)

    if not isinstance(data, dict):
        msg = f"{path}: expected a table of node fields"
        raise NodeConfigInvalidError(msg)
    return parse_node_config(data)  # pyright: ignore[reportUnknownArgumentType]
