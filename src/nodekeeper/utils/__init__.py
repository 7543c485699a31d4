"""Shared utilities: structured logging, default paths and JSON helpers."""

from ._json import dump_json, load_json, load_json_file
from ._logging import (
    LogFormatType,
    create_cli_logger,
    create_logger,
    create_node_logger,
    create_stem_logger,
    create_supervisor_logger,
)
from ._paths import (
    APP_NAME,
    get_cli_log_file,
    get_control_socket_path,
    get_log_dir,
    get_node_log_dir,
    get_runtime_dir,
)

__all__ = [
    "APP_NAME",
    "LogFormatType",
    "create_cli_logger",
    "create_logger",
    "create_node_logger",
    "create_stem_logger",
    "create_supervisor_logger",
    "dump_json",
    "get_cli_log_file",
    "get_control_socket_path",
    "get_log_dir",
    "get_node_log_dir",
    "get_runtime_dir",
    "load_json",
    "load_json_file",
]
