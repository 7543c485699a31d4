"""Default filesystem locations.

Locations follow the platform conventions provided by platformdirs:

- Control socket: ``<user runtime dir>/nodekeeper/control.sock``
- Logs: ``<user log dir>/nodekeeper/``
- Node output: ``<user log dir>/nodekeeper/nodes/<name>/``
"""

from pathlib import Path

import platformdirs

APP_NAME = "nodekeeper"


def get_runtime_dir() -> Path:
    """Get the directory for runtime files such as the control socket."""
    return platformdirs.user_runtime_path(APP_NAME)


def get_control_socket_path() -> Path:
    """Get the default path of the Supervisor's control socket."""
    return get_runtime_dir() / "control.sock"


def get_log_dir() -> Path:
    """Get the directory nodekeeper writes its own logs to."""
    return platformdirs.user_log_path(APP_NAME)


def get_cli_log_file() -> Path:
    """Get the path to the CLI log file."""
    return get_log_dir() / "cli.log"


def get_node_log_dir() -> Path:
    """Get the default parent directory of per-node output files."""
    return get_log_dir() / "nodes"
