"""Default configuration values.

This module defines the built-in default configuration values that are used
when no other configuration sources provide values.
"""

from typing import Any

from nodekeeper.supervisor._node import DEFAULT_NODE_ENTRY

DEFAULT_CONFIG: dict[str, Any] = {  # pyright: ignore[reportExplicitAny]
    "logging": {
        "level": "info",
        "format": "json",
        "file": "",
    },
    "supervisor": {
        "stem_executable": "",
        "control_socket": "",
        "request_timeout": 10.0,
        "shutdown_timeout": 5.0,
        "liveness_interval": 1.0,
        "node_entry": DEFAULT_NODE_ENTRY,
        "node_log_dir": "",
        "revival": {
            "base_delay": 1.0,
            "max_delay": 60.0,
            "multiplier": 2.0,
            "stability_threshold": 30.0,
        },
    },
    "nodes": {},
}
