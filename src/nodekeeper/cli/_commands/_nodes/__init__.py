# pyright: reportUnusedCallResult=false, reportAny=false, reportExplicitAny=false
# ruff: noqa: TC003  # Path needed at runtime for cyclopts parameter parsing
"""Node control commands: status, create, destroy, restart and shutdown.

These commands talk to a running Supervisor over its control socket.
"""

from pathlib import Path
from typing import Annotated, Any

from cyclopts import Parameter

from nodekeeper.cli._commands._context import CLIContext, OutputFormat
from nodekeeper.cli._commands._shared import (
    ExitCode,
    exit_with_error,
    format_json,
    format_table,
    format_yaml,
)
from nodekeeper.exceptions import NodeConfigInvalidError

from ._client import ControlClient

STATUS_HEADERS = ["NAME", "STATE", "PID", "REVIVALS", "EXIT", "SIGNAL", "SPAWNED"]


def _open_client() -> ControlClient:
    config = CLIContext.get_current().config
    return ControlClient(
        config.control_socket_path(),
        timeout=config.supervisor.request_timeout + 5.0,
    )


def _status_row(node: dict[str, Any]) -> list[str]:
    return [
        str(node["name"]),
        str(node["state"]),
        str(node["pid"] or "-"),
        str(node["revival_attempts"]),
        str(node["exit_status"]),
        str(node["signal_number"] or "-"),
        str(node["spawn_time"] or "-"),
    ]


def _print_message(body: dict[str, Any]) -> None:
    if not CLIContext.get_current().quiet:
        print(body["message"])  # noqa: T201


def status(
    name: Annotated[str, Parameter(help="Node to show (all nodes if omitted).")] = "",
    /,
    *,
    format: Annotated[  # noqa: A002
        OutputFormat, Parameter(name=["--format", "-f"], help="Output format.")
    ] = OutputFormat.TABLE,
) -> None:
    """Show the state of supervised nodes."""
    with _open_client() as client:
        body = client.status(name)

    if format == OutputFormat.JSON:
        print(format_json(body))  # noqa: T201
        return
    if format == OutputFormat.YAML:
        print(format_yaml(body), end="")  # noqa: T201
        return

    nodes: list[dict[str, Any]] = [body] if name else body["nodes"]
    if not name:
        print(  # noqa: T201
            f"stem pid {body['stem_pid']}: "
            f"{body['running_nodes']}/{body['total_nodes']} nodes running"
        )
    if nodes:
        print(format_table(STATUS_HEADERS, [_status_row(node) for node in nodes]))  # noqa: T201


def create(
    file: Annotated[Path, Parameter(help="NodeConfig file (JSON, TOML or YAML).")],
    /,
) -> None:
    """Create and start a node from a configuration file."""
    from nodekeeper.supervisor import render_node_config  # noqa: PLC0415

    from ._read import read_node_file  # noqa: PLC0415

    try:
        config = read_node_file(file)
    except OSError as e:
        exit_with_error(f"cannot read {file}: {e.strerror}", ExitCode.IO_ERROR)
    except NodeConfigInvalidError as e:
        exit_with_error(str(e), ExitCode.VALIDATION_ERROR)

    with _open_client() as client:
        _print_message(client.create(render_node_config(config)))


def destroy(
    name: Annotated[str, Parameter(help="Node to destroy (all nodes if omitted).")] = "",
    /,
) -> None:
    """Stop and forget a node, or every node."""
    with _open_client() as client:
        _print_message(client.destroy(name))


def restart(
    name: Annotated[str, Parameter(help="Node to restart (all nodes if omitted).")] = "",
    /,
) -> None:
    """Restart a node, or every node."""
    with _open_client() as client:
        _print_message(client.restart(name))


def shutdown() -> None:
    """Stop every node and the Supervisor."""
    with _open_client() as client:
        _print_message(client.shutdown())


__all__ = ["ControlClient", "create", "destroy", "restart", "shutdown", "status"]
