"""nodekeeper CLI commands."""
# pyright: reportUnusedCallResult=false

from typing import TYPE_CHECKING

from ._context import CLIContext, OutputFormat
from ._nodes import create, destroy, restart, shutdown, status
from ._run import app as run_app
from ._shared import (
    ExitCode,
    FormattableData,
    exit_with_error,
    format_json,
    format_table,
    format_yaml,
    get_error_console,
)
from ._stem import app as stem_app

if TYPE_CHECKING:
    from cyclopts import App

__all__ = [
    "CLIContext",
    "ExitCode",
    "FormattableData",
    "OutputFormat",
    "exit_with_error",
    "format_json",
    "format_table",
    "format_yaml",
    "get_error_console",
    "register_commands",
    "run_app",
    "stem_app",
]


def register_commands(app: "App") -> None:  # noqa: UP037
    app.command(run_app)
    app.command(status)
    app.command(create)
    app.command(destroy)
    app.command(restart)
    app.command(shutdown)
    app.command(stem_app)
