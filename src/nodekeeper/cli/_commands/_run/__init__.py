# pyright: reportUnusedCallResult=false
"""nodekeeper run command - starts the supervised process tree."""

from typing import Annotated

import anyio
from cyclopts import App, Parameter

from nodekeeper.cli._commands._context import CLIContext
from nodekeeper.cli._commands._shared import ExitCode, exit_with_error
from nodekeeper.exceptions import NodeConfigInvalidError, SpawnFailedError

app = App(
    name="run",
    help="Start the Supervisor, its Stem and the configured nodes",
    help_on_error=True,
)


@app.default
def run(
    *,
    no_nodes: Annotated[
        bool,
        Parameter(help="Do not create the nodes listed in the configuration."),
    ] = False,
) -> None:
    """Start the supervised process tree.

    Forks the Stem, creates every node from the ``[nodes]`` tables and
    serves the control API on the configured Unix socket until SIGTERM or
    SIGINT, or until a shutdown request arrives.
    """
    from nodekeeper.supervisor import ConsoleEventSink, launch  # noqa: PLC0415
    from nodekeeper.utils import create_supervisor_logger  # noqa: PLC0415

    from ._runner import run_tree  # noqa: PLC0415

    ctx = CLIContext.get_current()
    config = ctx.config

    try:
        configs = [] if no_nodes else config.node_configs()
    except NodeConfigInvalidError as e:
        exit_with_error(str(e), ExitCode.VALIDATION_ERROR)

    socket_path = config.control_socket_path()
    logger = create_supervisor_logger(
        config.logging.level.value,
        log_format=config.logging.format.value,  # type: ignore[arg-type]
        log_file=config.logging.file,
    )

    try:
        supervisor = launch(config, event_sink=ConsoleEventSink(), logger=logger)
    except SpawnFailedError as e:
        exit_with_error(str(e), ExitCode.INTERNAL_ERROR)

    if not ctx.quiet:
        print(f"nodekeeper running (stem pid {supervisor.stem_pid})")  # noqa: T201
        print(f"  control socket: {socket_path}")  # noqa: T201
        print(f"  nodes: {len(configs)}")  # noqa: T201

    anyio.run(
        lambda: run_tree(
            supervisor,
            configs,
            socket_path,
            request_timeout=config.supervisor.request_timeout,
            logger=ctx.logger,
        )
    )
