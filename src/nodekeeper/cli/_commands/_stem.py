# pyright: reportUnusedCallResult=false
"""Hidden entry point of a re-created Stem.

The Supervisor starts fresh Stems as ``python -m nodekeeper stem ...`` with
the Stem's channel descriptors and the serialized settings on the command
line.
"""

from typing import Annotated

from cyclopts import App, Parameter

from nodekeeper.cli._commands._shared import ExitCode, exit_with_error

app = App(
    name="stem",
    help="Run a Stem on inherited channel descriptors (internal)",
    show=False,
)


@app.default
def stem(
    *,
    read_fd: Annotated[int, Parameter(help="Descriptor to read requests from.")],
    write_fd: Annotated[int, Parameter(help="Descriptor to write replies to.")],
    parent_pid: Annotated[int, Parameter(help="Pid of the Supervisor.")],
    settings: Annotated[str, Parameter(help="Configuration as JSON.")] = "{}",
) -> None:
    """Run a Stem until its Supervisor goes away or stops it."""
    from pydantic import ValidationError  # noqa: PLC0415

    from nodekeeper.config import Config  # noqa: PLC0415
    from nodekeeper.supervisor import Channel, ConsoleEventSink, run_stem  # noqa: PLC0415

    try:
        config = Config.model_validate_json(settings)
    except ValidationError as e:
        exit_with_error(f"invalid stem settings: {e}", ExitCode.VALIDATION_ERROR)

    channel = Channel(read_fd, write_fd)
    raise SystemExit(
        run_stem(
            channel,
            config,
            parent_pid=parent_pid,
            event_sink=ConsoleEventSink(),
        )
    )
