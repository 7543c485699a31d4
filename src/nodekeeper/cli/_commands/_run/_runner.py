"""Async runner for the run command.

This module provides the async entry point that serves the control API on
a Unix socket alongside the running Supervisor.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import anyio
import uvicorn

from nodekeeper.exceptions import SupervisorError

from ._app import create_control_app

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from structlog.typing import FilteringBoundLogger

    from nodekeeper.supervisor import NodeConfig, Supervisor


async def create_initial_nodes(
    supervisor: Supervisor,
    configs: Sequence[NodeConfig],
    logger: FilteringBoundLogger | None = None,
) -> int:
    """Create the nodes listed in the configuration.

    Failures are logged and skipped so one bad node does not keep the
    others from starting.

    Returns:
        The number of nodes created.
    """
    created = 0
    for config in configs:
        try:
            await supervisor.create(config)
        except SupervisorError as e:
            if logger is not None:
                logger.warning("initial_node_failed", node=config.name, error=str(e))
            continue
        created += 1
    return created


async def run_tree(
    supervisor: Supervisor,
    configs: Sequence[NodeConfig],
    socket_path: Path,
    *,
    request_timeout: float | None = None,
    logger: FilteringBoundLogger | None = None,
) -> None:
    """Run the Supervisor and its control API until shutdown.

    Args:
        supervisor: Supervisor returned by ``launch``.
        configs: Nodes to create once the Supervisor is running.
        socket_path: Unix socket the control API listens on.
        request_timeout: Seconds a control request may wait for the Stem.
        logger: CLI logger.
    """
    control_app = create_control_app(supervisor, request_timeout=request_timeout)

    socket_path.parent.mkdir(parents=True, exist_ok=True)
    # a stale socket from a crashed run would make bind() fail
    with contextlib.suppress(FileNotFoundError):
        socket_path.unlink()

    uvicorn_config = uvicorn.Config(
        app=control_app,
        uds=str(socket_path),
        log_level="warning",
        access_log=False,
    )
    control_server = uvicorn.Server(uvicorn_config)

    try:
        async with anyio.create_task_group() as tg:
            # Start the control server first so it's ready before nodes start
            tg.start_soon(control_server.serve)
            tg.start_soon(create_initial_nodes, supervisor, configs, logger)

            # Run the supervisor (blocks until shutdown)
            await supervisor.run()

            # Supervisor has shut down, stop the control server
            control_server.should_exit = True
    finally:
        with contextlib.suppress(FileNotFoundError):
            socket_path.unlink()
