"""FastAPI control endpoints for the supervisor.

This module provides REST API endpoints for controlling and monitoring the
supervised process tree. The router is served on a local Unix domain socket.
"""

# pyright: reportUnusedFunction=false
# FastAPI route handlers are registered via decorators, not direct calls

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Annotated, Any, Never

import anyio
from fastapi import APIRouter, Body, HTTPException, status
from pydantic import BaseModel

from nodekeeper.exceptions import (
    ChannelClosedError,
    NodeAlreadyExistsError,
    NodeConfigInvalidError,
    NodeNotFoundError,
    SupervisorError,
)

from ._marshal import parse_node_config, render_node_config
from ._models import NodeState, NodeStatus

if TYPE_CHECKING:
    from ._supervisor import Supervisor


class NodeStatusResponse(BaseModel):
    """Response model for a node snapshot."""

    name: str
    state: str
    pid: int
    killed: bool
    exit_status: int
    signal_number: int
    revival_attempts: int
    revival_delay: float
    spawn_time: str | None
    config: dict[str, Any]


class SupervisorStatusResponse(BaseModel):
    """Response model for overall supervisor status."""

    stem_pid: int
    nodes: list[NodeStatusResponse]
    total_nodes: int
    running_nodes: int


class MessageResponse(BaseModel):
    """Response model for simple message responses."""

    message: str


def build_node_status(node: NodeStatus) -> NodeStatusResponse:
    """Convert a NodeStatus snapshot into its response model."""
    return NodeStatusResponse(
        name=node.name,
        state=node.state.value,
        pid=node.pid,
        killed=node.killed,
        exit_status=node.exit_status,
        signal_number=node.signal_number,
        revival_attempts=node.revival_attempts,
        revival_delay=node.revival_delay,
        spawn_time=node.spawn_time,
        config=render_node_config(node.config),
    )


_STATUS_CODES: tuple[tuple[type[SupervisorError], int], ...] = (
    (NodeNotFoundError, status.HTTP_404_NOT_FOUND),
    (NodeAlreadyExistsError, status.HTTP_409_CONFLICT),
    (NodeConfigInvalidError, 422),
    (ChannelClosedError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _raise_http_error(cause: Exception) -> Never:
    """Raise the HTTPException matching a supervisor failure.

    Args:
        cause: The original exception.

    Raises:
        HTTPException: Always raised, 500 for unmapped errors.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_CODES:
        if isinstance(cause, error_type):
            status_code = code
            break
    raise HTTPException(status_code=status_code, detail=str(cause)) from cause


def create_control_router(  # noqa: C901
    supervisor: "Supervisor",  # noqa: UP037
    *,
    request_timeout: float | None = None,
) -> APIRouter:
    """Create a FastAPI router for supervisor control endpoints.

    Args:
        supervisor: The Supervisor instance to control.
        request_timeout: Seconds a request may wait for the Stem before the
            endpoint answers 504. None waits indefinitely.

    Returns:
        A FastAPI APIRouter with control endpoints.
    """
    router = APIRouter(prefix="/supervisor", tags=["supervisor"])

    async def call[T](operation: Callable[..., Awaitable[T]], *args: object) -> T:
        try:
            with anyio.fail_after(request_timeout):
                return await operation(*args)
        except TimeoutError as e:
            raise HTTPException(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                detail=f"no reply from the stem within {request_timeout}s",
            ) from e
        except SupervisorError as e:
            _raise_http_error(e)

    @router.get("/status", response_model=SupervisorStatusResponse)
    async def get_supervisor_status() -> SupervisorStatusResponse:
        """Get overall supervisor status."""
        nodes = [build_node_status(node) for node in await call(supervisor.status)]
        running = sum(1 for node in nodes if node.state == NodeState.RUNNING)
        return SupervisorStatusResponse(
            stem_pid=supervisor.stem_pid,
            nodes=nodes,
            total_nodes=len(nodes),
            running_nodes=running,
        )

    @router.get("/nodes/{name}", response_model=NodeStatusResponse)
    async def get_node_status(name: str) -> NodeStatusResponse:
        """Get status of a specific node."""
        nodes = await call(supervisor.status, name)
        if not nodes:
            _raise_http_error(
                NodeNotFoundError(f"node '{name}' not found", node_name=name)
            )
        return build_node_status(nodes[0])

    @router.post(
        "/nodes",
        response_model=MessageResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_node(
        payload: Annotated[dict[str, Any], Body()],
    ) -> MessageResponse:
        """Create a node from a NodeConfig record."""
        try:
            config = parse_node_config(payload)
        except NodeConfigInvalidError as e:
            _raise_http_error(e)
        await call(supervisor.create, config)
        return MessageResponse(message=f"Node '{config.name}' created")

    @router.delete("/nodes", response_model=MessageResponse)
    async def destroy_all_nodes() -> MessageResponse:
        """Destroy every node."""
        await call(supervisor.destroy, "")
        return MessageResponse(message="All nodes destroyed")

    @router.delete("/nodes/{name}", response_model=MessageResponse)
    async def destroy_node(name: str) -> MessageResponse:
        """Destroy a specific node."""
        await call(supervisor.destroy, name)
        return MessageResponse(message=f"Node '{name}' destroyed")

    @router.post("/nodes/restart", response_model=MessageResponse)
    async def restart_all_nodes() -> MessageResponse:
        """Restart every node."""
        await call(supervisor.restart, "")
        return MessageResponse(message="All nodes restarted")

    @router.post("/nodes/{name}/restart", response_model=MessageResponse)
    async def restart_node(name: str) -> MessageResponse:
        """Restart a specific node."""
        await call(supervisor.restart, name)
        return MessageResponse(message=f"Node '{name}' restarted")

    @router.post("/shutdown", response_model=MessageResponse)
    async def shutdown_supervisor() -> MessageResponse:
        """Trigger graceful shutdown of the process tree."""
        await supervisor.shutdown()
        return MessageResponse(message="Shutdown initiated")

    return router
