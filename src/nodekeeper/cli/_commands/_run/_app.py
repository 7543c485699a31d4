"""Control application factory for the run command."""

from typing import TYPE_CHECKING

from fastapi import FastAPI

from nodekeeper.supervisor import create_control_router

if TYPE_CHECKING:
    from nodekeeper.supervisor import Supervisor


def create_control_app(
    supervisor: "Supervisor",  # noqa: UP037
    *,
    request_timeout: float | None = None,
) -> FastAPI:
    """Create the FastAPI control application.

    Creates a minimal FastAPI app with the supervisor control router
    mounted for managing nodes.

    Args:
        supervisor: The Supervisor instance to control.
        request_timeout: Seconds a request may wait for the Stem.

    Returns:
        A FastAPI application with supervisor control endpoints.
    """
    app = FastAPI(
        title="nodekeeper control",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    control_router = create_control_router(
        supervisor, request_timeout=request_timeout
    )
    app.include_router(control_router)

    return app
