# pyright: reportAny=false, reportExplicitAny=false
"""HTTP client for the control API served on the Unix socket."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Never, final

import httpx

from nodekeeper.cli._commands._shared import ExitCode, exit_with_error

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

# the host part is ignored on a Unix socket but httpx needs one
BASE_URL = "http://nodekeeper"

_EXIT_CODES: dict[int, ExitCode] = {
    404: ExitCode.NOT_FOUND,
    409: ExitCode.CONFLICT,
    422: ExitCode.VALIDATION_ERROR,
    503: ExitCode.UNAVAILABLE,
    504: ExitCode.UNAVAILABLE,
}


def exit_code_for_status(status_code: int) -> ExitCode:
    """Map an HTTP error status to the CLI exit code."""
    return _EXIT_CODES.get(status_code, ExitCode.INTERNAL_ERROR)


@final
class ControlClient:
    """Synchronous client for the Supervisor's control API."""

    __slots__ = ("_client", "_socket_path")

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            socket_path: Unix socket the Supervisor listens on.
            timeout: Seconds to wait for each response.
            transport: Replaces the Unix socket transport, e.g. in tests.
        """
        self._socket_path = socket_path
        self._client = httpx.Client(
            transport=transport or httpx.HTTPTransport(uds=str(socket_path)),
            base_url=BASE_URL,
            timeout=timeout,
        )

    def __enter__(self) -> ControlClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def _fail(self, response: httpx.Response) -> Never:
        detail: object = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and "detail" in body:
            detail = body["detail"]
        exit_with_error(str(detail), exit_code_for_status(response.status_code))

    def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Exits the CLI with a mapped exit code when the Supervisor is not
        reachable or answers with an error status.
        """
        try:
            response = self._client.request(method, f"/supervisor{path}", json=json)
        except (httpx.ConnectError, FileNotFoundError):
            exit_with_error(
                f"supervisor is not running (no control socket at {self._socket_path})",
                ExitCode.UNAVAILABLE,
            )
        except httpx.TimeoutException:
            exit_with_error("timed out waiting for the supervisor", ExitCode.UNAVAILABLE)
        if response.is_error:
            self._fail(response)
        return response.json()

    def status(self, name: str = "") -> dict[str, Any]:
        """Return the status of every node, or of one node."""
        if name:
            return self.request("GET", f"/nodes/{name}")
        return self.request("GET", "/status")

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        """Create a node from a NodeConfig record."""
        return self.request("POST", "/nodes", json=record)

    def destroy(self, name: str = "") -> dict[str, Any]:
        """Destroy one node, or all of them."""
        return self.request("DELETE", f"/nodes/{name}" if name else "/nodes")

    def restart(self, name: str = "") -> dict[str, Any]:
        """Restart one node, or all of them."""
        return self.request("POST", f"/nodes/{name}/restart" if name else "/nodes/restart")

    def shutdown(self) -> dict[str, Any]:
        """Ask the Supervisor to stop the tree."""
        return self.request("POST", "/shutdown")
