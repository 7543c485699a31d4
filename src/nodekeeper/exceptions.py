"""nodekeeper exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class NodekeeperError(Exception):
    """Base exception for nodekeeper errors."""


class ConfigError(NodekeeperError):
    """Base exception for configuration errors."""


class ConfigLoadError(ConfigError):
    """Raised when configuration cannot be loaded or parsed."""

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        """Initialize with error message and optional location context."""
        super().__init__(message)
        self.path: Path | None = path
        self.line: int | None = line
        self.column: int | None = column


class ConfigValidationError(ConfigError):
    """Raised when configuration fails validation."""

    def __init__(
        self,
        message: str,
        *,
        key: str,
        value: object,
        expected: str,
        source: str | None = None,
    ) -> None:
        """Initialize with error message and validation context."""
        super().__init__(message)
        self.key: str = key
        self.value: object = value
        self.expected: str = expected
        self.source: str | None = source


# =============================================================================
# Supervisor Exceptions
# =============================================================================


class SupervisorError(NodekeeperError):
    """Base exception for process tree supervision errors."""


class NodeConfigInvalidError(SupervisorError, ValueError):
    """Raised when a node configuration record is malformed.

    Attributes:
        node_name: The name of the offending node, if it could be read.
        field: The field that failed validation (if applicable).
    """

    def __init__(
        self,
        message: str,
        *,
        node_name: str | None = None,
        field: str | None = None,
    ) -> None:
        """Initialize with error message and validation context.

        Args:
            message: Human-readable error message.
            node_name: The name of the offending node.
            field: The field that failed validation.
        """
        super().__init__(message)
        self.node_name: str | None = node_name
        self.field: str | None = field


class NodeAlreadyExistsError(SupervisorError):
    """Raised when creating a node whose name is already supervised.

    Attributes:
        node_name: The duplicate node name.
    """

    def __init__(self, message: str, *, node_name: str | None = None) -> None:
        """Initialize with error message and node context.

        Args:
            message: Human-readable error message.
            node_name: The duplicate node name.
        """
        super().__init__(message)
        self.node_name: str | None = node_name


class NodeNotFoundError(SupervisorError, KeyError):
    """Raised when a node cannot be found by name.

    Attributes:
        node_name: The name of the node that was not found.
    """

    def __init__(self, message: str, *, node_name: str | None = None) -> None:
        """Initialize with error message and node context.

        Args:
            message: Human-readable error message.
            node_name: The name of the node that was not found.
        """
        super().__init__(message)
        self.node_name: str | None = node_name

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ""


class SpawnFailedError(SupervisorError):
    """Raised when the OS refuses to fork or exec a process.

    Attributes:
        node_name: The node (or "stem") that failed to spawn.
        cause: The underlying OS error.
    """

    def __init__(
        self,
        message: str,
        *,
        node_name: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and spawn context.

        Args:
            message: Human-readable error message.
            node_name: The node (or "stem") that failed to spawn.
            cause: The underlying OS error.
        """
        super().__init__(message)
        self.node_name: str | None = node_name
        self.cause: Exception | None = cause


class ChannelClosedError(SupervisorError):
    """Raised when the peer of a transport channel went away mid-request."""


class ProtocolError(SupervisorError):
    """Raised when a transport frame or message cannot be decoded."""


class ParentLostError(SupervisorError):
    """Raised inside a supervised process that detected its parent died.

    Never reported to a caller; the process terminates itself.

    Attributes:
        expected_parent: The parent pid recorded at startup.
        current_parent: The parent pid observed now.
    """

    def __init__(
        self,
        message: str,
        *,
        expected_parent: int,
        current_parent: int,
    ) -> None:
        """Initialize with error message and parent pids."""
        super().__init__(message)
        self.expected_parent: int = expected_parent
        self.current_parent: int = current_parent
