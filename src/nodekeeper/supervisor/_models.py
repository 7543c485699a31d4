"""Data models for the supervised process tree.

This module defines the core data types for node management:
- ClusterRole: Roles a node can play in its cluster layout
- ClusterEndpoint: Where a cluster peer listens
- NodeConfig: Immutable desired configuration of a node
- Node: Mutable runtime bookkeeping owned by the Stem
- NodeState: Lifecycle states derived from a Node
- NodeStatus: Immutable snapshot of a Node
- NodeEventType / NodeEvent: Lifecycle event records
- SupervisedNode: What a forked node knows about itself
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

import pendulum


class ClusterRole(StrEnum):
    """Roles of a node within the cluster layout."""

    NONE = "none"
    LOGGER = "logger"
    MANAGER = "manager"
    PROXY = "proxy"
    WORKER = "worker"


class NodeState(StrEnum):
    """Node lifecycle states.

    - STOPPED: No process and no revival pending
    - RUNNING: A live process exists for the node
    - BACKOFF: The process died unexpectedly and a revival is scheduled
    """

    STOPPED = "stopped"
    RUNNING = "running"
    BACKOFF = "backoff"


class NodeEventType(StrEnum):
    """Types of lifecycle events emitted by the Stem and Supervisor."""

    SPAWNED = "spawned"
    EXITED = "exited"
    STOPPED = "stopped"
    REVIVING = "reviving"
    SPAWN_FAILED = "spawn_failed"
    DESTROYED = "destroyed"
    STEM_STARTED = "stem_started"
    STEM_EXITED = "stem_exited"


@dataclass(frozen=True, slots=True)
class ClusterEndpoint:
    """A cluster peer's placement.

    Attributes:
        role: The peer's role within the cluster.
        host: Host or IP at which the peer listens.
        port: TCP port at which the peer listens.
        interface: Capture interface, typically set for workers.
    """

    role: ClusterRole
    host: str
    port: int
    interface: str | None = None


@dataclass(frozen=True, slots=True)
class NodeConfig:
    """Desired configuration of a supervised node.

    Immutable once created. Structural equality is used for idempotence
    checks, and ``name`` is the lookup key everywhere. ``cluster`` is
    copied into a read-only mapping, so later changes to the mapping a
    caller passed in are not seen.

    Attributes:
        name: Unique, filesystem-safe node name.
        interface: Interface the node should read packets from.
        directory: Working directory for the node process.
        stdout_file: File the node's stdout is redirected to.
        stderr_file: File the node's stderr is redirected to.
        cpu_affinity: CPU the node pins itself to.
        scripts: Additional startup scripts, in load order.
        cluster: Cluster layout keyed by peer node name.
    """

    name: str
    interface: str | None = None
    directory: str | None = None
    stdout_file: str | None = None
    stderr_file: str | None = None
    cpu_affinity: int | None = None
    scripts: tuple[str, ...] = ()
    cluster: Mapping[str, ClusterEndpoint] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "cluster", MappingProxyType(dict(self.cluster)))

    def __hash__(self) -> int:
        return hash(
            (
                self.name,
                self.interface,
                self.directory,
                self.stdout_file,
                self.stderr_file,
                self.cpu_affinity,
                self.scripts,
                tuple(sorted(self.cluster.items())),
            )
        )


@dataclass(frozen=True, slots=True)
class SupervisedNode:
    """State a forked node process knows about itself.

    Attributes:
        config: The node's configuration.
        parent_pid: Pid of the Stem that forked the node.
    """

    config: NodeConfig
    parent_pid: int


@dataclass(frozen=True, slots=True)
class NodeStatus:
    """Immutable snapshot of a node's runtime state.

    Attributes:
        config: The node's configuration.
        state: Derived lifecycle state.
        pid: Process id, 0 when not running.
        killed: Whether termination was requested voluntarily.
        exit_status: Exit status of the last reaped process.
        signal_number: Signal that terminated the last reaped process.
        revival_attempts: Consecutive unplanned restarts.
        revival_delay: Seconds the next revival will wait.
        spawn_time: ISO 8601 timestamp of the last fork.
    """

    config: NodeConfig
    state: NodeState
    pid: int = 0
    killed: bool = False
    exit_status: int = 0
    signal_number: int = 0
    revival_attempts: int = 0
    revival_delay: float = 1.0
    spawn_time: str | None = None

    @property
    def name(self) -> str:
        """Return the node name."""
        return self.config.name


@dataclass(slots=True)
class Node:
    """Mutable runtime bookkeeping for one node.

    Owned exclusively by the Stem. ``spawned_at`` and ``revive_at`` use the
    Stem's monotonic clock; ``spawn_time`` is wall-clock seconds.
    """

    config: NodeConfig
    pid: int = 0
    killed: bool = False
    exit_status: int = 0
    signal_number: int = 0
    revival_attempts: int = 0
    revival_delay: float = 1.0
    spawn_time: float | None = None
    spawned_at: float | None = None
    revive_at: float | None = None

    @property
    def name(self) -> str:
        """Return the node name."""
        return self.config.name

    @property
    def state(self) -> NodeState:
        """Return the lifecycle state derived from the bookkeeping."""
        if self.pid > 0:
            return NodeState.RUNNING
        if self.revive_at is not None:
            return NodeState.BACKOFF
        return NodeState.STOPPED

    def snapshot(self) -> NodeStatus:
        """Return an immutable snapshot of this node."""
        spawn_time = None
        if self.spawn_time is not None:
            spawn_time = pendulum.from_timestamp(self.spawn_time).to_iso8601_string()
        return NodeStatus(
            config=self.config,
            state=self.state,
            pid=self.pid,
            killed=self.killed,
            exit_status=self.exit_status,
            signal_number=self.signal_number,
            revival_attempts=self.revival_attempts,
            revival_delay=self.revival_delay,
            spawn_time=spawn_time,
        )


@dataclass(frozen=True, slots=True)
class NodeEvent:
    """Immutable lifecycle event.

    Attributes:
        node_name: Node the event concerns ("stem" for Stem events).
        event_type: Type of lifecycle event.
        timestamp: ISO 8601 formatted timestamp.
        pid: Process ID if applicable.
        exit_status: Exit status if the process terminated.
        signal_number: Terminating signal if applicable.
        message: Optional human-readable message.
    """

    node_name: str
    event_type: NodeEventType
    timestamp: str
    pid: int | None = None
    exit_status: int | None = None
    signal_number: int | None = None
    message: str | None = None
