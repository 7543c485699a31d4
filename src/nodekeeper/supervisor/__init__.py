"""Supervision of a tree of long-running node processes.

The tree has three tiers: the Supervisor, a single Stem process forked by
the Supervisor, and the node processes forked by the Stem. The Supervisor
relays requests to the Stem over a framed pipe channel and rebuilds the
Stem when it dies; the Stem revives nodes that die unexpectedly; every
process below the Supervisor exits once its parent is gone.

Key Components:
    - NodeConfig: Desired configuration of a node
    - Node / NodeStatus / NodeState: Runtime bookkeeping and snapshots
    - RevivalPolicy: Exponential revival delay calculator
    - Channel: Framed Supervisor/Stem transport
    - Stem: Forks, reaps and revives nodes
    - Supervisor: Relays requests and rebuilds the Stem
    - ParentLivenessMonitor: Orphan detection
    - EventSink / ConsoleEventSink: Lifecycle event output
    - create_control_router: FastAPI endpoint factory

Example:
    >>> from nodekeeper.config import Config
    >>> from nodekeeper.supervisor import NodeConfig, launch
    >>> supervisor = launch(Config())
    >>> await supervisor.create(NodeConfig(name="worker-1"))
"""

from ._api import create_control_router
from ._backoff import RevivalPolicy
from ._channel import Channel, Flare, FrameDecoder, encode_frame
from ._liveness import ParentLivenessMonitor
from ._loop import serve_io_source
from ._marshal import (
    node_config_from_json,
    node_config_to_json,
    parse_node_config,
    render_node_config,
)
from ._messages import (
    Ack,
    CreateRequest,
    DestroyRequest,
    ErrorKind,
    ErrorReply,
    RestartRequest,
    StatusReply,
    StatusRequest,
)
from ._models import (
    ClusterEndpoint,
    ClusterRole,
    Node,
    NodeConfig,
    NodeEvent,
    NodeEventType,
    NodeState,
    NodeStatus,
    SupervisedNode,
)
from ._node import DEFAULT_NODE_ENTRY, run_supervised_node
from ._output import ConsoleEventSink, NullEventSink
from ._protocol import EventSink, IOSource
from ._stem import Stem, run_stem
from ._supervisor import Supervisor, launch

__all__ = [
    "DEFAULT_NODE_ENTRY",
    "Ack",
    "Channel",
    "ClusterEndpoint",
    "ClusterRole",
    "ConsoleEventSink",
    "CreateRequest",
    "DestroyRequest",
    "ErrorKind",
    "ErrorReply",
    "EventSink",
    "Flare",
    "FrameDecoder",
    "IOSource",
    "Node",
    "NodeConfig",
    "NodeEvent",
    "NodeEventType",
    "NodeState",
    "NodeStatus",
    "NullEventSink",
    "ParentLivenessMonitor",
    "RestartRequest",
    "RevivalPolicy",
    "StatusReply",
    "StatusRequest",
    "Stem",
    "SupervisedNode",
    "Supervisor",
    "create_control_router",
    "encode_frame",
    "launch",
    "node_config_from_json",
    "node_config_to_json",
    "parse_node_config",
    "render_node_config",
    "run_stem",
    "run_supervised_node",
    "serve_io_source",
]
