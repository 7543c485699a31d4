"""Conversion of node configuration and status to and from plain records.

Plain records are the ``dict`` shapes found in TOML configuration, control
API bodies and transport messages. JSON helpers wrap them with orjson.
"""

from collections.abc import Mapping, Sequence
from typing import cast

import orjson

from nodekeeper.exceptions import NodeConfigInvalidError

from ._models import ClusterEndpoint, ClusterRole, NodeConfig, NodeState, NodeStatus

_OPTIONAL_STRINGS = ("interface", "directory", "stdout_file", "stderr_file")
_KNOWN_FIELDS = frozenset(
    (*_OPTIONAL_STRINGS, "name", "cpu_affinity", "scripts", "cluster")
)
MAX_PORT = 65535


def validate_node_name(name: object) -> str:
    """Check that a node name is usable as a map key and a path component.

    Args:
        name: The candidate name.

    Returns:
        The validated name.

    Raises:
        NodeConfigInvalidError: If the name is empty or not path-safe.
    """
    if not isinstance(name, str) or not name:
        msg = "node name must be a non-empty string"
        raise NodeConfigInvalidError(msg, field="name")
    if name in {".", ".."} or "/" in name or "\x00" in name:
        msg = f"node name {name!r} is not a valid path component"
        raise NodeConfigInvalidError(msg, node_name=name, field="name")
    return name


def _optional_str(record: Mapping[str, object], key: str, name: str) -> str | None:
    value = record.get(key)
    if value is None or isinstance(value, str):
        return value
    msg = f"node '{name}': {key} must be a string"
    raise NodeConfigInvalidError(msg, node_name=name, field=key)


def _parse_cpu_affinity(record: Mapping[str, object], name: str) -> int | None:
    value = record.get("cpu_affinity")
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        msg = f"node '{name}': cpu_affinity must be a non-negative integer"
        raise NodeConfigInvalidError(msg, node_name=name, field="cpu_affinity")
    return value


def _parse_scripts(record: Mapping[str, object], name: str) -> tuple[str, ...]:
    value = record.get("scripts", ())
    if isinstance(value, str) or not isinstance(value, Sequence):
        msg = f"node '{name}': scripts must be a list of strings"
        raise NodeConfigInvalidError(msg, node_name=name, field="scripts")
    scripts = tuple(value)
    if not all(isinstance(script, str) for script in scripts):
        msg = f"node '{name}': scripts must be a list of strings"
        raise NodeConfigInvalidError(msg, node_name=name, field="scripts")
    return cast("tuple[str, ...]", scripts)


def parse_cluster_endpoint(
    record: object,
    *,
    node_name: str,
    peer: str,
) -> ClusterEndpoint:
    """Parse one cluster layout entry.

    Args:
        record: The raw endpoint record.
        node_name: The node whose layout is being parsed, for messages.
        peer: The peer name the endpoint belongs to, for messages.

    Returns:
        The parsed ClusterEndpoint.

    Raises:
        NodeConfigInvalidError: If the record is malformed.
    """
    where = f"node '{node_name}': cluster peer '{peer}'"
    if not isinstance(record, Mapping):
        msg = f"{where} must be a table"
        raise NodeConfigInvalidError(msg, node_name=node_name, field="cluster")
    record = cast("Mapping[str, object]", record)

    try:
        role = ClusterRole(str(record.get("role", "")).lower())
    except ValueError:
        valid = ", ".join(role.value for role in ClusterRole)
        msg = f"{where} has unknown role {record.get('role')!r} (expected {valid})"
        raise NodeConfigInvalidError(
            msg, node_name=node_name, field="cluster"
        ) from None

    host = record.get("host")
    if not isinstance(host, str) or not host:
        msg = f"{where} needs a host"
        raise NodeConfigInvalidError(msg, node_name=node_name, field="cluster")

    port = record.get("port")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= MAX_PORT:
        msg = f"{where} needs a port between 0 and {MAX_PORT}"
        raise NodeConfigInvalidError(msg, node_name=node_name, field="cluster")

    interface = record.get("interface")
    if interface is not None and not isinstance(interface, str):
        msg = f"{where}: interface must be a string"
        raise NodeConfigInvalidError(msg, node_name=node_name, field="cluster")

    return ClusterEndpoint(role=role, host=host, port=port, interface=interface)


def parse_node_config(record: Mapping[str, object]) -> NodeConfig:
    """Create a NodeConfig from a plain record.

    Args:
        record: Mapping with NodeConfig fields. Unknown keys are rejected.

    Returns:
        The parsed NodeConfig.

    Raises:
        NodeConfigInvalidError: If the record is malformed.
    """
    if not isinstance(record, Mapping):
        msg = "node configuration must be a table"
        raise NodeConfigInvalidError(msg)

    name = validate_node_name(record.get("name"))

    unknown = sorted(set(record) - _KNOWN_FIELDS)
    if unknown:
        msg = f"node '{name}': unknown field(s) {', '.join(unknown)}"
        raise NodeConfigInvalidError(msg, node_name=name, field=unknown[0])

    raw_cluster = record.get("cluster") or {}
    if not isinstance(raw_cluster, Mapping):
        msg = f"node '{name}': cluster must be a table of peers"
        raise NodeConfigInvalidError(msg, node_name=name, field="cluster")
    cluster = {
        str(peer): parse_cluster_endpoint(endpoint, node_name=name, peer=str(peer))
        for peer, endpoint in cast("Mapping[object, object]", raw_cluster).items()
    }

    return NodeConfig(
        name=name,
        interface=_optional_str(record, "interface", name),
        directory=_optional_str(record, "directory", name),
        stdout_file=_optional_str(record, "stdout_file", name),
        stderr_file=_optional_str(record, "stderr_file", name),
        cpu_affinity=_parse_cpu_affinity(record, name),
        scripts=_parse_scripts(record, name),
        cluster=cluster,
    )


def render_node_config(config: NodeConfig) -> dict[str, object]:
    """Convert a NodeConfig into a plain record.

    Optional fields that are unset are omitted.

    Args:
        config: The configuration to render.

    Returns:
        A JSON- and TOML-compatible dictionary.
    """
    record: dict[str, object] = {"name": config.name}
    for key in _OPTIONAL_STRINGS:
        value = getattr(config, key)
        if value is not None:
            record[key] = value
    if config.cpu_affinity is not None:
        record["cpu_affinity"] = config.cpu_affinity
    record["scripts"] = list(config.scripts)

    cluster: dict[str, object] = {}
    for peer, endpoint in config.cluster.items():
        entry: dict[str, object] = {
            "role": endpoint.role.value,
            "host": endpoint.host,
            "port": endpoint.port,
        }
        if endpoint.interface is not None:
            entry["interface"] = endpoint.interface
        cluster[peer] = entry
    record["cluster"] = cluster
    return record


def node_config_from_json(data: str | bytes) -> NodeConfig:
    """Create a NodeConfig from its JSON representation.

    Raises:
        NodeConfigInvalidError: If the JSON is invalid or malformed.
    """
    try:
        record = orjson.loads(data)
    except orjson.JSONDecodeError as e:
        msg = f"node configuration is not valid JSON: {e}"
        raise NodeConfigInvalidError(msg) from e
    return parse_node_config(record)


def node_config_to_json(config: NodeConfig) -> str:
    """Return the JSON representation of a NodeConfig."""
    return orjson.dumps(render_node_config(config)).decode("utf-8")


def render_node_status(status: NodeStatus) -> dict[str, object]:
    """Convert a NodeStatus snapshot into a plain record."""
    return {
        "config": render_node_config(status.config),
        "state": status.state.value,
        "pid": status.pid,
        "killed": status.killed,
        "exit_status": status.exit_status,
        "signal_number": status.signal_number,
        "revival_attempts": status.revival_attempts,
        "revival_delay": status.revival_delay,
        "spawn_time": status.spawn_time,
    }


def parse_node_status(record: Mapping[str, object]) -> NodeStatus:
    """Create a NodeStatus snapshot from a plain record.

    Raises:
        NodeConfigInvalidError: If the embedded configuration is malformed.
        ValueError: If the runtime fields are malformed.
    """
    spawn_time = record.get("spawn_time")
    return NodeStatus(
        config=parse_node_config(cast("Mapping[str, object]", record["config"])),
        state=NodeState(str(record["state"])),
        pid=int(cast("int", record.get("pid", 0))),
        killed=bool(record.get("killed", False)),
        exit_status=int(cast("int", record.get("exit_status", 0))),
        signal_number=int(cast("int", record.get("signal_number", 0))),
        revival_attempts=int(cast("int", record.get("revival_attempts", 0))),
        revival_delay=float(cast("float", record.get("revival_delay", 1.0))),
        spawn_time=str(spawn_time) if spawn_time is not None else None,
    )
