"""Messages exchanged between the Supervisor and the Stem.

Each message is an orjson object tagged with ``"type"``. Requests flow from
the Supervisor to the Stem; every request gets exactly one reply (Ack,
ErrorReply or StatusReply) before the next request is sent.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import cast

import orjson

from nodekeeper.exceptions import (
    ChannelClosedError,
    NodeAlreadyExistsError,
    NodeConfigInvalidError,
    NodeNotFoundError,
    ProtocolError,
    SpawnFailedError,
    SupervisorError,
)

from ._marshal import (
    parse_node_config,
    parse_node_status,
    render_node_config,
    render_node_status,
)
from ._models import NodeConfig, NodeStatus


class MessageType(StrEnum):
    """Wire tags of transport messages."""

    CREATE = "create"
    DESTROY = "destroy"
    RESTART = "restart"
    STATUS = "status"
    STATUS_REPLY = "status_reply"
    ACK = "ack"
    ERROR = "error"


class ErrorKind(StrEnum):
    """Error categories carried by ErrorReply."""

    CONFIG_INVALID = "config_invalid"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    SPAWN_FAILED = "spawn_failed"
    CHANNEL_CLOSED = "channel_closed"
    INTERNAL = "internal"


@dataclass(frozen=True, slots=True)
class CreateRequest:
    """Ask the Stem to create and spawn a node."""

    config: NodeConfig


@dataclass(frozen=True, slots=True)
class DestroyRequest:
    """Ask the Stem to kill and remove a node ("" for all)."""

    name: str = ""


@dataclass(frozen=True, slots=True)
class RestartRequest:
    """Ask the Stem to destroy and re-create a node ("" for all)."""

    name: str = ""


@dataclass(frozen=True, slots=True)
class StatusRequest:
    """Ask the Stem for node snapshots ("" for all)."""

    name: str = ""


@dataclass(frozen=True, slots=True)
class StatusReply:
    """Node snapshots, sorted by name."""

    nodes: tuple[NodeStatus, ...] = ()


@dataclass(frozen=True, slots=True)
class Ack:
    """Successful completion of a request."""

    message: str = ""


@dataclass(frozen=True, slots=True)
class ErrorReply:
    """Failed request with a short human-readable reason."""

    kind: ErrorKind
    message: str


type Request = CreateRequest | DestroyRequest | RestartRequest | StatusRequest
type Reply = StatusReply | Ack | ErrorReply
type Message = Request | Reply

_ERROR_TYPES: dict[ErrorKind, type[SupervisorError]] = {
    ErrorKind.CONFIG_INVALID: NodeConfigInvalidError,
    ErrorKind.ALREADY_EXISTS: NodeAlreadyExistsError,
    ErrorKind.NOT_FOUND: NodeNotFoundError,
    ErrorKind.SPAWN_FAILED: SpawnFailedError,
    ErrorKind.CHANNEL_CLOSED: ChannelClosedError,
}


def error_reply(error: Exception) -> ErrorReply:
    """Build the ErrorReply describing an exception.

    Args:
        error: The exception raised while handling a request.

    Returns:
        An ErrorReply whose kind identifies the exception class.
    """
    for kind, error_type in _ERROR_TYPES.items():
        if isinstance(error, error_type):
            return ErrorReply(kind=kind, message=str(error))
    return ErrorReply(kind=ErrorKind.INTERNAL, message=str(error) or repr(error))


def raise_for_reply(reply: ErrorReply, *, node_name: str | None = None) -> None:
    """Raise the exception an ErrorReply stands for.

    Args:
        reply: The error reply received from the Stem.
        node_name: The node the failed request targeted, if any.

    Raises:
        SupervisorError: The mapped exception subclass.
    """
    error_type = _ERROR_TYPES.get(reply.kind)
    if error_type is NodeConfigInvalidError:
        raise NodeConfigInvalidError(reply.message, node_name=node_name)
    if error_type is NodeAlreadyExistsError:
        raise NodeAlreadyExistsError(reply.message, node_name=node_name)
    if error_type is NodeNotFoundError:
        raise NodeNotFoundError(reply.message, node_name=node_name)
    if error_type is SpawnFailedError:
        raise SpawnFailedError(reply.message, node_name=node_name)
    if error_type is ChannelClosedError:
        raise ChannelClosedError(reply.message)
    raise SupervisorError(reply.message)


def _to_record(message: Message) -> dict[str, object]:  # noqa: PLR0911
    match message:
        case CreateRequest(config=config):
            return {"type": MessageType.CREATE, "config": render_node_config(config)}
        case DestroyRequest(name=name):
            return {"type": MessageType.DESTROY, "name": name}
        case RestartRequest(name=name):
            return {"type": MessageType.RESTART, "name": name}
        case StatusRequest(name=name):
            return {"type": MessageType.STATUS, "name": name}
        case StatusReply(nodes=nodes):
            return {
                "type": MessageType.STATUS_REPLY,
                "nodes": [render_node_status(node) for node in nodes],
            }
        case Ack(message=text):
            return {"type": MessageType.ACK, "message": text}
        case ErrorReply(kind=kind, message=text):
            return {"type": MessageType.ERROR, "kind": kind, "message": text}
    msg = f"cannot encode {type(message).__name__}"
    raise ProtocolError(msg)


def encode_message(message: Message) -> bytes:
    """Serialize a message to its JSON payload (without framing)."""
    return orjson.dumps(_to_record(message))


def decode_message(payload: bytes) -> Message:  # noqa: PLR0911
    """Deserialize a JSON payload into a message.

    Raises:
        ProtocolError: If the payload is not a well-formed message.
    """
    try:
        record = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        msg = f"malformed message payload: {e}"
        raise ProtocolError(msg) from e
    if not isinstance(record, Mapping):
        msg = "message payload must be a JSON object"
        raise ProtocolError(msg)
    record = cast("Mapping[str, object]", record)

    try:
        message_type = MessageType(str(record.get("type")))
        match message_type:
            case MessageType.CREATE:
                config = cast("Mapping[str, object]", record["config"])
                return CreateRequest(config=parse_node_config(config))
            case MessageType.DESTROY:
                return DestroyRequest(name=str(record.get("name", "")))
            case MessageType.RESTART:
                return RestartRequest(name=str(record.get("name", "")))
            case MessageType.STATUS:
                return StatusRequest(name=str(record.get("name", "")))
            case MessageType.STATUS_REPLY:
                nodes = cast("list[Mapping[str, object]]", record.get("nodes", []))
                return StatusReply(nodes=tuple(parse_node_status(n) for n in nodes))
            case MessageType.ACK:
                return Ack(message=str(record.get("message", "")))
            case MessageType.ERROR:
                return ErrorReply(
                    kind=ErrorKind(str(record.get("kind"))),
                    message=str(record.get("message", "")),
                )
    except NodeConfigInvalidError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        msg = f"malformed {record.get('type')!r} message: {e}"
        raise ProtocolError(msg) from e
    msg = f"unhandled message type {record.get('type')!r}"
    raise ProtocolError(msg)
