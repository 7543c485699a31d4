"""The Stem: owner of the live node set.

The Stem is the middle tier of the process tree. It forks one process per
node, reaps them, revives the ones that die unexpectedly and answers the
Supervisor's requests over its end of the transport channel. It exits after
destroying every node when it is told to stop, when the Supervisor closes
the channel, or when it notices it has been orphaned.
"""

from __future__ import annotations

import contextlib
import os
import signal
import time
from typing import TYPE_CHECKING, final

import anyio
import pendulum

from nodekeeper.exceptions import (
    ChannelClosedError,
    NodeAlreadyExistsError,
    NodeConfigInvalidError,
    NodeNotFoundError,
    ParentLostError,
    ProtocolError,
    SpawnFailedError,
    SupervisorError,
)

from ._backoff import RevivalPolicy
from ._channel import Flare
from ._liveness import DEFAULT_CHECK_INTERVAL, ParentLivenessMonitor
from ._loop import serve_io_source
from ._messages import (
    Ack,
    CreateRequest,
    DestroyRequest,
    RestartRequest,
    StatusReply,
    StatusRequest,
    error_reply,
)
from ._models import Node, NodeEvent, NodeEventType
from ._node import fork_node, resolve_node_entry, run_supervised_node
from ._output import NullEventSink

if TYPE_CHECKING:
    from collections.abc import Callable

    from structlog.typing import FilteringBoundLogger

    from nodekeeper.config import Config

    from ._channel import Channel
    from ._messages import Message, Reply
    from ._models import NodeConfig, NodeStatus
    from ._node import NodeEntry
    from ._protocol import EventSink

type Spawner = Callable[[NodeConfig], int]

STEM_NAME = "stem"
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
STEM_SIGNALS = (signal.SIGCHLD, signal.SIGTERM, signal.SIGINT)

_STOP_POLL_INTERVAL = 0.05


def _now_iso() -> str:
    return pendulum.now("UTC").to_iso8601_string()


@final
class Stem:
    """Forks, reaps and revives nodes on behalf of the Supervisor.

    All state changes happen inside ``process()``, called by the event loop
    driver whenever the channel or the wakeup flare becomes readable or a
    revival is due. Requests are handled synchronously, one at a time.
    """

    __slots__ = (
        "_channel",
        "_clock",
        "_done",
        "_event_sink",
        "_flare",
        "_liveness",
        "_log_dir",
        "_logger",
        "_node_entry",
        "_nodes",
        "_policy",
        "_shutdown_timeout",
        "_spawner",
        "_stop_reason",
    )

    def __init__(  # noqa: PLR0913
        self,
        channel: Channel,
        *,
        parent_pid: int | None = None,
        policy: RevivalPolicy | None = None,
        node_entry: NodeEntry | None = None,
        spawner: Spawner | None = None,
        event_sink: EventSink | None = None,
        logger: FilteringBoundLogger | None = None,
        liveness_interval: float = DEFAULT_CHECK_INTERVAL,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        node_log_dir: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        getppid: Callable[[], int] = os.getppid,
    ) -> None:
        """Initialize the Stem.

        Args:
            channel: The Stem's end of the transport channel.
            parent_pid: Pid of the Supervisor. Defaults to the current parent.
            policy: Revival backoff policy.
            node_entry: Callable run inside each forked node.
            spawner: Replaces forking, e.g. in tests. Receives the NodeConfig
                and returns the new pid.
            event_sink: Receiver of lifecycle events.
            logger: Structured logger.
            liveness_interval: Seconds between parent liveness checks.
            shutdown_timeout: Seconds to wait after SIGTERM before SIGKILL.
            node_log_dir: Default directory for node stdout/stderr files.
            clock: Monotonic clock.
            getppid: Source of the current parent pid.
        """
        if logger is None:
            from nodekeeper.utils import create_stem_logger  # noqa: PLC0415

            logger = create_stem_logger()
        self._channel = channel
        self._flare = Flare()
        self._policy = policy or RevivalPolicy()
        self._node_entry: NodeEntry = node_entry or run_supervised_node
        self._spawner: Spawner = spawner or self._fork
        self._event_sink: EventSink = event_sink or NullEventSink()
        self._logger = logger.bind(pid=os.getpid())
        self._liveness = ParentLivenessMonitor(
            parent_pid, interval=liveness_interval, getppid=getppid
        )
        self._shutdown_timeout = shutdown_timeout
        self._log_dir = node_log_dir
        self._clock = clock
        self._nodes: dict[str, Node] = {}
        self._stop_reason: str | None = None
        self._done = False

    @property
    def nodes(self) -> dict[str, Node]:
        """Return the live node map, keyed by name."""
        return self._nodes

    @property
    def policy(self) -> RevivalPolicy:
        """Return the revival policy."""
        return self._policy

    @property
    def parent_pid(self) -> int:
        """Return the pid of the Supervisor this Stem serves."""
        return self._liveness.parent_pid

    # -------------------------------------------------------------------------
    # Node operations
    # -------------------------------------------------------------------------

    def create(self, config: NodeConfig) -> None:
        """Insert a node and spawn it.

        Raises:
            NodeAlreadyExistsError: If a node with the same name exists. The
                existing node is left untouched.
        """
        if config.name in self._nodes:
            msg = f"node '{config.name}' already exists"
            raise NodeAlreadyExistsError(msg, node_name=config.name)
        node = Node(config=config, revival_delay=self._policy.base_delay)
        self._nodes[config.name] = node
        self._logger.info("node_created", node=config.name)
        self._spawn(node, self._clock())

    def destroy(self, name: str = "") -> None:
        """Kill and remove one node, or every node when ``name`` is empty.

        Raises:
            NodeNotFoundError: If ``name`` is given and unknown.
        """
        nodes = self._select(name)
        self._stop(nodes)
        for node in nodes:
            del self._nodes[node.name]
            self._emit(node.name, NodeEventType.DESTROYED)
            self._logger.info("node_destroyed", node=node.name)

    def restart(self, name: str = "") -> None:
        """Destroy and re-create one node, or every node when ``name`` is empty.

        Raises:
            NodeNotFoundError: If ``name`` is given and unknown.
        """
        configs = [node.config for node in self._select(name)]
        for config in configs:
            self.destroy(config.name)
            self.create(config)

    def status(self, name: str = "") -> tuple[NodeStatus, ...]:
        """Return snapshots sorted by name. An unknown name yields none."""
        if name:
            node = self._nodes.get(name)
            return (node.snapshot(),) if node is not None else ()
        return tuple(self._nodes[key].snapshot() for key in sorted(self._nodes))

    def handle_message(self, message: Message) -> Reply:
        """Apply one request and build its reply.

        Failures never escape: they become an ErrorReply.
        """
        try:
            match message:
                case CreateRequest(config=config):
                    self.create(config)
                    return Ack(message=f"created '{config.name}'")
                case DestroyRequest(name=name):
                    self.destroy(name)
                    return Ack(message=f"destroyed '{name}'" if name else "destroyed all")
                case RestartRequest(name=name):
                    self.restart(name)
                    return Ack(message=f"restarted '{name}'" if name else "restarted all")
                case StatusRequest(name=name):
                    return StatusReply(nodes=self.status(name))
                case _:
                    msg = f"unexpected {type(message).__name__} from supervisor"
                    raise ProtocolError(msg)
        except SupervisorError as e:
            self._logger.warning("request_failed", error=str(e), kind=type(e).__name__)
            return error_reply(e)
        except Exception as e:
            self._logger.exception("request_crashed")
            return error_reply(e)

    def _select(self, name: str) -> list[Node]:
        if not name:
            return [self._nodes[key] for key in sorted(self._nodes)]
        node = self._nodes.get(name)
        if node is None:
            msg = f"node '{name}' not found"
            raise NodeNotFoundError(msg, node_name=name)
        return [node]

    # -------------------------------------------------------------------------
    # Process lifecycle
    # -------------------------------------------------------------------------

    def _fork(self, config: NodeConfig) -> int:
        return fork_node(
            config,
            self._node_entry,
            close_fds=(
                self._channel.read_fd,
                self._channel.write_fd,
                *self._flare.descriptors(),
            ),
            log_dir=self._log_dir,
            liveness_interval=self._liveness.interval,
        )

    def _spawn(self, node: Node, now: float) -> None:
        node.revive_at = None
        try:
            pid = self._spawner(node.config)
        except SpawnFailedError as e:
            self._logger.error("spawn_failed", node=node.name, error=str(e))
            self._emit(node.name, NodeEventType.SPAWN_FAILED, message=str(e))
            self._schedule_revival(node, now)
            return
        node.pid = pid
        node.spawned_at = now
        node.spawn_time = time.time()
        self._logger.info("node_spawned", node=node.name, node_pid=pid)
        self._emit(node.name, NodeEventType.SPAWNED, pid=pid)

    def _schedule_revival(self, node: Node, now: float) -> None:
        delay = node.revival_delay
        node.revival_attempts += 1
        node.revive_at = now + delay
        node.revival_delay = self._policy.next_delay(delay)
        self._emit(
            node.name,
            NodeEventType.REVIVING,
            message=f"reviving in {delay:.1f}s (attempt {node.revival_attempts})",
        )

    def _reset_revival(self, node: Node) -> None:
        node.revival_attempts = 0
        node.revival_delay = self._policy.base_delay

    def _needs_reset(self, node: Node) -> bool:
        return node.revival_attempts > 0 or node.revival_delay != self._policy.base_delay

    @staticmethod
    def _record_exit(node: Node, status: int) -> None:
        node.pid = 0
        if os.WIFSIGNALED(status):
            node.exit_status = 0
            node.signal_number = os.WTERMSIG(status)
        else:
            node.exit_status = os.waitstatus_to_exitcode(status)
            node.signal_number = 0

    def _on_exit(self, node: Node, status: int, now: float) -> None:
        pid = node.pid
        self._record_exit(node, status)
        self._emit(
            node.name,
            NodeEventType.EXITED,
            pid=pid,
            exit_status=node.exit_status,
            signal_number=node.signal_number,
        )
        self._logger.warning(
            "node_exited",
            node=node.name,
            node_pid=pid,
            exit_status=node.exit_status,
            signal_number=node.signal_number,
        )
        if node.killed:
            return
        uptime = now - node.spawned_at if node.spawned_at is not None else 0.0
        if self._policy.is_stable(uptime):
            self._reset_revival(node)
        self._schedule_revival(node, now)

    def reap(self) -> None:
        """Collect every exited child and schedule revivals."""
        by_pid = {node.pid: node for node in self._nodes.values() if node.pid > 0}
        now = self._clock()
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                return
            if pid == 0:
                return
            node = by_pid.pop(pid, None)
            if node is None:
                self._logger.debug("unknown_child_reaped", child_pid=pid)
                continue
            self._on_exit(node, status, now)

    def _wait(self, pid: int, *, block: bool) -> int | None:
        try:
            reaped, status = os.waitpid(pid, 0 if block else os.WNOHANG)
        except ChildProcessError:
            # collected elsewhere; nothing left to wait for
            return 0
        return status if reaped == pid else None

    def _stop(self, nodes: list[Node]) -> None:
        """SIGTERM every node, then wait for all of them against one deadline."""
        waiting: dict[int, Node] = {}
        for node in nodes:
            node.killed = True
            node.revive_at = None
            if node.pid > 0:
                waiting[node.pid] = node
                with contextlib.suppress(ProcessLookupError):
                    os.kill(node.pid, signal.SIGTERM)
        deadline = self._clock() + self._shutdown_timeout
        while True:
            for pid in list(waiting):
                status = self._wait(pid, block=False)
                if status is not None:
                    self._on_stopped(waiting.pop(pid), status)
            if not waiting or self._clock() >= deadline:
                break
            time.sleep(_STOP_POLL_INTERVAL)
        for pid, node in waiting.items():
            self._logger.warning("node_kill_escalated", node=node.name, node_pid=pid)
            with contextlib.suppress(ProcessLookupError):
                os.kill(pid, signal.SIGKILL)
            self._on_stopped(node, self._wait(pid, block=True) or 0)

    def _on_stopped(self, node: Node, status: int) -> None:
        pid = node.pid
        self._record_exit(node, status)
        self._emit(
            node.name,
            NodeEventType.STOPPED,
            pid=pid,
            exit_status=node.exit_status,
            signal_number=node.signal_number,
        )

    def revive_due(self, now: float) -> None:
        """Respawn every node whose revival time has come."""
        for key in sorted(self._nodes):
            node = self._nodes[key]
            if node.revive_at is not None and node.revive_at <= now and not node.killed:
                self._logger.info(
                    "node_reviving", node=node.name, attempt=node.revival_attempts
                )
                self._spawn(node, now)

    def reset_stable(self, now: float) -> None:
        """Reset the revival series of nodes that have been up long enough."""
        for node in self._nodes.values():
            if (
                node.pid > 0
                and node.spawned_at is not None
                and self._needs_reset(node)
                and self._policy.is_stable(now - node.spawned_at)
            ):
                self._reset_revival(node)

    def _emit(
        self,
        node_name: str,
        event_type: NodeEventType,
        *,
        pid: int | None = None,
        exit_status: int | None = None,
        signal_number: int | None = None,
        message: str | None = None,
    ) -> None:
        self._event_sink.write_event(
            NodeEvent(
                node_name=node_name,
                event_type=event_type,
                timestamp=_now_iso(),
                pid=pid,
                exit_status=exit_status,
                signal_number=signal_number,
                message=message,
            )
        )

    # -------------------------------------------------------------------------
    # IOSource
    # -------------------------------------------------------------------------

    @property
    def done(self) -> bool:
        """Return True once every node is destroyed after a stop request."""
        return self._done

    @property
    def stop_reason(self) -> str | None:
        """Return why the Stem is stopping, if it is."""
        return self._stop_reason

    def fds(self) -> list[int]:
        """Return the channel and wakeup descriptors."""
        fds = [self._flare.fileno()]
        if not self._channel.closed and not self._channel.at_eof:
            fds.append(self._channel.read_fd)
        return fds

    def next_deadline(self) -> float | None:
        """Return the earliest revival, stability reset or liveness check."""
        now = self._clock()
        deadlines = [self._liveness.next_deadline(now)]
        for node in self._nodes.values():
            if node.revive_at is not None:
                deadlines.append(node.revive_at)
            elif node.pid > 0 and node.spawned_at is not None and self._needs_reset(node):
                deadlines.append(node.spawned_at + self._policy.stability_threshold)
        return min(deadlines)

    def observe_signal(self, signo: int) -> None:
        """Record a delivered signal and wake the loop."""
        if signo in (signal.SIGTERM, signal.SIGINT):
            self.request_stop(f"received {signal.Signals(signo).name}")
        self._flare.fire()

    def request_stop(self, reason: str) -> None:
        """Ask the Stem to destroy all nodes and exit on the next ``process()``."""
        if self._stop_reason is None:
            self._stop_reason = reason

    def process(self) -> None:
        """Reap children, serve requests and revive nodes that are due."""
        self._flare.extinguish()
        self.reap()
        if self._stop_reason is None:
            self._serve_requests()
        if self._channel.at_eof:
            self.request_stop("supervisor closed the channel")

        now = self._clock()
        try:
            self._liveness.poll(now)
        except ParentLostError as e:
            self._logger.warning("parent_lost", reason=str(e))
            self.request_stop(str(e))

        if self._stop_reason is not None:
            self._shutdown()
            return
        self.revive_due(now)
        self.reset_stable(now)

    def _serve_requests(self) -> None:
        while True:
            try:
                messages = self._channel.receive()
            except (ProtocolError, NodeConfigInvalidError) as e:
                self._logger.warning("bad_request", error=str(e))
                self._reply(error_reply(e))
                continue
            if not messages:
                return
            for message in messages:
                self._reply(self.handle_message(message))

    def _reply(self, reply: Reply) -> None:
        try:
            self._channel.send(reply)
        except ChannelClosedError:
            self.request_stop("supervisor closed the channel")

    def _shutdown(self) -> None:
        self._logger.info("stem_stopping", reason=self._stop_reason, nodes=len(self._nodes))
        self.destroy()
        self._done = True

    async def run(self) -> None:
        """Serve until stopped, then make sure no node outlives the Stem."""
        self._logger.info("stem_started", parent_pid=self.parent_pid)
        self._emit(STEM_NAME, NodeEventType.STEM_STARTED, pid=os.getpid())
        try:
            await serve_io_source(self, signals=STEM_SIGNALS, clock=self._clock)
        finally:
            self.destroy()
            self._channel.close()
            self._flare.close()
        self._logger.info("stem_stopped", reason=self._stop_reason)

    @classmethod
    def from_config(
        cls,
        channel: Channel,
        config: Config,
        *,
        parent_pid: int | None = None,
        event_sink: EventSink | None = None,
        node_entry: NodeEntry | None = None,
    ) -> Stem:
        """Build a Stem from the loaded configuration.

        Raises:
            ValueError: If the configured node entry cannot be imported.
        """
        from nodekeeper.utils import create_stem_logger  # noqa: PLC0415

        settings = config.supervisor
        logger = create_stem_logger(
            config.logging.level,
            log_format=config.logging.format,
            log_file=config.logging.file,
        )
        return cls(
            channel,
            parent_pid=parent_pid,
            policy=settings.revival.policy(),
            node_entry=node_entry or resolve_node_entry(settings.node_entry),
            event_sink=event_sink,
            logger=logger,
            liveness_interval=settings.liveness_interval,
            shutdown_timeout=settings.shutdown_timeout,
            node_log_dir=str(settings.node_log_dir) if settings.node_log_dir else None,
        )


def run_stem(
    channel: Channel,
    config: Config,
    *,
    parent_pid: int | None = None,
    event_sink: EventSink | None = None,
) -> int:
    """Run a Stem to completion in the current process.

    Returns:
        The exit status for the Stem process.
    """
    stem = Stem.from_config(
        channel, config, parent_pid=parent_pid, event_sink=event_sink
    )
    anyio.run(stem.run)
    return 0
