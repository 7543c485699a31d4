"""The Supervisor: top-level controller of the process tree.

The Supervisor relays requests to the Stem over the transport channel and
keeps the desired node configurations so it can rebuild the tree. When the
Stem dies it is reaped, re-created by fork+exec of the installed
interpreter, and sent every desired node again.
"""

from __future__ import annotations

import contextlib
import os
import signal
import sys
import time
import traceback
from typing import TYPE_CHECKING, final

import anyio
import anyio.abc
import anyio.to_thread
import pendulum

from nodekeeper.exceptions import (
    ChannelClosedError,
    NodeConfigInvalidError,
    NodeNotFoundError,
    ProtocolError,
    SpawnFailedError,
)

from ._backoff import RevivalPolicy
from ._channel import Channel, Flare
from ._loop import serve_io_source
from ._marshal import parse_node_config, render_node_config
from ._messages import (
    Ack,
    CreateRequest,
    DestroyRequest,
    ErrorReply,
    RestartRequest,
    StatusReply,
    StatusRequest,
    raise_for_reply,
)
from ._models import NodeEvent, NodeEventType
from ._output import NullEventSink
from ._stem import STEM_NAME, Stem

if TYPE_CHECKING:
    from collections.abc import Callable

    from structlog.typing import FilteringBoundLogger

    from nodekeeper.config import Config

    from ._messages import Reply, Request
    from ._models import NodeConfig, NodeStatus
    from ._node import NodeEntry
    from ._protocol import EventSink

type StemSpawner = Callable[[], tuple[int, Channel]]

SUPERVISOR_SIGNALS = (signal.SIGCHLD, signal.SIGTERM, signal.SIGINT)
STEM_REBUILT_MESSAGE = "stem exited; controller rebuilt"

# how long to wait for the exit status of a Stem whose channel hit EOF
_EOF_RECHECK_INTERVAL = 0.1
_STOP_POLL_INTERVAL = 0.05


def stem_command(config: Config, channel: Channel, *, parent_pid: int) -> list[str]:
    """Return the argv that starts a Stem on the given channel end."""
    executable = config.supervisor.stem_executable or sys.executable
    return [
        executable,
        "-m",
        "nodekeeper",
        "stem",
        "--read-fd",
        str(channel.read_fd),
        "--write-fd",
        str(channel.write_fd),
        "--parent-pid",
        str(parent_pid),
        "--settings",
        config.model_dump_json(exclude={"nodes"}),
    ]


def exec_stem(config: Config) -> tuple[int, Channel]:
    """Start a fresh Stem from the on-disk interpreter.

    Returns:
        The Stem's pid and the Supervisor's end of its new channel.

    Raises:
        SpawnFailedError: If the process cannot be spawned.
    """
    supervisor_end, stem_end = Channel.pair()
    stem_end.set_inheritable()
    argv = stem_command(config, stem_end, parent_pid=os.getpid())
    try:
        pid = os.posix_spawnp(
            argv[0],
            argv,
            os.environ,
            setsigdef=SUPERVISOR_SIGNALS,
        )
    except OSError as e:
        supervisor_end.close()
        stem_end.close()
        msg = f"cannot spawn stem from {argv[0]}: {e.strerror}"
        raise SpawnFailedError(msg, node_name=STEM_NAME, cause=e) from e
    stem_end.close()
    return pid, supervisor_end


@final
class _PendingRequest:
    __slots__ = ("error", "event", "reply")

    def __init__(self) -> None:
        self.event = anyio.Event()
        self.reply: Reply | None = None
        self.error: Exception | None = None

    def resolve(self, reply: Reply) -> None:
        self.reply = reply
        self.event.set()

    def fail(self, error: Exception) -> None:
        self.error = error
        self.event.set()


@final
class Supervisor:
    """Controls the Stem and, through it, every supervised node.

    Request coroutines may be called from any task in the loop running
    ``run()``; they are serialized so only one request is outstanding.
    """

    __slots__ = (
        "_channel",
        "_child_signal",
        "_clock",
        "_config",
        "_desired",
        "_discard_replies",
        "_done",
        "_event_sink",
        "_flare",
        "_lock",
        "_logger",
        "_pending",
        "_policy",
        "_replaying",
        "_respawn_at",
        "_spawn_stem",
        "_statuses",
        "_stem_delay",
        "_stem_pid",
        "_stem_revivals",
        "_stem_started_at",
        "_stopping",
        "_task_group",
    )

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        channel: Channel,
        stem_pid: int,
        *,
        event_sink: EventSink | None = None,
        logger: FilteringBoundLogger | None = None,
        spawn_stem: StemSpawner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the Supervisor around an already running Stem.

        Args:
            config: Loaded configuration.
            channel: The Supervisor's end of the Stem channel.
            stem_pid: Pid of the running Stem.
            event_sink: Receiver of Stem lifecycle events.
            logger: Structured logger.
            spawn_stem: Replaces fork+exec of new Stems, e.g. in tests.
            clock: Monotonic clock.
        """
        if logger is None:
            from nodekeeper.utils import create_supervisor_logger  # noqa: PLC0415

            logger = create_supervisor_logger()
        self._config = config
        self._channel = channel
        self._stem_pid = stem_pid
        self._event_sink: EventSink = event_sink or NullEventSink()
        self._logger = logger.bind(pid=os.getpid())
        self._spawn_stem: StemSpawner = spawn_stem or (lambda: exec_stem(config))
        self._clock = clock
        self._policy: RevivalPolicy = config.supervisor.revival.policy()
        self._flare = Flare()
        self._lock = anyio.Lock()
        self._pending: _PendingRequest | None = None
        self._replaying: anyio.Event | None = None
        self._discard_replies = 0
        self._desired: dict[str, NodeConfig] = {}
        self._statuses: dict[str, NodeStatus] = {}
        self._child_signal = False
        self._stopping = False
        self._done = False
        self._stem_started_at = clock()
        self._stem_revivals = 0
        self._stem_delay = self._policy.base_delay
        self._respawn_at: float | None = None
        self._task_group: anyio.abc.TaskGroup | None = None

    @property
    def stem_pid(self) -> int:
        """Return the current Stem pid, or 0 while it is being re-created."""
        return self._stem_pid

    @property
    def desired(self) -> dict[str, NodeConfig]:
        """Return the node configurations replayed after a Stem restart."""
        return dict(self._desired)

    @property
    def nodes(self) -> dict[str, NodeStatus]:
        """Return the node snapshots from the latest status reply."""
        return dict(self._statuses)

    @property
    def config(self) -> Config:
        """Return the configuration the Supervisor was built with."""
        return self._config

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(self, request: Request) -> Reply:
        while True:
            while (replaying := self._replaying) is not None:
                await replaying.wait()
            async with self._lock:
                # a Stem rebuilt while this request queued gets its replay first
                if self._replaying is not None:
                    continue
                return await self._exchange(request)

    async def _exchange(self, request: Request) -> Reply:
        """Send one request and wait for its reply; the lock must be held."""
        if self._stopping:
            msg = "supervisor is shutting down"
            raise ChannelClosedError(msg)
        if self._stem_pid == 0 or self._channel.closed or self._channel.at_eof:
            msg = "stem is being restarted"
            raise ChannelClosedError(msg)
        pending = _PendingRequest()
        self._pending = pending
        sent = False
        try:
            self._channel.send(request)
            sent = True
            await pending.event.wait()
        finally:
            self._pending = None
            if sent and not pending.event.is_set():
                # cancelled: the reply still arrives and must be dropped
                self._discard_replies += 1
        if pending.error is not None:
            raise pending.error
        if pending.reply is None:
            msg = "request finished without a reply"
            raise ProtocolError(msg)
        return pending.reply

    @staticmethod
    def _expect[R](reply: Reply, expected: type[R], *, node_name: str | None) -> R:
        if isinstance(reply, ErrorReply):
            raise_for_reply(reply, node_name=node_name)
        if not isinstance(reply, expected):
            msg = f"expected {expected.__name__}, got {type(reply).__name__}"
            raise ProtocolError(msg)
        return reply

    async def create(self, config: NodeConfig) -> None:
        """Create and start a node.

        Raises:
            NodeConfigInvalidError: If any field of the configuration is invalid.
            NodeAlreadyExistsError: If the node already exists.
            ChannelClosedError: If the Stem died while handling the request.
        """
        # validated private copy; this is what a rebuilt Stem is sent
        config = parse_node_config(render_node_config(config))
        reply = await self._request(CreateRequest(config=config))
        _ = self._expect(reply, Ack, node_name=config.name)
        self._desired[config.name] = config
        self._logger.info("node_created", node=config.name)

    async def destroy(self, name: str = "") -> None:
        """Destroy one node, or every node when ``name`` is empty.

        Raises:
            NodeNotFoundError: If ``name`` is given and unknown.
            ChannelClosedError: If the Stem died while handling the request.
        """
        reply = await self._request(DestroyRequest(name=name))
        try:
            _ = self._expect(reply, Ack, node_name=name or None)
        except NodeNotFoundError:
            # the Stem does not run it, so a rebuilt Stem must not either
            _ = self._desired.pop(name, None)
            raise
        if name:
            _ = self._desired.pop(name, None)
            _ = self._statuses.pop(name, None)
        else:
            self._desired.clear()
            self._statuses.clear()
        self._logger.info("node_destroyed", node=name or "*")

    async def restart(self, name: str = "") -> None:
        """Restart one node, or every node when ``name`` is empty.

        Raises:
            NodeNotFoundError: If ``name`` is given and unknown.
            ChannelClosedError: If the Stem died while handling the request.
        """
        reply = await self._request(RestartRequest(name=name))
        _ = self._expect(reply, Ack, node_name=name or None)
        self._logger.info("node_restarted", node=name or "*")

    async def status(self, name: str = "") -> list[NodeStatus]:
        """Return node snapshots sorted by name; none for an unknown name.

        Raises:
            ChannelClosedError: If the Stem died while handling the request.
        """
        reply = self._expect(
            await self._request(StatusRequest(name=name)),
            StatusReply,
            node_name=name or None,
        )
        if name:
            _ = self._statuses.pop(name, None)
        else:
            self._statuses.clear()
        self._statuses.update((status.name, status) for status in reply.nodes)
        return list(reply.nodes)

    # -------------------------------------------------------------------------
    # Stem lifecycle
    # -------------------------------------------------------------------------

    def _emit(
        self,
        event_type: NodeEventType,
        *,
        pid: int | None = None,
        exit_status: int | None = None,
        signal_number: int | None = None,
        message: str | None = None,
    ) -> None:
        self._event_sink.write_event(
            NodeEvent(
                node_name=STEM_NAME,
                event_type=event_type,
                timestamp=pendulum.now("UTC").to_iso8601_string(),
                pid=pid,
                exit_status=exit_status,
                signal_number=signal_number,
                message=message,
            )
        )

    def reap_stem(self) -> bool:
        """Collect the Stem if it has exited and schedule its re-creation.

        Returns:
            True if the Stem was reaped.
        """
        if self._stem_pid <= 0:
            return False
        try:
            pid, status = os.waitpid(self._stem_pid, os.WNOHANG)
        except ChildProcessError:
            pid, status = self._stem_pid, 0
        if pid == 0:
            return False
        self._on_stem_exit(status)
        return True

    def _on_stem_exit(self, status: int) -> None:
        pid = self._stem_pid
        exit_status = 0 if os.WIFSIGNALED(status) else os.waitstatus_to_exitcode(status)
        signal_number = os.WTERMSIG(status) if os.WIFSIGNALED(status) else 0
        self._logger.warning(
            "stem_exited",
            stem_pid=pid,
            exit_status=exit_status,
            signal_number=signal_number,
        )
        self._emit(
            NodeEventType.STEM_EXITED,
            pid=pid,
            exit_status=exit_status,
            signal_number=signal_number,
        )

        if self._pending is not None:
            self._pending.fail(ChannelClosedError(STEM_REBUILT_MESSAGE))
        self._discard_replies = 0
        self._statuses.clear()
        self._channel.close()
        self._stem_pid = 0

        if self._stopping:
            return
        now = self._clock()
        if self._policy.is_stable(now - self._stem_started_at):
            self._stem_revivals = 0
            self._stem_delay = self._policy.base_delay
        delay = 0.0
        if self._stem_revivals > 0:
            delay = self._stem_delay
            self._stem_delay = self._policy.next_delay(delay)
        self._stem_revivals += 1
        self._respawn_at = now + delay
        self._logger.info("stem_respawn_scheduled", delay=delay)

    def _respawn_stem(self, now: float) -> None:
        self._respawn_at = None
        try:
            pid, channel = self._spawn_stem()
        except SpawnFailedError as e:
            self._logger.error("stem_spawn_failed", error=str(e))
            self._emit(NodeEventType.SPAWN_FAILED, message=str(e))
            self._respawn_at = now + self._stem_delay
            self._stem_delay = self._policy.next_delay(self._stem_delay)
            return
        self._stem_pid = pid
        self._channel = channel
        self._stem_started_at = now
        self._logger.info("stem_respawned", stem_pid=pid, nodes=len(self._desired))
        self._replay()

    def _replay(self) -> None:
        if self._task_group is None or not self._desired:
            return
        replaying = anyio.Event()
        self._replaying = replaying
        self._task_group.start_soon(self._replay_configs, self._stem_pid, replaying)

    async def _replay_configs(self, stem_pid: int, replaying: anyio.Event) -> None:
        """Re-create every desired node before any other request reaches the Stem."""
        try:
            async with self._lock:
                configs = [self._desired[name] for name in sorted(self._desired)]
                for config in configs:
                    if self._stem_pid != stem_pid or self._stopping:
                        return
                    try:
                        reply = await self._exchange(CreateRequest(config=config))
                    except ChannelClosedError as e:
                        self._logger.warning(
                            "replay_interrupted", node=config.name, error=str(e)
                        )
                        return
                    if isinstance(reply, ErrorReply):
                        self._logger.warning(
                            "replay_failed",
                            node=config.name,
                            kind=reply.kind,
                            error=reply.message,
                        )
                    else:
                        self._logger.info("node_replayed", node=config.name)
        finally:
            if self._replaying is replaying:
                self._replaying = None
            replaying.set()

    # -------------------------------------------------------------------------
    # IOSource
    # -------------------------------------------------------------------------

    @property
    def done(self) -> bool:
        """Return True once shutdown has been requested and observed."""
        return self._done

    def fds(self) -> list[int]:
        """Return the channel and wakeup descriptors."""
        fds = [self._flare.fileno()]
        if not self._channel.closed and not self._channel.at_eof:
            fds.append(self._channel.read_fd)
        return fds

    def next_deadline(self) -> float | None:
        """Return when the Stem must be re-created or re-checked, if ever."""
        if self._respawn_at is not None:
            return self._respawn_at
        if self._stem_pid > 0 and self._channel.at_eof:
            return self._clock() + _EOF_RECHECK_INTERVAL
        return None

    def observe_signal(self, signo: int) -> None:
        """Record a delivered signal and wake the loop."""
        if signo == signal.SIGCHLD:
            self._child_signal = True
        elif signo in (signal.SIGTERM, signal.SIGINT):
            self._logger.info("signal_received", signal=signal.Signals(signo).name)
            self.request_shutdown()
        self._flare.fire()

    def request_shutdown(self) -> None:
        """Ask ``run()`` to stop the tree and return."""
        self._stopping = True
        self._flare.fire()

    async def shutdown(self) -> None:
        """Trigger graceful shutdown of the tree."""
        self.request_shutdown()

    def process(self) -> None:
        """Handle replies, Stem exits and scheduled Stem re-creation."""
        self._flare.extinguish()
        if not self._channel.closed:
            self._receive_replies()
        if self._stem_pid > 0 and (self._child_signal or self._channel.at_eof):
            self._child_signal = False
            _ = self.reap_stem()

        if self._stopping:
            self._done = True
            return
        now = self._clock()
        if self._stem_pid == 0 and self._respawn_at is not None and now >= self._respawn_at:
            self._respawn_stem(now)

    def _receive_replies(self) -> None:
        try:
            replies = self._channel.receive()
        except (ProtocolError, NodeConfigInvalidError) as e:
            self._logger.error("bad_reply", error=str(e))
            if self._pending is not None and self._discard_replies == 0:
                self._pending.fail(
                    e if isinstance(e, ProtocolError) else ProtocolError(f"bad reply: {e}")
                )
            if self._channel.at_eof:
                self._terminate_stem()
            return
        for reply in replies:
            if self._discard_replies > 0:
                self._discard_replies -= 1
                self._logger.debug("late_reply_dropped", reply=type(reply).__name__)
            elif self._pending is not None and not self._pending.event.is_set():
                self._pending.resolve(reply)
            else:
                self._logger.warning("unexpected_reply", reply=type(reply).__name__)

    def _terminate_stem(self) -> None:
        """Stop a Stem whose reply stream lost framing so it is reaped and rebuilt."""
        self._logger.warning("stem_channel_corrupt", stem_pid=self._stem_pid)
        if self._stem_pid > 0:
            with contextlib.suppress(ProcessLookupError):
                os.kill(self._stem_pid, signal.SIGTERM)

    async def _stop_stem(self) -> None:
        pid = self._stem_pid
        if pid <= 0:
            return
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        timeout = self._config.supervisor.shutdown_timeout
        # the Stem itself waits up to the timeout for each node
        with anyio.move_on_after(timeout * 2):
            while not self.reap_stem():
                await anyio.sleep(_STOP_POLL_INTERVAL)
        if self._stem_pid > 0:
            self._logger.warning("stem_kill_escalated", stem_pid=pid)
            with contextlib.suppress(ProcessLookupError):
                os.kill(pid, signal.SIGKILL)
            _, status = await anyio.to_thread.run_sync(os.waitpid, pid, 0)
            self._on_stem_exit(status)

    async def run(self) -> None:
        """Run until shutdown, then stop the Stem and every node with it."""
        self._logger.info("supervisor_started", stem_pid=self._stem_pid)
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                await serve_io_source(self, signals=SUPERVISOR_SIGNALS, clock=self._clock)
                tg.cancel_scope.cancel()
        finally:
            self._task_group = None
            self._stopping = True
            if self._pending is not None:
                self._pending.fail(ChannelClosedError("supervisor is shutting down"))
            with anyio.CancelScope(shield=True):
                await self._stop_stem()
            self._channel.close()
            self._flare.close()
        self._logger.info("supervisor_stopped")


def launch(
    config: Config,
    *,
    event_sink: EventSink | None = None,
    logger: FilteringBoundLogger | None = None,
    node_entry: NodeEntry | None = None,
) -> Supervisor:
    """Fork the initial Stem and return the Supervisor controlling it.

    Must be called before any event loop runs in this process. The first
    Stem is a plain fork; later Stems are exec'd from disk.

    Args:
        config: Loaded configuration.
        event_sink: Receiver of lifecycle events.
        logger: Supervisor logger.
        node_entry: Overrides the configured node entry for the first Stem.

    Raises:
        SpawnFailedError: If the Stem cannot be forked.
    """
    supervisor_end, stem_end = Channel.pair()
    parent_pid = os.getpid()
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        pid = os.fork()
    except OSError as e:
        supervisor_end.close()
        stem_end.close()
        msg = f"cannot fork stem: {e.strerror}"
        raise SpawnFailedError(msg, node_name=STEM_NAME, cause=e) from e

    if pid == 0:
        status = 1
        try:
            supervisor_end.close()
            stem = Stem.from_config(
                stem_end,
                config,
                parent_pid=parent_pid,
                event_sink=event_sink,
                node_entry=node_entry,
            )
            anyio.run(stem.run)
            status = 0
        except Exception:  # noqa: BLE001
            traceback.print_exc()
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(status)

    stem_end.close()
    return Supervisor(config, supervisor_end, pid, event_sink=event_sink, logger=logger)
