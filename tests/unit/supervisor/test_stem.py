from __future__ import annotations

import os
import signal
from typing import TYPE_CHECKING

import pytest

from nodekeeper.config import Config
from nodekeeper.exceptions import NodeAlreadyExistsError, NodeNotFoundError
from nodekeeper.supervisor import (
    Ack,
    Channel,
    CreateRequest,
    DestroyRequest,
    ErrorKind,
    ErrorReply,
    NodeConfig,
    NodeEventType,
    NodeState,
    RestartRequest,
    RevivalPolicy,
    StatusReply,
    StatusRequest,
    Stem,
    encode_frame,
    run_stem,
)
from tests._support import exit_status

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pytest_mock import MockerFixture
    from structlog.typing import FilteringBoundLogger

    from tests._support import (
        FakeClock,
        FakeProcesses,
        FakeSpawner,
        RecordingEventSink,
    )

PARENT_PID = 40


class _Parent:
    def __init__(self) -> None:
        self.pid = PARENT_PID

    def __call__(self) -> int:
        return self.pid


@pytest.fixture
def parent() -> _Parent:
    return _Parent()


@pytest.fixture
def stem(  # noqa: PLR0913
    channel_pair: tuple[Channel, Channel],
    spawner: FakeSpawner,
    event_sink: RecordingEventSink,
    clock: FakeClock,
    logger: FilteringBoundLogger,
    parent: _Parent,
    processes: FakeProcesses,  # noqa: ARG001
) -> Iterator[Stem]:
    _, stem_end = channel_pair
    yield Stem(
        stem_end,
        parent_pid=PARENT_PID,
        policy=RevivalPolicy(base_delay=1.0, max_delay=8.0, stability_threshold=30.0),
        spawner=spawner,
        event_sink=event_sink,
        logger=logger,
        liveness_interval=5.0,
        shutdown_timeout=0.5,
        clock=clock,
        getppid=parent,
    )


def _crash(stem: Stem, processes: FakeProcesses, name: str, code: int = 1) -> None:
    processes.exit(stem.nodes[name].pid, exit_status(code))
    stem.reap()


class TestCreate:
    def test_spawns_node(
        self, stem: Stem, spawner: FakeSpawner, event_sink: RecordingEventSink
    ) -> None:
        stem.create(NodeConfig(name="w"))

        node = stem.nodes["w"]
        assert node.pid == spawner.pids("w")[0]
        assert node.state == NodeState.RUNNING
        assert node.spawn_time is not None
        assert event_sink.types("w") == [NodeEventType.SPAWNED]

    def test_duplicate_is_rejected_and_existing_node_untouched(
        self, stem: Stem, spawner: FakeSpawner
    ) -> None:
        stem.create(NodeConfig(name="w", interface="eth0"))
        pid = stem.nodes["w"].pid

        with pytest.raises(NodeAlreadyExistsError) as exc_info:
            stem.create(NodeConfig(name="w", interface="eth1"))

        assert exc_info.value.node_name == "w"
        assert stem.nodes["w"].pid == pid
        assert stem.nodes["w"].config.interface == "eth0"
        assert len(spawner.spawned) == 1

    def test_spawn_failure_enters_backoff(
        self,
        stem: Stem,
        spawner: FakeSpawner,
        clock: FakeClock,
        event_sink: RecordingEventSink,
    ) -> None:
        spawner.failing.add("w")

        stem.create(NodeConfig(name="w"))

        node = stem.nodes["w"]
        assert node.state == NodeState.BACKOFF
        assert node.revive_at == clock.now + 1.0
        assert node.revival_attempts == 1
        assert event_sink.types("w") == [
            NodeEventType.SPAWN_FAILED,
            NodeEventType.REVIVING,
        ]


class TestDestroy:
    def test_terminates_and_removes_node(
        self,
        stem: Stem,
        processes: FakeProcesses,
        event_sink: RecordingEventSink,
    ) -> None:
        stem.create(NodeConfig(name="w"))
        pid = stem.nodes["w"].pid

        stem.destroy("w")

        assert "w" not in stem.nodes
        assert processes.sent(pid) == [signal.SIGTERM]
        assert event_sink.types("w")[-2:] == [
            NodeEventType.STOPPED,
            NodeEventType.DESTROYED,
        ]

    def test_unknown_name_raises(self, stem: Stem) -> None:
        with pytest.raises(NodeNotFoundError) as exc_info:
            stem.destroy("ghost")

        assert exc_info.value.node_name == "ghost"

    def test_empty_name_destroys_everything(self, stem: Stem) -> None:
        stem.create(NodeConfig(name="a"))
        stem.create(NodeConfig(name="b"))

        stem.destroy()

        assert stem.nodes == {}

    def test_escalates_to_sigkill(
        self,
        stem: Stem,
        processes: FakeProcesses,
        clock: FakeClock,
        event_sink: RecordingEventSink,
        mocker: MockerFixture,
    ) -> None:
        _ = mocker.patch("time.sleep", side_effect=clock.advance)
        processes.ignored.add(signal.SIGTERM)
        stem.create(NodeConfig(name="w"))
        pid = stem.nodes["w"].pid

        stem.destroy("w")

        assert processes.sent(pid) == [signal.SIGTERM, signal.SIGKILL]
        stopped = [e for e in event_sink.events if e.event_type == NodeEventType.STOPPED]
        assert stopped[0].signal_number == signal.SIGKILL

    def test_hung_nodes_share_one_deadline(
        self,
        stem: Stem,
        spawner: FakeSpawner,
        processes: FakeProcesses,
        clock: FakeClock,
        mocker: MockerFixture,
    ) -> None:
        _ = mocker.patch("time.sleep", side_effect=clock.advance)
        processes.ignored.add(signal.SIGTERM)
        for name in ("a", "b", "c"):
            stem.create(NodeConfig(name=name))
        started = clock.now

        stem.destroy()

        assert stem.nodes == {}
        # one 0.5s shutdown timeout for all three, not one each
        assert clock.now - started < 1.0
        for name in ("a", "b", "c"):
            (pid,) = spawner.pids(name)
            assert processes.sent(pid) == [signal.SIGTERM, signal.SIGKILL]

    def test_node_in_backoff_is_removed_without_signals(
        self, stem: Stem, spawner: FakeSpawner, processes: FakeProcesses
    ) -> None:
        spawner.failing.add("w")
        stem.create(NodeConfig(name="w"))

        stem.destroy("w")

        assert "w" not in stem.nodes
        assert processes.signals == []


class TestRestart:
    def test_replaces_process_and_resets_series(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        _crash(stem, processes, "w")
        clock.advance(1.0)
        stem.revive_due(clock.now)
        old_pid = stem.nodes["w"].pid

        stem.restart("w")

        node = stem.nodes["w"]
        assert node.pid != old_pid
        assert node.revival_attempts == 0
        assert node.revival_delay == 1.0
        assert processes.sent(old_pid) == [signal.SIGTERM]

    def test_unknown_name_raises(self, stem: Stem) -> None:
        with pytest.raises(NodeNotFoundError):
            stem.restart("ghost")

    def test_empty_name_restarts_everything(
        self, stem: Stem, spawner: FakeSpawner
    ) -> None:
        stem.create(NodeConfig(name="a"))
        stem.create(NodeConfig(name="b"))

        stem.restart()

        assert len(spawner.pids("a")) == 2
        assert len(spawner.pids("b")) == 2


class TestStatus:
    def test_sorted_by_name(self, stem: Stem) -> None:
        for name in ("c", "a", "b"):
            stem.create(NodeConfig(name=name))

        assert [status.name for status in stem.status()] == ["a", "b", "c"]

    def test_single_node(self, stem: Stem) -> None:
        stem.create(NodeConfig(name="a"))

        (status,) = stem.status("a")

        assert status.state == NodeState.RUNNING

    def test_unknown_name_yields_nothing(self, stem: Stem) -> None:
        assert stem.status("ghost") == ()


class TestRevival:
    def test_unexpected_exit_schedules_revival(
        self,
        stem: Stem,
        processes: FakeProcesses,
        clock: FakeClock,
        event_sink: RecordingEventSink,
    ) -> None:
        stem.create(NodeConfig(name="w"))

        _crash(stem, processes, "w", code=3)

        node = stem.nodes["w"]
        assert node.pid == 0
        assert node.exit_status == 3
        assert node.state == NodeState.BACKOFF
        assert node.revive_at == clock.now + 1.0
        assert node.revival_attempts == 1
        assert node.revival_delay == 2.0
        assert event_sink.types("w")[-2:] == [
            NodeEventType.EXITED,
            NodeEventType.REVIVING,
        ]

    def test_signal_death_is_recorded(
        self, stem: Stem, processes: FakeProcesses
    ) -> None:
        stem.create(NodeConfig(name="w"))
        processes.exit(stem.nodes["w"].pid, signal.SIGSEGV)

        stem.reap()

        node = stem.nodes["w"]
        assert node.signal_number == signal.SIGSEGV
        assert node.exit_status == 0

    def test_revival_waits_for_its_delay(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        _crash(stem, processes, "w")

        stem.revive_due(clock.now + 0.5)
        assert stem.nodes["w"].state == NodeState.BACKOFF

        stem.revive_due(clock.now + 1.0)
        assert stem.nodes["w"].state == NodeState.RUNNING

    def test_delays_double_up_to_ceiling(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        delays: list[float] = []

        for _ in range(5):
            _crash(stem, processes, "w")
            revive_at = stem.nodes["w"].revive_at
            assert revive_at is not None
            delays.append(revive_at - clock.now)
            clock.now = revive_at
            stem.revive_due(clock.now)

        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
        assert stem.nodes["w"].revival_attempts == 5

    def test_stable_run_resets_series(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        for _ in range(2):
            _crash(stem, processes, "w")
            clock.advance(10.0)
            stem.revive_due(clock.now)

        clock.advance(31.0)
        _crash(stem, processes, "w")

        node = stem.nodes["w"]
        assert node.revival_attempts == 1
        assert node.revive_at == clock.now + 1.0

    def test_reset_while_running_after_threshold(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        _crash(stem, processes, "w")
        clock.advance(1.0)
        stem.revive_due(clock.now)

        stem.reset_stable(clock.now + 29.0)
        assert stem.nodes["w"].revival_attempts == 1

        stem.reset_stable(clock.now + 30.0)
        assert stem.nodes["w"].revival_attempts == 0
        assert stem.nodes["w"].revival_delay == 1.0

    def test_killed_node_is_not_revived(
        self, stem: Stem, processes: FakeProcesses, event_sink: RecordingEventSink
    ) -> None:
        stem.create(NodeConfig(name="w"))
        stem.nodes["w"].killed = True

        _crash(stem, processes, "w")

        assert stem.nodes["w"].state == NodeState.STOPPED
        assert NodeEventType.REVIVING not in event_sink.types("w")

    def test_unknown_children_are_ignored(
        self, stem: Stem, processes: FakeProcesses
    ) -> None:
        stem.create(NodeConfig(name="w"))
        processes.exit(999_999, 0)

        stem.reap()

        assert stem.nodes["w"].state == NodeState.RUNNING

    def test_next_deadline_is_earliest_revival(
        self, stem: Stem, processes: FakeProcesses
    ) -> None:
        stem.create(NodeConfig(name="w"))
        _crash(stem, processes, "w")

        assert stem.next_deadline() == stem.nodes["w"].revive_at


class TestHandleMessage:
    def test_create_acks(self, stem: Stem) -> None:
        reply = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        assert isinstance(reply, Ack)
        assert "w" in stem.nodes

    def test_duplicate_create_is_reported(self, stem: Stem) -> None:
        _ = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        reply = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        assert isinstance(reply, ErrorReply)
        assert reply.kind == ErrorKind.ALREADY_EXISTS

    def test_destroy_unknown_is_reported(self, stem: Stem) -> None:
        reply = stem.handle_message(DestroyRequest(name="ghost"))

        assert reply == ErrorReply(kind=ErrorKind.NOT_FOUND, message="node 'ghost' not found")

    def test_restart_acks(self, stem: Stem) -> None:
        _ = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        assert isinstance(stem.handle_message(RestartRequest()), Ack)

    def test_status_replies_with_snapshots(self, stem: Stem) -> None:
        _ = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        reply = stem.handle_message(StatusRequest())

        assert isinstance(reply, StatusReply)
        assert [status.name for status in reply.nodes] == ["w"]

    def test_unexpected_errors_become_internal_replies(
        self,
        channel_pair: tuple[Channel, Channel],
        logger: FilteringBoundLogger,
    ) -> None:
        def crashing_spawner(config: NodeConfig) -> int:
            msg = "boom"
            raise RuntimeError(msg)

        _, stem_end = channel_pair
        stem = Stem(
            stem_end,
            parent_pid=PARENT_PID,
            spawner=crashing_spawner,
            logger=logger,
            getppid=lambda: PARENT_PID,
        )

        reply = stem.handle_message(CreateRequest(config=NodeConfig(name="w")))

        assert reply == ErrorReply(kind=ErrorKind.INTERNAL, message="boom")

    def test_replies_are_not_requests(self, stem: Stem) -> None:
        reply = stem.handle_message(Ack())

        assert isinstance(reply, ErrorReply)
        assert reply.kind == ErrorKind.INTERNAL


class TestProcess:
    def test_serves_requests_from_channel(
        self, stem: Stem, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, _ = channel_pair
        supervisor_end.send(CreateRequest(config=NodeConfig(name="w")))
        supervisor_end.send(StatusRequest(name="w"))

        stem.process()

        ack, status = supervisor_end.receive()
        assert isinstance(ack, Ack)
        assert isinstance(status, StatusReply)
        assert status.nodes[0].state == NodeState.RUNNING

    def test_undecodable_request_gets_error_reply(
        self, stem: Stem, channel_pair: tuple[Channel, Channel]
    ) -> None:
        supervisor_end, _ = channel_pair
        _ = os.write(supervisor_end.write_fd, encode_frame(b"junk"))

        stem.process()

        (reply,) = supervisor_end.receive()
        assert isinstance(reply, ErrorReply)
        assert not stem.done

    def test_invalid_node_config_gets_error_reply(
        self,
        stem: Stem,
        channel_pair: tuple[Channel, Channel],
        processes: FakeProcesses,
    ) -> None:
        supervisor_end, _ = channel_pair
        stem.create(NodeConfig(name="w"))
        pid = stem.nodes["w"].pid
        supervisor_end.send(CreateRequest(config=NodeConfig(name="a", cpu_affinity=-1)))
        supervisor_end.send(StatusRequest())

        stem.process()

        error, status = supervisor_end.receive()
        assert isinstance(error, ErrorReply)
        assert error.kind == ErrorKind.CONFIG_INVALID
        assert "cpu_affinity" in error.message
        assert isinstance(status, StatusReply)
        assert [node.name for node in status.nodes] == ["w"]
        assert not stem.done
        assert stem.nodes["w"].pid == pid
        assert processes.signals == []

    def test_channel_eof_destroys_everything(
        self,
        stem: Stem,
        channel_pair: tuple[Channel, Channel],
        processes: FakeProcesses,
    ) -> None:
        supervisor_end, _ = channel_pair
        stem.create(NodeConfig(name="w"))
        pid = stem.nodes["w"].pid

        supervisor_end.close()
        stem.process()

        assert stem.done
        assert stem.nodes == {}
        assert stem.stop_reason == "supervisor closed the channel"
        assert processes.sent(pid) == [signal.SIGTERM]

    def test_orphaned_stem_stops(
        self, stem: Stem, parent: _Parent, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        stem.process()

        parent.pid = 1
        clock.advance(5.0)
        stem.process()

        assert stem.done
        assert stem.stop_reason is not None
        assert f"parent process {PARENT_PID} is gone" in stem.stop_reason

    def test_sigterm_stops(self, stem: Stem) -> None:
        stem.observe_signal(signal.SIGTERM)
        stem.process()

        assert stem.done
        assert stem.stop_reason == "received SIGTERM"

    def test_sigchld_only_wakes(self, stem: Stem) -> None:
        stem.observe_signal(signal.SIGCHLD)
        stem.process()

        assert not stem.done

    def test_revives_due_nodes(
        self, stem: Stem, processes: FakeProcesses, clock: FakeClock
    ) -> None:
        stem.create(NodeConfig(name="w"))
        processes.exit(stem.nodes["w"].pid, exit_status(1))

        stem.process()
        assert stem.nodes["w"].state == NodeState.BACKOFF

        clock.advance(1.0)
        stem.process()
        assert stem.nodes["w"].state == NodeState.RUNNING


class TestRun:
    @pytest.mark.anyio
    async def test_returns_when_supervisor_goes_away(
        self,
        stem: Stem,
        channel_pair: tuple[Channel, Channel],
        event_sink: RecordingEventSink,
    ) -> None:
        supervisor_end, stem_end = channel_pair
        stem.create(NodeConfig(name="w"))
        supervisor_end.close()

        await stem.run()

        assert stem.done
        assert stem_end.closed
        assert event_sink.types("stem") == [NodeEventType.STEM_STARTED]
        assert event_sink.types("w")[-1] == NodeEventType.DESTROYED


class TestFromConfig:
    def test_applies_settings(self, channel_pair: tuple[Channel, Channel]) -> None:
        _, stem_end = channel_pair
        config = Config.from_dict(
            {
                "supervisor": {
                    "liveness_interval": 0.25,
                    "revival": {"base_delay": 0.5, "max_delay": 4.0},
                }
            }
        )

        stem = Stem.from_config(stem_end, config, parent_pid=PARENT_PID)

        assert stem.parent_pid == PARENT_PID
        assert stem.policy == RevivalPolicy(base_delay=0.5, max_delay=4.0)

    def test_run_stem_exits_cleanly_without_supervisor(
        self,
        channel_pair: tuple[Channel, Channel],
        processes: FakeProcesses,  # noqa: ARG002
    ) -> None:
        supervisor_end, stem_end = channel_pair
        supervisor_end.close()

        assert run_stem(stem_end, Config.from_dict({}), parent_pid=os.getppid()) == 0
        assert stem_end.closed
