"""Stateful property tests for the Stem's node map.

Random sequences of create, destroy, crash and clock advances must keep:
- The node map equal to the set of created-and-not-destroyed names
- Every node either running or waiting for a revival
- Revival delays within the policy bounds
- Live pids unique across nodes
"""

from unittest.mock import patch

import pytest
import structlog
from hypothesis import settings, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from nodekeeper.exceptions import NodeAlreadyExistsError, NodeNotFoundError
from nodekeeper.supervisor import Channel, NodeConfig, NodeState, RevivalPolicy, Stem
from tests._support import FakeClock, FakeProcesses, FakeSpawner, exit_status

POLICY = RevivalPolicy(base_delay=1.0, max_delay=8.0, stability_threshold=30.0)

node_names = st.sampled_from(["alpha", "beta", "gamma", "delta"])


class StemMachine(RuleBasedStateMachine):
    def __init__(self) -> None:
        super().__init__()
        self.processes = FakeProcesses()
        self.spawner = FakeSpawner()
        self.clock = FakeClock()
        self.patches = [
            patch("os.kill", side_effect=self.processes.kill),
            patch("os.waitpid", side_effect=self.processes.waitpid),
        ]
        for active in self.patches:
            _ = active.start()
        self.supervisor_end, self.stem_end = Channel.pair()
        self.stem = Stem(
            self.stem_end,
            parent_pid=1,
            getppid=lambda: 1,
            policy=POLICY,
            spawner=self.spawner,
            logger=structlog.get_logger(),
            clock=self.clock,
        )
        self.expected: set[str] = set()

    @rule(name=node_names)
    def create(self, name: str) -> None:
        if name in self.expected:
            with pytest.raises(NodeAlreadyExistsError):
                self.stem.create(NodeConfig(name=name))
            return
        self.stem.create(NodeConfig(name=name))
        self.expected.add(name)

    @rule(name=node_names)
    def destroy(self, name: str) -> None:
        if name not in self.expected:
            with pytest.raises(NodeNotFoundError):
                self.stem.destroy(name)
            return
        self.stem.destroy(name)
        self.expected.discard(name)

    @rule()
    def destroy_all(self) -> None:
        self.stem.destroy()
        self.expected.clear()

    @rule(name=node_names, code=st.integers(min_value=0, max_value=255))
    def crash(self, name: str, code: int) -> None:
        node = self.stem.nodes.get(name)
        if node is None or node.pid <= 0:
            return
        self.processes.exit(node.pid, exit_status(code))
        self.stem.reap()

    @rule(seconds=st.floats(min_value=0.0, max_value=40.0))
    def advance(self, seconds: float) -> None:
        now = self.clock.advance(seconds)
        self.stem.revive_due(now)
        self.stem.reset_stable(now)

    @invariant()
    def node_map_matches_requests(self) -> None:
        assert set(self.stem.nodes) == self.expected

    @invariant()
    def nodes_are_running_or_backing_off(self) -> None:
        for node in self.stem.nodes.values():
            assert node.state in (NodeState.RUNNING, NodeState.BACKOFF)
            assert (node.pid > 0) == (node.revive_at is None)

    @invariant()
    def delays_within_bounds(self) -> None:
        for node in self.stem.nodes.values():
            assert POLICY.base_delay <= node.revival_delay <= POLICY.max_delay

    @invariant()
    def live_pids_are_unique(self) -> None:
        pids = [node.pid for node in self.stem.nodes.values() if node.pid > 0]
        assert len(pids) == len(set(pids))

    @invariant()
    def status_is_sorted(self) -> None:
        names = [status.name for status in self.stem.status()]
        assert names == sorted(self.expected)

    def teardown(self) -> None:
        for active in self.patches:
            active.stop()
        self.supervisor_end.close()
        self.stem_end.close()


StemMachine.TestCase.settings = settings(
    max_examples=50, stateful_step_count=30, deadline=None
)
TestStemMachine = StemMachine.TestCase
