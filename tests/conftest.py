"""Shared test fixtures for nodekeeper tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

from nodekeeper.supervisor import Channel

from tests._support import FakeClock, FakeProcesses, FakeSpawner, RecordingEventSink

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pytest_mock import MockerFixture
    from structlog.typing import FilteringBoundLogger


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def logger() -> FilteringBoundLogger:
    return structlog.get_logger()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def processes(mocker: MockerFixture) -> FakeProcesses:
    """Route os.kill and os.waitpid to a fake process table."""
    fake = FakeProcesses()
    _ = mocker.patch("os.kill", side_effect=fake.kill)
    _ = mocker.patch("os.waitpid", side_effect=fake.waitpid)
    return fake


@pytest.fixture
def channel_pair() -> Iterator[tuple[Channel, Channel]]:
    """A connected (supervisor_end, stem_end) pair, closed afterwards."""
    supervisor_end, stem_end = Channel.pair()
    yield supervisor_end, stem_end
    supervisor_end.close()
    stem_end.close()
