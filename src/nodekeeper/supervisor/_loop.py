"""anyio driver for IOSource components.

The Supervisor and the Stem are single-threaded: all of their work happens
in ``process()``, which this driver calls whenever a descriptor becomes
readable or a deadline passes. Signals are received by a dedicated task and
forwarded to ``observe_signal``, so handlers never touch component state.
"""

from __future__ import annotations

import math
import time
from typing import TYPE_CHECKING

import anyio
import anyio.abc

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ._protocol import IOSource


async def _forward_signals(source: IOSource, signals: tuple[int, ...]) -> None:
    with anyio.open_signal_receiver(*signals) as received:
        async for signum in received:
            source.observe_signal(signum)


async def _wake_when_readable(fd: int, scope: anyio.CancelScope) -> None:
    await anyio.wait_readable(fd)
    scope.cancel()


async def wait_for_activity(
    fds: Iterable[int],
    deadline: float | None,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Return once any descriptor is readable or ``deadline`` has passed.

    Args:
        fds: Descriptors to wait on.
        deadline: Monotonic time to give up waiting, or None for no limit.
        clock: The monotonic clock ``deadline`` refers to.
    """
    timeout = math.inf if deadline is None else max(0.0, deadline - clock())
    if timeout == 0:
        return
    with anyio.move_on_after(timeout):
        async with anyio.create_task_group() as tg:
            for fd in fds:
                tg.start_soon(_wake_when_readable, fd, tg.cancel_scope)
            # keep the group open even if there is nothing to wait on
            tg.start_soon(anyio.sleep_forever)


async def serve_io_source(
    source: IOSource,
    *,
    signals: Iterable[int] = (),
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Drive ``source`` until it reports ``done``.

    Args:
        source: The component to drive.
        signals: Signal numbers to forward to ``source.observe_signal``.
        clock: Monotonic clock used for ``source.next_deadline()``.
    """
    wanted = tuple(signals)
    async with anyio.create_task_group() as tg:
        if wanted:
            tg.start_soon(_forward_signals, source, wanted)
            # let the receiver install its handlers before the first wait
            await anyio.sleep(0)
        source.process()
        while not source.done:
            await wait_for_activity(source.fds(), source.next_deadline(), clock=clock)
            source.process()
        tg.cancel_scope.cancel()
