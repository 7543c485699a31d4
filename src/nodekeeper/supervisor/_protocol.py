"""Protocol definitions for the supervisor system.

This module defines the interfaces that decouple the process tree core from
its surroundings:
- EventSink: Protocol for consuming lifecycle events
- IOSource: Protocol the event loop driver uses to run the Supervisor and
  the Stem
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ._models import NodeEvent


@runtime_checkable
class EventSink(Protocol):
    """Protocol for consuming node and Stem lifecycle events.

    Sinks are called synchronously from the owning process's event loop and
    must not block for long.
    """

    def write_event(self, event: NodeEvent) -> None:
        """Record a lifecycle event.

        Args:
            event: The lifecycle event to record.
        """
        ...


@runtime_checkable
class IOSource(Protocol):
    """Protocol for a component driven by the event loop.

    The loop waits until one of ``fds()`` is readable or the monotonic
    ``next_deadline()`` passes, then calls ``process()``. Signals are
    forwarded through ``observe_signal``, which must only record the signal
    and wake the loop.
    """

    @property
    def done(self) -> bool:
        """Return True once the source wants the loop to stop."""
        ...

    def fds(self) -> list[int]:
        """Return the descriptors to wait on for readability."""
        ...

    def next_deadline(self) -> float | None:
        """Return the next monotonic time ``process()`` must run, if any."""
        ...

    def process(self) -> None:
        """Handle whatever became ready. Must not block indefinitely."""
        ...

    def observe_signal(self, signo: int) -> None:
        """Record a delivered signal and wake the loop."""
        ...
