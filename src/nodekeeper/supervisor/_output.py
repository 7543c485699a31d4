"""Event sink implementations for the supervisor system.

This module provides concrete implementations of the EventSink protocol
for displaying and discarding lifecycle events.
"""

from __future__ import annotations

import signal
from typing import TYPE_CHECKING, final

from rich.console import Console
from rich.style import Style
from rich.text import Text

from ._models import NodeEventType

if TYPE_CHECKING:
    from ._models import NodeEvent


@final
class ConsoleEventSink:
    """Event sink that prints events with a ``[name]`` prefix.

    Color coding follows event severity:
    - spawned/started: green
    - exited/spawn failures: red
    - reviving: cyan
    - stopped/destroyed: yellow
    """

    __slots__ = ("_console", "_event_styles")

    def __init__(self, console: Console | None = None) -> None:
        """Initialize the event sink.

        Args:
            console: Rich Console instance for output. If None, creates a new one.
        """
        self._console = console or Console(stderr=True)
        self._event_styles: dict[NodeEventType, Style] = {
            NodeEventType.SPAWNED: Style(color="green", bold=True),
            NodeEventType.EXITED: Style(color="red", bold=True),
            NodeEventType.STOPPED: Style(color="yellow"),
            NodeEventType.REVIVING: Style(color="cyan"),
            NodeEventType.SPAWN_FAILED: Style(color="red"),
            NodeEventType.DESTROYED: Style(color="yellow", dim=True),
            NodeEventType.STEM_STARTED: Style(color="green"),
            NodeEventType.STEM_EXITED: Style(color="magenta", bold=True),
        }

    def write_event(self, event: NodeEvent) -> None:
        """Write a lifecycle event with special formatting.

        Args:
            event: The lifecycle event to record.
        """
        style = self._event_styles.get(event.event_type, Style())

        text = Text()
        _ = text.append(f"[{event.node_name}]", style=Style(color="blue", bold=True))
        _ = text.append(" ")
        _ = text.append(event.event_type.value.upper(), style=style)

        if event.pid is not None:
            _ = text.append(f" (pid={event.pid})", style=Style(dim=True))

        if event.exit_status is not None:
            _ = text.append(f" exit_status={event.exit_status}", style=Style(dim=True))

        if event.signal_number:
            try:
                name = signal.Signals(event.signal_number).name
            except ValueError:
                name = str(event.signal_number)
            _ = text.append(f" signal={name}", style=Style(dim=True))

        if event.message:
            _ = text.append(f" - {event.message}", style=style)

        self._console.print(text)


@final
class NullEventSink:
    """Event sink that drops every event."""

    __slots__ = ()

    def write_event(self, event: NodeEvent) -> None:
        """Discard the event."""
