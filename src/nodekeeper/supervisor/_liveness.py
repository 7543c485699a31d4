"""Parent process liveness polling.

Every supervised process (the Stem and each node) records its parent pid at
startup and periodically compares it with ``os.getppid()``. When the parent
dies the OS reparents the process, the pids differ, and the process
terminates itself. Detection lags by at most one check interval.
"""

from __future__ import annotations

import os
import threading
from typing import TYPE_CHECKING, final

from nodekeeper.exceptions import ParentLostError

if TYPE_CHECKING:
    from collections.abc import Callable

DEFAULT_CHECK_INTERVAL = 1.0


@final
class ParentLivenessMonitor:
    """Detects orphaning by polling the parent process id.

    Attributes:
        parent_pid: The parent pid recorded at startup.
        interval: Seconds between two checks.
    """

    __slots__ = ("_getppid", "_next_check", "interval", "parent_pid")

    def __init__(
        self,
        parent_pid: int | None = None,
        *,
        interval: float = DEFAULT_CHECK_INTERVAL,
        getppid: Callable[[], int] = os.getppid,
    ) -> None:
        """Initialize the monitor.

        Args:
            parent_pid: Expected parent pid. Defaults to the current parent.
            interval: Seconds between two checks.
            getppid: Source of the current parent pid.
        """
        if interval <= 0:
            msg = "liveness check interval must be positive"
            raise ValueError(msg)
        self._getppid = getppid
        self.parent_pid: int = parent_pid if parent_pid is not None else getppid()
        self.interval: float = interval
        self._next_check: float | None = None

    def orphaned(self) -> bool:
        """Return whether the recorded parent is no longer our parent."""
        return self._getppid() != self.parent_pid

    def check(self) -> None:
        """Verify the parent is unchanged.

        Raises:
            ParentLostError: If the process has been orphaned.
        """
        current = self._getppid()
        if current != self.parent_pid:
            msg = f"parent process {self.parent_pid} is gone (now {current})"
            raise ParentLostError(
                msg, expected_parent=self.parent_pid, current_parent=current
            )

    def next_deadline(self, now: float) -> float:
        """Return the monotonic time of the next due check."""
        if self._next_check is None:
            self._next_check = now + self.interval
        return self._next_check

    def poll(self, now: float) -> None:
        """Run the check if it is due and schedule the next one.

        Args:
            now: The current monotonic time.

        Raises:
            ParentLostError: If the check ran and found the process orphaned.
        """
        if now < self.next_deadline(now):
            return
        self._next_check = now + self.interval
        self.check()

    def watch(
        self,
        on_orphaned: Callable[[ParentLostError], None],
        *,
        stop: threading.Event | None = None,
    ) -> None:
        """Check every interval until orphaned or ``stop`` is set.

        Args:
            on_orphaned: Called once with the detection error.
            stop: Optional event that ends the watch early.
        """
        stop = stop or threading.Event()
        while not stop.wait(self.interval):
            try:
                self.check()
            except ParentLostError as e:
                on_orphaned(e)
                return

    def start_thread(
        self,
        on_orphaned: Callable[[ParentLostError], None],
        *,
        stop: threading.Event | None = None,
    ) -> threading.Thread:
        """Run ``watch`` on a daemon thread and return the thread."""
        thread = threading.Thread(
            target=self.watch,
            args=(on_orphaned,),
            kwargs={"stop": stop},
            name="parent-liveness",
            daemon=True,
        )
        thread.start()
        return thread

