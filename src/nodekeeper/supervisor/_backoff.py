"""Exponential backoff policy for node revivals.

A node that crashes right after every start must not spin the host, so each
consecutive unplanned death doubles the wait before the next revival, up to a
ceiling. A run that outlives the stability threshold resets the series.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RevivalPolicy:
    """Revival delay calculator.

    The delay sequence for consecutive unplanned deaths is:
        base, base * multiplier, base * multiplier^2, ... capped at max_delay

    Attributes:
        base_delay: Seconds to wait before the first revival.
        max_delay: Ceiling for the revival delay in seconds.
        multiplier: Factor applied to the delay after each revival.
        stability_threshold: Seconds a process must stay up before its
            revival series is reset.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    stability_threshold: float = 30.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            msg = "base_delay must be positive"
            raise ValueError(msg)
        if self.max_delay < self.base_delay:
            msg = "max_delay must not be smaller than base_delay"
            raise ValueError(msg)
        if self.multiplier < 1:
            msg = "multiplier must be at least 1"
            raise ValueError(msg)

    def next_delay(self, current: float) -> float:
        """Return the delay to use after a revival that waited ``current``.

        Args:
            current: The delay the revival being scheduled waits.

        Returns:
            The delay for the following unplanned death.
        """
        return min(current * self.multiplier, self.max_delay)

    def is_stable(self, uptime: float) -> bool:
        """Return whether a process that ran for ``uptime`` seconds was stable."""
        return uptime >= self.stability_threshold
