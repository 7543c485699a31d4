"""Supervisor configuration models.

This module provides the Pydantic models for the ``[supervisor]`` and
``[supervisor.revival]`` sections.
"""

from pathlib import Path
from typing import ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nodekeeper.supervisor._backoff import RevivalPolicy
from nodekeeper.supervisor._node import DEFAULT_NODE_ENTRY
from nodekeeper.utils import get_control_socket_path


class RevivalSettings(BaseModel):
    """Revival backoff configuration section.

    Attributes:
        base_delay: Seconds to wait before the first revival.
        max_delay: Ceiling for the revival delay.
        multiplier: Factor applied to the delay after each revival.
        stability_threshold: Uptime after which the revival series resets.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1)
    stability_threshold: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _check_ceiling(self) -> Self:
        if self.max_delay < self.base_delay:
            msg = "max_delay must not be smaller than base_delay"
            raise ValueError(msg)
        return self

    def policy(self) -> RevivalPolicy:
        """Build the RevivalPolicy described by this section."""
        return RevivalPolicy(
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            stability_threshold=self.stability_threshold,
        )


class SupervisorSettings(BaseModel):
    """Supervisor configuration section.

    Attributes:
        stem_executable: Interpreter used to re-create the Stem (defaults to
            the running interpreter).
        control_socket: Path of the control API socket (empty for the
            platform default).
        request_timeout: Seconds a control request may wait for the Stem.
        shutdown_timeout: Seconds to wait after SIGTERM before SIGKILL.
        liveness_interval: Seconds between parent liveness checks.
        node_entry: ``module:function`` run inside every node process.
        node_log_dir: Default directory for node stdout/stderr (empty keeps
            the Stem's streams).
        revival: Revival backoff settings.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    stem_executable: str = ""
    control_socket: str = ""
    request_timeout: float = Field(default=10.0, gt=0)
    shutdown_timeout: float = Field(default=5.0, gt=0)
    liveness_interval: float = Field(default=1.0, gt=0)
    node_entry: str = Field(default=DEFAULT_NODE_ENTRY, pattern=r"^[\w.]+:[\w.]+$")
    node_log_dir: str = ""
    revival: RevivalSettings = Field(default_factory=RevivalSettings)

    def control_socket_path(self) -> Path:
        """Return the configured control socket path or the default one."""
        if self.control_socket:
            return Path(self.control_socket).expanduser()
        return get_control_socket_path()
