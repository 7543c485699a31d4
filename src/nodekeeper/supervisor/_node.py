"""Node process creation and the default node entry point.

The Stem forks one process per node. The child never returns into the
Stem's event loop: it resets inherited signal state, prepares its
environment from the NodeConfig, runs the node entry and leaves through
``os._exit``.
"""

from __future__ import annotations

import importlib
import os
import runpy
import signal
import sys
import threading
import traceback
from pathlib import Path
from typing import TYPE_CHECKING

from nodekeeper.exceptions import SpawnFailedError

from ._liveness import DEFAULT_CHECK_INTERVAL, ParentLivenessMonitor
from ._marshal import node_config_to_json
from ._models import SupervisedNode

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from structlog.typing import FilteringBoundLogger

    from ._models import NodeConfig

type NodeEntry = Callable[[SupervisedNode], int | None]

DEFAULT_NODE_ENTRY = "nodekeeper.supervisor:run_supervised_node"
NODE_NAME_ENV = "NODEKEEPER_NODE_NAME"
NODE_CONFIG_ENV = "NODEKEEPER_NODE_CONFIG"
LIVENESS_INTERVAL_ENV = "NODEKEEPER_LIVENESS_INTERVAL"
ORPHANED_EXIT_STATUS = 1
SETUP_FAILED_EXIT_STATUS = 126

_RESET_SIGNALS = (signal.SIGCHLD, signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def resolve_node_entry(import_path: str) -> NodeEntry:
    """Import a node entry given as ``"module:function"``.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        msg = f"node entry {import_path!r} must look like 'module:function'"
        raise ValueError(msg)
    try:
        target: object = importlib.import_module(module_name)
        for part in attr.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as e:
        msg = f"cannot import node entry {import_path!r}: {e}"
        raise ValueError(msg) from e
    if not callable(target):
        msg = f"node entry {import_path!r} is not callable"
        raise ValueError(msg)
    return target  # pyright: ignore[reportReturnType]


def reset_inherited_signals() -> None:
    """Restore default signal dispositions after fork.

    The parent's event loop installs handlers that would otherwise swallow
    SIGTERM in the child and report it through the parent's wakeup fd.
    """
    signal.set_wakeup_fd(-1)
    for signum in _RESET_SIGNALS:
        signal.signal(signum, signal.SIG_DFL)


def _redirect(path: str, target_fd: int) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        os.dup2(fd, target_fd)
    finally:
        os.close(fd)


def default_log_paths(
    config: NodeConfig, log_dir: str | None
) -> tuple[str | None, str | None]:
    """Return the stdout/stderr files for a node.

    Explicit ``stdout_file``/``stderr_file`` win; otherwise, when
    ``log_dir`` is set, output goes to ``<log_dir>/<name>/stdout.log`` and
    ``stderr.log``.
    """
    stdout_file, stderr_file = config.stdout_file, config.stderr_file
    if log_dir:
        node_dir = Path(log_dir) / config.name
        stdout_file = stdout_file or str(node_dir / "stdout.log")
        stderr_file = stderr_file or str(node_dir / "stderr.log")
    return stdout_file, stderr_file


def prepare_node_process(
    config: NodeConfig,
    *,
    log_dir: str | None = None,
    liveness_interval: float | None = None,
) -> None:
    """Apply a NodeConfig to the current (freshly forked) process.

    Raises:
        OSError: If the affinity, directory or redirections cannot be applied.
    """
    if config.cpu_affinity is not None and hasattr(os, "sched_setaffinity"):
        os.sched_setaffinity(0, {config.cpu_affinity})

    if config.directory:
        Path(config.directory).mkdir(parents=True, exist_ok=True)
        os.chdir(config.directory)

    stdout_file, stderr_file = default_log_paths(config, log_dir)
    sys.stdout.flush()
    sys.stderr.flush()
    if stdout_file:
        _redirect(stdout_file, 1)
    if stderr_file:
        _redirect(stderr_file, 2)

    os.environ[NODE_NAME_ENV] = config.name
    os.environ[NODE_CONFIG_ENV] = node_config_to_json(config)
    if liveness_interval is not None:
        os.environ[LIVENESS_INTERVAL_ENV] = str(liveness_interval)


def _exit_status(code: object) -> int:
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    print(code, file=sys.stderr)  # noqa: T201
    return 1


def fork_node(
    config: NodeConfig,
    entry: NodeEntry,
    *,
    close_fds: Iterable[int] = (),
    log_dir: str | None = None,
    liveness_interval: float | None = None,
) -> int:
    """Fork a node process running ``entry``.

    Args:
        config: The node's configuration.
        entry: Callable run inside the child; its return value is the exit
            status.
        close_fds: Descriptors of the parent's to close in the child.
        log_dir: Default directory for node output, see default_log_paths.
        liveness_interval: Parent check interval exported to the node.

    Returns:
        The child's pid (only in the parent).

    Raises:
        SpawnFailedError: If the fork itself fails.
    """
    parent_pid = os.getpid()
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        pid = os.fork()
    except OSError as e:
        msg = f"cannot fork node '{config.name}': {e.strerror}"
        raise SpawnFailedError(msg, node_name=config.name, cause=e) from e
    if pid:
        return pid

    status = SETUP_FAILED_EXIT_STATUS
    try:
        reset_inherited_signals()
        for fd in close_fds:
            os.close(fd)
        prepare_node_process(
            config, log_dir=log_dir, liveness_interval=liveness_interval
        )
        # from here on an escaping exception is the node's failure
        status = 1
        node = SupervisedNode(config=config, parent_pid=parent_pid)
        status = _exit_status(entry(node))
    except SystemExit as e:
        status = _exit_status(e.code)
    except Exception:  # noqa: BLE001
        traceback.print_exc()
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(status)


def _orphaned_exit(logger: FilteringBoundLogger | None) -> Callable[[Exception], None]:
    def _terminate(error: Exception) -> None:
        if logger is not None:
            logger.warning("parent_lost", reason=str(error))
        sys.stderr.flush()
        os._exit(ORPHANED_EXIT_STATUS)

    return _terminate


def run_supervised_node(
    node: SupervisedNode,
    *,
    check_interval: float | None = None,
) -> int:
    """Default node entry: watch the parent, then run the node's scripts.

    Scripts run in order as ``__main__``. A node without scripts idles
    until it is signaled or orphaned.

    Args:
        node: What the node knows about itself.
        check_interval: Parent liveness check interval in seconds.

    Returns:
        The exit status.
    """
    from nodekeeper.utils import create_node_logger  # noqa: PLC0415

    logger = create_node_logger(node.config.name)
    interval = check_interval or float(
        os.environ.get(LIVENESS_INTERVAL_ENV, DEFAULT_CHECK_INTERVAL)
    )
    monitor = ParentLivenessMonitor(node.parent_pid, interval=interval)
    _ = monitor.start_thread(_orphaned_exit(logger))
    logger.info("node_started", scripts=list(node.config.scripts))

    for script in node.config.scripts:
        runpy.run_path(script, run_name="__main__")

    if not node.config.scripts:
        threading.Event().wait()
    return 0
