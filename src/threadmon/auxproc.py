"""Auxiliary process tracking for threadmon."""

import logging
import os
import re
from collections.abc import Callable, Sequence

import psutil

from threadmon.errors import AuxProcessNotFoundError
from threadmon.models import AuxProcessState, SampleMode
from threadmon.sources import MetricsSource

logger = logging.getLogger(__name__)

PidFinder = Callable[[str], int | None]
LivenessCheck = Callable[[int], bool]


def find_pid(name: str) -> int | None:
    """
    Return the pid of a running process called ``name``, like ``pidof``.

    When several processes share the name the most recent one (highest pid)
    is returned.
    """
    found: list[int] = []
    for proc in psutil.process_iter(attrs=["pid", "name", "exe"]):
        info = proc.info
        exe = info.get("exe") or ""
        if info.get("name") == name or (exe and os.path.basename(exe) == name):
            found.append(info["pid"])
    return max(found) if found else None


def pid_alive(pid: int) -> bool:
    """Check whether ``pid`` is a running, non-zombie process."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # It exists, we just may not look at it
        return True


class AuxProcessMonitor:
    """
    Tracks a fixed list of named auxiliary processes.

    Liveness is strict: a single dead process means the monitored program
    restarted, so the whole session must be set up again with fresh pids.
    Usage collection is lenient: a process missing from one reading only
    leaves its fields blank.
    """

    def __init__(
        self,
        names: Sequence[str],
        source: MetricsSource,
        pid_finder: PidFinder = find_pid,
        liveness: LivenessCheck = pid_alive,
    ) -> None:
        self._names = tuple(names)
        self._source = source
        self._find_pid = pid_finder
        self._is_alive = liveness
        self._states: list[AuxProcessState] = []

    @property
    def names(self) -> tuple[str, ...]:
        """Configured process names, in column order."""
        return self._names

    @property
    def states(self) -> list[AuxProcessState]:
        """States captured by the last :meth:`setup`."""
        return self._states

    def setup(self) -> list[AuxProcessState]:
        """
        Capture the pid of every configured process.

        Raises:
            AuxProcessNotFoundError: One of the names has no running process.
        """
        states = []
        for name in self._names:
            pid = self._find_pid(name)
            if pid is None:
                raise AuxProcessNotFoundError(name)
            states.append(AuxProcessState(name=name, pid=pid))
        self._states = states
        return states

    def reset(self) -> None:
        """Forget the captured pids."""
        self._states = []

    def check_alive(self) -> bool:
        """Return True only if every captured process is still running."""
        alive = True
        for state in self._states:
            state.alive = self._is_alive(state.pid)
            if not state.alive:
                logger.warning("%s (PID=%d) is dead...", state.name, state.pid)
                alive = False
        return alive

    def collect(self) -> list[AuxProcessState]:
        """Refresh CPU and memory of the captured processes."""
        if not self._states:
            return self._states

        pids = [state.pid for state in self._states]
        pattern = "|".join(re.escape(state.name) for state in self._states)
        snapshot = self._source.sample(pattern, SampleMode.PER_PROCESS, pids)
        by_pid = {entry.id: entry for entry in snapshot}

        for state in self._states:
            entry = by_pid.get(state.pid)
            if entry is None:
                entry = next((e for e in snapshot if state.name in e.display_name), None)
            if entry is None:
                state.last_cpu = None
                state.last_mem = ""
            else:
                state.last_cpu = entry.cpu_percent
                state.last_mem = entry.memory_raw
        return self._states

    def describe(self) -> str:
        """One line per process, for setup logs."""
        return "\n".join(f"    {state.name}, with PID = {state.pid}" for state in self._states)
