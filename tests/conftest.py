"""Shared fixtures for threadmon tests."""

from datetime import datetime

import pytest

from threadmon.models import SampleMode, Snapshot, SnapshotEntry


def snap(*entries: tuple[int, float, str, str]) -> Snapshot:
    """Build a snapshot from (id, cpu, memory, name) tuples."""
    return tuple(
        SnapshotEntry(id=ident, cpu_percent=cpu, memory_raw=mem, display_name=name)
        for ident, cpu, mem, name in entries
    )


class FakeSource:
    """Metrics source replaying prepared snapshots."""

    name = "top"

    def __init__(self, thread_snapshots=(), process_snapshot: Snapshot = ()) -> None:
        self.thread_snapshots = list(thread_snapshots)
        self.process_snapshot = process_snapshot
        self.calls: list[tuple[str, SampleMode, tuple[int, ...]]] = []
        self.error: Exception | None = None

    def sample(self, pattern, mode, pids=()):
        self.calls.append((pattern, mode, tuple(pids)))
        if self.error is not None:
            raise self.error
        if mode is SampleMode.PER_PROCESS:
            return self.process_snapshot
        if len(self.thread_snapshots) > 1:
            return self.thread_snapshots.pop(0)
        return self.thread_snapshots[0] if self.thread_snapshots else ()


class FixedClock:
    """Clock returning a fixed instant."""

    def __init__(self, now: datetime = datetime(2015, 3, 2, 17, 38, 48)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def workers() -> Snapshot:
    """Two threads of one process sharing its virtual memory."""
    return snap((101, 3.5, "3.5g", "worker/0"), (102, 1.2, "3.5g", "worker/1"))


class FakeProcesses:
    """Name -> pid table with a controllable set of live pids."""

    def __init__(self, pids: dict[str, int]) -> None:
        self.pids = dict(pids)
        self.alive = set(pids.values())

    def find(self, name: str) -> int | None:
        return self.pids.get(name)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def restart(self, name: str, new_pid: int) -> None:
        self.alive.discard(self.pids[name])
        self.pids[name] = new_pid
        self.alive.add(new_pid)
