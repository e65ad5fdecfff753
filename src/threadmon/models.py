"""Data models for threadmon."""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

# Value written for a registered identity that is absent from a snapshot.
MISSING = -1.0


class SampleMode(Enum):
    """How a metrics source groups its output."""

    PER_PROCESS = "process"
    PER_THREAD = "thread"


@dataclass(slots=True, frozen=True)
class Identity:
    """A thread or process captured at session setup."""

    id: int
    display_name: str


@dataclass(slots=True, frozen=True)
class SnapshotEntry:
    """One line of a metrics source reading."""

    id: int  # pid or tid
    cpu_percent: float
    memory_raw: str  # e.g. '13116', '9040m', '44.3g'
    display_name: str


Snapshot = tuple[SnapshotEntry, ...]


@dataclass(slots=True, frozen=True)
class ReconciledSample:
    """CPU usage of every registered identity for one tick."""

    cpu_by_id: Mapping[int, float]
    memory_raw: str = ""

    def values(self) -> list[float]:
        """CPU values in registry order."""
        return list(self.cpu_by_id.values())


@dataclass(slots=True, frozen=True)
class ReconcileResult:
    """Outcome of matching one snapshot against the registry."""

    sample: ReconciledSample
    missing: tuple[int, ...]
    unexpected: tuple[int, ...]

    @property
    def unmatched_count(self) -> int:
        """Number of registered identities absent from the snapshot."""
        return len(self.missing)


@dataclass(slots=True)
class AuxProcessState:
    """Liveness and latest usage of one auxiliary process."""

    name: str
    pid: int
    last_cpu: float | None = None
    last_mem: str = ""
    alive: bool = True


class LoopState(Enum):
    """States of the sampling loop."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DEGRADED = "degraded"


class EventKind(Enum):
    """Kinds of notification emitted by the sampling loop."""

    SESSION = "session"
    ROW = "row"
    DEGRADED = "degraded"
    SETUP_FAILED = "setup-failed"


@dataclass(slots=True, frozen=True)
class LoopEvent:
    """Notification emitted by the sampling loop to its listeners."""

    kind: EventKind
    fields: tuple[str, ...] = ()
    message: str = ""
    path: str = ""
