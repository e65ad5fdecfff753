"""Matching of fresh snapshots against the session registry."""

import logging
from types import MappingProxyType

from threadmon.models import MISSING, ReconciledSample, ReconcileResult, Snapshot
from threadmon.registry import IdentityRegistry

logger = logging.getLogger(__name__)


def reconcile(registry: IdentityRegistry, snapshot: Snapshot) -> ReconcileResult:
    """
    Match ``snapshot`` against ``registry``.

    Every registered id gets its CPU usage, or :data:`MISSING` when it is
    absent from the snapshot. Ids unknown to the registry are reported but
    never produce a value. The memory of the first entry is carried along:
    in thread mode all entries share the owning process's memory.
    """
    cpu_by_snapshot_id: dict[int, float] = {}
    unexpected: list[int] = []
    for entry in snapshot:
        if entry.id in cpu_by_snapshot_id:
            continue
        cpu_by_snapshot_id[entry.id] = entry.cpu_percent
        if entry.id not in registry:
            unexpected.append(entry.id)

    cpu_by_id: dict[int, float] = {}
    missing: list[int] = []
    for ident in registry:
        if ident in cpu_by_snapshot_id:
            cpu_by_id[ident] = cpu_by_snapshot_id[ident]
        else:
            cpu_by_id[ident] = MISSING
            missing.append(ident)

    memory_raw = snapshot[0].memory_raw if snapshot else ""
    return ReconcileResult(
        sample=ReconciledSample(cpu_by_id=MappingProxyType(cpu_by_id), memory_raw=memory_raw),
        missing=tuple(missing),
        unexpected=tuple(unexpected),
    )


class SnapshotReconciler:
    """
    Per-session reconciler that warns once per missing or unexpected id.

    A new instance must be created for every session so that warnings from
    a previous session never silence the next one.
    """

    def __init__(self, registry: IdentityRegistry) -> None:
        self._registry = registry
        self._warned_missing: set[int] = set()
        self._warned_unexpected: set[int] = set()

    @property
    def registry(self) -> IdentityRegistry:
        """The registry this reconciler matches against."""
        return self._registry

    def reconcile(self, snapshot: Snapshot) -> ReconcileResult:
        """Reconcile ``snapshot`` and log first-time anomalies."""
        result = reconcile(self._registry, snapshot)

        for ident in result.missing:
            if ident not in self._warned_missing:
                self._warned_missing.add(ident)
                logger.warning(
                    "Thread %s (id %d) is missing; logging -1 for it from now on",
                    self._registry.names[ident],
                    ident,
                )

        if result.unexpected:
            names = {entry.id: entry.display_name for entry in snapshot}
            for ident in result.unexpected:
                if ident not in self._warned_unexpected:
                    self._warned_unexpected.add(ident)
                    logger.warning(
                        "New thread %s (id %d) appeared after setup; it will not be logged",
                        names[ident],
                        ident,
                    )

        return result
