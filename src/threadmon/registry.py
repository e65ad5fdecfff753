"""Identity registry: the threads a session expects to see."""

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from threadmon.errors import NoMatchError
from threadmon.models import Identity, SampleMode, Snapshot
from threadmon.sources import MetricsSource

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IdentityRegistry:
    """
    Immutable id -> display name mapping captured once per session.

    Iteration order is insertion order, which is also the column order of
    the output file. Rebuilding means discarding the registry and calling
    :meth:`initialize` again.
    """

    names: Mapping[int, str]

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "IdentityRegistry":
        """Build a registry from every distinct id of ``snapshot``."""
        names: dict[int, str] = {}
        for entry in snapshot:
            names.setdefault(entry.id, entry.display_name)
        return cls(MappingProxyType(names))

    @classmethod
    def initialize(
        cls,
        source: MetricsSource,
        pattern: str,
        mode: SampleMode = SampleMode.PER_THREAD,
    ) -> "IdentityRegistry":
        """
        Query ``source`` once and capture the matching identities.

        Raises:
            NoMatchError: Nothing matches ``pattern``.
        """
        registry = cls.from_snapshot(source.sample(pattern, mode))
        if not registry:
            raise NoMatchError(pattern)
        logger.info("Thread regex %s matches %d threads", pattern, len(registry))
        return registry

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[int]:
        return iter(self.names)

    def __contains__(self, ident: object) -> bool:
        return ident in self.names

    def identities(self) -> list[Identity]:
        """Identities in column order."""
        return [Identity(id=ident, display_name=name) for ident, name in self.names.items()]

    def display_names(self) -> list[str]:
        """Display names in column order."""
        return list(self.names.values())
