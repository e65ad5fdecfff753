"""Runtime configuration for threadmon."""

import re
from dataclasses import dataclass
from pathlib import Path

BACKENDS = ("top", "pidstat")

# Shortest allowed pause between two ticks (seconds).
MIN_INTERVAL = 0.1


@dataclass(slots=True)
class MonitorConfig:
    """
    Settings for one monitoring run.

    Fixed for the lifetime of the process: restarting the process is the
    only way to change them.
    """

    thread_pattern: str = "multithread"
    aux_names: tuple[str, ...] = ()
    backend: str = "top"
    interval: float = 1.0
    top_delay: float = 5.0
    backoff: float = 120.0
    missing_threshold: float = 0.5
    comma_decimal: bool = True
    output_dir: Path = Path(".")
    verbose: bool = False
    echo_rows: int = 5
    log_file: Path | None = None

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown metrics backend {self.backend!r}, expected one of {BACKENDS}")
        if not 0.0 <= self.missing_threshold <= 1.0:
            raise ValueError("missing_threshold must be between 0 and 1")
        try:
            re.compile(self.thread_pattern)
        except re.error as exc:
            raise ValueError(f"Invalid thread regex {self.thread_pattern!r}: {exc}") from exc
        self.interval = max(MIN_INTERVAL, self.interval)
        self.backoff = max(0.0, self.backoff)
        self.aux_names = tuple(self.aux_names)
        self.output_dir = Path(self.output_dir)

    @property
    def use_pidstat(self) -> bool:
        """Whether pidstat rather than top provides the samples."""
        return self.backend == "pidstat"
