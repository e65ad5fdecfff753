"""
Metrics sources for threadmon.

A metrics source turns the text printed by a system utility into a
:data:`~threadmon.models.Snapshot`. Everything that knows about column
positions lives here; the rest of the package only sees snapshot entries.
"""

import logging
import os
import re
import subprocess
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

from threadmon.errors import MetricsSourceError
from threadmon.models import SampleMode, Snapshot, SnapshotEntry

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], str]

# Upper bound for one utility invocation, on top of its own sampling delay.
COMMAND_TIMEOUT = 30.0

THREAD_PREFIX = "|__"


def run_command(args: Sequence[str], timeout: float = COMMAND_TIMEOUT) -> str:
    """
    Run a utility and return its standard output.

    Raises:
        MetricsSourceError: The utility is missing, timed out or exited non-zero.
    """
    env = dict(os.environ, LC_ALL="C")
    try:
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except FileNotFoundError as exc:
        raise MetricsSourceError(f"{args[0]} is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise MetricsSourceError(f"{args[0]} did not answer within {timeout:.0f}s") from exc

    if completed.returncode != 0:
        raise MetricsSourceError(
            f"{' '.join(args)} exited with status {completed.returncode}: {completed.stderr.strip()}"
        )
    return completed.stdout


def _to_float(text: str) -> float:
    return float(text.replace(",", "."))


def _matches(pattern: re.Pattern[str] | None, name: str) -> bool:
    return pattern is None or pattern.search(name) is not None


def _compile(pattern: str) -> re.Pattern[str] | None:
    return re.compile(pattern) if pattern else None


def _is_header(tokens: list[str]) -> bool:
    has_id = "PID" in tokens or "TGID" in tokens
    return has_id and ("COMMAND" in tokens or "Command" in tokens)


def parse_top_output(text: str, pattern: str = "") -> Snapshot:
    """
    Parse the task area of ``top -b -n 1``.

    Columns are located by their header names, so any field layout that
    includes PID, VIRT, %CPU and COMMAND is understood. Entries are returned
    sorted by id; with threads shown, PID is the thread id.
    """
    regex = _compile(pattern)
    header: list[str] | None = None
    entries: list[SnapshotEntry] = []

    for line in text.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        if header is None:
            if _is_header(tokens):
                header = tokens
            continue

        fields = line.split(None, len(header) - 1)
        if len(fields) < len(header):
            continue
        try:
            entry = SnapshotEntry(
                id=int(fields[header.index("PID")]),
                cpu_percent=_to_float(fields[header.index("%CPU")]),
                memory_raw=fields[header.index("VIRT")],
                display_name=fields[header.index("COMMAND")].strip(),
            )
        except (ValueError, IndexError):
            logger.debug("Skipping unparsable top line: %r", line)
            continue
        if _matches(regex, entry.display_name):
            entries.append(entry)

    if header is None and text.strip():
        raise MetricsSourceError("top output has no task header line")

    return tuple(sorted(entries, key=lambda e: e.id))


def _pidstat_sections(text: str) -> tuple[list[dict[str, str]], list[dict[str, str]]]:
    """Split pidstat output into its CPU rows and memory rows."""
    cpu_rows: list[dict[str, str]] = []
    mem_rows: list[dict[str, str]] = []
    header: list[str] | None = None
    target: list[dict[str, str]] | None = None

    for line in text.splitlines():
        tokens = line.split()
        if not tokens or tokens[0].startswith("Average"):
            continue
        if _is_header(tokens):
            header = tokens
            if "RSS" in tokens:
                target = mem_rows
            elif "%CPU" in tokens:
                target = cpu_rows
            else:
                target = None
            continue
        if header is None or target is None:
            continue

        fields = line.split(None, len(header) - 1)
        if len(fields) == len(header):
            target.append(dict(zip(header, fields)))

    return cpu_rows, mem_rows


def parse_pidstat_output(text: str, mode: SampleMode, pattern: str = "") -> Snapshot:
    """
    Parse the output of ``pidstat -u -r [-t]``.

    The CPU section provides %CPU and the memory section provides VSZ; rows
    of the two sections are matched by id. In thread mode only the thread
    lines (``|__name``) are kept. Both the ``PID TID`` and the newer
    ``TGID TID`` headers are understood.
    """
    regex = _compile(pattern)
    cpu_rows, mem_rows = _pidstat_sections(text)

    def select(rows: list[dict[str, str]]) -> dict[int, dict[str, str]]:
        selected: dict[int, dict[str, str]] = {}
        for row in rows:
            tid = row.get("TID", "-")
            if mode is SampleMode.PER_THREAD:
                if tid == "-":
                    continue
                key = tid
            else:
                if tid != "-":
                    continue
                key = row.get("PID") or row.get("TGID", "")
            name = row["Command"].strip().removeprefix(THREAD_PREFIX)
            if not _matches(regex, name):
                continue
            try:
                selected[int(key)] = dict(row, Command=name)
            except ValueError:
                logger.debug("Skipping pidstat row with id %r", key)
        return selected

    cpu_by_id = select(cpu_rows)
    mem_by_id = select(mem_rows)
    if len(cpu_by_id) != len(mem_by_id):
        raise MetricsSourceError(
            f"Mismatching number of CPU/MEM lines from pidstat: {len(cpu_by_id)} vs {len(mem_by_id)}"
        )

    entries = []
    for ident in sorted(cpu_by_id):
        cpu_row = cpu_by_id[ident]
        mem_row = mem_by_id.get(ident)
        if mem_row is None:
            raise MetricsSourceError(f"pidstat reported CPU but no memory for id {ident}")
        entries.append(
            SnapshotEntry(
                id=ident,
                cpu_percent=_to_float(cpu_row["%CPU"]),
                memory_raw=mem_row["VSZ"],
                display_name=cpu_row["Command"],
            )
        )
    return tuple(entries)


class MetricsSource(Protocol):
    """Anything able to produce a snapshot for a name filter."""

    name: str

    def sample(self, pattern: str, mode: SampleMode, pids: Iterable[int] = ()) -> Snapshot:
        """Return the current usage of tasks matching ``pattern`` (or ``pids``)."""
        ...


class TopSource:
    """
    Metrics source backed by procps ``top`` in batch mode.

    ``top`` averages CPU usage over its refresh delay, so a longer delay
    gives smoother values at the cost of temporal resolution.
    """

    name = "top"

    def __init__(self, delay: float = 5.0, runner: CommandRunner = run_command) -> None:
        self._delay = delay
        self._run = runner
        self._probed = False
        self._delay_args: list[str] = []
        self._is_procps_ng = True

    def _probe(self) -> None:
        """Detect the top flavour and whether the delay option is allowed."""
        if self._probed:
            return
        try:
            self._is_procps_ng = "procps-ng" in self._run(["top", "-v"])
        except MetricsSourceError:
            # Old top prints its version on stderr and may exit non-zero
            self._is_procps_ng = False

        delay = f"{self._delay:g}"
        try:
            self._run(["top", "-b", "-n", "1", "-d", delay])
        except MetricsSourceError:
            logger.info("top secure mode is enabled: the delay of top cannot be changed")
            self._delay_args = []
        else:
            logger.info("top secure mode is disabled: a delay of %s sec will be used", delay)
            self._delay_args = ["-d", delay]
        self._probed = True

    def _thread_args(self, mode: SampleMode) -> list[str]:
        # procps-ng shows threads with -H; older top uses -H to toggle the other way
        show_threads = mode is SampleMode.PER_THREAD
        if self._is_procps_ng == show_threads:
            return ["-H"]
        return []

    def command(self, mode: SampleMode, pids: Iterable[int] = ()) -> list[str]:
        """Build the top command line for ``mode``."""
        self._probe()
        args = ["top", "-b", "-n", "1", *self._thread_args(mode), *self._delay_args]
        if self._is_procps_ng:
            # Wide output keeps long command names in one column
            args += ["-w", "512"]
        for pid in pids:
            args += ["-p", str(pid)]
        return args

    def sample(self, pattern: str, mode: SampleMode, pids: Iterable[int] = ()) -> Snapshot:
        pids = tuple(pids)
        text = self._run(self.command(mode, pids))
        return parse_top_output(text, "" if pids else pattern)


class PidstatSource:
    """
    Metrics source backed by sysstat ``pidstat``.

    Unlike top, pidstat keeps a fixed column order and sorting whatever the
    user's configuration is.
    """

    name = "pidstat"

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self._run = runner

    def command(self, pattern: str, mode: SampleMode, pids: Iterable[int] = ()) -> list[str]:
        """Build the pidstat command line for ``mode``."""
        args = ["pidstat", "-u", "-r"]
        if mode is SampleMode.PER_THREAD:
            args.append("-t")
        args.append("-I")
        pid_list = ",".join(str(pid) for pid in pids)
        if pid_list:
            args += ["-p", pid_list]
        elif pattern:
            args += ["-C", pattern]
        return args

    def sample(self, pattern: str, mode: SampleMode, pids: Iterable[int] = ()) -> Snapshot:
        pids = tuple(pids)
        text = self._run(self.command(pattern, mode, pids))
        # With explicit pids the process list is already exact
        return parse_pidstat_output(text, mode, "" if pids else pattern)


def make_source(backend: str, top_delay: float = 5.0) -> MetricsSource:
    """Create the metrics source named ``backend``."""
    if backend == "pidstat":
        return PidstatSource()
    if backend == "top":
        return TopSource(delay=top_delay)
    raise ValueError(f"Unknown metrics backend {backend!r}")
