"""Spreadsheet-friendly output for threadmon."""

import re
import socket
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from threadmon.errors import SchemaMismatchError
from threadmon.models import MISSING, AuxProcessState, ReconciledSample
from threadmon.registry import IdentityRegistry


# Semicolons let Excel and Calc open the file without an import step
DELIMITER = ";"

_UNIT_EXPONENT = {"k": 3, "m": 6, "g": 9, "t": 12}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def normalize_memory(raw: str) -> int:
    """
    Convert a memory value as printed by top/pidstat to an integer.

    Unit suffixes are decimal powers ('m' is 1e6, 'g' is 1e9) and the
    result is truncated, never rounded half to even.

    >>> normalize_memory("44.3g")
    44300000000
    >>> normalize_memory("13116")
    13116
    """
    text = raw.strip().lower().replace(",", ".")
    exponent = 0
    if text and text[-1] in _UNIT_EXPONENT:
        exponent = _UNIT_EXPONENT[text[-1]]
        text = text[:-1]
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Not a memory value: {raw!r}") from None
    if not value.is_finite():
        raise ValueError(f"Not a memory value: {raw!r}")
    return int(value.scaleb(exponent))


def format_cpu(value: float) -> str:
    """Format a CPU percentage, keeping the missing sentinel as '-1'."""
    if value == MISSING:
        return "-1"
    return f"{value:g}"


def sanitize_name(name: str) -> str:
    """Replace spaces with underscores and drop characters unsafe in file names."""
    return _UNSAFE_FILENAME_CHARS.sub("", name.replace(" ", "_"))


def output_filename(
    pattern: str,
    backend: str = "top",
    now: datetime | None = None,
    hostname: str | None = None,
) -> str:
    """Build the output file name from host, thread filter and start time."""
    now = now or datetime.now()
    hostname = hostname or socket.gethostname()
    suffix = "-pidstat" if backend == "pidstat" else ""
    name = f"{hostname}-{pattern}-{now:%Y-%m-%d-started-at%H-%M}{suffix}.csv"
    return sanitize_name(name)


class TabularWriter:
    """
    Writes one header and then one row per tick to a delimited text file.

    The column layout is frozen by :meth:`write_header`; every later row must
    have the same number of fields. Field contents are never quoted, so
    names containing the delimiter are not supported.
    """

    def __init__(
        self,
        path: Path,
        comma_decimal: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._path = Path(path)
        self._comma_decimal = comma_decimal
        self._clock = clock
        self._header: list[str] = []
        self._rows_written = 0

    @property
    def path(self) -> Path:
        """Destination file."""
        return self._path

    @property
    def header(self) -> list[str]:
        """Header fields, empty until :meth:`write_header` is called."""
        return list(self._header)

    @property
    def rows_written(self) -> int:
        """Number of data rows appended so far."""
        return self._rows_written

    def _decimal(self, text: str) -> str:
        return text.replace(".", ",") if self._comma_decimal else text

    @staticmethod
    def build_header(registry: IdentityRegistry, aux_names: Sequence[str]) -> list[str]:
        """Column names: timestamps, aux memory, aux CPU, then thread CPU."""
        header = ["Day", "Time"]
        header += [f"Mem {name}" for name in aux_names]
        header += [f"CPU {name}" for name in aux_names]
        header += [f"CPU {name}" for name in registry.display_names()]
        return header

    def write_header(self, registry: IdentityRegistry, aux_names: Sequence[str]) -> list[str]:
        """Create (or truncate) the output file and write the header line."""
        self._header = self.build_header(registry, aux_names)
        self._rows_written = 0
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as out:
            out.write(DELIMITER.join(self._header) + "\n")
        return self.header

    def format_row(
        self,
        sample: ReconciledSample,
        aux_states: Sequence[AuxProcessState],
        now: datetime | None = None,
    ) -> list[str]:
        """
        Format one data row.

        Raises:
            ValueError: An auxiliary memory value cannot be parsed.
        """
        now = now or self._clock()
        row = [f"{now:%Y-%m-%d}", f"{now:%H:%M:%S}"]
        for state in aux_states:
            row.append(str(normalize_memory(state.last_mem)) if state.last_mem else "")
        for state in aux_states:
            row.append("" if state.last_cpu is None else self._decimal(format_cpu(state.last_cpu)))
        row += [self._decimal(format_cpu(value)) for value in sample.values()]
        return row

    def append_row(
        self,
        sample: ReconciledSample,
        aux_states: Sequence[AuxProcessState],
    ) -> list[str]:
        """Format a row and append it to the file with a single write."""
        row = self.format_row(sample, aux_states)
        if len(row) != len(self._header):
            raise SchemaMismatchError(
                f"Row has {len(row)} fields but the header has {len(self._header)}"
            )
        with self._path.open("a", encoding="utf-8") as out:
            out.write(DELIMITER.join(row) + "\n")
        self._rows_written += 1
        return row
