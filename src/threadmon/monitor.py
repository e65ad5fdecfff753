"""Sampling loop for threadmon."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from threadmon.auxproc import AuxProcessMonitor
from threadmon.config import MIN_INTERVAL, MonitorConfig
from threadmon.errors import MetricsSourceError, SessionInvalidated, SetupFailure
from threadmon.models import EventKind, LoopEvent, LoopState, SampleMode
from threadmon.reconcile import SnapshotReconciler
from threadmon.registry import IdentityRegistry
from threadmon.sources import MetricsSource, make_source
from threadmon.writer import TabularWriter, output_filename

logger = logging.getLogger(__name__)

Listener = Callable[[LoopEvent], None]
Waiter = Callable[[float], object]


@dataclass(slots=True)
class Session:
    """Everything that lives from one setup to the next."""

    registry: IdentityRegistry
    reconciler: SnapshotReconciler
    writer: TabularWriter
    started_at: datetime


class SamplingLoop:
    """
    Drives setup, periodic sampling and recovery.

    The loop is single-threaded: each tick (liveness check, sample,
    reconcile, collect, write) finishes before the next one starts. It can
    run in the calling thread with :meth:`run` or in a daemon thread with
    :meth:`start`; :meth:`stop` ends it at the next wait.
    """

    def __init__(
        self,
        config: MonitorConfig,
        source: MetricsSource | None = None,
        aux_monitor: AuxProcessMonitor | None = None,
        listener: Listener | None = None,
        clock: Callable[[], datetime] = datetime.now,
        waiter: Waiter | None = None,
    ) -> None:
        """
        Initialize the SamplingLoop.

        Args:
            config: Monitoring settings.
            source: Metrics source; built from ``config.backend`` when omitted.
            aux_monitor: Auxiliary process tracker; built from ``config.aux_names`` when omitted.
            listener: Called with a :class:`LoopEvent` on session start, rows and failures.
            clock: Time source for file names and row timestamps.
            waiter: Called with a duration instead of sleeping, mostly for tests.
        """
        self._config = config
        self._source = source or make_source(config.backend, config.top_delay)
        self._aux = aux_monitor or AuxProcessMonitor(config.aux_names, self._source)
        self._listener = listener
        self._clock = clock
        self._stop_event = threading.Event()
        self._wait: Waiter = waiter or self._stop_event.wait
        self._thread: threading.Thread | None = None
        self._interval = max(MIN_INTERVAL, config.interval)
        self._state = LoopState.UNINITIALIZED
        self._session: Session | None = None

    @property
    def state(self) -> LoopState:
        """Current state of the loop."""
        return self._state

    @property
    def session(self) -> Session | None:
        """The running session, if any."""
        return self._session

    @property
    def interval(self) -> float:
        """Pause between two ticks (seconds)."""
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = max(MIN_INTERVAL, value)

    @property
    def is_running(self) -> bool:
        """Check if the loop thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run the loop in a daemon thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="SamplingLoop")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Ask the loop to stop and wait for its thread.

        Args:
            timeout: How long to wait for the thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _emit(self, event: LoopEvent) -> None:
        if self._listener is not None:
            self._listener(event)

    def setup(self) -> bool:
        """
        Start a new session.

        Returns:
            True when the registry is built and the header written.
        """
        config = self._config
        self._teardown()
        now = self._clock()
        path = config.output_dir / output_filename(config.thread_pattern, self._source.name, now)

        logger.info("Number of processes to monitor: %d", len(config.aux_names))
        try:
            self._aux.setup()
            registry = IdentityRegistry.initialize(
                self._source, config.thread_pattern, SampleMode.PER_THREAD
            )
        except (SetupFailure, MetricsSourceError) as exc:
            return self._setup_failed(now, exc)

        logger.info("CPU activity logger starting with configuration:")
        logger.info("  BACKEND: %s", self._source.name)
        logger.info("  THREADNAME_REGEX: %s (%d threads matching)", config.thread_pattern, len(registry))
        if self._aux.states:
            logger.info("  Auxiliary processes automatically monitored:\n%s", self._aux.describe())
        logger.info("  Automatically-generated output filename: %s", path)

        writer = TabularWriter(path, comma_decimal=config.comma_decimal, clock=self._clock)
        try:
            header = writer.write_header(registry, self._aux.names)
        except OSError as exc:
            return self._setup_failed(now, exc)
        logger.info("Data format is %s", ";".join(header))

        self._session = Session(
            registry=registry,
            reconciler=SnapshotReconciler(registry),
            writer=writer,
            started_at=now,
        )
        self._state = LoopState.READY
        self._emit(LoopEvent(kind=EventKind.SESSION, fields=tuple(header), path=str(path)))
        return True

    def _setup_failed(self, now: datetime, exc: Exception) -> bool:
        logger.warning("The setup attempt done at %s failed: %s", now, exc)
        self._aux.reset()
        self._emit(LoopEvent(kind=EventKind.SETUP_FAILED, message=str(exc)))
        return False

    def tick(self) -> list[str] | None:
        """
        Take one sample and append it to the output file.

        Returns:
            The written row, or None if the row could not be formatted.

        Raises:
            SessionInvalidated: The session cannot continue.
        """
        session = self._session
        if session is None:
            raise SessionInvalidated("No session is set up")

        if not self._aux.check_alive():
            raise SessionInvalidated(
                "A possible restart was detected since one of the auxiliary processes is not valid anymore"
            )

        try:
            snapshot = self._source.sample(self._config.thread_pattern, SampleMode.PER_THREAD)
        except MetricsSourceError as exc:
            raise SessionInvalidated(f"Sampling failed: {exc}") from exc

        result = session.reconciler.reconcile(snapshot)
        registered = len(session.registry)
        if result.unmatched_count / registered > self._config.missing_threshold:
            raise SessionInvalidated(
                f"{result.unmatched_count} of {registered} monitored threads are missing"
            )
        logger.debug("Process memory: %s", result.sample.memory_raw)

        try:
            aux_states = self._aux.collect()
        except MetricsSourceError as exc:
            raise SessionInvalidated(f"Collecting auxiliary processes failed: {exc}") from exc

        try:
            row = session.writer.append_row(result.sample, aux_states)
        except OSError as exc:
            raise SessionInvalidated(f"Writing to {session.writer.path} failed: {exc}") from exc
        except ValueError as exc:
            logger.warning("Skipping row: %s", exc)
            return None

        self._echo(session.writer.rows_written, row)
        self._emit(LoopEvent(kind=EventKind.ROW, fields=tuple(row)))
        return row

    def _echo(self, count: int, row: list[str]) -> None:
        limit = self._config.echo_rows
        if self._config.verbose or count <= limit:
            logger.info("Appending line %d: %s", count, ";".join(row))
        if not self._config.verbose and count == limit:
            logger.info("[verbose mode is off, logging continues on the output file, not on stdout]")

    def _teardown(self) -> None:
        self._session = None
        self._aux.reset()
        self._state = LoopState.UNINITIALIZED

    def step(self) -> LoopState:
        """Advance the state machine by one setup attempt or one tick."""
        if self._state is not LoopState.READY:
            if not self.setup():
                logger.info("Retrying in %gs", self._config.backoff)
                self._wait(self._config.backoff)
            return self._state

        try:
            self.tick()
        except SessionInvalidated as exc:
            self._state = LoopState.DEGRADED
            logger.warning("%s... waiting %gs before restarting logging", exc, self._config.backoff)
            self._emit(LoopEvent(kind=EventKind.DEGRADED, message=str(exc)))
            self._wait(self._config.backoff)
            self._teardown()
            return self._state

        self._wait(self._interval)
        return self._state

    def run(self, max_steps: int | None = None) -> None:
        """Loop until stopped, or for ``max_steps`` steps."""
        steps = 0
        while not self._stop_event.is_set():
            self.step()
            steps += 1
            if max_steps is not None and steps >= max_steps:
                break
