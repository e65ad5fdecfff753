"""Exception hierarchy for threadmon."""


class MonitorError(Exception):
    """Base class for all threadmon errors."""


class SetupFailure(MonitorError):
    """A session could not be started; retried after the backoff."""


class NoMatchError(SetupFailure):
    """The thread filter matched nothing."""

    def __init__(self, pattern: str) -> None:
        super().__init__(f"The thread regex {pattern!r} does not match any thread")
        self.pattern = pattern


class AuxProcessNotFoundError(SetupFailure):
    """An auxiliary process name has no running process."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No {name} found")
        self.name = name


class SessionInvalidated(MonitorError):
    """The running session must be torn down and set up again."""


class MetricsSourceError(MonitorError):
    """The system utility behind a metrics source failed."""


class SchemaMismatchError(MonitorError):
    """A data row does not match the header it is written under."""
