"""Exceptions raised by the flakiness engine."""


class FlakewatchError(Exception):
    """Base class for engine errors."""


class InconsistentProjectError(FlakewatchError, ValueError):
    """Execution records handed to the aggregator span more than one project."""


class ResolutionNotFoundError(FlakewatchError, LookupError):
    """No resolution exists with the requested id."""

    def __init__(self, resolution_id: str) -> None:
        super().__init__(f"Resolution {resolution_id} not found")
        self.resolution_id = resolution_id


class DataSourceUnavailableError(FlakewatchError, RuntimeError):
    """The execution-record source could not be read."""


class InvalidTransitionError(FlakewatchError, ValueError):
    """A quarantine action is not allowed from the test's current state."""
