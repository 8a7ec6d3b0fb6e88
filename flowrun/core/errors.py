"""Exceptions raised by the flowrun core.

Structural problems with a proposed connection are never raised; they come
back as a ValidationResult with a reason string. These exceptions cover
library misuse and unreadable inputs.
"""


class FlowRunError(Exception):
    """Base class for flowrun errors."""

    pass


class CyclicGraphError(FlowRunError):
    """Graph contains a cycle and strict scheduling was requested."""

    def __init__(self, message: str, cycle_members: list[str] | None = None):
        super().__init__(message)
        self.cycle_members = cycle_members or []


class RunInProgressError(FlowRunError):
    """start() was called while a run is already running or paused."""

    pass


class WorkflowLoadError(FlowRunError):
    """A workflow file could not be read or parsed."""

    pass


class ConfigError(FlowRunError):
    """Engine configuration file is invalid."""

    pass
