"""Shared error types for the taskloop package."""


class OrchestratorError(Exception):
    """Base exception for taskloop errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(OrchestratorError):
    """Raised when configuration values are out of range."""

    pass


class TaskSpecError(OrchestratorError):
    """Raised when the task specification cannot be resolved to content."""

    pass


class SessionError(OrchestratorError):
    """Raised by agent session adapters that cannot start or stream."""

    pass


class RunTimeoutError(OrchestratorError):
    """The wall-clock budget of a run elapsed while awaiting a session."""

    pass


class RunCancelledError(OrchestratorError):
    """The external abort signal fired while awaiting a session."""

    pass
