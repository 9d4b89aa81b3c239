"""Exceptions raised by the hybrid runner."""


class HybridRunnerError(Exception):
    """Base class for all runner errors."""


class NotInitializedError(HybridRunnerError):
    """An operation was called before ``HybridRunner.initialize()``."""

    def __init__(self) -> None:
        super().__init__(
            "HybridRunner has not been initialized. "
            "Call HybridRunner.initialize() before using other methods."
        )


class InvalidCallbackError(HybridRunnerError, ValueError):
    """The callback cannot be turned into a stable cross-context reference.

    Only module-level (or class-level static) async functions qualify;
    lambdas, closures, partials and bound methods carry state that does not
    survive a fresh process.
    """


class CallbackUnresolvableError(HybridRunnerError):
    """A stored callback handle no longer maps to an importable function."""


class SchedulingError(HybridRunnerError):
    """The alarm trigger or the durable work queue rejected a request."""


class StoreCorruptError(HybridRunnerError):
    """Persisted task data could not be decoded."""
