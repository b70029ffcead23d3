"""Exceptions raised by the worker pool."""


class JobPoolError(Exception):
    """Base class for all jobpool errors."""

    pass


class ConfigurationError(JobPoolError, ValueError):
    """The pool cannot act on its configuration.

    Raised when no queue name can be resolved for a dispatch, when the pool and
    the call name different queues, or when no worker command is available.
    """

    pass


class SpawnError(JobPoolError):
    """A worker process could not be started."""

    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class PoolClosedError(JobPoolError, RuntimeError):
    """The pool has been shut down and no longer accepts jobs."""

    pass


class InvariantViolation(JobPoolError, RuntimeError):
    """Internal bookkeeping of the pool is inconsistent.

    This indicates a programming error and is never caught by the pool.
    """

    pass


class WorkerExecutionError(JobPoolError):
    """A worker terminated with a nonzero exit code.

    The pool never raises this; it is built from a `Failure` outcome for
    applications that prefer exceptions.
    """

    def __init__(self, exit_code: int, diagnostic: bytes = b""):
        message = f"Worker exited with code {exit_code}"
        detail = diagnostic.decode("utf-8", errors="replace").strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostic = diagnostic
