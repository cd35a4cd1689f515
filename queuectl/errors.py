class QueueError(Exception):
    """Base class for every error raised by queuectl."""


class InvalidSpec(QueueError, ValueError):
    """Enqueue request is malformed (missing command, bad id, duplicate id...)."""


class NotFound(QueueError, KeyError):
    """A job id is absent from the set the operation expected it in."""

    def __str__(self):
        # KeyError repr-quotes its argument
        return str(self.args[0]) if self.args else ""


class StateConflict(QueueError):
    """The job is not in the state the caller expected."""


class LockContention(QueueError):
    """Another worker holds the lock. Expected and retried, never user-facing."""


class ExecutionFailure(QueueError):
    """The job command exited non-zero, timed out, or could not be started."""

    def __init__(self, message: str, returncode=None, timed_out: bool = False):
        super().__init__(message)
        self.returncode = returncode
        self.timed_out = timed_out


class AlreadyRunning(QueueError, RuntimeError):
    """A worker pool is already active in this manager."""


class StoreError(QueueError, RuntimeError):
    """The persistence backend could not read or write the queue snapshot."""
