class QueueError(Exception):
    """Base class for queuectl errors."""


class JobValidationError(QueueError, ValueError):
    """Rejected at the boundary: bad enqueue payload or config value."""


class JobConflictError(JobValidationError):
    pass


class StorageError(QueueError, RuntimeError):
    """The job store failed in a way that cannot be retried."""


class StoreBusyError(StorageError):
    pass


class LogNotFoundError(QueueError, LookupError):
    pass
