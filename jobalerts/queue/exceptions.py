"""Queue runtime exceptions."""


class QueueError(Exception):
    """Base exception for queue runtime errors."""


class EnqueueError(QueueError):
    """A job or schedule could not be durably recorded.

    Nothing was enqueued; the caller may retry.
    """


class UnknownQueueError(QueueError):
    """An operation referenced a queue with no registered worker."""


class WorkerAlreadyRegisteredError(QueueError):
    """A second handler was registered for the same queue."""


class QueueFatalError(QueueError):
    """A job reached its terminal failed state.

    Attached to the JobFailed event (``will_retry=False``) with the last
    handler exception as ``__cause__``.
    """


class UnrecoverableJobError(Exception):
    """Raised by a handler when retrying cannot help (e.g. invalid payload).

    The job goes straight to the failed state regardless of remaining attempts.
    """
