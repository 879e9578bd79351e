from __future__ import annotations


class QueueError(RuntimeError):
    pass


class QueueUnavailableError(QueueError):
    """No queue backend could be reached during initialization."""


class UnsupportedOperationError(QueueError):
    """The active backend does not implement the requested operation."""


class JobNotFoundError(QueueError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidJobTransition(QueueError):
    def __init__(self, job_id: str, state: str, action: str) -> None:
        super().__init__(f"Job {job_id} is {state}; cannot {action} it")
        self.job_id = job_id
        self.state = state
        self.action = action


class DuplicateJobError(QueueError):
    pass


class InvalidJobOptions(QueueError, ValueError):
    pass


class NonRetryableJobError(Exception):
    """
    Raised by handlers for failures that retrying cannot fix
    (e.g. the referenced record does not exist).
    """


class UnknownJobTypeError(NonRetryableJobError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type
