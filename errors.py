"""Error taxonomy shared by the store, services, workers and the control API.

Every error carries a stable ``code``. Job failures record it as
``last_error_code``; the control API reports it as ``reason``.
"""


class OrchestrationError(Exception):
    """Base class for job orchestration errors."""

    code = "error"

    def __init__(self, message: str = "", code: str = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class InvalidJobError(OrchestrationError):
    """Unknown job type, bad subject or malformed payload. No row is created."""

    code = "invalid"


class IneligibleSubjectError(OrchestrationError):
    """The subject does not qualify for the job type. Counted as skipped."""

    code = "ineligible"


class PayloadBuildError(OrchestrationError):
    """Building the payload for a candidate failed."""

    code = "payload_build_failed"


class QueueFullError(OrchestrationError):
    code = "queue_full"


class JobNotFoundError(OrchestrationError):
    code = "not_found"


class InvalidTransitionError(OrchestrationError):
    """The job is not in a status that allows the requested operation."""

    code = "invalid_transition"


class StoreBusyError(OrchestrationError):
    """Storage is locked by a concurrent writer. Safe to retry."""

    code = "busy"


class SupervisorError(OrchestrationError):
    code = "supervisor_error"


class LeaseHeldError(SupervisorError):
    code = "lease_held"


class TransientJobError(OrchestrationError):
    """Upstream temporarily unavailable. The job is retried with backoff."""

    code = "transient"


class PermanentJobError(OrchestrationError):
    """The job cannot succeed. It ends in ``error``."""

    code = "job_failed"


class WorkTimeoutError(PermanentJobError):
    code = "timeout"


class JobCancelledError(OrchestrationError):
    """Raised at a checkpoint once cancellation was requested."""

    code = "cancelled"
