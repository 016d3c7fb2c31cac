"""Error taxonomy for the import pipeline.

Every error that escalates out of a pipeline stage is an ``ImportPipelineError``.
The orchestrator inspects ``retryable`` to decide between a backoff retry and an
immediate FAILED status, and copies ``code`` onto the job so callers can react
(for example, re-prompting for a password on ``PASSWORD_INCORRECT``).
"""


class ImportPipelineError(Exception):
    """Base class for errors raised by the import pipeline."""

    code = "IMPORT_ERROR"
    retryable = False

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize the error with a user-facing message and an optional code override."""
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TransientError(ImportPipelineError):
    """Network, storage or upstream-service failure; retried with backoff."""

    code = "TRANSIENT"
    retryable = True


class InputQualityError(ImportPipelineError):
    """The file itself cannot yield a usable result; retrying will not help."""

    code = "INPUT_QUALITY"


class CredentialError(ImportPipelineError):
    """Missing or wrong password for an encrypted input."""

    code = "PASSWORD_INCORRECT"


class InvariantError(ImportPipelineError):
    """A record the job depends on is missing or malformed."""

    code = "INVARIANT"


class JobCancelledError(ImportPipelineError):
    """Raised inside the orchestrator when a cancellation request is observed."""

    code = "CANCELLED"


class InvalidTransitionError(ImportPipelineError):
    """A status change that the import job state machine does not allow."""

    code = "INVALID_TRANSITION"


class NotFoundError(ImportPipelineError):
    """The requested job does not exist or belongs to another user."""

    code = "NOT_FOUND"


PASSWORD_REQUIRED = "PASSWORD_REQUIRED"
PASSWORD_INCORRECT = "PASSWORD_INCORRECT"
