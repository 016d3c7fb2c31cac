"""Import job state machine rules.

The success path is ``PENDING -> PROCESSING -> PARSING -> CATEGORIZING -> REVIEW -> CONFIRMED``.
``FAILED`` and ``CANCELLED`` can be entered from any non-terminal state. Progress only grows.
"""

from typing import NamedTuple

from statement_importer.core.errors import InvalidTransitionError
from statement_importer.core.models import JobStatus

TERMINAL_STATES = frozenset({JobStatus.CONFIRMED, JobStatus.FAILED, JobStatus.CANCELLED})

SUCCESS_PATH = (
    JobStatus.PENDING,
    JobStatus.PROCESSING,
    JobStatus.PARSING,
    JobStatus.CATEGORIZING,
    JobStatus.REVIEW,
)

_RANK = {status: index for index, status in enumerate(SUCCESS_PATH)}


class Checkpoint(NamedTuple):
    """A named progress milestone on the success path."""

    status: JobStatus
    progress: int


ACCEPTED = Checkpoint(JobStatus.PROCESSING, 10)
DOWNLOADED = Checkpoint(JobStatus.PROCESSING, 20)
DECRYPTED = Checkpoint(JobStatus.PARSING, 40)
ACCOUNTS_PERSISTED = Checkpoint(JobStatus.PARSING, 60)
TRANSACTIONS_PERSISTED = Checkpoint(JobStatus.PARSING, 80)
CATEGORIES_ENQUEUED = Checkpoint(JobStatus.CATEGORIZING, 90)
REVIEW_READY = Checkpoint(JobStatus.REVIEW, 100)


def is_terminal(status: JobStatus) -> bool:
    """Whether no further transition is possible from ``status``."""
    return status in TERMINAL_STATES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether ``current -> target`` is a legal forward move (staying put counts as legal)."""
    if is_terminal(current):
        return False
    if current == target:
        return True
    if target in (JobStatus.FAILED, JobStatus.CANCELLED):
        return True
    if target == JobStatus.CONFIRMED:
        return current == JobStatus.REVIEW
    return _RANK[target] > _RANK[current]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        msg = f"Cannot move import job from {current} to {target}"
        raise InvalidTransitionError(msg)


def advance(current: JobStatus, current_progress: int, checkpoint: Checkpoint) -> Checkpoint:
    """Resolve the status/progress pair a checkpoint should leave on the job.

    A re-run of the pipeline (retry or redelivery) replays earlier checkpoints; those must never
    move the job backward, so a checkpoint behind the current status keeps the current status and
    the larger progress value.
    """
    if is_terminal(current):
        msg = f"Import job is already {current}"
        raise InvalidTransitionError(msg)
    if _RANK[checkpoint.status] < _RANK[current]:
        return Checkpoint(current, max(current_progress, checkpoint.progress))
    ensure_transition(current, checkpoint.status)
    return Checkpoint(checkpoint.status, max(current_progress, checkpoint.progress))
