"""Tests for the import job state machine."""

import pytest

from statement_importer.core.errors import InvalidTransitionError
from statement_importer.core.models import JobStatus
from statement_importer.core.state import (
    ACCEPTED,
    CATEGORIES_ENQUEUED,
    DECRYPTED,
    REVIEW_READY,
    advance,
    can_transition,
    ensure_transition,
    is_terminal,
)


def test_success_path_moves_forward_only() -> None:
    """Each success-path status can advance but never go back."""
    if not can_transition(JobStatus.PENDING, JobStatus.PARSING):
        msg = "PENDING -> PARSING should be allowed"
        raise AssertionError(msg)
    if can_transition(JobStatus.CATEGORIZING, JobStatus.PROCESSING):
        msg = "CATEGORIZING -> PROCESSING should not be allowed"
        raise AssertionError(msg)
    if can_transition(JobStatus.PARSING, JobStatus.CONFIRMED):
        msg = "Only REVIEW can be confirmed"
        raise AssertionError(msg)
    if not can_transition(JobStatus.REVIEW, JobStatus.CONFIRMED):
        msg = "REVIEW -> CONFIRMED should be allowed"
        raise AssertionError(msg)


def test_terminal_states() -> None:
    """Nothing leaves a terminal state; every other state can fail or be cancelled."""
    for status in JobStatus:
        for target in (JobStatus.FAILED, JobStatus.CANCELLED):
            if can_transition(status, target) == is_terminal(status):
                msg = f"Unexpected rule for {status} -> {target}"
                raise AssertionError(msg)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(JobStatus.CONFIRMED, JobStatus.CANCELLED)


def test_advance_never_moves_backward() -> None:
    """Replayed checkpoints keep the current status and the larger progress."""
    status, progress = advance(JobStatus.PENDING, 0, ACCEPTED)
    if (status, progress) != (JobStatus.PROCESSING, 10):
        msg = f"Unexpected checkpoint result {(status, progress)}"
        raise AssertionError(msg)
    replayed = advance(JobStatus.CATEGORIZING, CATEGORIES_ENQUEUED.progress, DECRYPTED)
    if tuple(replayed) != (JobStatus.CATEGORIZING, CATEGORIES_ENQUEUED.progress):
        msg = f"Replay moved the job backward: {replayed}"
        raise AssertionError(msg)
    if tuple(advance(JobStatus.CATEGORIZING, 90, REVIEW_READY)) != (JobStatus.REVIEW, 100):
        msg = "Expected REVIEW at 100%"
        raise AssertionError(msg)


def test_advance_rejects_terminal_jobs() -> None:
    """A cancelled or failed job cannot take checkpoints."""
    for status in (JobStatus.CANCELLED, JobStatus.FAILED):
        with pytest.raises(InvalidTransitionError):
            advance(status, 40, REVIEW_READY)
