"""FastAPI endpoints for the Statement Importer API.

This module is a thin adapter over ``statement_importer.services.imports``: it registers already
uploaded statement files for import, exposes job status for polling clients, and accepts the
confirmation, cancellation and retry decisions of the user. Authentication is external; the caller
identity arrives in the ``X-User-Id`` header.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from statement_importer.api.dependencies import (
    get_database,
    get_import_queue,
    get_session,
    get_settings,
    get_user_id,
)
from statement_importer.core.db import Database
from statement_importer.core.errors import (
    ImportPipelineError,
    InvalidTransitionError,
    InvariantError,
    NotFoundError,
)
from statement_importer.core.models import (
    ConfirmationResult,
    ConfirmImportRequest,
    ImportStatusView,
    JobAccepted,
    JobStatus,
    RetryImportRequest,
    SubmitImportRequest,
)
from statement_importer.core.settings import Settings
from statement_importer.core.utils import get_logger
from statement_importer.services.imports import (
    cancel_import,
    confirm_import,
    get_import_status,
    retry_import,
    submit_import,
)
from statement_importer.workers.queue import WorkQueue, queue_stats

router = APIRouter()
logger = get_logger("statement-importer.api")

JOB_ID_EXAMPLE = "123e4567-e89b-12d3-a456-426614174000"

NOT_FOUND_RESPONSE = {
    "description": "Import job not found.",
    "content": {"application/json": {"example": {"detail": "Import job 123e4567 not found"}}},
}
CONFLICT_RESPONSE = {
    "description": "The job is not in a state that allows this operation.",
    "content": {"application/json": {"example": {"detail": "Cannot move import job from FAILED to CONFIRMED"}}},
}


def to_http_error(exc: ImportPipelineError) -> HTTPException:
    """Map a pipeline error to the HTTP status the web layer reports."""
    if isinstance(exc, NotFoundError):
        return HTTPException(404, exc.message)
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(409, exc.message)
    if isinstance(exc, InvariantError):
        return HTTPException(500, exc.message)
    return HTTPException(400, exc.message)


@router.post(
    "/imports",
    status_code=202,
    response_model=JobAccepted,
    summary="Register a stored statement file for import",
    description=(
        "Create an import job for a statement file that the upload handler already stored in object storage, "
        "and enqueue it for background processing.\n\n"
        "**Request body:**\n"
        "- `file_ref`: object-storage key of the uploaded file.\n"
        "- `file_type`: `CSV`, `PDF` or `IMAGE`.\n"
        "- `file_name`, `file_size`: optional, shown to the user.\n"
        "- `password`: optional; stored encrypted and cleared as soon as the file is decrypted.\n\n"
        "**Response:**\n"
        "- 202 Accepted: `{ 'job_id': '<uuid>', 'status': 'PENDING' }`.\n"
        "- 404 Not Found: If the user does not exist."
    ),
    response_description="Job accepted. Returns job_id.",
    responses={
        202: {
            "description": "Job accepted.",
            "content": {"application/json": {"example": {"job_id": JOB_ID_EXAMPLE, "status": "PENDING"}}},
        },
        404: {"description": "User not found."},
    },
)
def create_import(
    request: SubmitImportRequest,
    user_id: str = Depends(get_user_id),
    session: Session = Depends(get_session),
    queue: WorkQueue = Depends(get_import_queue),
    settings: Settings = Depends(get_settings),
) -> JobAccepted:
    """Register a stored file and enqueue its import job."""
    logger.info(f"Received import request: file_ref={request.file_ref}, type={request.file_type}")
    try:
        job = submit_import(session, queue, user_id, request, settings.encryption_key)
    except ImportPipelineError as exc:
        raise to_http_error(exc) from exc
    return JobAccepted(job_id=job.id, status=job.status)


@router.get(
    "/imports/{job_id}",
    response_model=ImportStatusView,
    summary="Get import job status",
    description=(
        "Poll the status and progress of an import job.\n\n"
        "**Path parameter:**\n"
        "- `job_id`: The job identifier returned by `POST /imports`.\n\n"
        "**Response:**\n"
        "- 200 OK: status, progress (0-100), error and error code when FAILED, and the detected accounts with "
        "their newest transactions (capped per account).\n"
        "- 404 Not Found: If the job does not exist or belongs to another user."
    ),
    response_description="Job status and detected accounts.",
    responses={
        200: {
            "description": "Job found.",
            "content": {
                "application/json": {
                    "example": {
                        "id": JOB_ID_EXAMPLE,
                        "status": "PARSING",
                        "progress": 40,
                        "error": None,
                        "error_code": None,
                        "file_type": "CSV",
                        "accounts": [],
                    }
                }
            },
        },
        404: NOT_FOUND_RESPONSE,
    },
)
def get_import(
    job_id: str,
    user_id: str = Depends(get_user_id),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ImportStatusView:
    """Get the status of an import job."""
    try:
        return get_import_status(session, job_id, user_id, settings.status_transactions_cap)
    except ImportPipelineError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/imports/{job_id}/confirm",
    response_model=ConfirmationResult,
    summary="Confirm detected accounts",
    description=(
        "Accept or reject each detected account of a job in `REVIEW`. Confirmed accounts and their "
        "transactions are created in the permanent store; the rest are discarded. The job becomes `CONFIRMED`.\n\n"
        "**Request body:** `{ 'accounts': [{ 'accountId', 'confirmed', 'nameOverride'?, 'typeOverride'? }] }`\n\n"
        "**Response:**\n"
        "- 200 OK: counts of created accounts and transactions.\n"
        "- 404 Not Found: unknown job or account.\n"
        "- 409 Conflict: the job is not in `REVIEW`."
    ),
    responses={
        200: {
            "description": "Import confirmed.",
            "content": {
                "application/json": {
                    "example": {"accounts_created": 1, "transactions_created": 42, "account_ids": ["..."]}
                }
            },
        },
        404: NOT_FOUND_RESPONSE,
        409: CONFLICT_RESPONSE,
    },
)
def confirm(
    job_id: str,
    request: ConfirmImportRequest,
    user_id: str = Depends(get_user_id),
    session: Session = Depends(get_session),
) -> ConfirmationResult:
    """Confirm the accounts of an import job."""
    try:
        return confirm_import(session, job_id, user_id, request.accounts)
    except ImportPipelineError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/imports/{job_id}/cancel",
    response_model=JobAccepted,
    summary="Cancel an import job",
    description=(
        "Cancel a job that is not yet confirmed, failed or cancelled. Detected accounts and transactions are "
        "discarded; a worker processing the job stops at its next stage boundary.\n\n"
        "**Response:**\n"
        "- 200 OK: `{ 'job_id', 'status': 'CANCELLED' }`.\n"
        "- 404 Not Found: unknown job.\n"
        "- 409 Conflict: the job already reached a terminal state."
    ),
    responses={404: NOT_FOUND_RESPONSE, 409: CONFLICT_RESPONSE},
)
def cancel(
    job_id: str,
    user_id: str = Depends(get_user_id),
    session: Session = Depends(get_session),
) -> JobAccepted:
    """Cancel an import job."""
    try:
        job = cancel_import(session, job_id, user_id)
    except ImportPipelineError as exc:
        raise to_http_error(exc) from exc
    return JobAccepted(job_id=job.id, status=JobStatus.CANCELLED)


@router.post(
    "/imports/{job_id}/retry",
    status_code=202,
    response_model=JobAccepted,
    summary="Retry a failed import job",
    description=(
        "Start a new job for the file of a `FAILED` job. The failed job keeps its error; the new job "
        "references it in `retried_from`. A new password can be supplied after a `PASSWORD_INCORRECT` or "
        "`PASSWORD_REQUIRED` failure.\n\n"
        "**Response:**\n"
        "- 202 Accepted: the new job.\n"
        "- 404 Not Found: unknown job.\n"
        "- 409 Conflict: the job is not `FAILED`."
    ),
    responses={404: NOT_FOUND_RESPONSE, 409: CONFLICT_RESPONSE},
)
def retry(
    job_id: str,
    request: RetryImportRequest | None = None,
    user_id: str = Depends(get_user_id),
    session: Session = Depends(get_session),
    queue: WorkQueue = Depends(get_import_queue),
    settings: Settings = Depends(get_settings),
) -> JobAccepted:
    """Retry a failed import job."""
    password = request.password if request is not None else None
    try:
        job = retry_import(
            session, queue, job_id, user_id, password=password, encryption_key=settings.encryption_key
        )
    except ImportPipelineError as exc:
        raise to_http_error(exc) from exc
    return JobAccepted(job_id=job.id, status=job.status, retried_from=job.retried_from)


@router.get(
    "/queues",
    summary="Queue statistics",
    description="Count work items per queue and state (`queued`, `leased`, `done`, `buried`).",
    responses={
        200: {
            "description": "Counts per queue.",
            "content": {"application/json": {"example": {"import": {"done": 12, "queued": 1}}}},
        }
    },
)
def get_queue_stats(db: Database = Depends(get_database)) -> dict[str, dict[str, int]]:
    """Return work item counts per queue and state."""
    return queue_stats(db)


@router.get(
    "/health",
    summary="Health check",
    description="Returns status ok if the API is running.",
    response_description="Health status.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
