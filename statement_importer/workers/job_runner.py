"""Import job orchestration: drives one uploaded file from download to review.

``ImportJobRunner`` is the only writer of job status, progress and error. Every stage in
``statement_importer.services.pipeline`` returns values or raises; the runner turns progress into
checkpoints and, through ``fail_job``, turns an escalated error into a FAILED job. The worker pool
decides whether a failed delivery is retried.
"""

import uuid

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from statement_importer.agents.base import BaseAgent
from statement_importer.core.crypto import unseal_password
from statement_importer.core.db import (
    Database,
    ImportedAccount,
    ImportedTransaction,
    ImportJob,
    User,
    delete_derived_records,
    get_job,
    update_job_status,
)
from statement_importer.core.errors import (
    ImportPipelineError,
    InvariantError,
    JobCancelledError,
    NotFoundError,
    TransientError,
)
from statement_importer.core.models import (
    CategorizationWorkItem,
    FileType,
    ImportWorkItem,
    JobStatus,
    ParsedImport,
    RawDocument,
    dump_payload,
)
from statement_importer.core.settings import Settings
from statement_importer.core.state import (
    ACCEPTED,
    ACCOUNTS_PERSISTED,
    CATEGORIES_ENQUEUED,
    DECRYPTED,
    DOWNLOADED,
    REVIEW_READY,
    TRANSACTIONS_PERSISTED,
    Checkpoint,
    advance,
    can_transition,
    is_terminal,
)
from statement_importer.core.utils import get_logger, utcnow_iso
from statement_importer.parsers.encrypted import unlock_document
from statement_importer.services.file_service import FileService
from statement_importer.services.pipeline import parse_unlocked
from statement_importer.workers.queue import QueuedItem, WorkQueue

logger = get_logger("statement-importer.worker")


def derived_id(job_id: str, *parts: object) -> str:
    """Stable identifier of a derived record, so re-runs reuse the same IDs."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, "/".join(["import-jobs", job_id, *map(str, parts)])))


class ImportJobRunner:
    """Runs import work items through the pipeline with checkpointed progress."""

    def __init__(
        self,
        db: Database,
        file_service: FileService,
        settings: Settings,
        categorization_queue: WorkQueue,
        agent: BaseAgent | None = None,
    ) -> None:
        """Initialize the runner with its collaborators."""
        self.db = db
        self.file_service = file_service
        self.settings = settings
        self.categorization_queue = categorization_queue
        self.agent = agent

    def handle(self, item: QueuedItem) -> None:
        """Queue handler: process one import work item delivery."""
        try:
            work = ImportWorkItem.model_validate(item.payload)
        except ValidationError as exc:
            msg = f"Malformed import work item {item.key}: {exc}"
            raise InvariantError(msg) from exc
        try:
            self.run_job(work)
        except OperationalError as exc:
            msg = f"Database unavailable while processing job {work.job_id}: {exc}"
            raise TransientError(msg) from exc

    def _checkpoint(self, session: Session, job: ImportJob, checkpoint: Checkpoint) -> None:
        row = session.execute(select(ImportJob.status, ImportJob.progress).where(ImportJob.id == job.id)).one()
        current = JobStatus(row.status)
        if current == JobStatus.CANCELLED:
            msg = f"Job {job.id} was cancelled"
            raise JobCancelledError(msg)
        status, progress = advance(current, row.progress, checkpoint)
        if not update_job_status(session, job, current, status=status.value, progress=progress):
            self._raise_status_changed(session, job.id, current)
        logger.info(f"Job {job.id}: {status} {progress}%")

    @staticmethod
    def _raise_status_changed(session: Session, job_id: str, expected: JobStatus) -> None:
        found = JobStatus(session.execute(select(ImportJob.status).where(ImportJob.id == job_id)).scalar_one())
        if found == JobStatus.CANCELLED:
            msg = f"Job {job_id} was cancelled"
            raise JobCancelledError(msg)
        msg = f"Job {job_id} moved from {expected} to {found} while checkpointing"
        raise TransientError(msg)

    def _advance(self, job_id: str, checkpoint: Checkpoint) -> None:
        with self.db.session_scope() as session:
            self._checkpoint(session, get_job(session, job_id), checkpoint)

    def run_job(self, work: ImportWorkItem) -> None:
        """Run every stage of one job; cancellation is honoured between stages."""
        logger.info(f"Starting import job: {work.job_id}, file: {work.file_ref}")
        try:
            job_snapshot = self._accept(work)
            if job_snapshot is None:
                return
            document = self.file_service.load_document(
                job_snapshot.file_ref, FileType(job_snapshot.file_type), job_snapshot.file_name
            )
            self._advance(work.job_id, DOWNLOADED)

            unlocked = self._unlock(work.job_id, document)
            self._advance(work.job_id, DECRYPTED)

            parsed = parse_unlocked(
                unlocked,
                self.agent,
                min_confidence=self.settings.vision_min_confidence,
            )
            self._persist(work, parsed)
            self._advance(work.job_id, REVIEW_READY)
        except JobCancelledError:
            logger.info(f"Job {work.job_id} cancelled, discarding derived records")
            with self.db.session_scope() as session:
                delete_derived_records(session, work.job_id)
            return
        with self.db.session_scope() as session:
            get_job(session, work.job_id).completed_at = utcnow_iso()
        logger.info(f"Job {work.job_id} ready for review")

    def _accept(self, work: ImportWorkItem) -> ImportJob | None:
        with self.db.session_scope() as session:
            try:
                job = get_job(session, work.job_id)
            except NotFoundError as exc:
                msg = f"Import job {work.job_id} does not exist"
                raise InvariantError(msg) from exc
            if job.user_id != work.user_id or session.get(User, work.user_id) is None:
                msg = f"User {work.user_id} of job {work.job_id} does not exist"
                raise InvariantError(msg)
            current = JobStatus(job.status)
            if current == JobStatus.REVIEW or is_terminal(current):
                logger.info(f"Job {job.id} already {current}, nothing to do")
                return None
            self._checkpoint(session, job, ACCEPTED)
            return job

    def _unlock(self, job_id: str, document: RawDocument) -> RawDocument:
        with self.db.session_scope() as session:
            job = get_job(session, job_id)
            sealed = job.password_ciphertext
        password = unseal_password(sealed, self.settings.encryption_key) if sealed else None
        unlocked = unlock_document(document, password)
        if sealed:
            with self.db.session_scope() as session:
                get_job(session, job_id).password_ciphertext = None
            logger.info(f"Job {job_id}: file decrypted, stored credential cleared")
        return unlocked

    def _persist(self, work: ImportWorkItem, parsed: ParsedImport) -> None:
        job_id = work.job_id
        with self.db.session_scope() as session:
            job = get_job(session, job_id)
            delete_derived_records(session, job_id)
            rows = []
            for position, account in enumerate(parsed.accounts):
                row = ImportedAccount(
                    id=derived_id(job_id, "account", position),
                    import_job_id=job_id,
                    position=position,
                    name=account.name,
                    bank_name=account.institution,
                    masked_number=account.masked_number,
                    account_type=account.account_type.value,
                    opening_balance=account.opening_balance,
                    balance_needs_review=account.balance_needs_review,
                    transaction_count=account.transaction_count,
                    suggested_color=account.suggested_color,
                    suggested_icon=account.suggested_icon,
                    confidence=account.confidence,
                )
                session.add(row)
                rows.append(row)
            job.bank_format = parsed.bank_format.value
            job.encoding = parsed.encoding
            job.accounts_count = len(rows)
            self._checkpoint(session, job, ACCOUNTS_PERSISTED)

        with self.db.session_scope() as session:
            job = get_job(session, job_id)
            work_items = []
            for account_position, account in enumerate(parsed.accounts):
                account_id = derived_id(job_id, "account", account_position)
                for position, txn in enumerate(account.transactions):
                    txn_id = derived_id(job_id, "transaction", account_position, position)
                    session.add(
                        ImportedTransaction(
                            id=txn_id,
                            import_job_id=job_id,
                            imported_account_id=account_id,
                            position=position,
                            date=txn.date,
                            description=txn.description,
                            amount=txn.amount,
                            type=txn.type.value,
                            merchant=txn.merchant,
                            running_balance=txn.balance,
                            raw_data=txn.raw_data,
                        )
                    )
                    work_items.append(
                        CategorizationWorkItem(
                            transaction_id=txn_id,
                            user_id=work.user_id,
                            description=txn.description,
                            amount=txn.amount,
                            merchant=txn.merchant,
                            type=txn.type,
                        )
                    )
            job.transactions_count = len(work_items)
            self._checkpoint(session, job, TRANSACTIONS_PERSISTED)

        with self.db.session_scope() as session:
            job = get_job(session, job_id)
            for item in work_items:
                self.categorization_queue.enqueue(item.transaction_id, dump_payload(item), force=True, session=session)
            self._checkpoint(session, job, CATEGORIES_ENQUEUED)
        logger.info(f"Job {job_id}: enqueued {len(work_items)} category suggestions")

    def fail_job(self, item: QueuedItem, exc: Exception) -> None:
        """Give-up handler: record the final error on the job and mark it FAILED."""
        job_id = item.payload.get("jobId") or item.key
        if isinstance(exc, ImportPipelineError):
            message, code = exc.message, exc.code
        else:
            message, code = f"Unexpected error: {exc}", InvariantError.code
        with self.db.session_scope() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                logger.error(f"Cannot mark missing job {job_id} as failed: {message}")
                return
            job.password_ciphertext = None
            current = JobStatus(job.status)
            if not can_transition(current, JobStatus.FAILED) or current == JobStatus.REVIEW:
                logger.warning(f"Job {job_id} is {current}; not marking it FAILED ({message})")
                return
            failed = update_job_status(
                session,
                job,
                current,
                status=JobStatus.FAILED.value,
                error=message,
                error_code=code,
                completed_at=utcnow_iso(),
            )
            if not failed:
                logger.warning(f"Job {job_id} left {current} before it could be marked FAILED ({message})")
                return
        logger.error(f"Job {job_id} FAILED [{code}]: {message}")
