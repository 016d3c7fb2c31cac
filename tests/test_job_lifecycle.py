"""Integration tests for the import job lifecycle: submit, process, review, confirm, cancel, retry."""

from datetime import date
from decimal import Decimal
from io import BytesIO

import pytest
from pypdf import PdfWriter
from sqlalchemy import func, select

from statement_importer.core.db import Database, FinancialAccount, ImportedAccount, LedgerTransaction, get_job
from statement_importer.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    TransientError,
)
from statement_importer.core.models import (
    AccountConfirmation,
    AccountType,
    BankFormat,
    CategorizationWorkItem,
    FileType,
    JobStatus,
    RawDocument,
    SubmitImportRequest,
    TransactionType,
)
from statement_importer.core.settings import Settings
from statement_importer.core.state import DECRYPTED, Checkpoint
from statement_importer.services.file_service import FileService, InMemoryObjectStore
from statement_importer.services.imports import (
    cancel_import,
    confirm_import,
    get_import_status,
    retry_import,
    submit_import,
)
from statement_importer.workers import build_pools, job_runner
from statement_importer.workers.categorization import CategorySuggestion
from statement_importer.workers.job_runner import ImportJobRunner, derived_id
from statement_importer.workers.pool import WorkerPool
from statement_importer.workers.queue import BURIED, DONE, IMPORT_QUEUE, QUEUED, QueuedItem, WorkQueue

from conftest import GENERIC_CSV, OTHER_USER_ID, USER_ID, statement_pdf

CSV_KEY = "uploads/user-1/movimientos.csv"
PDF_KEY = "uploads/user-1/extracto.pdf"


def _submit(
    db: Database,
    queue: WorkQueue,
    settings: Settings,
    file_ref: str = CSV_KEY,
    file_type: FileType = FileType.CSV,
    password: str | None = None,
) -> str:
    request = SubmitImportRequest(
        file_ref=file_ref,
        file_type=file_type,
        file_name=file_ref.rsplit("/", 1)[-1],
        password=password,
    )
    with db.session_scope() as session:
        return submit_import(session, queue, USER_ID, request, settings.encryption_key).id


def _job(db: Database, job_id: str) -> dict:
    with db.session_scope() as session:
        job = get_job(session, job_id)
        return {
            "status": JobStatus(job.status),
            "progress": job.progress,
            "error_code": job.error_code,
            "password_ciphertext": job.password_ciphertext,
            "requires_password": job.requires_password,
            "completed_at": job.completed_at,
        }


def _encrypted_pdf(password: str) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.encrypt(password)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class FixedSuggester:
    """Suggests the same category for every transaction."""

    def suggest(self, item: CategorizationWorkItem) -> CategorySuggestion:
        """Return a fixed suggestion."""
        return CategorySuggestion(category_id=f"cat-{item.type.value.lower()}", confidence=0.75)


class FlakyStore(InMemoryObjectStore):
    """Object store whose first downloads fail with a transient error."""

    def __init__(self, failures: int) -> None:
        """Fail the next ``failures`` downloads."""
        super().__init__()
        self.failures = failures

    def download_fileobj(self, key: str) -> bytes:
        """Fail while failures remain, then download normally."""
        if self.failures > 0:
            self.failures -= 1
            msg = "object storage unavailable"
            raise TransientError(msg)
        return super().download_fileobj(key)


class CancellingFileService(FileService):
    """File service that cancels the job while its file is being downloaded."""

    def __init__(self, store: InMemoryObjectStore, db: Database) -> None:
        """Bind the service to the database holding the job."""
        super().__init__(store)
        self.db = db
        self.job_id: str | None = None

    def load_document(self, key: str, file_type: FileType, file_name: str | None = None) -> RawDocument:
        """Cancel the job, then download as usual."""
        with self.db.session_scope() as session:
            cancel_import(session, self.job_id, USER_ID)
        return super().load_document(key, file_type, file_name)


def test_csv_import_reaches_review(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    categorization_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A CSV job runs to REVIEW at 100% with its account, transactions and category items."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    import_pool, categorization_pool = pools
    if import_pool.run_until_idle() != 1:
        msg = "Expected exactly one import delivery"
        raise AssertionError(msg)

    job = _job(db, job_id)
    if (job["status"], job["progress"]) != (JobStatus.REVIEW, 100) or job["completed_at"] is None:
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    with db.session_scope() as session:
        status = get_import_status(session, job_id, USER_ID)
    if status.accounts_count != 1 or status.transactions_count != 3:  # noqa: PLR2004
        msg = f"Unexpected counts {status.accounts_count}/{status.transactions_count}"
        raise AssertionError(msg)
    account = status.accounts[0]
    if account.id != derived_id(job_id, "account", 0) or not account.balance_needs_review:
        msg = f"Unexpected account {account}"
        raise AssertionError(msg)
    if [txn.description for txn in account.transactions] != ["Refund", "Salary", "Coffee Shop"]:
        msg = f"Expected newest transactions first, got {account.transactions}"
        raise AssertionError(msg)
    if import_queue.stats() != {DONE: 1} or categorization_queue.stats() != {QUEUED: 3}:
        msg = f"Unexpected queue stats {import_queue.stats()} / {categorization_queue.stats()}"
        raise AssertionError(msg)
    categorization_pool.run_until_idle()
    if categorization_queue.stats() != {DONE: 3}:
        msg = f"Unexpected categorization stats {categorization_queue.stats()}"
        raise AssertionError(msg)


def test_status_is_capped_and_scoped_to_owner(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """Only the newest transactions are listed, and other users cannot see the job."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    pools[0].run_until_idle()
    with db.session_scope() as session:
        capped = get_import_status(session, job_id, USER_ID, cap=2)
        if [txn.description for txn in capped.accounts[0].transactions] != ["Refund", "Salary"]:
            msg = f"Unexpected capped list {capped.accounts[0].transactions}"
            raise AssertionError(msg)
        with pytest.raises(NotFoundError):
            get_import_status(session, job_id, OTHER_USER_ID)


def test_submit_for_unknown_user_fails(db: Database, import_queue: WorkQueue) -> None:
    """Jobs can only be created for existing users."""
    request = SubmitImportRequest(file_ref=CSV_KEY, file_type=FileType.CSV)
    with pytest.raises(NotFoundError), db.session_scope() as session:
        submit_import(session, import_queue, "ghost", request)
    if import_queue.stats():
        msg = "Nothing should be enqueued for an unknown user"
        raise AssertionError(msg)


def test_category_suggestions_are_stored(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    file_service: FileService,
) -> None:
    """The categorization consumer stores suggestions without touching the job."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    import_pool, categorization_pool = build_pools(db, settings, file_service, suggester=FixedSuggester())
    import_pool.run_until_idle()
    categorization_pool.run_until_idle()
    with db.session_scope() as session:
        status = get_import_status(session, job_id, USER_ID)
    suggestions = {(txn.description, txn.suggested_category_id) for txn in status.accounts[0].transactions}
    expected = {("Coffee Shop", "cat-expense"), ("Salary", "cat-income"), ("Refund", "cat-income")}
    if suggestions != expected or status.status != JobStatus.REVIEW:
        msg = f"Unexpected suggestions {suggestions} ({status.status})"
        raise AssertionError(msg)


def test_password_is_cleared_after_decryption(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A supplied password is stored sealed and removed once the worker has used it."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings, password="s3cret!")
    before = _job(db, job_id)
    if not before["requires_password"] or not before["password_ciphertext"]:
        msg = "Expected a sealed password on the queued job"
        raise AssertionError(msg)
    if "s3cret!" in before["password_ciphertext"]:
        msg = "Password stored in clear text"
        raise AssertionError(msg)
    pools[0].run_until_idle()
    after = _job(db, job_id)
    if after["status"] != JobStatus.REVIEW or after["password_ciphertext"] is not None:
        msg = f"Unexpected job state {after}"
        raise AssertionError(msg)


def test_wrong_pdf_password_fails_without_retry(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """Credential errors fail the job on the first attempt and clear the stored password."""
    store.upload_fileobj(PDF_KEY, _encrypted_pdf("correct"))
    job_id = _submit(db, import_queue, settings, PDF_KEY, FileType.PDF, password="wrong")
    if pools[0].run_until_idle() != 1:
        msg = "Credential errors must not be retried"
        raise AssertionError(msg)
    job = _job(db, job_id)
    if (job["status"], job["error_code"], job["password_ciphertext"]) != (
        JobStatus.FAILED,
        "PASSWORD_INCORRECT",
        None,
    ):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    if import_queue.stats() != {BURIED: 1}:
        msg = f"Unexpected queue stats {import_queue.stats()}"
        raise AssertionError(msg)


def test_pdf_without_text_layer_fails_after_decryption(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A decrypted PDF with nothing to read is an input-quality failure."""
    store.upload_fileobj(PDF_KEY, _encrypted_pdf("correct"))
    job_id = _submit(db, import_queue, settings, PDF_KEY, FileType.PDF, password="correct")
    pools[0].run_until_idle()
    job = _job(db, job_id)
    if (job["status"], job["error_code"], job["password_ciphertext"]) != (JobStatus.FAILED, "INPUT_QUALITY", None):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    if job["progress"] != 40:  # noqa: PLR2004
        msg = f"Expected progress to stay at the last checkpoint, got {job['progress']}"
        raise AssertionError(msg)


def test_transient_failures_are_retried(
    db: Database,
    import_queue: WorkQueue,
    settings: Settings,
) -> None:
    """A transient storage error is retried with backoff and the job still succeeds."""
    store = FlakyStore(failures=1)
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    import_pool, _ = build_pools(db, settings, FileService(store))
    if import_pool.run_until_idle() != 2:  # noqa: PLR2004
        msg = "Expected one failed and one successful delivery"
        raise AssertionError(msg)
    if _job(db, job_id)["status"] != JobStatus.REVIEW:
        msg = f"Unexpected job state {_job(db, job_id)}"
        raise AssertionError(msg)


def test_exhausted_transient_failures_fail_the_job(
    db: Database,
    import_queue: WorkQueue,
    settings: Settings,
) -> None:
    """After the last attempt a transient error becomes a FAILED job."""
    store = FlakyStore(failures=10)
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    import_pool, _ = build_pools(db, settings, FileService(store))
    if import_pool.run_until_idle() != settings.import_max_attempts:
        msg = f"Expected {settings.import_max_attempts} deliveries"
        raise AssertionError(msg)
    job = _job(db, job_id)
    if (job["status"], job["error_code"]) != (JobStatus.FAILED, "TRANSIENT"):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)


def test_redelivery_of_finished_job_is_a_no_op(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    categorization_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """Delivering a job that already reached REVIEW again changes nothing."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    pools[0].run_until_idle()
    payload = {"jobId": job_id, "userId": USER_ID, "fileRef": CSV_KEY, "fileType": "CSV"}
    import_queue.enqueue(job_id, payload, force=True)
    if pools[0].run_until_idle() != 1:
        msg = "Expected the redelivered item to be consumed"
        raise AssertionError(msg)
    with db.session_scope() as session:
        accounts = session.execute(
            select(func.count()).select_from(ImportedAccount).where(ImportedAccount.import_job_id == job_id)
        ).scalar_one()
    job = _job(db, job_id)
    if (job["status"], job["progress"], accounts) != (JobStatus.REVIEW, 100, 1):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    if categorization_queue.stats() != {QUEUED: 3}:
        msg = f"Category items must not be duplicated: {categorization_queue.stats()}"
        raise AssertionError(msg)


def test_confirm_creates_permanent_records(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """Confirmed accounts land in the ledger with their transactions; the job becomes CONFIRMED."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    pools[0].run_until_idle()
    account_id = derived_id(job_id, "account", 0)
    decision = AccountConfirmation(
        account_id=account_id, confirmed=True, name_override="Mi cuenta", type_override=AccountType.SAVINGS
    )
    with db.session_scope() as session:
        result = confirm_import(session, job_id, USER_ID, [decision])
    if (result.accounts_created, result.transactions_created) != (1, 3):
        msg = f"Unexpected confirmation result {result}"
        raise AssertionError(msg)
    with db.session_scope() as session:
        account = session.get(FinancialAccount, result.account_ids[0])
        ledger_count = session.execute(select(func.count()).select_from(LedgerTransaction)).scalar_one()
        imported = session.get(ImportedAccount, account_id)
        summary = (account.name, account.account_type, account.current_balance, ledger_count, imported.is_confirmed)
    if summary != ("Mi cuenta", "SAVINGS", 1990000, 3, True):
        msg = f"Unexpected permanent records {summary}"
        raise AssertionError(msg)
    if _job(db, job_id)["status"] != JobStatus.CONFIRMED:
        msg = "Expected the job to be CONFIRMED"
        raise AssertionError(msg)
    with pytest.raises(InvalidTransitionError), db.session_scope() as session:
        confirm_import(session, job_id, USER_ID, [decision])


def test_confirm_rejections_and_unknown_accounts(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """Unlisted accounts are discarded; accounts of other jobs are rejected."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    pools[0].run_until_idle()
    unknown = AccountConfirmation(account_id="not-an-account", confirmed=True)
    with pytest.raises(NotFoundError), db.session_scope() as session:
        confirm_import(session, job_id, USER_ID, [unknown])
    with db.session_scope() as session:
        result = confirm_import(session, job_id, USER_ID, [])
    with db.session_scope() as session:
        remaining = session.execute(select(func.count()).select_from(ImportedAccount)).scalar_one()
    if (result.accounts_created, remaining) != (0, 0):
        msg = f"Expected every account discarded, got {result} and {remaining} remaining"
        raise AssertionError(msg)


def test_cancel_before_processing(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A job cancelled while queued is skipped by the worker."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings, password="s3cret!")
    with db.session_scope() as session:
        cancel_import(session, job_id, USER_ID)
    pools[0].run_until_idle()
    job = _job(db, job_id)
    if (job["status"], job["progress"], job["password_ciphertext"]) != (JobStatus.CANCELLED, 0, None):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    with pytest.raises(InvalidTransitionError), db.session_scope() as session:
        cancel_import(session, job_id, USER_ID)


def test_cancel_during_processing_discards_derived_records(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
) -> None:
    """The worker notices a cancellation at the next checkpoint and stops."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    file_service = CancellingFileService(store, db)
    file_service.job_id = job_id
    import_pool, _ = build_pools(db, settings, file_service)
    import_pool.run_until_idle()
    with db.session_scope() as session:
        accounts = session.execute(select(func.count()).select_from(ImportedAccount)).scalar_one()
    if _job(db, job_id)["status"] != JobStatus.CANCELLED or accounts != 0:
        msg = f"Unexpected state after cancellation: {_job(db, job_id)}, {accounts} accounts"
        raise AssertionError(msg)
    if import_queue.stats() != {DONE: 1}:
        msg = f"A cancelled job is not a failure: {import_queue.stats()}"
        raise AssertionError(msg)


def test_encrypted_statement_pdf_reaches_review(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A password-protected statement PDF is decrypted, read through its text layer and staged."""
    store.upload_fileobj(PDF_KEY, statement_pdf(password="s3cret!"))
    job_id = _submit(db, import_queue, settings, PDF_KEY, FileType.PDF, password="s3cret!")
    pools[0].run_until_idle()
    job = _job(db, job_id)
    if (job["status"], job["progress"], job["password_ciphertext"]) != (JobStatus.REVIEW, 100, None):
        msg = f"Unexpected job state {job}"
        raise AssertionError(msg)
    with db.session_scope() as session:
        status = get_import_status(session, job_id, USER_ID)
    account = status.accounts[0]
    if (status.bank_format, account.masked_number, account.type) != (
        BankFormat.BANCOLOMBIA,
        "9012",
        AccountType.SAVINGS,
    ):
        msg = f"Unexpected statement account {account}"
        raise AssertionError(msg)
    if account.opening_balance != Decimal("1000000.00") or account.balance_needs_review:
        msg = f"Expected the printed previous balance, got {account.opening_balance}"
        raise AssertionError(msg)
    summary = [(txn.date, txn.type, txn.amount) for txn in account.transactions]
    expected = [
        (date(2024, 1, 10), TransactionType.EXPENSE, Decimal("50000.00")),
        (date(2024, 1, 2), TransactionType.INCOME, Decimal("2000000.00")),
        (date(2023, 12, 20), TransactionType.EXPENSE, Decimal("15000.00")),
    ]
    if summary != expected:
        msg = f"Unexpected statement transactions {summary}"
        raise AssertionError(msg)


def test_cancel_between_status_read_and_write_is_kept(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A cancellation committed while a checkpoint is being written stays CANCELLED."""
    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    job_id = _submit(db, import_queue, settings)
    original_advance = job_runner.advance

    def cancel_then_advance(current: JobStatus, progress: int, checkpoint: Checkpoint) -> Checkpoint:
        if checkpoint == DECRYPTED:
            with db.session_scope() as session:
                cancel_import(session, job_id, USER_ID)
        return original_advance(current, progress, checkpoint)

    monkeypatch.setattr(job_runner, "advance", cancel_then_advance)
    pools[0].run_until_idle()
    job = _job(db, job_id)
    if (job["status"], job["progress"]) != (JobStatus.CANCELLED, 20):
        msg = f"Cancelled job moved on to {job}"
        raise AssertionError(msg)
    with db.session_scope() as session:
        accounts = session.execute(select(func.count()).select_from(ImportedAccount)).scalar_one()
    if accounts != 0 or import_queue.stats() != {DONE: 1}:
        msg = f"Expected no derived records and a settled item, got {accounts} accounts, {import_queue.stats()}"
        raise AssertionError(msg)


def test_give_up_does_not_overwrite_concurrent_cancel(
    db: Database,
    file_service: FileService,
    import_queue: WorkQueue,
    categorization_queue: WorkQueue,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Marking a job FAILED loses to a cancellation that lands first."""
    job_id = _submit(db, import_queue, settings)
    runner = ImportJobRunner(db, file_service, settings, categorization_queue)
    original_can_transition = job_runner.can_transition

    def cancel_then_check(current: JobStatus, target: JobStatus) -> bool:
        with db.session_scope() as session:
            cancel_import(session, job_id, USER_ID)
        return original_can_transition(current, target)

    monkeypatch.setattr(job_runner, "can_transition", cancel_then_check)
    item = QueuedItem(id=1, queue=IMPORT_QUEUE, key=job_id, payload={"jobId": job_id}, attempts=3)
    runner.fail_job(item, TransientError("object storage unavailable"))
    job = _job(db, job_id)
    if (job["status"], job["error_code"]) != (JobStatus.CANCELLED, None):
        msg = f"Cancelled job was overwritten: {job}"
        raise AssertionError(msg)


def test_retry_failed_job(
    db: Database,
    store: InMemoryObjectStore,
    import_queue: WorkQueue,
    settings: Settings,
    pools: tuple[WorkerPool, WorkerPool],
) -> None:
    """A job that failed on a missing file succeeds when retried after the upload arrives."""
    job_id = _submit(db, import_queue, settings)
    pools[0].run_until_idle()
    failed = _job(db, job_id)
    if (failed["status"], failed["error_code"]) != (JobStatus.FAILED, "INVARIANT"):
        msg = f"Unexpected job state {failed}"
        raise AssertionError(msg)

    store.upload_fileobj(CSV_KEY, GENERIC_CSV)
    with db.session_scope() as session:
        new_id = retry_import(session, import_queue, job_id, USER_ID).id
    pools[0].run_until_idle()
    with db.session_scope() as session:
        retried_from = get_job(session, new_id).retried_from
    if _job(db, new_id)["status"] != JobStatus.REVIEW or retried_from != job_id:
        msg = f"Unexpected retried job {_job(db, new_id)}"
        raise AssertionError(msg)
    if _job(db, job_id)["status"] != JobStatus.FAILED:
        msg = "The original job must stay FAILED"
        raise AssertionError(msg)
    with pytest.raises(InvalidTransitionError), db.session_scope() as session:
        retry_import(session, import_queue, new_id, USER_ID)
