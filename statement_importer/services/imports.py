"""Import job operations used by the web layer: submit, status, confirm, cancel, retry.

Every function takes an open session and leaves committing to the caller's ``session_scope``.
Ownership is enforced by scoping every lookup to ``user_id``; a job owned by someone else is
reported as not found.
"""

import uuid
from decimal import Decimal
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from statement_importer.core.crypto import seal_password
from statement_importer.core.db import (
    FinancialAccount,
    ImportedAccount,
    ImportedTransaction,
    ImportJob,
    LedgerTransaction,
    User,
    delete_derived_records,
    get_job,
    update_job_status,
)
from statement_importer.core.errors import InvalidTransitionError, NotFoundError
from statement_importer.core.models import (
    AccountConfirmation,
    AccountType,
    AccountView,
    ConfirmationResult,
    ImportStatusView,
    ImportWorkItem,
    JobStatus,
    SubmitImportRequest,
    TransactionType,
    TransactionView,
    dump_payload,
)
from statement_importer.core.state import ensure_transition
from statement_importer.core.utils import get_logger, utcnow_iso
from statement_importer.workers.queue import WorkQueue

logger = get_logger("statement-importer.imports")

DEFAULT_TRANSACTIONS_CAP = 100


def _enqueue_job(session: Session, queue: WorkQueue, job: ImportJob) -> None:
    item = ImportWorkItem(
        job_id=job.id,
        user_id=job.user_id,
        file_ref=job.file_ref,
        file_type=job.file_type,
        has_password=job.requires_password,
    )
    queue.enqueue(job.id, dump_payload(item), session=session)


def submit_import(
    session: Session,
    queue: WorkQueue,
    user_id: str,
    request: SubmitImportRequest,
    encryption_key: str = "",
) -> ImportJob:
    """Create a PENDING import job for an already-stored file and enqueue it."""
    if session.get(User, user_id) is None:
        msg = f"User {user_id} not found"
        raise NotFoundError(msg)
    job = ImportJob(
        id=str(uuid.uuid4()),
        user_id=user_id,
        file_ref=request.file_ref,
        file_name=request.file_name,
        file_size=request.file_size,
        file_type=request.file_type.value,
        status=JobStatus.PENDING.value,
        progress=0,
        requires_password=request.password is not None,
        password_ciphertext=seal_password(request.password, encryption_key) if request.password else None,
    )
    session.add(job)
    session.flush()
    _enqueue_job(session, queue, job)
    logger.info(f"Submitted import job {job.id} for {request.file_ref} ({request.file_type})")
    return job


def _transaction_view(txn: ImportedTransaction) -> TransactionView:
    return TransactionView(
        id=txn.id,
        date=txn.date,
        description=txn.description,
        amount=txn.amount,
        type=txn.type,
        merchant=txn.merchant,
        balance=txn.running_balance,
        suggested_category_id=txn.suggested_category_id,
        category_confidence=txn.category_confidence,
    )


def get_import_status(
    session: Session,
    job_id: str,
    user_id: str,
    cap: int = DEFAULT_TRANSACTIONS_CAP,
) -> ImportStatusView:
    """Read-only projection of a job with its accounts and newest ``cap`` transactions each."""
    job = get_job(session, job_id, user_id)
    accounts = []
    for account in job.accounts:
        newest = session.execute(
            select(ImportedTransaction)
            .where(ImportedTransaction.imported_account_id == account.id)
            .order_by(ImportedTransaction.date.desc(), ImportedTransaction.position.desc())
            .limit(cap)
        ).scalars()
        accounts.append(
            AccountView(
                id=account.id,
                name=account.name,
                institution=account.bank_name or "",
                masked_number=account.masked_number,
                type=account.account_type,
                opening_balance=account.opening_balance,
                balance_needs_review=account.balance_needs_review,
                transaction_count=account.transaction_count,
                suggested_color=account.suggested_color,
                suggested_icon=account.suggested_icon,
                confidence=account.confidence or 0.0,
                transactions=[_transaction_view(txn) for txn in newest],
            )
        )
    return ImportStatusView(
        id=job.id,
        status=job.status,
        progress=job.progress,
        error=job.error,
        error_code=job.error_code,
        file_name=job.file_name,
        file_type=job.file_type,
        bank_format=job.bank_format,
        accounts_count=job.accounts_count,
        transactions_count=job.transactions_count,
        completed_at=job.completed_at,
        accounts=accounts,
    )


class AccountLedger(Protocol):
    """Permanent account/transaction store that confirmed imports are written into."""

    def create_account(
        self, user_id: str, account: ImportedAccount, name: str, account_type: AccountType
    ) -> str:
        """Create a permanent account and return its ID."""

    def create_transactions(
        self, user_id: str, account_id: str, transactions: list[ImportedTransaction]
    ) -> list[str]:
        """Create permanent transactions and return their IDs in order."""


def _signed(txn: ImportedTransaction) -> Decimal:
    return txn.amount if txn.type == TransactionType.INCOME else -txn.amount


class SqlLedger:
    """``AccountLedger`` writing into the ``financial_accounts`` and ``ledger_transactions`` tables."""

    def __init__(self, session: Session) -> None:
        """Bind the ledger to the caller's session."""
        self.session = session

    def create_account(
        self, user_id: str, account: ImportedAccount, name: str, account_type: AccountType
    ) -> str:
        """Create a permanent account whose current balance includes every imported transaction."""
        balance = account.opening_balance + sum((_signed(txn) for txn in account.transactions), Decimal(0))
        row = FinancialAccount(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            bank_name=account.bank_name,
            masked_number=account.masked_number,
            account_type=account_type.value,
            color=account.suggested_color,
            icon=account.suggested_icon,
            initial_balance=account.opening_balance,
            current_balance=balance,
        )
        self.session.add(row)
        return row.id

    def create_transactions(
        self, user_id: str, account_id: str, transactions: list[ImportedTransaction]
    ) -> list[str]:
        """Copy imported transactions into the ledger."""
        ids = []
        for txn in transactions:
            row = LedgerTransaction(
                id=str(uuid.uuid4()),
                user_id=user_id,
                account_id=account_id,
                date=txn.date,
                description=txn.description,
                amount=txn.amount,
                type=txn.type,
                merchant=txn.merchant,
                category_id=txn.suggested_category_id,
            )
            self.session.add(row)
            ids.append(row.id)
        return ids


def confirm_import(
    session: Session,
    job_id: str,
    user_id: str,
    confirmations: list[AccountConfirmation],
    ledger: AccountLedger | None = None,
) -> ConfirmationResult:
    """Materialize confirmed accounts in the permanent store and discard the rest.

    Only a job in REVIEW can be confirmed. Accounts without a confirming entry are treated as
    rejected.
    """
    job = get_job(session, job_id, user_id)
    ensure_transition(JobStatus(job.status), JobStatus.CONFIRMED)
    ledger = ledger or SqlLedger(session)

    accounts = {account.id: account for account in job.accounts}
    unknown = [entry.account_id for entry in confirmations if entry.account_id not in accounts]
    if unknown:
        msg = f"Accounts {', '.join(unknown)} do not belong to import job {job_id}"
        raise NotFoundError(msg)

    decisions = {entry.account_id: entry for entry in confirmations}
    result = ConfirmationResult(accounts_created=0, transactions_created=0)
    rejected = []
    for account_id, account in accounts.items():
        decision = decisions.get(account_id)
        if decision is None or not decision.confirmed:
            rejected.append(account_id)
            continue
        account_type = decision.type_override or AccountType(account.account_type)
        name = decision.name_override or account.name
        permanent_id = ledger.create_account(user_id, account, name, account_type)
        ledger_ids = ledger.create_transactions(user_id, permanent_id, list(account.transactions))
        for txn, ledger_id in zip(account.transactions, ledger_ids, strict=True):
            txn.is_confirmed = True
            txn.confirmed_transaction_id = ledger_id
        account.is_confirmed = True
        account.confirmed_account_id = permanent_id
        result.accounts_created += 1
        result.transactions_created += len(ledger_ids)
        result.account_ids.append(permanent_id)

    if rejected:
        session.execute(delete(ImportedTransaction).where(ImportedTransaction.imported_account_id.in_(rejected)))
        session.execute(delete(ImportedAccount).where(ImportedAccount.id.in_(rejected)))

    confirmed = update_job_status(
        session, job, JobStatus.REVIEW, status=JobStatus.CONFIRMED.value, completed_at=utcnow_iso()
    )
    if not confirmed:
        msg = f"Import job {job_id} left REVIEW while it was being confirmed"
        raise InvalidTransitionError(msg)
    logger.info(
        f"Confirmed job {job_id}: {result.accounts_created} accounts, "
        f"{result.transactions_created} transactions, {len(rejected)} accounts discarded"
    )
    return result


def cancel_import(session: Session, job_id: str, user_id: str) -> ImportJob:
    """Mark a job CANCELLED and discard its derived records."""
    job = get_job(session, job_id, user_id)
    current = JobStatus(job.status)
    ensure_transition(current, JobStatus.CANCELLED)
    delete_derived_records(session, job_id)
    cancelled = update_job_status(
        session,
        job,
        current,
        status=JobStatus.CANCELLED.value,
        password_ciphertext=None,
        completed_at=utcnow_iso(),
    )
    if not cancelled:
        msg = f"Import job {job_id} changed status while it was being cancelled"
        raise InvalidTransitionError(msg)
    logger.info(f"Cancelled import job {job_id}")
    return job


def retry_import(
    session: Session,
    queue: WorkQueue,
    job_id: str,
    user_id: str,
    *,
    password: str | None = None,
    encryption_key: str = "",
) -> ImportJob:
    """Start a fresh job for the file of a FAILED job; the failed job stays FAILED.

    A new ``password`` can be supplied, for example after a ``PASSWORD_INCORRECT`` failure.
    """
    failed = get_job(session, job_id, user_id)
    if JobStatus(failed.status) != JobStatus.FAILED:
        msg = f"Only FAILED jobs can be retried; job {job_id} is {failed.status}"
        raise InvalidTransitionError(msg)
    job = ImportJob(
        id=str(uuid.uuid4()),
        user_id=user_id,
        file_ref=failed.file_ref,
        file_name=failed.file_name,
        file_size=failed.file_size,
        file_type=failed.file_type,
        status=JobStatus.PENDING.value,
        progress=0,
        requires_password=password is not None or failed.requires_password,
        password_ciphertext=seal_password(password, encryption_key) if password else None,
        retried_from=failed.id,
    )
    session.add(job)
    session.flush()
    _enqueue_job(session, queue, job)
    logger.info(f"Retrying failed job {job_id} as {job.id}")
    return job
