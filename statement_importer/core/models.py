"""Pydantic models for the Statement Importer.

This module defines the value types that flow between pipeline stages (raw documents, decoded
tables, layout patterns, extracted transactions, detected accounts), the queue work items, and the
read-only projections returned to the web layer. Persistence rows live in ``core.db``.
"""

from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FileType(StrEnum):
    """Kinds of uploaded statement files."""

    CSV = "CSV"
    PDF = "PDF"
    IMAGE = "IMAGE"


class JobStatus(StrEnum):
    """Import job lifecycle states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PARSING = "PARSING"
    CATEGORIZING = "CATEGORIZING"
    REVIEW = "REVIEW"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TransactionType(StrEnum):
    """Direction of a transaction; amounts themselves are always unsigned."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class AccountType(StrEnum):
    """Account kinds a detected account can be assigned."""

    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"
    CREDIT_CARD = "CREDIT_CARD"
    LOAN = "LOAN"
    CASH = "CASH"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class BankFormat(StrEnum):
    """Known institution export layouts plus the generic fallback."""

    BANCOLOMBIA = "BANCOLOMBIA"
    NEQUI = "NEQUI"
    DAVIVIENDA = "DAVIVIENDA"
    BBVA = "BBVA"
    BANCO_BOGOTA = "BANCO_BOGOTA"
    GENERIC = "GENERIC"


class RawDocument(BaseModel):
    """Immutable uploaded file contents, consumed once by the pipeline."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    file_type: FileType
    file_name: str | None = None


class DecodedText(BaseModel):
    """Text decoded from raw bytes plus the encoding that was used."""

    text: str
    encoding: str
    lossy: bool = False


class DecodedTable(BaseModel):
    """Rows of string cells decoded from a tabular export.

    ``rows`` holds data rows only. Rows found before the header (bank preamble with account
    number, period, etc.) are kept in ``metadata_rows``. Indices of data rows whose width differs
    from ``column_count`` are listed in ``inconsistent_rows``.
    """

    headers: list[str] | None = None
    rows: list[list[str]] = Field(default_factory=list)
    metadata_rows: list[list[str]] = Field(default_factory=list)
    encoding: str = "utf-8"
    column_count: int = 0
    inconsistent_rows: list[int] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        """Number of data rows."""
        return len(self.rows)


class LayoutPattern(BaseModel):
    """Static description of one institution's export layout."""

    model_config = ConfigDict(frozen=True)

    institution: BankFormat
    institution_name: str
    header_patterns: tuple[str, ...]
    min_columns: int
    max_columns: int
    date_column: int = 0
    description_column: int = 1
    amount_column: int = 2
    balance_column: int | None = None
    priority: int = 0
    color: str = "#6366f1"

    def accepts_column_count(self, count: int) -> bool:
        """Whether ``count`` lies inside the expected column range."""
        return self.min_columns <= count <= self.max_columns


class ScoredPattern(BaseModel):
    """A layout pattern with the score it obtained against one table."""

    model_config = ConfigDict(frozen=True)

    pattern: LayoutPattern
    score: float


class ClassificationResult(BaseModel):
    """Outcome of format classification; ``pattern`` is None for the generic layout."""

    model_config = ConfigDict(frozen=True)

    bank_format: BankFormat
    confidence: float
    pattern: LayoutPattern | None = None
    candidates: tuple[ScoredPattern, ...] = ()

    @property
    def is_generic(self) -> bool:
        """True when no registered layout was confident enough."""
        return self.pattern is None


class ColumnMap(BaseModel):
    """Resolved column positions used to read one table."""

    date: int
    description: int
    amount: int
    balance: int | None = None
    debit: int | None = None
    credit: int | None = None

    @property
    def has_debit_credit(self) -> bool:
        """True when the table exposes separate debit and credit columns."""
        return self.debit is not None and self.credit is not None


class ExtractedTransaction(BaseModel):
    """One normalized transaction; ``amount`` is a magnitude and ``type`` carries the direction."""

    date: date
    description: str
    amount: Decimal = Field(ge=0)
    type: TransactionType
    merchant: str | None = None
    balance: Decimal | None = None
    raw_data: dict[str, str] | None = None


class DetectedAccount(BaseModel):
    """An account inferred from one coherent set of extracted transactions."""

    name: str
    institution: str
    masked_number: str | None = None
    account_type: AccountType
    opening_balance: Decimal = Decimal(0)
    balance_needs_review: bool = False
    transaction_count: int = 0
    suggested_color: str | None = None
    suggested_icon: str | None = None
    confidence: float = 0.0
    transactions: list[ExtractedTransaction] = Field(default_factory=list)


class ParsedImport(BaseModel):
    """Everything the pure pipeline stages derive from one document."""

    accounts: list[DetectedAccount]
    bank_format: BankFormat = BankFormat.GENERIC
    confidence: float = 0.0
    encoding: str | None = None
    skipped_rows: int = 0
    warnings: list[str] = Field(default_factory=list)

    @property
    def transaction_count(self) -> int:
        """Total transactions across all accounts."""
        return sum(len(account.transactions) for account in self.accounts)


class ImportWorkItem(BaseModel):
    """Queue payload that drives one import job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    user_id: str = Field(alias="userId")
    file_ref: str = Field(alias="fileRef")
    file_type: FileType = Field(alias="fileType")
    has_password: bool = Field(default=False, alias="hasPassword")


class CategorizationWorkItem(BaseModel):
    """Queue payload handed to the category-suggestion consumer."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(alias="transactionId")
    user_id: str = Field(alias="userId")
    description: str
    amount: Decimal
    merchant: str | None = None
    type: TransactionType


class TransactionView(BaseModel):
    """Read-only projection of an imported transaction."""

    id: str
    date: date
    description: str
    amount: Decimal
    type: TransactionType
    merchant: str | None = None
    balance: Decimal | None = None
    suggested_category_id: str | None = None
    category_confidence: float | None = None


class AccountView(BaseModel):
    """Read-only projection of an imported account with a capped transaction list."""

    id: str
    name: str
    institution: str
    masked_number: str | None = None
    type: AccountType
    opening_balance: Decimal
    balance_needs_review: bool
    transaction_count: int
    suggested_color: str | None = None
    suggested_icon: str | None = None
    confidence: float
    transactions: list[TransactionView] = Field(default_factory=list)


class ImportStatusView(BaseModel):
    """Status projection polled by clients."""

    id: str
    status: JobStatus
    progress: int
    error: str | None = None
    error_code: str | None = None
    file_name: str | None = None
    file_type: FileType
    bank_format: BankFormat | None = None
    accounts_count: int = 0
    transactions_count: int = 0
    completed_at: str | None = None
    accounts: list[AccountView] = Field(default_factory=list)


class AccountConfirmation(BaseModel):
    """User decision for one imported account."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId")
    confirmed: bool
    name_override: str | None = Field(default=None, alias="nameOverride")
    type_override: AccountType | None = Field(default=None, alias="typeOverride")


class ConfirmationResult(BaseModel):
    """Counts of permanent records created by a confirmation."""

    accounts_created: int
    transactions_created: int
    account_ids: list[str] = Field(default_factory=list)


class SubmitImportRequest(BaseModel):
    """Request body for registering an already-stored file for import."""

    file_ref: str
    file_type: FileType
    file_name: str | None = None
    file_size: int | None = None
    password: str | None = None


class ConfirmImportRequest(BaseModel):
    """Request body for confirming an import."""

    accounts: list[AccountConfirmation]


class RetryImportRequest(BaseModel):
    """Optional request body for retrying a failed import with a new password."""

    password: str | None = None


class JobAccepted(BaseModel):
    """Response for operations that (re)queue or change an import job."""

    job_id: str
    status: JobStatus
    retried_from: str | None = None


def dump_payload(model: BaseModel) -> dict[str, Any]:
    """Serialize a work item the way it is stored on the queue."""
    return model.model_dump(mode="json", by_alias=True)
