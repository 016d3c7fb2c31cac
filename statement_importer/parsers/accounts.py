"""Account inference from extracted transactions and file metadata.

Every function here is pure. Raw account numbers never leave this module: only the last four
digits are returned by ``mask_account_number``.
"""

import re
from decimal import Decimal

from statement_importer.core.models import (
    AccountType,
    BankFormat,
    ClassificationResult,
    DecodedTable,
    DetectedAccount,
    ExtractedTransaction,
    TransactionType,
)
from statement_importer.core.utils import strip_accents
from statement_importer.parsers.layouts import ACCOUNT_TYPE_NAMES, bank_name, suggested_color, suggested_icon
from statement_importer.parsers.statement_text import StatementMetadata

ACCOUNT_NUMBER_RE = re.compile(r"(?<!\d)(\d{10,20})(?!\d)")
METADATA_SCAN_ROWS = 5

CREDIT_CARD_PATTERNS = tuple(re.compile(p) for p in (r"pago.*tarjeta", r"cuota", r"interes.*mora", r"avance"))
SAVINGS_PATTERNS = tuple(re.compile(p) for p in (r"interes.*ahorro", r"rendimiento", r"gmf.*exento"))
SAVINGS_INCOME_RATIO = 2


def mask_account_number(text: str | None) -> str | None:
    """Return the last four digits of the first 10-20 digit run in ``text``."""
    if not text:
        return None
    match = ACCOUNT_NUMBER_RE.search(text)
    return match.group(1)[-4:] if match else None


def find_masked_number(metadata_rows: list[list[str]], file_name: str | None = None) -> str | None:
    """Scan preamble rows, then the file name, for an account number and mask it."""
    for row in metadata_rows[:METADATA_SCAN_ROWS]:
        for cell in row:
            masked = mask_account_number(cell)
            if masked:
                return masked
    return mask_account_number(file_name)


def infer_account_type(transactions: list[ExtractedTransaction]) -> AccountType:
    """Guess the account type from description vocabulary and the income/expense mix."""
    if not transactions:
        return AccountType.CHECKING
    descriptions = [strip_accents(txn.description.lower()) for txn in transactions]
    if any(p.search(d) for d in descriptions for p in CREDIT_CARD_PATTERNS):
        return AccountType.CREDIT_CARD
    if any(p.search(d) for d in descriptions for p in SAVINGS_PATTERNS):
        return AccountType.SAVINGS
    income = sum(1 for txn in transactions if txn.type == TransactionType.INCOME)
    expense = sum(1 for txn in transactions if txn.type == TransactionType.EXPENSE)
    if income > expense * SAVINGS_INCOME_RATIO:
        return AccountType.SAVINGS
    return AccountType.CHECKING


def signed_amount(txn: ExtractedTransaction) -> Decimal:
    """Balance delta of one transaction: income adds, expenses and transfers subtract."""
    return txn.amount if txn.type == TransactionType.INCOME else -txn.amount


def chronological(transactions: list[ExtractedTransaction]) -> list[ExtractedTransaction]:
    """Return transactions oldest first, keeping file order for same-day entries.

    Many exports list the newest movement first; that is detected from the first and last dates.
    """
    if len(transactions) > 1 and transactions[0].date > transactions[-1].date:
        return list(reversed(transactions))
    return list(transactions)


def opening_balance(transactions: list[ExtractedTransaction]) -> tuple[Decimal, bool]:
    """Reconstruct the balance before the first transaction.

    Starting from the newest transaction that carries a running balance, each delta is reversed
    back to the oldest transaction. Returns ``(balance, True)`` on success and ``(0, False)``
    when no running balance exists; the latter needs a human to supply the real value.
    """
    ordered = chronological(transactions)
    anchor = next((i for i in range(len(ordered) - 1, -1, -1) if ordered[i].balance is not None), None)
    if anchor is None:
        return Decimal(0), False
    balance = ordered[anchor].balance
    for txn in reversed(ordered[: anchor + 1]):
        balance -= signed_amount(txn)
    return balance, True


def account_name(institution: str, account_type: AccountType, masked_number: str | None) -> str:
    """Display name such as ``"Bancolombia Ahorros ****1234"``."""
    name = f"{institution} {ACCOUNT_TYPE_NAMES[account_type]}"
    return f"{name} ****{masked_number}" if masked_number else name


def build_account(
    bank_format: BankFormat,
    transactions: list[ExtractedTransaction],
    confidence: float,
    *,
    masked_number: str | None = None,
    account_type: AccountType | None = None,
    institution: str | None = None,
    balance: tuple[Decimal, bool] | None = None,
) -> DetectedAccount:
    """Assemble a ``DetectedAccount`` and fill every inferred field that was not given."""
    account_type = account_type or infer_account_type(transactions)
    institution = institution or bank_name(bank_format)
    start, known = balance if balance is not None else opening_balance(transactions)
    return DetectedAccount(
        name=account_name(institution, account_type, masked_number),
        institution=institution,
        masked_number=masked_number,
        account_type=account_type,
        opening_balance=start,
        balance_needs_review=not known,
        transaction_count=len(transactions),
        suggested_color=suggested_color(bank_format),
        suggested_icon=suggested_icon(account_type),
        confidence=confidence,
        transactions=list(transactions),
    )


def infer_account(
    table: DecodedTable,
    transactions: list[ExtractedTransaction],
    classification: ClassificationResult,
    file_name: str | None = None,
) -> DetectedAccount:
    """Infer the single account a tabular export describes."""
    return build_account(
        classification.bank_format,
        transactions,
        classification.confidence,
        masked_number=find_masked_number(table.metadata_rows, file_name),
    )


def statement_opening_balance(
    metadata: StatementMetadata, transactions: list[ExtractedTransaction]
) -> tuple[Decimal, bool]:
    """Opening balance of a statement document.

    Preference order: the printed previous balance, the current balance corrected by the printed
    credit/debit totals, the running-balance reconstruction, and finally zero (flagged).
    """
    if metadata.previous_balance is not None:
        return metadata.previous_balance, True
    totals = (metadata.current_balance, metadata.total_credits, metadata.total_debits)
    if all(value is not None for value in totals):
        current, credits, debits = totals
        return current - credits + debits, True
    return opening_balance(transactions)


def infer_statement_account(
    metadata: StatementMetadata,
    transactions: list[ExtractedTransaction],
    file_name: str | None = None,
) -> DetectedAccount:
    """Infer the account a statement document describes from its header metadata."""
    bank_format = metadata.bank_format or BankFormat.GENERIC
    return build_account(
        bank_format,
        transactions,
        metadata.confidence,
        masked_number=metadata.masked_number or mask_account_number(file_name),
        account_type=metadata.account_type or infer_account_type(transactions),
        institution=metadata.institution,
        balance=statement_opening_balance(metadata, transactions),
    )
