"""Transaction extraction from classified tabular statements.

Rows are read with the column map resolved by the classifier. A row that cannot be read (bad date,
missing amount, inconsistent width) is logged with its 1-based row number, counted and skipped;
only an empty final result is fatal, and that is decided by ``validate_transactions``.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from statement_importer.core.errors import InputQualityError
from statement_importer.core.models import ColumnMap, DecodedTable, ExtractedTransaction, TransactionType
from statement_importer.core.utils import get_logger
from statement_importer.parsers.locale import parse_amount, parse_date

logger = get_logger("statement-importer.parser")

PLACEHOLDER_DESCRIPTION = "Sin descripción"

TRANSFER_KEYWORDS = ("transferencia", "transf", "envío", "envio", "recibido", "traslado", "transfer")

MERCHANT_PREFIXES = (
    "compra en ",
    "pago a ",
    "pago en ",
    "pago qr ",
    "transferencia a ",
    "transf de ",
    "retiro en ",
    "consignación ",
    "payment to ",
    "purchase at ",
    "transfer to ",
)

MIN_WORDS_FOR_MERCHANT = 4


class ExtractionResult(BaseModel):
    """Transactions read from one table plus what had to be skipped."""

    transactions: list[ExtractedTransaction] = Field(default_factory=list)
    skipped_rows: int = 0
    warnings: list[str] = Field(default_factory=list)


def is_transfer(description: str) -> bool:
    """Whether the description uses transfer vocabulary."""
    lowered = description.lower()
    return any(keyword in lowered for keyword in TRANSFER_KEYWORDS)


def classify_type(
    amount: Decimal,
    description: str,
    debit: Decimal | None = None,
    credit: Decimal | None = None,
) -> TransactionType:
    """Decide the direction of a transaction.

    Explicit debit/credit values win. Otherwise the sign of ``amount`` decides, and an amount of
    exactly zero is a transfer when the description says so, else an expense.
    """
    if debit is not None and debit != 0:
        return TransactionType.EXPENSE
    if credit is not None and credit != 0:
        return TransactionType.INCOME
    if amount < 0:
        return TransactionType.EXPENSE
    if amount > 0:
        return TransactionType.INCOME
    if is_transfer(description):
        return TransactionType.TRANSFER
    return TransactionType.EXPENSE


def extract_merchant(description: str) -> str | None:
    """Pull a merchant name out of a description such as ``"COMPRA EN EXITO CHAPINERO"``."""
    lowered = description.lower()
    for prefix in MERCHANT_PREFIXES:
        if lowered.startswith(prefix):
            merchant = description[len(prefix) :].strip()
            return merchant or None
    words = description.split()
    if len(words) >= MIN_WORDS_FOR_MERCHANT:
        return " ".join(words[1:])
    return None


def _cell(row: list[str], index: int | None) -> str:
    if index is None or index >= len(row):
        return ""
    return row[index]


def _raw_data(headers: list[str] | None, row: list[str]) -> dict[str, str]:
    names = headers or []
    return {(names[i] if i < len(names) and names[i] else f"column_{i + 1}"): cell for i, cell in enumerate(row)}


def extract_transactions(table: DecodedTable, columns: ColumnMap) -> ExtractionResult:
    """Read every data row of ``table`` into an ``ExtractedTransaction``."""
    result = ExtractionResult()
    inconsistent = set(table.inconsistent_rows)

    for index, row in enumerate(table.rows):
        row_number = index + 1
        if index in inconsistent:
            logger.warning(f"Row {row_number}: expected {table.column_count} columns, found {len(row)}, skipping")
            result.skipped_rows += 1
            continue

        date_text = _cell(row, columns.date)
        parsed_date = parse_date(date_text)
        if parsed_date is None:
            logger.warning(f"Row {row_number}: invalid date {date_text!r}, skipping")
            result.skipped_rows += 1
            continue

        description = _cell(row, columns.description).strip() or PLACEHOLDER_DESCRIPTION

        debit = credit = None
        if columns.has_debit_credit:
            debit = parse_amount(_cell(row, columns.debit))
            credit = parse_amount(_cell(row, columns.credit))
            if debit is None and credit is None:
                logger.warning(f"Row {row_number}: no debit or credit amount, skipping")
                result.skipped_rows += 1
                continue
            debit = abs(debit) if debit is not None else None
            credit = abs(credit) if credit is not None else None
            amount = (credit or Decimal(0)) - (debit or Decimal(0))
        else:
            amount_text = _cell(row, columns.amount)
            amount = parse_amount(amount_text)
            if amount is None:
                logger.warning(f"Row {row_number}: invalid amount {amount_text!r}, skipping")
                result.skipped_rows += 1
                continue

        balance = parse_amount(_cell(row, columns.balance)) if columns.balance is not None else None

        result.transactions.append(
            ExtractedTransaction(
                date=parsed_date,
                description=description,
                amount=abs(amount),
                type=classify_type(amount, description, debit, credit),
                merchant=extract_merchant(description),
                balance=balance,
                raw_data=_raw_data(table.headers, row),
            )
        )

    if result.skipped_rows:
        result.warnings.append(f"{result.skipped_rows} rows could not be read and were skipped")
    logger.info(f"Extracted {len(result.transactions)} transactions, skipped {result.skipped_rows} rows")
    return result


def validate_transactions(transactions: list[ExtractedTransaction], today: date | None = None) -> list[str]:
    """Fail on an empty result; report future-dated and zero-amount transactions as warnings."""
    if not transactions:
        msg = "No valid transactions were found in the file"
        raise InputQualityError(msg)
    today = today or date.today()  # noqa: DTZ011
    warnings = []
    future = sum(1 for txn in transactions if txn.date > today)
    if future:
        warnings.append(f"{future} transactions have future dates")
    zero = sum(1 for txn in transactions if txn.amount == 0)
    if zero:
        warnings.append(f"{zero} transactions have a zero amount")
    for warning in warnings:
        logger.warning(warning)
    return warnings
