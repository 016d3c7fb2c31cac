"""Transaction extraction from paginated (PDF) bank statements.

Statement PDFs are read as plain text. Header lines carry metadata (bank, masked account number,
account type, statement period, summary balances) and transaction lines start with a ``day/month``
date whose year comes from the statement period. The last two numeric tokens on a transaction
line are the amount and the running balance.
"""

import re
from datetime import date
from decimal import Decimal
from io import BytesIO

import pdfplumber
from pydantic import BaseModel, Field

from statement_importer.core.errors import InputQualityError
from statement_importer.core.models import AccountType, BankFormat, ExtractedTransaction, TransactionType
from statement_importer.core.utils import get_logger, strip_accents
from statement_importer.parsers.extractor import extract_merchant, is_transfer
from statement_importer.parsers.layouts import bank_name
from statement_importer.parsers.locale import parse_amount, parse_date

logger = get_logger("statement-importer.parser")

METADATA_LINES = 100
YEAR_SCAN_LINES = 50
MIN_YEAR = 2000
MAX_YEAR = 2100

TRANSACTION_LINE_RE = re.compile(r"^\s*(\d{1,2})/(\d{1,2})\s+(.+)$")
AMOUNT_TOKEN_RE = re.compile(r"(?<![\w.,/-])-?\d+(?:[.,]\d+)*(?![\w/])")
PERIOD_RE = re.compile(r"DESDE:?\s*(\S+)\s*HASTA:?\s*(\S+)")
HEADER_YEAR_RE = re.compile(r"(\d{4})/\d{1,2}/\d{1,2}")
ACCOUNT_NUMBER_RE = re.compile(r"(?<!\d)\d{10,20}(?!\d)")

BANK_MARKERS = (
    ("BANCOLOMBIA", BankFormat.BANCOLOMBIA),
    ("NEQUI", BankFormat.NEQUI),
    ("DAVIVIENDA", BankFormat.DAVIVIENDA),
    ("BBVA", BankFormat.BBVA),
    ("BANCO DE BOGOTA", BankFormat.BANCO_BOGOTA),
)

SUMMARY_LABELS = (
    ("SALDO ANTERIOR", "previous_balance"),
    ("SALDO ACTUAL", "current_balance"),
    ("TOTAL ABONOS", "total_credits"),
    ("TOTAL CARGOS", "total_debits"),
)

INCOME_MARKERS = ("ABONO", "TRANSF DE", "DEPOSITO", "CONSIGNACION", "RECIBIDO", "INTERESES")
EXPENSE_MARKERS = ("PAGO", "COMPRA", "RETIRO", "CUOTA", "COMISION", "GMF", "IMPUESTO")

NAMED_BANK_CONFIDENCE = 0.9
UNNAMED_BANK_CONFIDENCE = 0.3


class StatementMetadata(BaseModel):
    """Header facts recovered from a statement; the account number is already masked."""

    masked_number: str | None = None
    account_type: AccountType | None = None
    bank_format: BankFormat | None = None
    start_date: date | None = None
    end_date: date | None = None
    previous_balance: Decimal | None = None
    current_balance: Decimal | None = None
    total_credits: Decimal | None = None
    total_debits: Decimal | None = None

    @property
    def institution(self) -> str | None:
        """Display name of the detected bank, if any."""
        return bank_name(self.bank_format) if self.bank_format else None

    @property
    def confidence(self) -> float:
        """Confidence of the statement's institution detection."""
        return NAMED_BANK_CONFIDENCE if self.bank_format else UNNAMED_BANK_CONFIDENCE


class StatementExtraction(BaseModel):
    """Transactions and metadata read from one statement text."""

    transactions: list[ExtractedTransaction] = Field(default_factory=list)
    metadata: StatementMetadata = Field(default_factory=StatementMetadata)
    skipped_lines: int = 0


def read_pdf_text(data: bytes) -> str:
    """Extract the text layer of every page of a PDF."""
    try:
        with pdfplumber.open(BytesIO(data)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as exc:
        msg = f"The PDF could not be read: {exc}"
        raise InputQualityError(msg) from exc
    text = "\n".join(pages)
    logger.info(f"Extracted {len(text)} characters from {len(pages)} PDF pages")
    if not text.strip():
        msg = "The PDF has no text layer; upload a photo of the statement as an image instead"
        raise InputQualityError(msg)
    return text


def _amount_after(label: str, line: str, following: str | None) -> Decimal | None:
    remainder = line[line.find(label) + len(label) :]
    tokens = AMOUNT_TOKEN_RE.findall(remainder)
    if tokens:
        return parse_amount(tokens[-1])
    if following is None:
        return None
    tokens = AMOUNT_TOKEN_RE.findall(following)
    return parse_amount(tokens[0]) if len(tokens) == 1 else None


def extract_statement_metadata(text: str) -> StatementMetadata:
    """Read bank, account, period and summary balances from the statement header."""
    lines = [strip_accents(line.strip()).upper() for line in text.splitlines()]
    lines = [line for line in lines if line][:METADATA_LINES]
    metadata = StatementMetadata()

    for index, line in enumerate(lines):
        following = lines[index + 1] if index + 1 < len(lines) else None

        if metadata.masked_number is None and ("NUMERO" in line or "CUENTA" in line):
            match = ACCOUNT_NUMBER_RE.search(line)
            if match:
                metadata.masked_number = match.group(0)[-4:]

        if metadata.account_type is None:
            if "AHORROS" in line:
                metadata.account_type = AccountType.SAVINGS
            elif "CORRIENTE" in line:
                metadata.account_type = AccountType.CHECKING
            elif "TARJETA" in line and "CREDITO" in line:
                metadata.account_type = AccountType.CREDIT_CARD

        if metadata.bank_format is None:
            metadata.bank_format = next((fmt for marker, fmt in BANK_MARKERS if marker in line), None)

        period = PERIOD_RE.search(line)
        if period and metadata.start_date is None:
            metadata.start_date = parse_date(period.group(1))
            metadata.end_date = parse_date(period.group(2))

        for label, field in SUMMARY_LABELS:
            if label in line and getattr(metadata, field) is None:
                setattr(metadata, field, _amount_after(label, line, following))

    return metadata


def _fallback_year(text: str, today: date) -> int:
    for line in text.splitlines()[:YEAR_SCAN_LINES]:
        match = HEADER_YEAR_RE.search(line)
        if match and MIN_YEAR <= int(match.group(1)) <= MAX_YEAR:
            return int(match.group(1))
    return today.year


def resolve_year(month: int, metadata: StatementMetadata, default_year: int) -> int:
    """Year of a ``day/month`` line, handling periods that cross New Year."""
    start, end = metadata.start_date, metadata.end_date
    if start and end and start.year != end.year:
        return start.year if month >= start.month else end.year
    if end:
        return end.year
    if start:
        return start.year
    return default_year


def _statement_type(
    amount: Decimal,
    description: str,
    balance: Decimal | None,
    previous: Decimal | None,
) -> TransactionType:
    upper = strip_accents(description.upper())
    if amount < 0:
        return TransactionType.EXPENSE
    if any(marker in upper for marker in INCOME_MARKERS):
        return TransactionType.INCOME
    if any(marker in upper for marker in EXPENSE_MARKERS):
        return TransactionType.EXPENSE
    if balance is not None and previous is not None and balance != previous:
        return TransactionType.INCOME if balance > previous else TransactionType.EXPENSE
    if is_transfer(description):
        return TransactionType.TRANSFER
    return TransactionType.INCOME


def parse_statement_line(
    line: str,
    metadata: StatementMetadata,
    default_year: int,
    previous_balance: Decimal | None = None,
) -> ExtractedTransaction | None:
    """Parse one ``day/month description amount [balance]`` line, or return None."""
    match = TRANSACTION_LINE_RE.match(line)
    if not match:
        return None
    day, month, remainder = int(match.group(1)), int(match.group(2)), match.group(3)
    try:
        txn_date = date(resolve_year(month, metadata, default_year), month, day)
    except ValueError:
        return None

    tokens = list(AMOUNT_TOKEN_RE.finditer(remainder))
    if not tokens:
        return None
    if len(tokens) >= 2:  # noqa: PLR2004
        amount_token, balance_token = tokens[-2], tokens[-1]
    else:
        amount_token, balance_token = tokens[-1], None

    amount = parse_amount(amount_token.group(0))
    if amount is None:
        return None
    balance = parse_amount(balance_token.group(0)) if balance_token else None
    description = remainder[: amount_token.start()].strip().rstrip("$").strip()
    if not description:
        return None

    return ExtractedTransaction(
        date=txn_date,
        description=description,
        amount=abs(amount),
        type=_statement_type(amount, description, balance, previous_balance),
        merchant=extract_merchant(description),
        balance=balance,
        raw_data={"line": line.strip()},
    )


def extract_statement_transactions(text: str, today: date | None = None) -> StatementExtraction:
    """Extract every transaction line from statement text."""
    today = today or date.today()  # noqa: DTZ011
    metadata = extract_statement_metadata(text)
    default_year = _fallback_year(text, today)
    result = StatementExtraction(metadata=metadata)
    previous = metadata.previous_balance

    for number, line in enumerate(text.splitlines(), start=1):
        if not TRANSACTION_LINE_RE.match(line):
            continue
        txn = parse_statement_line(line, metadata, default_year, previous)
        if txn is None:
            logger.warning(f"Line {number}: could not read transaction line, skipping")
            result.skipped_lines += 1
            continue
        result.transactions.append(txn)
        if txn.balance is not None:
            previous = txn.balance

    logger.info(
        f"Extracted {len(result.transactions)} statement transactions "
        f"(bank={metadata.bank_format}, skipped={result.skipped_lines})"
    )
    return result
