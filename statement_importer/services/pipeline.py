"""Composition of the pure parsing stages for one statement document.

``parse_document`` is the only entry point the orchestrator needs: it dispatches on the file
type, runs every stage in order and returns a ``ParsedImport``. Nothing here touches the
database, the queue or the job status; failures escalate as ``ImportPipelineError`` subclasses.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from statement_importer.agents.base import AgentAccount, AgentExtraction, AgentTransaction, BaseAgent
from statement_importer.agents.vision_agent import validate_extraction
from statement_importer.core.errors import InputQualityError, InvariantError
from statement_importer.core.models import (
    AccountType,
    BankFormat,
    DetectedAccount,
    ExtractedTransaction,
    FileType,
    ParsedImport,
    RawDocument,
    TransactionType,
)
from statement_importer.core.utils import get_logger, strip_accents
from statement_importer.parsers.accounts import build_account, infer_account, infer_statement_account, opening_balance
from statement_importer.parsers.classifier import FormatClassifier, resolve_columns, validate_layout
from statement_importer.parsers.encoding import decode_bytes
from statement_importer.parsers.encrypted import unlock_document
from statement_importer.parsers.extractor import (
    PLACEHOLDER_DESCRIPTION,
    classify_type,
    extract_merchant,
    extract_transactions,
    validate_transactions,
)
from statement_importer.parsers.locale import parse_amount, parse_date
from statement_importer.parsers.statement_text import BANK_MARKERS, extract_statement_transactions, read_pdf_text
from statement_importer.parsers.tabular import parse_table, validate_table

logger = get_logger("statement-importer.pipeline")

DEFAULT_MIN_CONFIDENCE = 50
MASK_DIGITS = 4

_NON_DIGIT_RE = re.compile(r"\D")

_classifier = FormatClassifier()


def parse_tabular(document: RawDocument, today: date | None = None) -> ParsedImport:
    """Run Encoding Resolver, table construction, classification, extraction and inference."""
    decoded = decode_bytes(document.data)
    if decoded.lossy:
        logger.warning(f"Decoded {document.file_name} with lossy UTF-8 replacement")
    table = parse_table(decoded.text, decoded.encoding)
    warnings = validate_table(table)

    classification = _classifier.classify(table)
    logger.info(
        f"Classified {document.file_name} as {classification.bank_format} "
        f"(confidence {classification.confidence:.2f})"
    )
    warnings += validate_layout(table, classification)
    columns = resolve_columns(table, classification)

    extraction = extract_transactions(table, columns)
    warnings += extraction.warnings
    warnings += validate_transactions(extraction.transactions, today)

    account = infer_account(table, extraction.transactions, classification, document.file_name)
    return ParsedImport(
        accounts=[account],
        bank_format=classification.bank_format,
        confidence=classification.confidence,
        encoding=decoded.encoding,
        skipped_rows=extraction.skipped_rows,
        warnings=warnings,
    )


def parse_statement(document: RawDocument, today: date | None = None) -> ParsedImport:
    """Read a paginated statement through its text layer."""
    text = read_pdf_text(document.data)
    extraction = extract_statement_transactions(text, today)
    warnings = validate_transactions(extraction.transactions, today)
    account = infer_statement_account(extraction.metadata, extraction.transactions, document.file_name)
    return ParsedImport(
        accounts=[account],
        bank_format=extraction.metadata.bank_format or BankFormat.GENERIC,
        confidence=account.confidence,
        skipped_rows=extraction.skipped_lines,
        warnings=warnings,
    )


def _agent_amount(value: float | str | None) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, str):
        return parse_amount(value)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _bank_format_for(name: str | None) -> BankFormat:
    if not name:
        return BankFormat.GENERIC
    upper = strip_accents(name).upper()
    return next((fmt for marker, fmt in BANK_MARKERS if marker in upper), BankFormat.GENERIC)


def _agent_transaction(item: AgentTransaction, index: int) -> ExtractedTransaction | None:
    txn_date = parse_date(item.date)
    amount = _agent_amount(item.amount)
    if txn_date is None or amount is None:
        logger.warning(f"Image transaction {index}: unreadable date or amount, skipping")
        return None
    description = (item.description or "").strip() or PLACEHOLDER_DESCRIPTION
    try:
        txn_type = TransactionType((item.type or "").upper())
    except ValueError:
        txn_type = classify_type(amount, description)
    return ExtractedTransaction(
        date=txn_date,
        description=description,
        amount=abs(amount),
        type=txn_type,
        merchant=item.merchant or extract_merchant(description),
        raw_data={key: str(value) for key, value in item.model_dump(exclude_none=True).items()},
    )


def _agent_account(
    item: AgentAccount,
    transactions: list[ExtractedTransaction],
    confidence: float,
) -> DetectedAccount:
    bank_format = _bank_format_for(item.bank_name)
    digits = _NON_DIGIT_RE.sub("", item.account_number or "")
    try:
        account_type = AccountType((item.account_type or "").upper())
    except ValueError:
        account_type = None
    initial = _agent_amount(item.initial_balance)
    return build_account(
        bank_format,
        transactions,
        confidence,
        masked_number=digits[-MASK_DIGITS:] if len(digits) >= MASK_DIGITS else None,
        account_type=account_type,
        institution=item.bank_name or None,
        balance=(initial, True) if initial is not None else opening_balance(transactions),
    )


def convert_agent_extraction(extraction: AgentExtraction, today: date | None = None) -> ParsedImport:
    """Normalize a vision extraction with the same locale parsers used for tabular input.

    Images do not link transactions to accounts, so every transaction goes to the first reported
    account; further accounts are kept as candidates without transactions.
    """
    skipped = 0
    transactions = []
    for index, item in enumerate(extraction.transactions, start=1):
        txn = _agent_transaction(item, index)
        if txn is None:
            skipped += 1
            continue
        transactions.append(txn)
    warnings = list(extraction.warnings)
    warnings += validate_transactions(transactions, today)

    confidence = round(min(max(extraction.confidence, 0.0), 100.0) / 100, 6)
    reported = extraction.accounts or [AgentAccount()]
    accounts = [_agent_account(reported[0], transactions, confidence)]
    accounts += [_agent_account(item, [], confidence) for item in reported[1:]]
    return ParsedImport(
        accounts=accounts,
        bank_format=_bank_format_for(reported[0].bank_name),
        confidence=confidence,
        skipped_rows=skipped,
        warnings=warnings,
    )


def parse_image(
    document: RawDocument,
    agent: BaseAgent | None,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    today: date | None = None,
) -> ParsedImport:
    """Read a photographed statement with the vision agent."""
    if agent is None:
        msg = "No extraction agent is configured for image statements"
        raise InvariantError(msg)
    extraction = agent.extract(document)
    validate_extraction(extraction, min_confidence)
    return convert_agent_extraction(extraction, today)


def parse_unlocked(
    document: RawDocument,
    agent: BaseAgent | None = None,
    *,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    today: date | None = None,
) -> ParsedImport:
    """Parse a document that is already readable without a password."""
    if document.file_type == FileType.CSV:
        parsed = parse_tabular(document, today)
    elif document.file_type == FileType.PDF:
        parsed = parse_statement(document, today)
    elif document.file_type == FileType.IMAGE:
        parsed = parse_image(document, agent, min_confidence, today)
    else:
        msg = f"Unsupported file type: {document.file_type}"
        raise InputQualityError(msg)
    logger.info(
        f"Parsed {document.file_name}: {len(parsed.accounts)} accounts, "
        f"{parsed.transaction_count} transactions, {parsed.skipped_rows} skipped"
    )
    return parsed


def parse_document(
    document: RawDocument,
    password: str | None = None,
    agent: BaseAgent | None = None,
    *,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    today: date | None = None,
) -> ParsedImport:
    """Turn one uploaded document into candidate accounts and transactions.

    Protected inputs are unlocked with ``password`` first. The result depends only on the inputs,
    so running the same document twice yields identical accounts and transactions.
    """
    unlocked = unlock_document(document, password)
    return parse_unlocked(unlocked, agent, min_confidence=min_confidence, today=today)
