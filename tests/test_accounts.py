"""Tests for account inference: type, masked number, opening balance and naming."""

from datetime import date
from decimal import Decimal

from statement_importer.core.models import (
    AccountType,
    BankFormat,
    ClassificationResult,
    ExtractedTransaction,
    TransactionType,
)
from statement_importer.parsers.accounts import (
    account_name,
    build_account,
    find_masked_number,
    infer_account,
    infer_account_type,
    mask_account_number,
    opening_balance,
    statement_opening_balance,
)
from statement_importer.parsers.classifier import FormatClassifier, resolve_columns
from statement_importer.parsers.extractor import extract_transactions
from statement_importer.parsers.statement_text import StatementMetadata
from statement_importer.parsers.tabular import parse_table


def _txn(
    day: int,
    amount: str,
    txn_type: TransactionType,
    balance: str | None = None,
    description: str = "Movimiento",
) -> ExtractedTransaction:
    return ExtractedTransaction(
        date=date(2024, 3, day),
        description=description,
        amount=Decimal(amount),
        type=txn_type,
        balance=Decimal(balance) if balance is not None else None,
    )


HISTORY = [
    _txn(1, "15000", TransactionType.EXPENSE, "985000"),
    _txn(2, "2000000", TransactionType.INCOME, "2985000"),
    _txn(3, "5000", TransactionType.TRANSFER, "2980000"),
]


def test_mask_account_number_keeps_last_four_digits() -> None:
    """Only the last four digits of a 10-20 digit run are kept."""
    if mask_account_number("Cuenta de Ahorros 0550123456789012") != "9012":
        msg = "Expected 9012"
        raise AssertionError(msg)
    if mask_account_number("Ref 12345") is not None or mask_account_number(None) is not None:
        msg = "Short numbers and missing text must not produce a masked number"
        raise AssertionError(msg)


def test_find_masked_number_prefers_metadata_then_file_name() -> None:
    """Preamble rows are scanned before the file name."""
    if find_masked_number([["Cuenta", "0550123456789012"]], "extracto_1234567890.csv") != "9012":
        msg = "Expected the metadata row to win"
        raise AssertionError(msg)
    if find_masked_number([], "extracto_1234567890.csv") != "7890":
        msg = "Expected the file name fallback"
        raise AssertionError(msg)


def test_infer_account_type() -> None:
    """Credit-card vocabulary, savings vocabulary and the income ratio decide the type."""
    card = [_txn(1, "100", TransactionType.EXPENSE, description="PAGO TARJETA CREDITO")]
    savings = [_txn(1, "100", TransactionType.INCOME, description="Rendimientos financieros")]
    income_heavy = [_txn(d, "100", TransactionType.INCOME) for d in (1, 2, 3)] + [
        _txn(4, "100", TransactionType.EXPENSE)
    ]
    balanced = [_txn(1, "100", TransactionType.INCOME), _txn(2, "100", TransactionType.EXPENSE)]
    cases = [
        (card, AccountType.CREDIT_CARD),
        (savings, AccountType.SAVINGS),
        (income_heavy, AccountType.SAVINGS),
        (balanced, AccountType.CHECKING),
        ([], AccountType.CHECKING),
    ]
    for transactions, expected in cases:
        if infer_account_type(transactions) != expected:
            msg = f"Expected {expected}, got {infer_account_type(transactions)}"
            raise AssertionError(msg)


def test_opening_balance_walks_back_from_running_balance() -> None:
    """Deltas are reversed from the newest running balance."""
    balance, known = opening_balance(HISTORY)
    if (balance, known) != (Decimal(1000000), True):
        msg = f"Expected (1000000, True), got {(balance, known)}"
        raise AssertionError(msg)
    newest_first = opening_balance(list(reversed(HISTORY)))
    if newest_first != (Decimal(1000000), True):
        msg = f"Newest-first order should give the same opening balance, got {newest_first}"
        raise AssertionError(msg)


def test_opening_balance_defaults_to_zero_and_is_flagged() -> None:
    """Without running balances the opening balance is zero and needs review."""
    transactions = [_txn(1, "100", TransactionType.INCOME)]
    if opening_balance(transactions) != (Decimal(0), False):
        msg = "Expected (0, False)"
        raise AssertionError(msg)
    account = build_account(BankFormat.GENERIC, transactions, 0.2)
    if not account.balance_needs_review or account.opening_balance != 0:
        msg = f"Expected a zero opening balance flagged for review, got {account}"
        raise AssertionError(msg)


def test_opening_balance_round_trip_through_extraction() -> None:
    """Opening balance recomputed from extracted running balances matches the source."""
    opening = Decimal("1250000.50")
    movements = [Decimal("-15000.25"), Decimal("2000000"), Decimal("-35000"), Decimal("120.75")]
    lines = ["Fecha;Descripcion;Valor;Saldo"]
    balance = opening
    for day, movement in enumerate(movements, start=1):
        balance += movement
        lines.append(f"{day:02d}/03/2024;Movimiento {day};{movement};{balance}")
    table = parse_table("\n".join(lines))
    extraction = extract_transactions(table, resolve_columns(table, FormatClassifier().classify(table)))
    if opening_balance(extraction.transactions) != (opening, True):
        msg = f"Expected {opening}, got {opening_balance(extraction.transactions)}"
        raise AssertionError(msg)


def test_account_naming_and_hints() -> None:
    """Names combine institution, Spanish type name and masked number."""
    if account_name("Bancolombia", AccountType.SAVINGS, "1234") != "Bancolombia Ahorros ****1234":
        msg = f"Unexpected name {account_name('Bancolombia', AccountType.SAVINGS, '1234')!r}"
        raise AssertionError(msg)
    account = build_account(BankFormat.NEQUI, HISTORY, 0.9, account_type=AccountType.SAVINGS)
    if (account.suggested_color, account.suggested_icon, account.institution) != ("#6C1D8D", "PiggyBank", "Nequi"):
        msg = f"Unexpected presentation hints: {account}"
        raise AssertionError(msg)


def test_infer_account_from_table() -> None:
    """The tabular inferencer uses the preamble for the masked number."""
    table = parse_table(
        "Cuenta de Ahorros No. 0550123456789012\nFecha;Descripcion;Valor;Saldo\n01/03/2024;Compra;-100;900\n"
    )
    classification = ClassificationResult(bank_format=BankFormat.GENERIC, confidence=0.2)
    transactions = extract_transactions(table, resolve_columns(table, classification)).transactions
    account = infer_account(table, transactions, classification, "extracto.csv")
    if account.masked_number != "9012" or account.transaction_count != 1:
        msg = f"Unexpected account: {account}"
        raise AssertionError(msg)


def test_statement_opening_balance_preference() -> None:
    """Printed previous balance wins, then current balance corrected by the totals."""
    previous = StatementMetadata(previous_balance=Decimal(500))
    if statement_opening_balance(previous, HISTORY) != (Decimal(500), True):
        msg = "Expected the printed previous balance"
        raise AssertionError(msg)
    totals = StatementMetadata(
        current_balance=Decimal(1500), total_credits=Decimal(2000), total_debits=Decimal(700)
    )
    if statement_opening_balance(totals, HISTORY) != (Decimal(200), True):
        msg = f"Expected 200, got {statement_opening_balance(totals, HISTORY)}"
        raise AssertionError(msg)
    if statement_opening_balance(StatementMetadata(), HISTORY) != (Decimal(1000000), True):
        msg = "Expected the running-balance reconstruction"
        raise AssertionError(msg)
