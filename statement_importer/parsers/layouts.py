"""Registry of known institution export layouts and per-institution presentation hints.

``LAYOUT_PATTERNS`` is an immutable tuple built at import time and shared by every worker. Adding
support for a new institution means adding one ``LayoutPattern`` here: header regexes (matched
after lowercasing and accent stripping; ``.*`` keeps its regex meaning), the expected column
count range and the column-index hints for date, description, amount and balance.
"""

from statement_importer.core.models import AccountType, BankFormat, LayoutPattern

DEFAULT_COLOR = "#6366f1"

BANK_NAMES = {
    BankFormat.BANCOLOMBIA: "Bancolombia",
    BankFormat.NEQUI: "Nequi",
    BankFormat.DAVIVIENDA: "Davivienda",
    BankFormat.BBVA: "BBVA",
    BankFormat.BANCO_BOGOTA: "Banco de Bogotá",
    BankFormat.GENERIC: "Otro",
}

BANK_COLORS = {
    BankFormat.BANCOLOMBIA: "#FFDD00",
    BankFormat.NEQUI: "#6C1D8D",
    BankFormat.DAVIVIENDA: "#EE2E24",
    BankFormat.BBVA: "#004481",
    BankFormat.BANCO_BOGOTA: "#005EB8",
    BankFormat.GENERIC: DEFAULT_COLOR,
}

ACCOUNT_TYPE_ICONS = {
    AccountType.SAVINGS: "PiggyBank",
    AccountType.CHECKING: "Building",
    AccountType.CREDIT_CARD: "CreditCard",
    AccountType.LOAN: "TrendingUp",
    AccountType.CASH: "DollarSign",
    AccountType.INVESTMENT: "Wallet",
    AccountType.OTHER: "Wallet",
}

ACCOUNT_TYPE_NAMES = {
    AccountType.SAVINGS: "Ahorros",
    AccountType.CHECKING: "Corriente",
    AccountType.CREDIT_CARD: "Tarjeta",
    AccountType.LOAN: "Préstamo",
    AccountType.CASH: "Efectivo",
    AccountType.INVESTMENT: "Inversión",
    AccountType.OTHER: "Cuenta",
}

LAYOUT_PATTERNS: tuple[LayoutPattern, ...] = (
    LayoutPattern(
        institution=BankFormat.BANCOLOMBIA,
        institution_name=BANK_NAMES[BankFormat.BANCOLOMBIA],
        header_patterns=("fecha.*transacción", "descripción", "valor", "saldo", "sucursal"),
        min_columns=5,
        max_columns=8,
        date_column=0,
        description_column=1,
        amount_column=2,
        balance_column=3,
        priority=1,
        color=BANK_COLORS[BankFormat.BANCOLOMBIA],
    ),
    LayoutPattern(
        institution=BankFormat.NEQUI,
        institution_name=BANK_NAMES[BankFormat.NEQUI],
        header_patterns=("fecha", "hora", "concepto", "monto", "tipo.*movimiento"),
        min_columns=5,
        max_columns=7,
        date_column=0,
        description_column=2,
        amount_column=3,
        priority=2,
        color=BANK_COLORS[BankFormat.NEQUI],
    ),
    LayoutPattern(
        institution=BankFormat.DAVIVIENDA,
        institution_name=BANK_NAMES[BankFormat.DAVIVIENDA],
        header_patterns=("fecha", "descripción.*transacción", "débito", "crédito", "saldo"),
        min_columns=5,
        max_columns=8,
        date_column=0,
        description_column=1,
        amount_column=2,
        balance_column=4,
        priority=3,
        color=BANK_COLORS[BankFormat.DAVIVIENDA],
    ),
    LayoutPattern(
        institution=BankFormat.BBVA,
        institution_name=BANK_NAMES[BankFormat.BBVA],
        header_patterns=("fecha.*operación", "fecha.*valor", "concepto", "cargo", "abono", "saldo"),
        min_columns=6,
        max_columns=9,
        date_column=0,
        description_column=2,
        amount_column=3,
        balance_column=5,
        priority=4,
        color=BANK_COLORS[BankFormat.BBVA],
    ),
    LayoutPattern(
        institution=BankFormat.BANCO_BOGOTA,
        institution_name=BANK_NAMES[BankFormat.BANCO_BOGOTA],
        header_patterns=("fecha", "detalle", "débitos", "créditos", "saldo"),
        min_columns=5,
        max_columns=7,
        date_column=0,
        description_column=1,
        amount_column=2,
        balance_column=4,
        priority=5,
        color=BANK_COLORS[BankFormat.BANCO_BOGOTA],
    ),
)

GENERIC_LAYOUT = LayoutPattern(
    institution=BankFormat.GENERIC,
    institution_name=BANK_NAMES[BankFormat.GENERIC],
    header_patterns=(),
    min_columns=3,
    max_columns=64,
    date_column=0,
    description_column=1,
    amount_column=2,
    priority=99,
    color=DEFAULT_COLOR,
)


def bank_name(bank_format: BankFormat) -> str:
    """Human-readable institution name for a bank format."""
    return BANK_NAMES.get(bank_format, BANK_NAMES[BankFormat.GENERIC])


def suggested_color(bank_format: BankFormat) -> str:
    """Brand color suggested for accounts of ``bank_format``."""
    return BANK_COLORS.get(bank_format, DEFAULT_COLOR)


def suggested_icon(account_type: AccountType) -> str:
    """Icon name suggested for accounts of ``account_type``."""
    return ACCOUNT_TYPE_ICONS.get(account_type, ACCOUNT_TYPE_ICONS[AccountType.OTHER])
