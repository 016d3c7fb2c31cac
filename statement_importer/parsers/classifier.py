"""Format classification: which institution layout does a decoded table follow?

Classification is a pure, deterministic ranking. Every registered ``LayoutPattern`` is scored
independently as ``0.7 * header_fraction + 0.3 * column_range_fit``; candidates are ranked by
descending score (ties keep registry order) and the top one is selected unless it scores below
``GENERIC_THRESHOLD``, in which case the generic layout is used.
"""

import re
from collections.abc import Callable
from functools import lru_cache

from statement_importer.core.models import (
    BankFormat,
    ClassificationResult,
    ColumnMap,
    DecodedTable,
    LayoutPattern,
    ScoredPattern,
)
from statement_importer.core.utils import get_logger, strip_accents
from statement_importer.parsers.layouts import GENERIC_LAYOUT, LAYOUT_PATTERNS

logger = get_logger("statement-importer.parser")

HEADER_WEIGHT = 0.7
COLUMN_WEIGHT = 0.3
GENERIC_THRESHOLD = 0.4

DEBIT_HEADER_RE = re.compile(r"debit|cargo|retiro|withdrawal|paidout|moneyout")
CREDIT_HEADER_RE = re.compile(r"credit|abono|deposit|paidin|moneyin")
BALANCE_HEADERS = ("saldo", "balance")

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def normalize_header(header: str) -> str:
    """Lowercase, strip accents and drop everything but ``a-z0-9``."""
    return _NON_ALNUM_RE.sub("", strip_accents(header.lower()))


@lru_cache(maxsize=256)
def _compile_header_pattern(pattern: str) -> re.Pattern[str]:
    parts = [normalize_header(part) for part in pattern.split(".*")]
    return re.compile(".*".join(re.escape(part) for part in parts))


def header_matches(header: str, pattern: str) -> bool:
    """Whether one actual header satisfies one layout header pattern."""
    return _compile_header_pattern(pattern).search(normalize_header(header)) is not None


class FormatClassifier:
    """Scores decoded tables against an immutable registry of layout patterns."""

    def __init__(
        self,
        patterns: tuple[LayoutPattern, ...] = LAYOUT_PATTERNS,
        threshold: float = GENERIC_THRESHOLD,
    ) -> None:
        """Initialize the classifier with the registry it ranks against."""
        self.patterns = tuple(patterns)
        self.threshold = threshold

    def score(self, table: DecodedTable, pattern: LayoutPattern) -> float:
        """Weighted header/column-range score of ``table`` against ``pattern`` in ``[0, 1]``."""
        if not table.headers or not pattern.header_patterns:
            return 0.0
        matched = sum(
            1 for expected in pattern.header_patterns if any(header_matches(h, expected) for h in table.headers)
        )
        header_score = matched / len(pattern.header_patterns)
        column_score = 1.0 if pattern.accepts_column_count(table.column_count) else 0.0
        return round(header_score * HEADER_WEIGHT + column_score * COLUMN_WEIGHT, 6)

    def rank(self, table: DecodedTable) -> tuple[ScoredPattern, ...]:
        """Score every registered pattern and order them best first."""
        scored = [ScoredPattern(pattern=pattern, score=self.score(table, pattern)) for pattern in self.patterns]
        scored.sort(key=lambda candidate: candidate.score, reverse=True)
        return tuple(scored)

    def classify(self, table: DecodedTable) -> ClassificationResult:
        """Select the best matching layout, or the generic layout below the threshold."""
        candidates = self.rank(table)
        best = candidates[0] if candidates else None
        if best is None or best.score < self.threshold:
            confidence = best.score if best is not None else 0.0
            logger.info(f"No layout reached {self.threshold}; using generic layout (best score {confidence})")
            return ClassificationResult(bank_format=BankFormat.GENERIC, confidence=confidence, candidates=candidates)
        logger.info(f"Classified table as {best.pattern.institution} (score {best.score})")
        return ClassificationResult(
            bank_format=best.pattern.institution,
            confidence=best.score,
            pattern=best.pattern,
            candidates=candidates,
        )


def _find_header(headers: list[str], predicate: Callable[[str], bool]) -> int | None:
    for index, header in enumerate(headers):
        if predicate(normalize_header(header)):
            return index
    return None


def resolve_columns(table: DecodedTable, result: ClassificationResult) -> ColumnMap:
    """Turn a classification into concrete column indices for ``table``.

    Date, description and amount come from the selected layout's hints (or the generic
    ``0/1/2``). Debit/credit columns and the balance column are found by header name regardless
    of the layout; the layout's balance hint is used only when no header names a balance.
    """
    layout = result.pattern or GENERIC_LAYOUT
    headers = table.headers or []

    debit = _find_header(headers, lambda h: DEBIT_HEADER_RE.search(h) is not None)
    credit = _find_header(headers, lambda h: CREDIT_HEADER_RE.search(h) is not None)
    if debit is None or credit is None or debit == credit:
        debit = credit = None

    balance = _find_header(headers, lambda h: any(name in h for name in BALANCE_HEADERS))
    if balance is None and layout.balance_column is not None and layout.balance_column < table.column_count:
        balance = layout.balance_column

    return ColumnMap(
        date=layout.date_column,
        description=layout.description_column,
        amount=layout.amount_column,
        balance=balance,
        debit=debit,
        credit=credit,
    )


def validate_layout(table: DecodedTable, result: ClassificationResult) -> list[str]:
    """Non-fatal consistency checks between a table and its selected layout."""
    warnings = []
    if not table.headers:
        warnings.append("The file has no header row")
    layout = result.pattern
    if layout is not None and not layout.accepts_column_count(table.column_count):
        warnings.append(
            f"Expected {layout.min_columns}-{layout.max_columns} columns for {layout.institution}, "
            f"found {table.column_count}"
        )
    layout = layout or GENERIC_LAYOUT
    highest = max(layout.date_column, layout.description_column, layout.amount_column)
    if highest >= table.column_count:
        warnings.append(f"Layout expects at least {highest + 1} columns, found {table.column_count}")
    for warning in warnings:
        logger.warning(warning)
    return warnings
