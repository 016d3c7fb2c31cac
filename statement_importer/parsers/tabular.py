"""Construction and validation of ``DecodedTable`` values from decoded text."""

import csv
from collections import Counter
from io import StringIO

from statement_importer.core.errors import InputQualityError
from statement_importer.core.models import DecodedTable
from statement_importer.core.utils import get_logger

logger = get_logger("statement-importer.parser")

CANDIDATE_DELIMITERS = (",", ";", "\t", "|")
SNIFF_LINES = 30
MIN_COLUMNS = 3


def sniff_delimiter(text: str) -> str:
    """Pick the delimiter that splits the most sample lines into the same number of cells."""
    sample = [line for line in text.splitlines()[:SNIFF_LINES] if line.strip()]
    best = ","
    best_score = (0, 0)
    for delimiter in CANDIDATE_DELIMITERS:
        widths = Counter(len(row) for row in csv.reader(sample, delimiter=delimiter) if row)
        if not widths:
            continue
        width, frequency = max(widths.items(), key=lambda item: (item[1], item[0]))
        if width < 2:  # noqa: PLR2004
            continue
        score = (frequency, width)
        if score > best_score:
            best, best_score = delimiter, score
    return best


def _read_rows(text: str, delimiter: str) -> list[list[str]]:
    rows = []
    for row in csv.reader(StringIO(text), delimiter=delimiter):
        cells = [cell.strip() for cell in row]
        if any(cells):
            rows.append(cells)
    return rows


def _dominant_width(rows: list[list[str]]) -> int:
    counts = Counter(len(row) for row in rows)
    width, _ = max(counts.items(), key=lambda item: (item[1], item[0]))
    return width


def parse_table(text: str, encoding: str = "utf-8", *, has_headers: bool = True) -> DecodedTable:
    """Split decoded text into a ``DecodedTable``.

    Blank lines are dropped and cells are trimmed. The column count is the most common row width.
    With ``has_headers`` the header is the first row of that width, and any rows above it (bank
    preamble such as account number or statement period) are kept as ``metadata_rows``.
    """
    text = text.lstrip("\ufeff")
    delimiter = sniff_delimiter(text)
    rows = _read_rows(text, delimiter)
    if not rows:
        return DecodedTable(encoding=encoding)

    column_count = _dominant_width(rows)
    headers = None
    metadata_rows: list[list[str]] = []
    if has_headers:
        header_index = next(index for index, row in enumerate(rows) if len(row) == column_count)
        metadata_rows = rows[:header_index]
        headers = rows[header_index]
        rows = rows[header_index + 1 :]

    inconsistent = [index for index, row in enumerate(rows) if len(row) != column_count]
    logger.info(
        f"Parsed table: delimiter={delimiter!r}, columns={column_count}, rows={len(rows)}, "
        f"metadata_rows={len(metadata_rows)}, inconsistent={len(inconsistent)}"
    )
    return DecodedTable(
        headers=headers,
        rows=rows,
        metadata_rows=metadata_rows,
        encoding=encoding,
        column_count=column_count,
        inconsistent_rows=inconsistent,
    )


def validate_table(table: DecodedTable) -> list[str]:
    """Reject tables that cannot hold a statement and return non-fatal warnings.

    A table fails when it has no data rows, fewer than three columns, or when more than half of
    its rows have an inconsistent column count. A minority of inconsistent rows is only reported;
    the extractor skips those rows.
    """
    if table.row_count == 0:
        msg = "The file contains no data rows"
        raise InputQualityError(msg)
    if table.column_count < MIN_COLUMNS:
        msg = f"The file has too few columns ({table.column_count}); at least {MIN_COLUMNS} are expected"
        raise InputQualityError(msg)
    inconsistent = len(table.inconsistent_rows)
    if inconsistent * 2 > table.row_count:
        msg = f"{inconsistent} of {table.row_count} rows have an inconsistent column count"
        raise InputQualityError(msg)
    warnings = []
    if inconsistent:
        warnings.append(f"{inconsistent} rows have an inconsistent column count and were skipped")
    return warnings
