"""Locale-aware parsing of statement amounts and dates.

Both parsers are total: they return ``None`` for anything they cannot read and never raise.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_CURRENCY_RE = re.compile(r"COP|USD|EUR|[$€£]", re.IGNORECASE)
_NUMBER_RE = re.compile(r"^\d+(\.\d+)?$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_TIME_SUFFIX_RE = re.compile(r"\s+\d{1,2}:\d{2}(?::\d{2})?(?:\s*[ap]\.?\s?m\.?)?$", re.IGNORECASE)
_WORD_RE = re.compile(r"[^\W\d_]+")

# strptime's %y follows the POSIX pivot: 00-68 -> 20xx, 69-99 -> 19xx.
DEFAULT_DATE_FORMATS = (
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d/%b/%Y",
    "%Y/%m/%d",
)

MONTH_NAMES = {
    "ene": "jan",
    "enero": "jan",
    "january": "jan",
    "febrero": "feb",
    "february": "feb",
    "marzo": "mar",
    "march": "mar",
    "abr": "apr",
    "abril": "apr",
    "april": "apr",
    "mayo": "may",
    "junio": "jun",
    "june": "jun",
    "julio": "jul",
    "july": "jul",
    "ago": "aug",
    "agosto": "aug",
    "august": "aug",
    "sept": "sep",
    "set": "sep",
    "septiembre": "sep",
    "setiembre": "sep",
    "september": "sep",
    "octubre": "oct",
    "october": "oct",
    "noviembre": "nov",
    "november": "nov",
    "dic": "dec",
    "diciembre": "dec",
    "december": "dec",
}


def _normalize_separators(value: str) -> str:
    has_dot = "." in value
    has_comma = "," in value
    if has_dot and has_comma:
        fractional = "." if value.rfind(".") > value.rfind(",") else ","
        grouping = "," if fractional == "." else "."
        return value.replace(grouping, "").replace(fractional, ".")
    if has_dot or has_comma:
        separator = "." if has_dot else ","
        head, _, tail = value.rpartition(separator)
        if value.count(separator) == 1 and 1 <= len(tail) <= 2:  # noqa: PLR2004
            return f"{head or '0'}.{tail}"
        return value.replace(separator, "")
    return value


def parse_amount(text: str | None) -> Decimal | None:
    """Parse a locale-formatted amount into a signed ``Decimal``.

    Examples: ``"1.234.567,89"`` -> ``1234567.89``, ``"1,234.56"`` -> ``1234.56``,
    ``"1234,5"`` -> ``1234.5``, ``"1.234"`` -> ``1234``, ``"(500,00)"`` -> ``-500.00``,
    ``"$ -15.000"`` -> ``-15000``, ``"abc"`` -> ``None``.
    """
    if text is None:
        return None
    value = re.sub(r"\s+", "", _CURRENCY_RE.sub("", str(text).replace("\u00a0", " ")))
    negative = False
    if value.startswith("(") and value.endswith(")"):
        negative = True
        value = value[1:-1]
    if value.endswith("-"):
        negative = not negative
        value = value[:-1]
    elif value.startswith("-"):
        negative = not negative
        value = value[1:]
    elif value.startswith("+"):
        value = value[1:]
    if not value:
        return None
    value = _normalize_separators(value)
    if not _NUMBER_RE.match(value):
        return None
    try:
        amount = Decimal(value)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def _translate_months(value: str) -> str:
    return _WORD_RE.sub(lambda match: MONTH_NAMES.get(match.group(0).lower(), match.group(0)), value)


def parse_date(text: str | None, known_formats: tuple[str, ...] = DEFAULT_DATE_FORMATS) -> date | None:
    """Parse a statement date.

    ISO 8601 (``2023-12-31`` or a date-time starting with it) is tried first, then each of
    ``known_formats`` in order; the first format that yields a valid calendar date wins.
    Spanish month names and abbreviations (``"31 Dic 2023"``) are accepted.
    """
    if text is None:
        return None
    value = str(text).strip()
    if not value:
        return None
    iso = _ISO_RE.match(value)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None
    value = _translate_months(_TIME_SUFFIX_RE.sub("", value))
    for fmt in known_formats:
        try:
            return datetime.strptime(value, fmt).date()  # noqa: DTZ007
        except ValueError:
            continue
    return None
