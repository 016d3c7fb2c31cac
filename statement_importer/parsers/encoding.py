"""Character-encoding detection for uploaded statement files.

Colombian bank exports arrive as Windows-1252 (Bancolombia, BBVA), UTF-8 (Nequi and other
digital banks) or ISO-8859-1 (older core-banking systems). Detection is statistical and only a
hint: whatever it says is folded into that small supported set, and decoding never fails.
"""

import codecs

from charset_normalizer import from_bytes

from statement_importer.core.models import DecodedText
from statement_importer.core.utils import get_logger

logger = get_logger("statement-importer.parser")

DEFAULT_ENCODING = "utf-8"
SUPPORTED_ENCODINGS = ("utf-8", "windows-1252", "iso-8859-1")

_ALIASES = {
    "utf-8": "utf-8",
    "utf8": "utf-8",
    "utf-8-sig": "utf-8",
    "ascii": "utf-8",
    "us-ascii": "utf-8",
    "windows-1252": "windows-1252",
    "cp1252": "windows-1252",
    "iso-8859-1": "iso-8859-1",
    "iso8859-1": "iso-8859-1",
    "latin-1": "iso-8859-1",
    "latin1": "iso-8859-1",
}


def normalize_encoding_name(name: str | None) -> str:
    """Fold a detector's encoding name into one of ``SUPPORTED_ENCODINGS``.

    Unknown, unsupported or missing names resolve to UTF-8.
    """
    if not name:
        return DEFAULT_ENCODING
    key = name.strip().lower().replace("_", "-")
    return _ALIASES.get(key, DEFAULT_ENCODING)


def detect_encoding(data: bytes) -> str:
    """Guess the encoding of ``data`` and normalize it to the supported set."""
    if data.startswith(codecs.BOM_UTF8):
        return "utf-8"
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    else:
        return "utf-8"
    best = from_bytes(data).best()
    detected = best.encoding if best is not None else None
    encoding = normalize_encoding_name(detected)
    logger.info(f"Detected encoding {detected!r}, using {encoding}")
    return encoding


def decode_bytes(data: bytes, encoding: str | None = None) -> DecodedText:
    """Decode ``data`` to text, falling back to lossy UTF-8 instead of failing."""
    chosen = encoding or detect_encoding(data)
    if data.startswith(codecs.BOM_UTF8) and chosen == "utf-8":
        data = data[len(codecs.BOM_UTF8) :]
    try:
        return DecodedText(text=data.decode(chosen), encoding=chosen)
    except (UnicodeDecodeError, LookupError) as exc:
        logger.warning(f"Failed to decode with {chosen}, falling back to lossy UTF-8: {exc}")
        return DecodedText(text=data.decode("utf-8", errors="replace"), encoding="utf-8", lossy=True)
