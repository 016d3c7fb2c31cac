"""Detection and removal of password protection on uploaded statements.

Supported protections: standard PDF encryption (via pypdf) and password-protected ZIP archives
wrapping a CSV export (ZipCrypto, via ``zipfile``). A PDF that opens with an empty user password
is not considered protected. Every decryption result is plain bytes of the inner document.
"""

import zipfile
import zlib
from enum import StrEnum
from io import BytesIO

from pypdf import PasswordType, PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from statement_importer.core.errors import PASSWORD_INCORRECT, PASSWORD_REQUIRED, CredentialError, InputQualityError
from statement_importer.core.models import FileType, RawDocument
from statement_importer.core.utils import get_logger

logger = get_logger("statement-importer.parser")

ZIP_MAGIC = b"PK\x03\x04"
PDF_MAGIC = b"%PDF"
ZIP_ENCRYPTED_FLAG = 0x1
MIN_PRINTABLE_RATIO = 0.8
PRINTABLE_SAMPLE = 4096
TABULAR_SUFFIXES = (".csv", ".txt", ".tsv")


class Protection(StrEnum):
    """How an uploaded file is protected."""

    NONE = "NONE"
    PDF = "PDF"
    ZIP = "ZIP"


def _open_pdf(data: bytes) -> PdfReader:
    try:
        return PdfReader(BytesIO(data))
    except PdfReadError as exc:
        msg = f"The PDF file is corrupted or invalid: {exc}"
        raise InputQualityError(msg) from exc


def _zip_members(archive: zipfile.ZipFile) -> list[zipfile.ZipInfo]:
    members = [info for info in archive.infolist() if not info.is_dir()]
    tabular = [info for info in members if info.filename.lower().endswith(TABULAR_SUFFIXES)]
    return tabular or members


def _open_zip(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(BytesIO(data))
    except zipfile.BadZipFile as exc:
        msg = f"The compressed file is corrupted or invalid: {exc}"
        raise InputQualityError(msg) from exc


def printable_ratio(data: bytes) -> float:
    """Share of printable characters in the first bytes of ``data``."""
    sample = data[:PRINTABLE_SAMPLE].decode("utf-8", errors="replace")
    if not sample:
        return 1.0
    printable = sum(1 for char in sample if char.isprintable() or char in "\r\n\t")
    return printable / len(sample)


def detect_protection(data: bytes, file_type: FileType) -> Protection:
    """Return the protection a file needs a password for, or ``Protection.NONE``."""
    if file_type == FileType.PDF and data.startswith(PDF_MAGIC):
        reader = _open_pdf(data)
        if reader.is_encrypted and reader.decrypt("") == PasswordType.NOT_DECRYPTED:
            return Protection.PDF
        return Protection.NONE
    if file_type == FileType.CSV and data.startswith(ZIP_MAGIC):
        with _open_zip(data) as archive:
            if any(info.flag_bits & ZIP_ENCRYPTED_FLAG for info in _zip_members(archive)):
                return Protection.ZIP
        return Protection.NONE
    return Protection.NONE


def is_password_protected(data: bytes, file_type: FileType) -> bool:
    """Whether ``data`` cannot be read without a password."""
    return detect_protection(data, file_type) != Protection.NONE


def _decrypt_pdf(data: bytes, password: str) -> bytes:
    reader = _open_pdf(data)
    if reader.decrypt(password) == PasswordType.NOT_DECRYPTED:
        msg = "Incorrect password for the PDF file"
        raise CredentialError(msg, code=PASSWORD_INCORRECT)
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _extract_zip(data: bytes, password: str | None) -> bytes:
    with _open_zip(data) as archive:
        members = _zip_members(archive)
        if not members:
            msg = "The compressed file is empty"
            raise InputQualityError(msg)
        member = members[0]
        pwd = password.encode("utf-8") if password is not None else None
        try:
            return archive.read(member, pwd=pwd)
        except RuntimeError as exc:
            msg = f"Incorrect password for the compressed file: {exc}"
            raise CredentialError(msg, code=PASSWORD_INCORRECT) from exc
        except (zipfile.BadZipFile, zlib.error) as exc:
            if pwd is None:
                msg = f"The compressed file is corrupted: {exc}"
                raise InputQualityError(msg) from exc
            msg = f"Incorrect password for the compressed file: {exc}"
            raise CredentialError(msg, code=PASSWORD_INCORRECT) from exc


def unlock_document(document: RawDocument, password: str | None = None) -> RawDocument:
    """Return a readable copy of ``document``.

    Protected inputs need ``password``: a missing one raises ``CredentialError`` with code
    ``PASSWORD_REQUIRED`` and a wrong one with ``PASSWORD_INCORRECT``. Unprotected ZIP-wrapped
    CSV exports are unwrapped; everything else unprotected is returned unchanged.
    """
    if document.file_type == FileType.IMAGE:
        return document

    protection = detect_protection(document.data, document.file_type)
    if protection != Protection.NONE and password is None:
        msg = "The file is password protected; a password is required"
        raise CredentialError(msg, code=PASSWORD_REQUIRED)

    if protection == Protection.PDF:
        logger.info("Decrypting password-protected PDF")
        data = _decrypt_pdf(document.data, password)
    elif document.file_type == FileType.CSV and document.data.startswith(ZIP_MAGIC):
        logger.info(f"Extracting CSV from {'protected ' if protection == Protection.ZIP else ''}ZIP archive")
        data = _extract_zip(document.data, password if protection == Protection.ZIP else None)
    else:
        data = document.data

    if document.file_type == FileType.CSV and printable_ratio(data) < MIN_PRINTABLE_RATIO:
        msg = "The CSV file looks binary or encrypted with an unsupported method"
        raise InputQualityError(msg)
    return RawDocument(data=data, file_type=document.file_type, file_name=document.file_name)
