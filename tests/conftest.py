"""Shared fixtures: in-memory database, in-memory object store and test settings."""

from io import BytesIO

import pytest
from pypdf import PdfWriter
from pypdf.generic import DecodedStreamObject, DictionaryObject, NameObject

from statement_importer.core.db import Database, User
from statement_importer.core.settings import Settings
from statement_importer.services.file_service import FileService, InMemoryObjectStore
from statement_importer.workers import build_pools
from statement_importer.workers.pool import WorkerPool
from statement_importer.workers.queue import CATEGORIZATION_QUEUE, IMPORT_QUEUE, WorkQueue

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

GENERIC_CSV = (
    b"date,description,amount\n"
    b"01/03/2024,Coffee Shop,-15000\n"
    b"02/03/2024,Salary,2000000\n"
    b"03/03/2024,Refund,5000\n"
)

STATEMENT_LINES = (
    "BANCOLOMBIA S.A.",
    "ESTADO DE CUENTA",
    "CUENTA DE AHORROS NUMERO 0550123456789012",
    "DESDE: 2023/12/15 HASTA: 2024/01/14",
    "SALDO ANTERIOR $ 1.000.000,00",
    "20/12 COMPRA EN EXITO CHAPINERO -15.000,00 985.000,00",
    "02/01 ABONO NOMINA 2.000.000,00 2.985.000,00",
    "10/01 PAGO SERVICIOS 50.000,00 2.935.000,00",
)


def statement_pdf(lines: tuple[str, ...] = STATEMENT_LINES, password: str | None = None) -> bytes:
    """Build a one-page PDF whose text layer holds ``lines``, optionally encrypted."""
    writer = PdfWriter()
    page = writer.add_blank_page(width=612, height=792)
    font = DictionaryObject(
        {
            NameObject("/Type"): NameObject("/Font"),
            NameObject("/Subtype"): NameObject("/Type1"),
            NameObject("/BaseFont"): NameObject("/Helvetica"),
        }
    )
    page[NameObject("/Resources")] = DictionaryObject(
        {NameObject("/Font"): DictionaryObject({NameObject("/F1"): font})}
    )
    operators = ["BT", "/F1 10 Tf", "14 TL", "40 750 Td"]
    operators += [f"({line}) Tj T*" for line in lines]
    operators.append("ET")
    content = DecodedStreamObject()
    content.set_data("\n".join(operators).encode("latin-1"))
    page.replace_contents(content)
    if password is not None:
        writer.encrypt(password)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with zero backoff so retries run immediately."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        encryption_key="test-encryption-key",
        groq_api_key="",
        import_backoff_seconds=0.0,
        categorization_backoff_seconds=0.0,
    )


@pytest.fixture
def db() -> Database:
    """Fresh in-memory database with two users."""
    database = Database("sqlite://")
    database.init_db()
    with database.session_scope() as session:
        session.add(User(id=USER_ID, email="ana@example.com"))
        session.add(User(id=OTHER_USER_ID, email="luis@example.com"))
    return database


@pytest.fixture
def store() -> InMemoryObjectStore:
    """Object store holding uploaded files."""
    return InMemoryObjectStore()


@pytest.fixture
def file_service(store: InMemoryObjectStore) -> FileService:
    """File service on top of the in-memory store."""
    return FileService(store)


@pytest.fixture
def import_queue(db: Database, settings: Settings) -> WorkQueue:
    """The import work queue."""
    return WorkQueue(db, IMPORT_QUEUE, settings.queue_lease_seconds)


@pytest.fixture
def categorization_queue(db: Database, settings: Settings) -> WorkQueue:
    """The category-suggestion work queue."""
    return WorkQueue(db, CATEGORIZATION_QUEUE, settings.queue_lease_seconds)


@pytest.fixture
def pools(db: Database, settings: Settings, file_service: FileService) -> tuple[WorkerPool, WorkerPool]:
    """Import and categorization pools wired to the fixtures (never started; use run_until_idle)."""
    return build_pools(db, settings, file_service)
