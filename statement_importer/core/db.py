"""DB engine, ORM tables and session helpers for the Statement Importer."""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from statement_importer.core.errors import NotFoundError
from statement_importer.core.models import JobStatus
from statement_importer.core.utils import ensure_dir, utcnow_iso

Base = declarative_base()

MONEY = Numeric(14, 2)


class User(Base):
    """Identity owned by the external auth system; only existence is checked here."""

    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)


class ImportJob(Base):
    """Orchestration record for one uploaded statement file."""

    __tablename__ = "import_jobs"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    file_ref = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    file_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=JobStatus.PENDING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    requires_password = Column(Boolean, nullable=False, default=False)
    password_ciphertext = Column(Text, nullable=True)
    bank_format = Column(String, nullable=True)
    encoding = Column(String, nullable=True)
    accounts_count = Column(Integer, nullable=False, default=0)
    transactions_count = Column(Integer, nullable=False, default=0)
    retried_from = Column(String, nullable=True)
    created_at = Column(String, nullable=False, default=utcnow_iso)
    updated_at = Column(String, nullable=False, default=utcnow_iso, onupdate=utcnow_iso)
    completed_at = Column(String, nullable=True)

    accounts = relationship(
        "ImportedAccount",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ImportedAccount.position",
    )


class ImportedAccount(Base):
    """Candidate account awaiting human confirmation."""

    __tablename__ = "imported_accounts"
    id = Column(String, primary_key=True)
    import_job_id = Column(String, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    bank_name = Column(String, nullable=True)
    masked_number = Column(String(4), nullable=True)
    account_type = Column(String, nullable=False)
    opening_balance = Column(MONEY, nullable=False)
    balance_needs_review = Column(Boolean, nullable=False, default=False)
    transaction_count = Column(Integer, nullable=False, default=0)
    suggested_color = Column(String, nullable=True)
    suggested_icon = Column(String, nullable=True)
    confidence = Column(Float, nullable=True)
    is_confirmed = Column(Boolean, nullable=False, default=False)
    confirmed_account_id = Column(String, nullable=True)

    job = relationship("ImportJob", back_populates="accounts")
    transactions = relationship(
        "ImportedTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="ImportedTransaction.position",
    )


class ImportedTransaction(Base):
    """Candidate transaction awaiting human confirmation."""

    __tablename__ = "imported_transactions"
    id = Column(String, primary_key=True)
    import_job_id = Column(String, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    imported_account_id = Column(
        String, ForeignKey("imported_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=False)
    amount = Column(MONEY, nullable=False)
    type = Column(String, nullable=False)
    merchant = Column(String, nullable=True)
    running_balance = Column(MONEY, nullable=True)
    raw_data = Column(JSON, nullable=True)
    suggested_category_id = Column(String, nullable=True)
    category_confidence = Column(Float, nullable=True)
    is_confirmed = Column(Boolean, nullable=False, default=False)
    confirmed_transaction_id = Column(String, nullable=True)

    account = relationship("ImportedAccount", back_populates="transactions")


class WorkItem(Base):
    """Durable queue entry; ``dedupe_key`` makes enqueueing idempotent per queue."""

    __tablename__ = "work_items"
    __table_args__ = (UniqueConstraint("queue", "dedupe_key", name="uq_work_items_queue_key"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String, nullable=False, index=True)
    dedupe_key = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    state = Column(String, nullable=False, default="queued", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(Float, nullable=False, default=0.0)
    leased_until = Column(Float, nullable=True)
    leased_by = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False, default=utcnow_iso)
    updated_at = Column(String, nullable=False, default=utcnow_iso, onupdate=utcnow_iso)


class FinancialAccount(Base):
    """Permanent account created when a user confirms an import."""

    __tablename__ = "financial_accounts"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    bank_name = Column(String, nullable=True)
    masked_number = Column(String(4), nullable=True)
    account_type = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="COP")
    color = Column(String, nullable=True)
    icon = Column(String, nullable=True)
    initial_balance = Column(MONEY, nullable=False)
    current_balance = Column(MONEY, nullable=False)
    created_at = Column(String, nullable=False, default=utcnow_iso)


class LedgerTransaction(Base):
    """Permanent transaction created when a user confirms an import."""

    __tablename__ = "ledger_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("financial_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(MONEY, nullable=False)
    type = Column(String, nullable=False)
    merchant = Column(String, nullable=True)
    category_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="CLEARED")
    created_at = Column(String, nullable=False, default=utcnow_iso)


class Database:
    """Owns the SQLAlchemy engine and session factory."""

    def __init__(self, url: str) -> None:
        """Create the engine for ``url`` (SQLite URLs get thread-safe connection settings)."""
        self.url = url
        self.engine = self._create_engine(url)
        self.Session = sessionmaker(bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @staticmethod
    def _create_engine(url: str) -> Engine:
        if not url.startswith("sqlite"):
            return create_engine(url, pool_pre_ping=True)
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        path = url.removeprefix("sqlite:///")
        if "/" in path:
            ensure_dir(path.rsplit("/", 1)[0])
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def get_job(session: Session, job_id: str, user_id: str | None = None) -> ImportJob:
    """Load an import job, optionally scoped to its owner."""
    stmt = select(ImportJob).where(ImportJob.id == job_id)
    if user_id is not None:
        stmt = stmt.where(ImportJob.user_id == user_id)
    job = session.execute(stmt).scalar_one_or_none()
    if job is None:
        msg = f"Import job {job_id} not found"
        raise NotFoundError(msg)
    return job


def delete_derived_records(session: Session, job_id: str) -> None:
    """Remove every imported account and transaction belonging to ``job_id``."""
    session.execute(delete(ImportedTransaction).where(ImportedTransaction.import_job_id == job_id))
    session.execute(delete(ImportedAccount).where(ImportedAccount.import_job_id == job_id))
    session.expire_all()


def update_job_status(session: Session, job: ImportJob, expected: JobStatus, **values: object) -> bool:
    """Write ``values`` onto ``job`` only while its stored status is still ``expected``.

    Returns False when another writer (a cancellation, usually) changed the status first; nothing
    is written in that case.
    """
    result = session.execute(
        update(ImportJob)
        .where(ImportJob.id == job.id, ImportJob.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    session.expire(job, list(values))
    return True
