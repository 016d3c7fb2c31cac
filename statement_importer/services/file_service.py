"""FileService: the object-storage boundary used by the import worker."""

from typing import Protocol

from statement_importer.core.errors import InvariantError
from statement_importer.core.models import FileType, RawDocument
from statement_importer.core.utils import get_logger

logger = get_logger("statement-importer.storage")


class ObjectStore(Protocol):
    """Minimal byte store the file service delegates to (S3 in production)."""

    def download_fileobj(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""


class FileService:
    """Service for statement file operations on top of an object store."""

    def __init__(self, store: ObjectStore) -> None:
        """Initialize FileService with a backing object store."""
        self.store = store

    def get_file(self, key: str) -> bytes:
        """Retrieve a file by key."""
        return self.store.download_fileobj(key)

    def load_document(self, key: str, file_type: FileType, file_name: str | None = None) -> RawDocument:
        """Download ``key`` and wrap it as a ``RawDocument``."""
        logger.info(f"Downloading statement file: {key}")
        data = self.get_file(key)
        logger.info(f"Downloaded {len(data)} bytes from {key}")
        return RawDocument(data=data, file_type=file_type, file_name=file_name or key.rsplit("/", 1)[-1])


class InMemoryObjectStore:
    """Dict-backed object store for local runs without S3."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self.objects: dict[str, bytes] = {}

    def upload_fileobj(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``."""
        self.objects[str(key)] = bytes(data)

    def download_fileobj(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""
        try:
            return self.objects[str(key)]
        except KeyError as exc:
            msg = f"File {key} not found"
            raise InvariantError(msg) from exc
