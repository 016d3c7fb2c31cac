"""S3FileService provides S3-backed object storage for uploaded statement files."""

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from statement_importer.core.errors import InvariantError, TransientError
from statement_importer.core.settings import Settings, get_settings
from statement_importer.core.utils import get_logger

logger = get_logger("statement-importer.storage")

MISSING_KEY_CODES = ("404", "NoSuchKey", "NotFound")


class S3FileService:
    """Service for S3 file operations: download and ensure bucket."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize S3FileService and ensure the bucket exists."""
        settings = settings or get_settings()
        self.s3 = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
        )
        self.bucket = settings.s3_bucket
        self.ensure_bucket()

    def ensure_bucket(self) -> None:
        """Ensure the S3 bucket exists, create if not present."""
        try:
            self.s3.head_bucket(Bucket=self.bucket)
        except ClientError:
            logger.info(f"Creating bucket {self.bucket}")
            self.s3.create_bucket(Bucket=self.bucket)

    def download_fileobj(self, key: str) -> bytes:
        """Download a file object from S3 by key.

        A missing key is an ``InvariantError``: the upload it refers to is gone and retrying will
        not bring it back. Other storage and network failures are ``TransientError`` so the job is
        retried.
        """
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=str(key))
            return obj["Body"].read()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                msg = f"File {key} not found in bucket {self.bucket}"
                raise InvariantError(msg) from exc
            msg = f"Could not download {key} from bucket {self.bucket}: {exc}"
            raise TransientError(msg) from exc
        except BotoCoreError as exc:
            msg = f"Could not download {key} from bucket {self.bucket}: {exc}"
            raise TransientError(msg) from exc
