"""
Storage drivers: a uniform contract over where resource bytes live.

Two implementations are provided:
- LocalStorageDriver: files on disk, served back through the authenticated
  /api/files route.
- S3StorageDriver: objects in an S3-compatible bucket, handed out as
  pre-signed GET URLs with a bounded expiry.

Callers only ever see opaque storage keys and never branch on the medium.
"""
import logging
import os
import re
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from eduaccess.config import settings
from eduaccess.errors import NotFound, StorageFailure

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024  # 1 MiB
_LOCAL_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class FileMetadata:
    original_name: str
    mime_type: str
    uploaded_by: Optional[int] = None


@dataclass
class DownloadURL:
    url: str
    expires_at: Optional[datetime] = None


def _extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()[:16]


class StorageDriver(ABC):
    """Contract every storage medium implements."""

    name = "abstract"

    @abstractmethod
    def store(self, stream: BinaryIO, metadata: FileMetadata) -> str:
        """
        Persist bytes read from stream.

        Returns:
            Opaque storage key

        Raises:
            StorageFailure: If the bytes could not be written
        """

    @abstractmethod
    def get_download_url(self, key: str, display_name: str) -> DownloadURL:
        """
        Build a URL the client can fetch the file from.

        Raises:
            NotFound: If nothing is stored under key
            StorageFailure: If the medium could not be reached
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Release the bytes under key. Deleting an absent key is a no-op."""


class LocalStorageDriver(StorageDriver):
    name = "local"

    def __init__(self, upload_dir: str):
        self.upload_dir = Path(upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def generate_key(self, original_name: str) -> str:
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        return f"{stamp}-{uuid.uuid4().hex}{_extension(original_name)}"

    def path_for(self, key: str) -> Path:
        """Resolve a key to its file path, rejecting anything that is not a bare key."""
        if not _LOCAL_KEY_RE.match(key or ""):
            raise NotFound("File not found")
        return self.upload_dir / key

    def store(self, stream: BinaryIO, metadata: FileMetadata) -> str:
        key = self.generate_key(metadata.original_name)
        path = self.path_for(key)
        try:
            with open(path, "wb") as out:
                shutil.copyfileobj(stream, out, COPY_CHUNK_SIZE)
        except OSError as e:
            logger.error(f"Local store failed for {metadata.original_name}: {e}", exc_info=True)
            # Do not leave a truncated file behind
            path.unlink(missing_ok=True)
            raise StorageFailure("Could not save the uploaded file")
        logger.info(f"Stored {metadata.original_name} locally as {key}")
        return key

    def get_download_url(self, key: str, display_name: str) -> DownloadURL:
        if not self.path_for(key).is_file():
            raise NotFound("File not found")
        return DownloadURL(
            url=f"{settings.API_PREFIX}/files/{key}?name={quote(display_name or key)}",
            expires_at=None,
        )

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
            logger.info(f"Deleted local file {key}")
        except FileNotFoundError:
            logger.warning(f"Local file {key} already absent, nothing to delete")
        except OSError as e:
            logger.error(f"Local delete failed for {key}: {e}", exc_info=True)
            raise StorageFailure("Could not delete the stored file")


class S3StorageDriver(StorageDriver):
    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        url_expires: int = 3600,
        client=None,
    ):
        if not bucket:
            raise ValueError("S3_BUCKET_NAME must be set when STORAGE_DRIVER is 's3'")
        self.bucket = bucket
        self.url_expires = url_expires
        self._s3 = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if endpoint_url else "auto"},
            ),
        )

    def generate_key(self, original_name: str) -> str:
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        return f"resources/{stamp}-{uuid.uuid4().hex}{_extension(original_name)}"

    def store(self, stream: BinaryIO, metadata: FileMetadata) -> str:
        key = self.generate_key(metadata.original_name)
        try:
            # upload_fileobj switches to multipart for large bodies
            self._s3.upload_fileobj(
                stream,
                self.bucket,
                key,
                ExtraArgs={
                    "ContentType": metadata.mime_type,
                    "Metadata": {
                        "originalname": quote(metadata.original_name),
                        "uploadedby": str(metadata.uploaded_by or "unknown"),
                    },
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed for {metadata.original_name}: {e}", exc_info=True)
            raise StorageFailure("Could not save the uploaded file")
        logger.info(f"Stored {metadata.original_name} in s3://{self.bucket} as {key}")
        return key

    def _exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def get_download_url(self, key: str, display_name: str) -> DownloadURL:
        try:
            if not self._exists(key):
                raise NotFound("File not found")
            url = self._s3.generate_presigned_url(
                ClientMethod="get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{display_name}"',
                },
                ExpiresIn=self.url_expires,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Generating S3 signed URL failed: {e}", exc_info=True)
            raise StorageFailure("Could not generate a download URL")
        return DownloadURL(
            url=url,
            expires_at=datetime.utcnow() + timedelta(seconds=self.url_expires),
        )

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
            logger.info(f"Deleted s3://{self.bucket}/{key}")
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                logger.warning(f"S3 object {key} already absent, nothing to delete")
                return
            logger.error(f"S3 delete failed for {key}: {e}", exc_info=True)
            raise StorageFailure("Could not delete the stored file")
        except BotoCoreError as e:
            logger.error(f"S3 delete failed for {key}: {e}", exc_info=True)
            raise StorageFailure("Could not delete the stored file")


@lru_cache(maxsize=None)
def get_storage_driver() -> StorageDriver:
    """Build the configured driver once per process."""
    driver = os.getenv("STORAGE_DRIVER", settings.STORAGE_DRIVER).lower()
    if driver == "s3":
        return S3StorageDriver(
            bucket=settings.S3_BUCKET_NAME,
            region=settings.AWS_REGION,
            endpoint_url=settings.AWS_ENDPOINT,
            url_expires=settings.DOWNLOAD_URL_EXPIRES,
        )
    return LocalStorageDriver(settings.UPLOAD_DIR)


# Dependency to get the storage driver
def get_storage() -> StorageDriver:
    return get_storage_driver()
