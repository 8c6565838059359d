"""
Blob store adapters for variant artifacts.

This module provides the three operations the job queue consumes:
- Uploading artifact bytes under a visibility-scoped key
- Resolving a retrieval URL (public object URL or presigned, time-limited GET)
- Deleting an artifact by key

Two backends are available: ``S3BlobStore`` (boto3) for deployments and
``LocalBlobStore`` for development, which writes under a local directory that
the API serves as static files. Every failure surfaces as ``StorageError`` so
callers can decide whether it is fatal.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import StorageError
from .utils import ensure_directory, sanitize_filename, unique

logger = logging.getLogger(__name__)


class BlobStore:
    """Common key layout; subclasses implement the storage calls."""

    def __init__(self, folder_prefix: str = "") -> None:
        self.folder_prefix = folder_prefix

    def build_path(self, file_name: str, is_public: bool = False) -> str:
        """
        Build a unique storage key for an upload.

        Public objects live under ``public/uploads/``, private ones under
        ``uploads/``; both get a millisecond timestamp prefix.

        Example:
            >>> LocalBlobStore(Path("/tmp/blobs")).build_path("Home Jersey.ai")
            "uploads/1760781600000-Home_Jersey.ai"
        """
        timestamp = int(time.time() * 1000)
        scope = "public/uploads" if is_public else "uploads"
        return f"{self.folder_prefix}{scope}/{timestamp}-{sanitize_filename(file_name)}"

    def put(self, path: str, data: bytes, content_type: str, is_public: bool = False) -> str:
        raise NotImplementedError

    def get_url(self, path: str, is_public: bool = False) -> str:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError


class S3BlobStore(BlobStore):
    """
    Artifacts in one S3 bucket.

    Note:
        Credentials come from the standard boto3 chain. We do not probe them
        at startup; credential errors surface on the first real call.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        folder_prefix: str = "",
        url_expiration: int = 3600,
        client: Any = None,
    ) -> None:
        super().__init__(folder_prefix)
        if not bucket:
            raise StorageError("S3 bucket is not configured")
        self.bucket = bucket
        self.region = region
        self.url_expiration = url_expiration
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def put(self, path: str, data: bytes, content_type: str, is_public: bool = False) -> str:
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{path}")
            self.client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for {path}: {exc}")
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        return path

    def get_url(self, path: str, is_public: bool = False) -> str:
        """
        Resolve a download URL.

        Public objects get their plain virtual-hosted URL; private ones a
        presigned GET valid for ``url_expiration`` seconds.
        """
        if is_public:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{path}"
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=self.url_expiration,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"Failed to generate presigned URL for {path}: {exc}")
            raise StorageError(f"Could not sign URL for {path}: {exc}") from exc

    def delete(self, path: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
            logger.info(f"Deleted s3://{self.bucket}/{path}")
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 delete failed for {path}: {exc}")
            raise StorageError(f"Delete failed for {path}: {exc}") from exc


class LocalBlobStore(BlobStore):
    """Artifacts on the local filesystem, served by the API under ``url_prefix``."""

    def __init__(self, root: Path, url_prefix: str = "/blobs", folder_prefix: str = "") -> None:
        super().__init__(folder_prefix)
        self.root = ensure_directory(Path(root)).resolve()
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root):
            raise StorageError(f"Invalid storage path: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str, is_public: bool = False) -> str:
        target = self._resolve(path)
        try:
            ensure_directory(target.parent)
            target.write_bytes(data)
        except OSError as exc:
            logger.error(f"Local upload failed for {path}: {exc}")
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        logger.info(f"Stored {len(data)} bytes at {target}")
        return path

    def get_url(self, path: str, is_public: bool = False) -> str:
        self._resolve(path)
        return f"{self.url_prefix}/{path}"

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError as exc:
            raise StorageError(f"No such blob: {path}") from exc
        except OSError as exc:
            logger.error(f"Local delete failed for {path}: {exc}")
            raise StorageError(f"Delete failed for {path}: {exc}") from exc


def create_blob_store(settings: DictConfig, client: Optional[Any] = None) -> BlobStore:
    """Build the backend named by ``storage.backend``."""
    storage = settings.storage
    if storage.backend == "s3":
        return S3BlobStore(
            bucket=storage.bucket,
            region=storage.region,
            folder_prefix=storage.folder_prefix,
            url_expiration=storage.url_expiration,
            client=client,
        )
    if storage.backend == "local":
        return LocalBlobStore(
            root=Path(storage.local_root),
            url_prefix=storage.local_url_prefix,
            folder_prefix=storage.folder_prefix,
        )
    raise ValueError(f"Unknown storage backend: {storage.backend}")


def discard_blobs(store: BlobStore, paths: Iterable[Optional[str]]) -> List[str]:
    """
    Best-effort delete of several blobs.

    Failures are logged and skipped; the caller's database cleanup still runs.

    Returns:
        The paths that could not be deleted
    """
    failed: List[str] = []
    for path in unique(path for path in paths if path):
        try:
            store.delete(path)
        except StorageError as exc:
            logger.error(f"Failed to delete blob {path}: {exc}")
            failed.append(path)
    return failed
