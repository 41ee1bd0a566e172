"""
Byte storage for uploaded and generated files.

This module provides the backends that hold the raw content of stored files:
- LocalBlobStorage keeps files in a directory on disk
- S3BlobStorage keeps files as objects in an S3 bucket

Both address content by an opaque ``location`` string returned from ``put``.
Metadata lives elsewhere (see file_store); a blob storage only knows bytes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

import boto3
from botocore.exceptions import ClientError

from .utils import ensure_directory

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class BlobStorage(ABC):
    """Contract for all byte storage backends."""

    @abstractmethod
    def put(self, name: str, content: bytes) -> str:
        """Store content under ``name`` and return its location."""

    @abstractmethod
    def read(self, location: str) -> bytes:
        """
        Read the full content at ``location``.

        Raises:
            FileNotFoundError: if nothing is stored there.
        """

    @abstractmethod
    def iter_chunks(self, location: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the content at ``location`` in chunks."""

    @abstractmethod
    def exists(self, location: str) -> bool:
        """Return True when content is stored at ``location``."""

    @abstractmethod
    def delete(self, location: str) -> bool:
        """Remove the content at ``location``. Returns False if it was already gone."""


class LocalBlobStorage(BlobStorage):
    """Stores blobs as files in a single directory."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root))

    def put(self, name: str, content: bytes) -> str:
        destination = self.root / name
        # exclusive create: storage names are unique, an existing file is a bug
        with destination.open("xb") as buffer:
            buffer.write(content)
        return str(destination)

    def read(self, location: str) -> bytes:
        return Path(location).read_bytes()

    def iter_chunks(self, location: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        with Path(location).open("rb") as source:
            while chunk := source.read(chunk_size):
                yield chunk

    def exists(self, location: str) -> bool:
        return Path(location).is_file()

    def delete(self, location: str) -> bool:
        try:
            Path(location).unlink()
        except FileNotFoundError:
            logger.warning(f"Blob already missing at {location}")
            return False
        return True


class S3BlobStorage(BlobStorage):
    """
    Stores blobs as objects in an S3 bucket.

    Locations are object keys within the configured bucket. Credentials are
    resolved by boto3 in the usual way (environment, profile, instance role).
    """

    def __init__(self, bucket: str, prefix: str = "", client=None) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.prefix = prefix
        self._client = client

    @property
    def client(self):
        # lazy so the app can start before credentials are available
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def put(self, name: str, content: bytes) -> str:
        key = f"{self.prefix}{name}"
        logger.info(f"Uploading {len(content)} bytes to s3://{self.bucket}/{key}")
        self.client.put_object(Bucket=self.bucket, Key=key, Body=content)
        return key

    def _get_object(self, location: str):
        try:
            return self.client.get_object(Bucket=self.bucket, Key=location)
        except ClientError as exc:
            if _is_missing(exc):
                raise FileNotFoundError(f"No object at s3://{self.bucket}/{location}") from exc
            raise

    def read(self, location: str) -> bytes:
        return self._get_object(location)["Body"].read()

    def iter_chunks(self, location: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        body = self._get_object(location)["Body"]
        try:
            yield from body.iter_chunks(chunk_size=chunk_size)
        finally:
            body.close()

    def exists(self, location: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=location)
        except ClientError as exc:
            if _is_missing(exc):
                return False
            raise
        return True

    def delete(self, location: str) -> bool:
        if not self.exists(location):
            logger.warning(f"Blob already missing at s3://{self.bucket}/{location}")
            return False
        self.client.delete_object(Bucket=self.bucket, Key=location)
        logger.info(f"Deleted s3://{self.bucket}/{location}")
        return True


def _is_missing(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code", "")
    return code in {"404", "NoSuchKey", "NotFound"}
