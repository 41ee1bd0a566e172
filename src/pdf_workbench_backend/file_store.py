"""
Stored file lifecycle: metadata, content and input leases.

The FileStore pairs a metadata repository (in-memory or SQLite) with a blob
storage backend and keeps the two consistent: a file either has both a
metadata record and bytes, or neither. It also tracks leases taken by
running tasks so an input cannot be deleted out from under a worker.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, Iterator, Optional

from .blob_storage import BlobStorage
from .models import StoredFileResponse
from .utils import make_storage_name, utcnow

logger = logging.getLogger(__name__)


class FileInUseError(RuntimeError):
    """Raised when deleting a file that a running task still holds."""

    def __init__(self, file_id: int) -> None:
        super().__init__(f"File {file_id} is in use by a running task")
        self.file_id = file_id


@dataclass(frozen=True)
class StoredFile:
    """
    A persisted binary artifact, either an upload or a task result.

    Attributes:
        id: Unique, monotonically increasing identifier
        storage_name: Internal collision-free filename
        display_name: User-facing filename used for downloads
        size_bytes: Exact size of the stored content
        content_type: MIME type of the content
        created_at: Creation timestamp (UTC)
        location: Opaque reference understood by the blob storage
    """

    id: int
    storage_name: str
    display_name: str
    size_bytes: int
    content_type: str
    created_at: datetime
    location: str

    def to_response(self) -> StoredFileResponse:
        return StoredFileResponse(
            id=self.id,
            filename=self.storage_name,
            original_filename=self.display_name,
            filesize=self.size_bytes,
            mimetype=self.content_type,
            uploaded_at=self.created_at,
            path=self.location,
        )


class FileRecordRepository(ABC):
    """Contract for stored file metadata backends."""

    @abstractmethod
    def insert(
        self,
        storage_name: str,
        display_name: str,
        size_bytes: int,
        content_type: str,
        created_at: datetime,
        location: str,
    ) -> StoredFile:
        """Record a new file and assign its id."""

    @abstractmethod
    def get(self, file_id: int) -> Optional[StoredFile]:
        """Return the record for ``file_id`` or None."""

    @abstractmethod
    def list(self) -> list[StoredFile]:
        """Return all records in insertion order."""

    @abstractmethod
    def remove(self, file_id: int) -> bool:
        """Delete the record. Returns False if it did not exist."""


class InMemoryFileRecords(FileRecordRepository):
    """Process-local metadata store backed by a dict."""

    def __init__(self) -> None:
        self._records: Dict[int, StoredFile] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def insert(self, storage_name, display_name, size_bytes, content_type, created_at, location) -> StoredFile:
        with self._lock:
            record = StoredFile(
                id=next(self._ids),
                storage_name=storage_name,
                display_name=display_name,
                size_bytes=size_bytes,
                content_type=content_type,
                created_at=created_at,
                location=location,
            )
            self._records[record.id] = record
            return record

    def get(self, file_id: int) -> Optional[StoredFile]:
        with self._lock:
            return self._records.get(file_id)

    def list(self) -> list[StoredFile]:
        with self._lock:
            return list(self._records.values())

    def remove(self, file_id: int) -> bool:
        with self._lock:
            return self._records.pop(file_id, None) is not None


class FileStore:
    """
    Owner of the StoredFile lifecycle.

    Thread Safety:
        Metadata backends are individually thread-safe. Lease bookkeeping and
        the in-use check on delete share one lock so a lease cannot be taken
        between the check and the removal.
    """

    def __init__(self, records: FileRecordRepository, blobs: BlobStorage) -> None:
        self.records = records
        self.blobs = blobs
        self._leases: Counter[int] = Counter()
        self._lease_lock = Lock()

    def save(self, content: bytes, display_name: str, content_type: str) -> StoredFile:
        """
        Persist bytes under a fresh storage name and record their metadata.

        If the metadata cannot be recorded the bytes are removed again so no
        orphaned content is left behind.
        """
        storage_name = make_storage_name(display_name)
        location = self.blobs.put(storage_name, content)
        try:
            return self.records.insert(
                storage_name=storage_name,
                display_name=display_name,
                size_bytes=len(content),
                content_type=content_type,
                created_at=utcnow(),
                location=location,
            )
        except Exception:
            self.blobs.delete(location)
            raise

    def get(self, file_id: int) -> Optional[StoredFile]:
        return self.records.get(file_id)

    def list(self) -> list[StoredFile]:
        return self.records.list()

    def read(self, file_id: int) -> bytes:
        record = self.records.get(file_id)
        if record is None:
            raise FileNotFoundError("File not found")
        return self.blobs.read(record.location)

    def has_content(self, record: StoredFile) -> bool:
        return self.blobs.exists(record.location)

    def iter_content(self, record: StoredFile) -> Iterator[bytes]:
        return self.blobs.iter_chunks(record.location)

    def delete(self, file_id: int) -> bool:
        """
        Remove a file's bytes and metadata.

        Returns:
            True if the file existed, False for an unknown id

        Raises:
            FileInUseError: if a running task holds a lease on the file
        """
        with self._lease_lock:
            if self._leases[file_id] > 0:
                raise FileInUseError(file_id)
            record = self.records.get(file_id)
            if record is None:
                return False
            # bytes first: a failure here leaves the file fully intact
            if not self.blobs.delete(record.location):
                logger.warning(f"File {file_id} had no content at {record.location}; removing metadata only")
            return self.records.remove(file_id)

    def acquire(self, file_ids: Iterable[int]) -> list[int]:
        """Lease every known id in ``file_ids`` and return the ids leased."""
        with self._lease_lock:
            leased = [file_id for file_id in file_ids if self.records.get(file_id) is not None]
            self._leases.update(leased)
            return leased

    def release(self, file_ids: Iterable[int]) -> None:
        with self._lease_lock:
            self._leases.subtract(file_ids)
            for file_id in [key for key, count in self._leases.items() if count <= 0]:
                del self._leases[file_id]

    def lease_count(self, file_id: int) -> int:
        with self._lease_lock:
            return self._leases[file_id]
