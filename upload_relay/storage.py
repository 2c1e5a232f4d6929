import logging
import mimetypes
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

from upload_relay.errors import PayloadTooLarge, StorageConflict
from upload_relay.ledger import MetadataLedger
from upload_relay.models import UploadMetadataRecord
from upload_relay.naming import Namer, TimestampNamer

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_NAME_ATTEMPTS = 5


@dataclass(frozen=True)
class StoredFile:
    storage_name: str
    size: int
    content_type: str
    path: Path | None = None


def copy_limited(source: BinaryIO, write: Callable[[bytes], object], max_size_bytes: int) -> int:
    total = 0
    while True:
        chunk = source.read(CHUNK_SIZE)
        if not chunk:
            return total
        total += len(chunk)
        if total > max_size_bytes:
            raise PayloadTooLarge(max_size_bytes)
        write(chunk)


def guess_content_type(storage_name: str) -> str:
    return mimetypes.guess_type(storage_name)[0] or "application/octet-stream"


class UploadStorage(ABC):
    """Where uploaded bytes and their metadata records end up."""

    def init(self) -> None:
        pass

    @abstractmethod
    def put(
        self,
        *,
        source: BinaryIO,
        original_name: str,
        content_type: str,
        max_size_bytes: int,
    ) -> StoredFile:
        """Store the bytes under a fresh storage name.

        Never replaces an existing file; raises ``StorageConflict`` when no free
        name could be found.
        """

    @abstractmethod
    def record_metadata(self, record: UploadMetadataRecord, uploader: str | None = None) -> None:
        """Append ``record`` to the ledger."""

    @abstractmethod
    def fetch(self, storage_name: str) -> StoredFile | None: ...

    @abstractmethod
    def read(self, storage_name: str) -> bytes | None: ...

    @abstractmethod
    def find_orphans(self) -> list[str]:
        """Stored names that have no ledger entry."""


def ledger_entry(record: UploadMetadataRecord, uploader: str | None) -> dict:
    entry = record.to_json_dict()
    if uploader is not None:
        entry["uploadedBy"] = uploader
    return entry


class LocalUploadStorage(UploadStorage):
    def __init__(
        self,
        root_dir: str,
        *,
        ledger_filename: str = "metadata.jsonl",
        namer: Namer | None = None,
        max_name_attempts: int = MAX_NAME_ATTEMPTS,
    ):
        self.root = Path(root_dir)
        self.ledger = MetadataLedger(self.root / ledger_filename)
        self.namer = namer or TimestampNamer()
        self.max_name_attempts = max_name_attempts

    def init(self) -> None:
        if not self.root.exists():
            logger.info("Creating upload directory %s", self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, *, source, original_name, content_type, max_size_bytes):
        # Bytes land in a hidden temp file first and only get a public name
        # once they are complete and synced.
        fd, temp_name = tempfile.mkstemp(prefix=".partial-", dir=self.root)
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                size = copy_limited(source, f.write, max_size_bytes)
                f.flush()
                os.fsync(f.fileno())
            storage_name = self._publish(temp_path, original_name)
        finally:
            temp_path.unlink(missing_ok=True)
        return StoredFile(
            storage_name=storage_name,
            size=size,
            content_type=content_type,
            path=self.root / storage_name,
        )

    def _publish(self, temp_path: Path, original_name: str) -> str:
        storage_name = ""
        for _ in range(self.max_name_attempts):
            storage_name = self.namer(original_name)
            try:
                # link() fails instead of replacing an existing file
                os.link(temp_path, self.root / storage_name)
            except FileExistsError:
                logger.warning("Storage name %s already taken, picking another", storage_name)
                continue
            return storage_name
        raise StorageConflict(storage_name)

    def record_metadata(self, record, uploader=None):
        self.ledger.append(ledger_entry(record, uploader))

    def _is_reserved(self, name: str) -> bool:
        return name.startswith(".") or name == self.ledger.path.name

    def fetch(self, storage_name):
        if self._is_reserved(storage_name):
            return None
        path = self.root / storage_name
        if path.parent.resolve() != self.root.resolve() or not path.is_file():
            return None
        return StoredFile(
            storage_name=storage_name,
            size=path.stat().st_size,
            content_type=guess_content_type(storage_name),
            path=path,
        )

    def read(self, storage_name):
        stored = self.fetch(storage_name)
        if stored is None:
            return None
        return stored.path.read_bytes()

    def stored_names(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_file() and not self._is_reserved(p.name))

    def find_orphans(self):
        recorded = self.ledger.stored_names()
        return [name for name in self.stored_names() if name not in recorded]


class InMemoryUploadStorage(UploadStorage):
    """Dict-backed storage with the same naming and ledger rules as the disk one."""

    def __init__(self, *, namer: Namer | None = None, max_name_attempts: int = MAX_NAME_ATTEMPTS):
        self.namer = namer or TimestampNamer()
        self.max_name_attempts = max_name_attempts
        self.files: dict[str, StoredFile] = {}
        self.blobs: dict[str, bytes] = {}
        self.entries: list[dict] = []
        self._lock = threading.Lock()

    def put(self, *, source, original_name, content_type, max_size_bytes):
        chunks: list[bytes] = []
        size = copy_limited(source, chunks.append, max_size_bytes)
        storage_name = ""
        for _ in range(self.max_name_attempts):
            storage_name = self.namer(original_name)
            with self._lock:
                if storage_name in self.files:
                    continue
                stored = StoredFile(storage_name=storage_name, size=size, content_type=content_type)
                self.files[storage_name] = stored
                self.blobs[storage_name] = b"".join(chunks)
                return stored
        raise StorageConflict(storage_name)

    def record_metadata(self, record, uploader=None):
        with self._lock:
            self.entries.append(ledger_entry(record, uploader))

    def fetch(self, storage_name):
        return self.files.get(storage_name)

    def read(self, storage_name):
        return self.blobs.get(storage_name)

    def find_orphans(self):
        with self._lock:
            recorded = {entry["savedAs"] for entry in self.entries}
            return sorted(name for name in self.files if name not in recorded)
