import logging
from typing import Callable

from upload_relay.errors import LedgerIOError, StorageIOError
from upload_relay.ledger import utc_now_iso
from upload_relay.models import UploadMetadataRecord, UploadRequest
from upload_relay.storage import UploadStorage
from upload_relay.validation import UploadPolicy, normalize_content_type

logger = logging.getLogger(__name__)


class UploadService:
    def __init__(
        self,
        storage: UploadStorage,
        policy: UploadPolicy,
        *,
        mount_prefix: str = "/uploads",
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.storage = storage
        self.policy = policy
        self.mount_prefix = "/" + mount_prefix.strip("/")
        self.clock = clock

    def public_url(self, storage_name: str) -> str:
        return f"{self.mount_prefix}/{storage_name}"

    def accept(self, request: UploadRequest, uploader: str | None = None) -> UploadMetadataRecord:
        """Validate, store and record one upload, in that order."""
        self.policy.check(request)
        content_type = normalize_content_type(request.content_type)

        try:
            stored = self.storage.put(
                source=request.stream,
                original_name=request.filename,
                content_type=content_type,
                max_size_bytes=self.policy.max_size_bytes,
            )
        except OSError as exc:
            logger.exception("Failed to store upload %r", request.filename)
            raise StorageIOError() from exc

        record = UploadMetadataRecord(
            name=request.filename,
            saved_as=stored.storage_name,
            url=self.public_url(stored.storage_name),
            content_type=stored.content_type,
            size=stored.size,
            uploaded_at=self.clock(),
        )

        try:
            self.storage.record_metadata(record, uploader=uploader)
        except OSError as exc:
            # The file stays on disk; find_orphans() reports it.
            logger.exception("Stored %s but could not append its ledger entry", stored.storage_name)
            raise LedgerIOError(stored.storage_name) from exc

        logger.info(
            "Stored upload %r as %s (%d bytes, %s)",
            request.filename,
            stored.storage_name,
            stored.size,
            stored.content_type,
        )
        return record
