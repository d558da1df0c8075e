"""
Download worker

Drains PENDING attachments into COMPLETED or FAILED. Each tick takes one batch
in creation order and processes it sequentially; every failure is recorded on
the attachment row and never stops the loop.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AttachmentStatus
from reimburse.services.errors import DownloadError, PathValidationError, ReimburseError, StorageError
from reimburse.services.file_storage import guess_mime_type
from reimburse.services.retry import RetryStrategy
from reimburse.services.voucher_trigger import VoucherTrigger
from reimburse.workers.base import PollingWorker
from reimburse.workflows.ports import Downloader, FileStorage

logger = logging.getLogger(__name__)

MISSING_URL_MESSAGE = "attachment URL not available"

CredentialProvider = Callable[[], Awaitable[Optional[str]]]


class DownloadWorker(PollingWorker):
    name = "download_worker"

    def __init__(
        self,
        db: ReimbursementDB,
        downloader: Downloader,
        storage: FileStorage,
        retry: Optional[RetryStrategy] = None,
        credential_provider: Optional[CredentialProvider] = None,
        voucher_trigger: Optional[VoucherTrigger] = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
        max_attempts: int = 3,
        download_timeout: float = 30.0,
        shutdown_grace: float = 10.0,
    ):
        super().__init__(poll_interval=poll_interval, shutdown_grace=shutdown_grace)
        self.db = db
        self.downloader = downloader
        self.storage = storage
        self.retry = retry or RetryStrategy(max_attempts=max_attempts)
        self.credential_provider = credential_provider
        self.voucher_trigger = voucher_trigger
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.download_timeout = download_timeout

    async def _tick(self) -> None:
        attachments = self.db.get_pending_attachments(self.batch_size)
        if not attachments:
            return
        logger.debug("%s picked up %s pending attachments", self.name, len(attachments))
        for attachment in attachments:
            if self.stopping:
                break
            await self.process_attachment(attachment)

    def _fail(self, attachment: Dict[str, Any], message: str) -> None:
        logger.warning(
            "Attachment %s (instance %s) download failed: %s",
            attachment["id"],
            attachment["instance_id"],
            message,
        )
        self.db.update_status(attachment["id"], AttachmentStatus.FAILED.value, message)
        self.status.record_failure(message)

    async def process_attachment(self, attachment: Dict[str, Any]) -> str:
        """Download one attachment and return its resulting status."""
        try:
            return await self._process(attachment)
        except Exception as exc:
            # Last-resort boundary: record the failure on the row when still possible.
            logger.exception("Unexpected error downloading attachment %s", attachment["id"])
            try:
                self._fail(attachment, f"Unexpected error: {exc}")
            except Exception as persist_exc:
                logger.error(
                    "Could not record failure for attachment %s: %s", attachment["id"], persist_exc
                )
                self.status.record_error(str(exc))
            return AttachmentStatus.FAILED.value

    async def _process(self, attachment: Dict[str, Any]) -> str:
        attachment_id = attachment["id"]
        instance_id = attachment["instance_id"]

        if not attachment.get("url"):
            self._fail(attachment, MISSING_URL_MESSAGE)
            return AttachmentStatus.FAILED.value

        instance = self.db.get_instance(instance_id)
        external_id = instance["external_id"] if instance else str(instance_id)

        try:
            self.storage.create_instance_folder(external_id)
            relative_path = self.storage.generate_file_name(
                external_id, attachment_id, attachment.get("item_id"), attachment["file_name"]
            )
            self.storage.validate_path(relative_path)
        except PathValidationError as exc:
            self._fail(attachment, f"Path validation failed: {exc}")
            return AttachmentStatus.FAILED.value
        except StorageError as exc:
            self._fail(attachment, f"Storage error: {exc}")
            return AttachmentStatus.FAILED.value

        credential = None
        if self.credential_provider is not None:
            try:
                credential = await self.credential_provider()
            except ReimburseError as exc:
                self._fail(attachment, f"Download failed (temporary): credential unavailable: {exc}")
                return AttachmentStatus.FAILED.value

        try:
            fetched = await asyncio.wait_for(
                self.downloader.fetch_with_retry(attachment["url"], credential, self.max_attempts),
                timeout=self.download_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._fail(
                attachment,
                f"Download failed ({self.retry.describe(exc)}): timed out after {self.download_timeout}s",
            )
            return AttachmentStatus.FAILED.value
        except DownloadError as exc:
            classification = "temporary" if exc.temporary else "permanent"
            self._fail(attachment, f"Download failed ({classification}): {exc.detail}")
            return AttachmentStatus.FAILED.value

        try:
            file_path = self.storage.save(relative_path, fetched.content)
        except (StorageError, PathValidationError) as exc:
            self._fail(attachment, f"Storage error: {exc}")
            return AttachmentStatus.FAILED.value

        mime_type = fetched.mime_type
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = guess_mime_type(attachment["file_name"])
        self.db.mark_download_completed(attachment_id, file_path, len(fetched.content), mime_type)
        self.status.record_success()
        logger.info(
            "Attachment %s (instance %s) downloaded to %s (%s bytes)",
            attachment_id,
            instance_id,
            file_path,
            len(fetched.content),
        )

        if self.voucher_trigger is not None:
            self.voucher_trigger.generate_async(instance_id)
        return AttachmentStatus.COMPLETED.value
