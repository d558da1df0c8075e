"""Collaborator interfaces the pipeline workers depend on."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from reimburse.models.audit import (
    ApproverInfo,
    FetchedFile,
    InvoiceData,
    PolicyCheckResult,
    PriceVerificationResult,
)


class Downloader(Protocol):
    async def fetch_with_retry(
        self, url: str, credential: Optional[str] = None, max_attempts: Optional[int] = None
    ) -> FetchedFile:
        ...


class FileStorage(Protocol):
    def validate_path(self, relative_path: str) -> None:
        ...

    def create_instance_folder(self, external_id: str) -> str:
        ...

    def generate_file_name(
        self, external_id: str, attachment_id: int, item_id: Optional[int], original_name: str
    ) -> str:
        ...

    def save(self, relative_path: str, content: bytes) -> str:
        ...


class InvoiceExtractor(Protocol):
    async def extract(self, file_path: str) -> InvoiceData:
        ...


class Auditor(Protocol):
    async def check_policy(self, invoice: InvoiceData, expense_category: str) -> PolicyCheckResult:
        ...

    async def check_price(self, invoice: InvoiceData, claimed_amount: float) -> PriceVerificationResult:
        ...


class ApprovalPlatform(Protocol):
    async def get_instance_status(self, instance_code: str) -> str:
        ...

    async def get_approvers(self, instance_code: str) -> List[ApproverInfo]:
        ...

    async def send_notification(self, approver: ApproverInfo, text: str) -> str:
        ...


class StatusChangeHandler(Protocol):
    async def handle_status_changed(self, external_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...


class VoucherGenerator(Protocol):
    async def generate(self, instance: Dict[str, Any], attachments: List[Dict[str, Any]]) -> str:
        ...


class Worker(Protocol):
    name: str

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...
