"""
LLM access for invoice extraction and the optional AI audit checks.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint and always asks
for a JSON object response.
"""
from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from reimburse.models.audit import InvoiceData
from reimburse.services.errors import ExtractionError, LLMError
from reimburse.services.file_storage import guess_mime_type

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    async def chat_json(self, messages: List[Dict[str, Any]], temperature: float = 0.1) -> Dict[str, Any]:
        """Run a chat completion and decode the reply as a JSON object."""
        if not self.api_key:
            raise LLMError("LLM API key not configured")

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions", headers=headers, json=payload
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(f"{type(exc).__name__}: {exc}") from exc

        choices = result.get("choices") or []
        if not choices:
            raise LLMError("no response from AI")
        content = (choices[0].get("message") or {}).get("content") or ""
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LLMError(f"failed to parse AI response: {exc}") from exc
        if not isinstance(parsed, dict):
            raise LLMError("AI response is not a JSON object")
        return parsed


_EXTRACTION_PROMPT = """Extract the fields of this Chinese VAT invoice (发票) as JSON with keys:
invoice_code, invoice_number, invoice_type, invoice_date (YYYY-MM-DD), total_amount,
tax_amount, amount_without_tax, seller_name, seller_tax_id, buyer_name, buyer_tax_id,
remarks, items (list of {name, specification, unit, quantity, unit_price, amount,
tax_rate, tax_amount}). Use empty strings or 0 for fields that are not visible.
Return only valid JSON."""


class VisionInvoiceExtractor:
    """Extraction port: stored PDF/image file -> ``InvoiceData``."""

    def __init__(self, client: LLMClient):
        self.client = client

    def _file_content(self, file_path: str) -> Dict[str, Any]:
        try:
            with open(file_path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise ExtractionError(f"cannot read file: {exc}", file_path=file_path) from exc

        encoded = base64.b64encode(raw).decode("ascii")
        mime_type = guess_mime_type(file_path)
        data_url = f"data:{mime_type};base64,{encoded}"
        if mime_type == "application/pdf":
            return {
                "type": "file",
                "file": {"filename": os.path.basename(file_path), "file_data": data_url},
            }
        return {"type": "image_url", "image_url": {"url": data_url}}

    async def extract(self, file_path: str) -> InvoiceData:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": _EXTRACTION_PROMPT},
                    self._file_content(file_path),
                ],
            }
        ]
        try:
            raw = await self.client.chat_json(messages)
        except LLMError as exc:
            raise ExtractionError(str(exc), file_path=file_path) from exc

        try:
            invoice = InvoiceData.model_validate(raw)
        except ValidationError as exc:
            raise ExtractionError(f"invalid extraction payload: {exc}", file_path=file_path) from exc

        logger.info(
            "Extracted invoice %s-%s from %s",
            invoice.invoice_code,
            invoice.invoice_number,
            file_path,
        )
        return invoice
