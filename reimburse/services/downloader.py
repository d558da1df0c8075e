"""
Attachment downloader

Fetches receipt files from the approval platform's file URLs with bounded,
backoff-spaced retries.
"""
import asyncio
import logging
from typing import Optional

import httpx

from reimburse.models.audit import FetchedFile
from reimburse.services.errors import DownloadError
from reimburse.services.retry import RetryStrategy

logger = logging.getLogger(__name__)


class AttachmentDownloader:
    """
    httpx-based download adapter.

    Usage:
        downloader = AttachmentDownloader(retry=RetryStrategy())
        fetched = await downloader.fetch_with_retry(url, token, max_attempts=3)
    """

    def __init__(
        self,
        retry: Optional[RetryStrategy] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.retry = retry or RetryStrategy()
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout,
            follow_redirects=True,
        )

    async def _fetch_once(
        self, client: httpx.AsyncClient, url: str, credential: Optional[str]
    ) -> FetchedFile:
        headers = {}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        try:
            response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise DownloadError(
                f"{type(exc).__name__}: {exc}",
                temporary=self.retry.is_temporary_error(exc),
            ) from exc

        if response.status_code >= 400:
            raise DownloadError(
                f"status {response.status_code}",
                status_code=response.status_code,
                temporary=self.retry.is_retryable_status_code(response.status_code),
            )

        content = response.content
        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        return FetchedFile(
            content=content,
            mime_type=mime_type,
            size=len(content),
            status_code=response.status_code,
        )

    async def fetch_with_retry(
        self,
        url: str,
        credential: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> FetchedFile:
        """Download ``url``, retrying transient failures up to ``max_attempts`` times.

        Permanent failures (4xx other than 429, unsupported protocol, invalid
        URL) are raised after the first attempt. Raises ``DownloadError``
        carrying the last status code and the temporary/permanent
        classification.
        """
        attempts = max_attempts if max_attempts and max_attempts > 0 else self.retry.max_attempts
        last_error: Optional[DownloadError] = None

        async with self._client() as client:
            for attempt in range(1, attempts + 1):
                try:
                    fetched = await self._fetch_once(client, url, credential)
                    fetched.attempts = attempt
                    return fetched
                except DownloadError as exc:
                    last_error = exc

                if not last_error.temporary:
                    logger.info(
                        "Permanent download error, not retrying (attempt %s): %s",
                        attempt,
                        last_error,
                    )
                    raise last_error

                if attempt < attempts:
                    backoff = self.retry.calculate_backoff(attempt)
                    logger.info(
                        "Retrying download in %.2fs (attempt %s/%s): %s",
                        backoff,
                        attempt,
                        attempts,
                        last_error,
                    )
                    await asyncio.sleep(backoff)

        logger.error("Download failed after %s attempts: %s", attempts, last_error)
        raise DownloadError(
            f"download failed after {attempts} attempts: {last_error.detail}",
            status_code=last_error.status_code,
            temporary=last_error.temporary,
        )
