"""
Exponential backoff and error classification for attachment downloads.
"""
import asyncio
import random
from dataclasses import dataclass

import httpx

_TEMPORARY_MARKERS = (
    "context deadline exceeded",
    "timeout",
    "timed out",
    "connection",
    "eof",
    "reset by peer",
)


@dataclass
class RetryStrategy:
    """Stateless backoff policy. Durations are in seconds."""

    max_attempts: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 8.0
    jitter: bool = True

    def calculate_backoff(self, attempt: int) -> float:
        """Delay before retry ``attempt``: 1s, 2s, 4s, 8s... capped at ``max_backoff``."""
        if attempt <= 0:
            return self.base_backoff

        backoff = min(self.base_backoff * (2 ** (attempt - 1)), self.max_backoff)

        if self.jitter:
            jitter_range = backoff / 10
            if jitter_range > 0:
                backoff += random.uniform(-jitter_range, jitter_range)
                backoff = min(max(backoff, self.base_backoff), self.max_backoff)

        return backoff

    def is_temporary_error(self, error: BaseException) -> bool:
        if error is None:
            return False
        if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
            return True
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, EOFError)):
            return True
        message = str(error).lower()
        return any(marker in message for marker in _TEMPORARY_MARKERS)

    @staticmethod
    def is_retryable_status_code(status_code: int) -> bool:
        if 400 <= status_code < 500:
            return status_code == 429
        return 500 <= status_code < 600

    def describe(self, error: BaseException) -> str:
        return "temporary" if self.is_temporary_error(error) else "permanent"
