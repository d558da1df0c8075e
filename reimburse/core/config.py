"""Pipeline configuration read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass
class PipelineSettings:
    attachment_dir: str = "attachments"
    workers_enabled: bool = True

    # Download worker
    download_poll_interval: float = 5.0
    download_batch_size: int = 10
    download_max_attempts: int = 3
    download_timeout: float = 30.0
    retry_base_backoff: float = 1.0
    retry_max_backoff: float = 8.0
    retry_jitter: bool = True

    # Audit processor
    audit_poll_interval: float = 10.0
    audit_batch_size: int = 5
    audit_process_timeout: float = 120.0
    audit_check_timeout: float = 60.0
    notification_retry_interval: float = 300.0

    # Status poller
    status_poller_enabled: bool = True
    status_poll_interval: float = 30.0
    status_poll_batch_size: int = 50
    status_poll_timeout: float = 10.0

    # Audit rules
    company_name: str = ""
    company_tax_id: str = ""
    price_deviation_threshold: float = 10.0

    # Approval platform
    lark_app_id: str = ""
    lark_app_secret: str = ""
    lark_base_url: str = "https://open.feishu.cn"

    # LLM
    llm_api_key: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o"
    llm_timeout: float = 60.0

    shutdown_grace_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            attachment_dir=os.getenv("ATTACHMENT_DIR", "attachments"),
            workers_enabled=_env_bool("WORKERS_ENABLED", True),
            download_poll_interval=_env_float("DOWNLOAD_POLL_INTERVAL_SECONDS", 5.0, 0.1),
            download_batch_size=_env_int("DOWNLOAD_BATCH_SIZE", 10),
            download_max_attempts=_env_int("DOWNLOAD_MAX_ATTEMPTS", 3),
            download_timeout=_env_float("DOWNLOAD_TIMEOUT_SECONDS", 30.0, 1.0),
            retry_base_backoff=_env_float("RETRY_BASE_BACKOFF_SECONDS", 1.0, 0.01),
            retry_max_backoff=_env_float("RETRY_MAX_BACKOFF_SECONDS", 8.0, 0.01),
            retry_jitter=_env_bool("RETRY_JITTER", True),
            audit_poll_interval=_env_float("AUDIT_POLL_INTERVAL_SECONDS", 10.0, 0.1),
            audit_batch_size=_env_int("AUDIT_BATCH_SIZE", 5),
            audit_process_timeout=_env_float("AUDIT_PROCESS_TIMEOUT_SECONDS", 120.0, 1.0),
            audit_check_timeout=_env_float("AUDIT_CHECK_TIMEOUT_SECONDS", 60.0, 1.0),
            notification_retry_interval=_env_float("NOTIFICATION_RETRY_INTERVAL_SECONDS", 300.0),
            status_poller_enabled=_env_bool("STATUS_POLLER_ENABLED", True),
            status_poll_interval=_env_float("STATUS_POLL_INTERVAL_SECONDS", 30.0, 0.1),
            status_poll_batch_size=_env_int("STATUS_POLL_BATCH_SIZE", 50),
            status_poll_timeout=_env_float("STATUS_POLL_TIMEOUT_SECONDS", 10.0, 1.0),
            company_name=os.getenv("COMPANY_NAME", ""),
            company_tax_id=os.getenv("COMPANY_TAX_ID", ""),
            price_deviation_threshold=_env_float("PRICE_DEVIATION_THRESHOLD", 10.0),
            lark_app_id=os.getenv("LARK_APP_ID", ""),
            lark_app_secret=os.getenv("LARK_APP_SECRET", ""),
            lark_base_url=os.getenv("LARK_BASE_URL", "https://open.feishu.cn").rstrip("/"),
            llm_api_key=os.getenv("LLM_API_KEY", ""),
            llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o"),
            llm_timeout=_env_float("LLM_TIMEOUT_SECONDS", 60.0, 1.0),
            shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", 10.0),
        )

    @property
    def platform_configured(self) -> bool:
        return bool(self.lark_app_id and self.lark_app_secret)

    @property
    def llm_configured(self) -> bool:
        return bool(self.llm_api_key)
