"""
Reimbursement Pipeline - FastAPI entrypoint

Wires the pipeline ports from the environment, runs the background workers for
the lifetime of the process and exposes a small operational API.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000

3. Test /health endpoint:
   curl http://localhost:8000/health

Set WORKERS_ENABLED=false to serve the API without starting the pollers.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from reimburse.core.config import PipelineSettings
from reimburse.core.database import ReimbursementDB, get_db
from reimburse.core.status import AttachmentStateError, AttachmentStatus
from reimburse.services.approval_platform import ApprovalPlatformClient
from reimburse.services.audit_notifier import AuditNotifier
from reimburse.services.background import BackgroundTasks
from reimburse.services.downloader import AttachmentDownloader
from reimburse.services.errors import InvalidEventError, NotFoundError, ReimburseError, to_http_status
from reimburse.services.file_storage import LocalFileStorage
from reimburse.services.invoice_auditor import InvoiceAuditor
from reimburse.services.llm import LLMClient, VisionInvoiceExtractor
from reimburse.services.logging import configure_logging, log_error, logger
from reimburse.services.retry import RetryStrategy
from reimburse.services.voucher_trigger import ManifestVoucherGenerator, VoucherTrigger
from reimburse.workers.audit_processor import AuditProcessor
from reimburse.workers.download_worker import DownloadWorker
from reimburse.workers.manager import WorkerManager
from reimburse.workers.status_poller import StatusPoller
from reimburse.workflows.engine import WorkflowEngine


@dataclass
class Pipeline:
    settings: PipelineSettings
    db: ReimbursementDB
    engine: WorkflowEngine
    manager: WorkerManager
    background: BackgroundTasks


def build_pipeline(settings: PipelineSettings, db: Optional[ReimbursementDB] = None) -> Pipeline:
    """Construct every adapter and worker; nothing is started here."""
    db = db or get_db()
    db.initialize()
    background = BackgroundTasks()
    storage = LocalFileStorage(settings.attachment_dir)

    platform: Optional[ApprovalPlatformClient] = None
    if settings.platform_configured:
        platform = ApprovalPlatformClient(
            settings.lark_app_id,
            settings.lark_app_secret,
            base_url=settings.lark_base_url,
            timeout=settings.status_poll_timeout,
        )
    else:
        logger.warning("LARK_APP_ID/LARK_APP_SECRET not set: notifications and status polling disabled")

    llm = LLMClient(
        settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        timeout=settings.llm_timeout,
    )
    if not settings.llm_configured:
        logger.warning("LLM_API_KEY not set: invoice extraction will fail and attachments end in AUDIT_FAILED")

    retry = RetryStrategy(
        max_attempts=settings.download_max_attempts,
        base_backoff=settings.retry_base_backoff,
        max_backoff=settings.retry_max_backoff,
        jitter=settings.retry_jitter,
    )
    engine = WorkflowEngine(db)
    notifier = AuditNotifier(db, platform=platform, background=background)
    voucher_trigger = VoucherTrigger(db, ManifestVoucherGenerator(storage, db), background=background)

    manager = WorkerManager()
    manager.register(
        DownloadWorker(
            db,
            AttachmentDownloader(retry=retry, timeout=settings.download_timeout),
            storage,
            retry=retry,
            credential_provider=platform.get_tenant_access_token if platform else None,
            voucher_trigger=voucher_trigger,
            poll_interval=settings.download_poll_interval,
            batch_size=settings.download_batch_size,
            max_attempts=settings.download_max_attempts,
            download_timeout=settings.download_timeout,
            shutdown_grace=settings.shutdown_grace_seconds,
        )
    )
    manager.register(
        AuditProcessor(
            db,
            VisionInvoiceExtractor(llm),
            InvoiceAuditor(settings.company_name, settings.company_tax_id, llm=llm),
            notifier=notifier,
            poll_interval=settings.audit_poll_interval,
            batch_size=settings.audit_batch_size,
            process_timeout=settings.audit_process_timeout,
            check_timeout=settings.audit_check_timeout,
            deviation_threshold=settings.price_deviation_threshold,
            notification_retry_interval=settings.notification_retry_interval,
            shutdown_grace=settings.shutdown_grace_seconds,
        )
    )
    if settings.status_poller_enabled and platform is not None:
        manager.register(
            StatusPoller(
                db,
                platform,
                engine,
                poll_interval=settings.status_poll_interval,
                batch_size=settings.status_poll_batch_size,
                request_timeout=settings.status_poll_timeout,
                shutdown_grace=settings.shutdown_grace_seconds,
            )
        )
    return Pipeline(settings=settings, db=db, engine=engine, manager=manager, background=background)


_PIPELINE: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = build_pipeline(PipelineSettings.from_env())
    return _PIPELINE


app = FastAPI(
    title="Reimbursement Pipeline API",
    description="Expense reimbursement download, AI audit and approver notification pipeline.",
    version="1.0.0",
)


@app.exception_handler(ReimburseError)
async def reimburse_exception_handler(request: Request, exc: ReimburseError):
    """Handle all ReimburseErrors with structured responses."""
    status_code = to_http_status(exc)
    if status_code >= 500:
        log_error(exc.code.value, str(exc), {"path": str(request.url.path), **exc.context})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Build the pipeline and start the workers."""
    configure_logging()
    pipeline = get_pipeline()
    if not pipeline.settings.workers_enabled:
        logger.info("WORKERS_ENABLED=false, background workers not started")
        return
    await pipeline.manager.start_all()
    logger.info("Reimbursement pipeline started with %s workers", pipeline.manager.count())


@app.on_event("shutdown")
async def shutdown_event():
    """Stop workers, then let detached notification/voucher jobs finish."""
    if _PIPELINE is None:
        return
    await _PIPELINE.manager.stop_all()
    await _PIPELINE.background.drain(timeout=_PIPELINE.settings.shutdown_grace_seconds)


@app.get("/health", tags=["System"])
async def health():
    pipeline = get_pipeline()
    return {
        "status": "healthy",
        "version": "v1.0.0",
        "workers": pipeline.manager.count(),
        "background_tasks": pipeline.background.pending,
    }


@app.get("/workers", tags=["System"])
async def workers():
    return {"workers": get_pipeline().manager.statuses()}


def _decode_approval_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    header = payload.get("header") or {}
    event = payload.get("event") or {}
    event_type = header.get("event_type") or payload.get("event_type") or event.get("type") or payload.get("type")
    instance_code = event.get("instance_code") or payload.get("instance_code")
    if not event_type:
        raise InvalidEventError("event_type missing")
    if not instance_code:
        raise InvalidEventError("instance_code missing")
    return {"event_type": event_type, "instance_code": instance_code, "data": event or payload}


@app.post("/webhooks/approval", tags=["Webhooks"])
async def approval_webhook(request: Request):
    """
    Receive approval platform events.

    Handles the URL verification handshake, then forwards instance
    created/approved/rejected/status_changed events to the workflow engine.
    """
    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    decoded = _decode_approval_event(payload)
    logger.info("Approval webhook: %s for %s", decoded["event_type"], decoded["instance_code"])
    result = await get_pipeline().engine.handle_event(
        decoded["instance_code"], decoded["event_type"], decoded["data"]
    )
    return {"status": "ok", **result}


@app.post("/attachments/{attachment_id}/retry", tags=["Attachments"])
async def retry_attachment(attachment_id: int):
    """Re-queue a FAILED download (FAILED -> PENDING)."""
    db = get_pipeline().db
    attachment = db.get_attachment(attachment_id)
    if attachment is None:
        raise NotFoundError("attachment", attachment_id)
    try:
        db.requeue_failed_attachment(attachment_id)
    except AttachmentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    logger.info("Attachment %s re-queued for download", attachment_id)
    return {"id": attachment_id, "download_status": AttachmentStatus.PENDING.value}
