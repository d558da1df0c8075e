"""
Reimbursement pipeline database

Single source of truth for approval instances, line items, attachments (the
durable work queue), the duplicate-invoice index and notification rows.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from reimburse.core.status import (
    AttachmentStateError,
    AttachmentStatus,
    NotificationStatus,
    TERMINAL_ATTACHMENT_STATUSES,
    TERMINAL_INSTANCE_STATUSES,
    allowed_sources,
    status_values,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class ReimbursementDB:
    def __init__(self, db_path: str = "reimburse.db"):
        self.db_path = db_path
        self._initialized = False

    def _sqlite_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Compose several write methods atomically by passing ``conn=``."""
        self.initialize()
        with self.connect() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _write(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        # Caller-owned connections are committed by the caller's transaction().
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own
            own.commit()

    def initialize(self) -> None:
        if self._initialized:
            return
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_instances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    applicant_user_id TEXT,
                    submitted_at TEXT,
                    approved_at TEXT,
                    form_data TEXT,
                    audit_summary TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS instance_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instance_id INTEGER NOT NULL,
                    previous_status TEXT,
                    new_status TEXT NOT NULL,
                    source TEXT NOT NULL,
                    payload TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS reimbursement_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instance_id INTEGER NOT NULL,
                    item_type TEXT,
                    description TEXT,
                    amount REAL DEFAULT 0,
                    currency TEXT DEFAULT 'CNY',
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS attachments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id INTEGER,
                    instance_id INTEGER NOT NULL,
                    file_name TEXT NOT NULL,
                    url TEXT,
                    file_path TEXT,
                    file_size INTEGER DEFAULT 0,
                    mime_type TEXT,
                    download_status TEXT NOT NULL,
                    error_message TEXT,
                    audit_result TEXT,
                    created_at TEXT NOT NULL,
                    downloaded_at TEXT,
                    processed_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    unique_id TEXT NOT NULL UNIQUE,
                    invoice_code TEXT,
                    invoice_number TEXT,
                    instance_id INTEGER NOT NULL,
                    attachment_id INTEGER,
                    invoice_amount REAL,
                    seller_name TEXT,
                    buyer_name TEXT,
                    extracted_data TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    instance_id INTEGER NOT NULL UNIQUE,
                    external_id TEXT,
                    status TEXT NOT NULL,
                    audit_decision TEXT,
                    confidence REAL,
                    total_amount REAL,
                    violations TEXT,
                    approver_count INTEGER DEFAULT 0,
                    error_message TEXT,
                    sent_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_attachments_status ON attachments(download_status, created_at)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_attachments_instance ON attachments(instance_id)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_instance ON reimbursement_items(instance_id)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_instance ON instance_history(instance_id)"
            )
            conn.commit()
        self._initialized = True

    @staticmethod
    def _decode_json(raw: Any) -> Any:
        if raw is None or raw == "":
            return None
        if isinstance(raw, (dict, list)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return None

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Approval instances
    # ------------------------------------------------------------------

    def _deserialize_instance(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        row["form_data"] = self._decode_json(row.get("form_data")) or {}
        row["audit_summary"] = self._decode_json(row.get("audit_summary"))
        return row

    def create_instance(
        self,
        external_id: str,
        status: str,
        applicant_user_id: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        submitted_at: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        self.initialize()
        now = _now()
        with self._write(conn) as c:
            cur = c.execute(
                """
                INSERT INTO approval_instances
                (external_id, status, applicant_user_id, submitted_at, form_data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    external_id,
                    status,
                    applicant_user_id,
                    submitted_at or now,
                    json.dumps(form_data or {}, ensure_ascii=False),
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def get_instance(self, instance_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one("SELECT * FROM approval_instances WHERE id = ?", (instance_id,))
        return self._deserialize_instance(row)

    def get_instance_by_external_id(self, external_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(
            "SELECT * FROM approval_instances WHERE external_id = ?", (external_id,)
        )
        return self._deserialize_instance(row)

    def update_instance_status(
        self,
        instance_id: int,
        status: str,
        approved_at: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        self.initialize()
        with self._write(conn) as c:
            if approved_at:
                cur = c.execute(
                    "UPDATE approval_instances SET status = ?, approved_at = ?, updated_at = ? WHERE id = ?",
                    (status, approved_at, _now(), instance_id),
                )
            else:
                cur = c.execute(
                    "UPDATE approval_instances SET status = ?, updated_at = ? WHERE id = ?",
                    (status, _now(), instance_id),
                )
            return cur.rowcount > 0

    def update_audit_summary(
        self,
        instance_id: int,
        summary: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                "UPDATE approval_instances SET audit_summary = ?, updated_at = ? WHERE id = ?",
                (json.dumps(summary, ensure_ascii=False, default=str), _now(), instance_id),
            )
            return cur.rowcount > 0

    def list_instances_for_polling(self, limit: int) -> List[Dict[str, Any]]:
        terminal = status_values(TERMINAL_INSTANCE_STATUSES)
        rows = self._fetch_all(
            f"""
            SELECT * FROM approval_instances
            WHERE status NOT IN ({_placeholders(terminal)})
            ORDER BY updated_at ASC, id ASC
            LIMIT ?
            """,
            (*terminal, limit),
        )
        return [self._deserialize_instance(row) for row in rows]

    def append_history(
        self,
        instance_id: int,
        previous_status: Optional[str],
        new_status: str,
        source: str,
        payload: Optional[Dict[str, Any]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                """
                INSERT INTO instance_history
                (instance_id, previous_status, new_status, source, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    previous_status,
                    new_status,
                    source,
                    json.dumps(payload or {}, ensure_ascii=False, default=str),
                    _now(),
                ),
            )
            return int(cur.lastrowid)

    def list_history(self, instance_id: int) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            "SELECT * FROM instance_history WHERE instance_id = ? ORDER BY id ASC",
            (instance_id,),
        )
        for row in rows:
            row["payload"] = self._decode_json(row.get("payload")) or {}
        return rows

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def create_item(
        self,
        instance_id: int,
        item_type: Optional[str],
        description: Optional[str] = None,
        amount: float = 0.0,
        currency: str = "CNY",
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                """
                INSERT INTO reimbursement_items
                (instance_id, item_type, description, amount, currency, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (instance_id, item_type, description, float(amount or 0), currency or "CNY", _now()),
            )
            return int(cur.lastrowid)

    def get_items_by_instance(self, instance_id: int) -> List[Dict[str, Any]]:
        return self._fetch_all(
            "SELECT * FROM reimbursement_items WHERE instance_id = ? ORDER BY id ASC",
            (instance_id,),
        )

    # ------------------------------------------------------------------
    # Attachments (work queue)
    # ------------------------------------------------------------------

    def _deserialize_attachment(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        row["audit_result"] = self._decode_json(row.get("audit_result"))
        return row

    def create_attachment(
        self,
        instance_id: int,
        file_name: str,
        url: Optional[str],
        item_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                """
                INSERT INTO attachments
                (item_id, instance_id, file_name, url, download_status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (item_id, instance_id, file_name, url, AttachmentStatus.PENDING.value, _now()),
            )
            return int(cur.lastrowid)

    def get_attachment(self, attachment_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
        return self._deserialize_attachment(row)

    def _get_by_status(self, status: AttachmentStatus, limit: int) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            """
            SELECT * FROM attachments
            WHERE download_status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (status.value, limit),
        )
        return [self._deserialize_attachment(row) for row in rows]

    def get_pending_attachments(self, limit: int) -> List[Dict[str, Any]]:
        return self._get_by_status(AttachmentStatus.PENDING, limit)

    def get_completed_attachments(self, limit: int) -> List[Dict[str, Any]]:
        return self._get_by_status(AttachmentStatus.COMPLETED, limit)

    def _compare_and_set(
        self,
        attachment_id: int,
        status: AttachmentStatus,
        assignments: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Single-statement status write guarded by the transition table."""
        self.initialize()
        sources = status_values(allowed_sources(status.value))
        fields = {"download_status": status.value, **assignments}
        set_clause = ", ".join(f"{key} = ?" for key in fields)
        sql = (
            f"UPDATE attachments SET {set_clause} "
            f"WHERE id = ? AND download_status IN ({_placeholders(sources)})"
        )
        with self._write(conn) as c:
            cur = c.execute(sql, (*fields.values(), attachment_id, *sources))
            if cur.rowcount == 0:
                current = c.execute(
                    "SELECT download_status FROM attachments WHERE id = ?", (attachment_id,)
                ).fetchone()
                if current is None:
                    raise AttachmentStateError(f"Attachment {attachment_id} not found")
                raise AttachmentStateError(
                    f"Invalid attachment transition: {current['download_status']} -> {status.value}"
                )

    def update_status(
        self,
        attachment_id: int,
        status: str,
        error_message: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        target = AttachmentStatus(status)
        assignments: Dict[str, Any] = {"error_message": error_message}
        if target in TERMINAL_ATTACHMENT_STATUSES:
            assignments["processed_at"] = _now()
        self._compare_and_set(attachment_id, target, assignments, conn=conn)

    def mark_download_completed(
        self,
        attachment_id: int,
        file_path: str,
        file_size: int,
        mime_type: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        self._compare_and_set(
            attachment_id,
            AttachmentStatus.COMPLETED,
            {
                "file_path": file_path,
                "file_size": int(file_size),
                "mime_type": mime_type,
                "error_message": None,
                "downloaded_at": _now(),
            },
            conn=conn,
        )

    def update_processing_status(
        self,
        attachment_id: int,
        status: str,
        audit_result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        target = AttachmentStatus(status)
        assignments: Dict[str, Any] = {"error_message": error_message}
        if audit_result is not None:
            assignments["audit_result"] = json.dumps(audit_result, ensure_ascii=False, default=str)
        if target in TERMINAL_ATTACHMENT_STATUSES:
            assignments["processed_at"] = _now()
        self._compare_and_set(attachment_id, target, assignments, conn=conn)

    def requeue_failed_attachment(
        self, attachment_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        """Manual FAILED -> PENDING re-entry for a failed download."""
        self.update_status(attachment_id, AttachmentStatus.PENDING.value, None, conn=conn)

    def recover_processing(self, conn: Optional[sqlite3.Connection] = None) -> int:
        """Return rows orphaned in PROCESSING by a crashed process to COMPLETED."""
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                "UPDATE attachments SET download_status = ? WHERE download_status = ?",
                (AttachmentStatus.COMPLETED.value, AttachmentStatus.PROCESSING.value),
            )
            return cur.rowcount

    def get_by_instance_id(self, instance_id: int) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            "SELECT * FROM attachments WHERE instance_id = ? ORDER BY created_at ASC, id ASC",
            (instance_id,),
        )
        return [self._deserialize_attachment(row) for row in rows]

    def get_processed_by_instance_id(self, instance_id: int) -> List[Dict[str, Any]]:
        terminal = status_values(TERMINAL_ATTACHMENT_STATUSES)
        rows = self._fetch_all(
            f"""
            SELECT * FROM attachments
            WHERE instance_id = ? AND download_status IN ({_placeholders(terminal)})
            ORDER BY created_at ASC, id ASC
            """,
            (instance_id, *terminal),
        )
        return [self._deserialize_attachment(row) for row in rows]

    def get_total_count(self, instance_id: int) -> int:
        self.initialize()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM attachments WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        return int(row["total"])

    def get_unprocessed_count(self, instance_id: int) -> int:
        terminal = status_values(TERMINAL_ATTACHMENT_STATUSES)
        self.initialize()
        with self.connect() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total FROM attachments
                WHERE instance_id = ? AND download_status NOT IN ({_placeholders(terminal)})
                """,
                (instance_id, *terminal),
            ).fetchone()
        return int(row["total"])

    def count_by_status(self, instance_id: int, statuses: Iterable[AttachmentStatus]) -> int:
        values = status_values(statuses)
        self.initialize()
        with self.connect() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total FROM attachments
                WHERE instance_id = ? AND download_status IN ({_placeholders(values)})
                """,
                (instance_id, *values),
            ).fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Duplicate-invoice index
    # ------------------------------------------------------------------

    def get_invoice_by_unique_id(self, unique_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM invoices WHERE unique_id = ?", (unique_id,))

    def create_invoice(
        self, payload: Dict[str, Any], conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        """Record an invoice; returns False when the unique id is already taken."""
        self.initialize()
        with self._write(conn) as c:
            cur = c.execute(
                """
                INSERT OR IGNORE INTO invoices
                (unique_id, invoice_code, invoice_number, instance_id, attachment_id,
                 invoice_amount, seller_name, buyer_name, extracted_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payload["unique_id"],
                    payload.get("invoice_code"),
                    payload.get("invoice_number"),
                    payload["instance_id"],
                    payload.get("attachment_id"),
                    payload.get("invoice_amount"),
                    payload.get("seller_name"),
                    payload.get("buyer_name"),
                    json.dumps(payload.get("extracted_data") or {}, ensure_ascii=False, default=str),
                    _now(),
                ),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Audit notifications (idempotency rows)
    # ------------------------------------------------------------------

    def _deserialize_notification(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        row["violations"] = self._decode_json(row.get("violations")) or []
        return row

    def get_notification_by_instance(self, instance_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(
            "SELECT * FROM audit_notifications WHERE instance_id = ?", (instance_id,)
        )
        return self._deserialize_notification(row)

    def save_notification_snapshot(
        self,
        instance_id: int,
        snapshot: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Create the PENDING row for an instance, or reset an unsent one to PENDING.

        The row id is stable across retries; a SENT row is never touched.
        """
        self.initialize()
        now = _now()
        values = (
            snapshot.get("external_id"),
            snapshot.get("decision"),
            snapshot.get("confidence"),
            snapshot.get("total_amount"),
            json.dumps(snapshot.get("violations") or [], ensure_ascii=False),
            int(snapshot.get("approver_count") or 0),
        )
        with self._write(conn) as c:
            c.execute(
                """
                INSERT INTO audit_notifications
                (instance_id, external_id, audit_decision, confidence, total_amount, violations,
                 approver_count, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance_id) DO UPDATE SET
                    external_id = excluded.external_id,
                    audit_decision = excluded.audit_decision,
                    confidence = excluded.confidence,
                    total_amount = excluded.total_amount,
                    violations = excluded.violations,
                    approver_count = excluded.approver_count,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                WHERE audit_notifications.status != ?
                """,
                (
                    instance_id,
                    *values,
                    NotificationStatus.PENDING.value,
                    now,
                    now,
                    NotificationStatus.SENT.value,
                ),
            )
            row = c.execute(
                "SELECT id FROM audit_notifications WHERE instance_id = ?", (instance_id,)
            ).fetchone()
            return int(row["id"])

    def update_notification_status(
        self,
        notification_id: int,
        status: str,
        error_message: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        self.initialize()
        now = _now()
        sent_at = now if status == NotificationStatus.SENT.value else None
        with self._write(conn) as c:
            cur = c.execute(
                """
                UPDATE audit_notifications
                SET status = ?, error_message = ?, sent_at = COALESCE(?, sent_at), updated_at = ?
                WHERE id = ?
                """,
                (status, error_message, sent_at, now, notification_id),
            )
            return cur.rowcount > 0

    def list_retryable_notifications(
        self, limit: int, older_than_seconds: float = 0.0
    ) -> List[Dict[str, Any]]:
        """Unsent notification rows whose last attempt is older than the cutoff."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        rows = self._fetch_all(
            """
            SELECT * FROM audit_notifications
            WHERE status IN (?, ?) AND updated_at <= ?
            ORDER BY updated_at ASC, id ASC
            LIMIT ?
            """,
            (
                NotificationStatus.PENDING.value,
                NotificationStatus.FAILED.value,
                cutoff,
                limit,
            ),
        )
        return [self._deserialize_notification(row) for row in rows]


_DB_INSTANCE: Optional[ReimbursementDB] = None


def get_db() -> ReimbursementDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = ReimbursementDB(db_path=os.getenv("REIMBURSE_DB_PATH", "reimburse.db"))
    return _DB_INSTANCE
