import sqlite3
import re
import uuid
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from contextlib import contextmanager
import threading

from models import (
    ACTIVE_JOB_STATUSES,
    ATTENTION_SUBSCRIPTION_STATUSES,
    CLIENT_STATUS_NEEDS_REVIEW,
    WEBSITE_STATUS_PRIORITY,
    JobStatus,
    JobType,
    Lead,
    LeadStatus,
    WebsiteStatus,
)

logger = logging.getLogger("DATABASE")

LEAD_COLUMNS = {
    "name", "address", "phone", "website", "website_status", "lead_status", "source",
    "notes", "next_followup_at", "approved_at", "approved_by", "rejected_at",
    "rejected_by", "rejected_reason", "is_client", "converted_at", "converted_by",
    "client_status", "subscription_status", "initial_payment_status",
    "next_payment_due_date", "discovered_at",
}

CONTACT_COLUMNS = {
    "email", "email_source", "email_confidence", "phone",
    "facebook_url", "instagram_url", "linkedin_url",
}

JOB_COLUMNS = {"status", "retry_count", "last_error", "started_at", "completed_at"}

LEAD_SORT_COLUMNS = {"name": "name", "discoveredAt": "discovered_at", "discovered_at": "discovered_at"}

CLIENT_SORT_COLUMNS = {
    "name": "name",
    "converted_at": "converted_at",
    "next_payment_due_date": "next_payment_due_date",
    "updated_at": "updated_at",
}


def now_iso() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_key(text: Optional[str]) -> str:
    """Lowercase alphanumerics only, for name/address duplicate checks."""
    if not text:
        return ""
    return re.sub(r'[^a-z0-9]', '', text.strip().lower())


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.lower().strip()


def _value(v):
    # Enums are stored by value
    return v.value if hasattr(v, "value") else v


class Database:
    """sqlite3-backed store for leads, contact info and enrichment jobs.

    Opened once at process start and closed at shutdown. Every operation uses
    its own short-lived connection; writes are serialized by a process lock and
    the job-claim path additionally takes a write transaction so that separate
    processes sharing the same file cannot claim the same job.
    """

    def __init__(self, path: str = "leads.db"):
        self.path = path
        self._lock = threading.Lock()
        self._open = False

    def open(self) -> "Database":
        self._open = True
        self._init_schema()
        logger.info(f"Database opened at {self.path}")
        return self

    def close(self):
        if self._open:
            self._open = False
            logger.info(f"Database closed ({self.path})")

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def _connect(self):
        if not self._open:
            raise RuntimeError("Database is not open")
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self):
        with self._lock:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS leads (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        address TEXT NOT NULL,
                        phone TEXT,
                        website TEXT,
                        website_status TEXT NOT NULL DEFAULT 'unknown',
                        lead_status TEXT NOT NULL DEFAULT 'pending',
                        source TEXT NOT NULL DEFAULT 'manual',
                        notes TEXT,
                        next_followup_at TEXT,
                        approved_at TEXT,
                        approved_by TEXT,
                        rejected_at TEXT,
                        rejected_by TEXT,
                        rejected_reason TEXT,
                        discovered_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)

                # Migration: client conversion columns were added after the first release
                cursor.execute("PRAGMA table_info(leads)")
                columns = [col[1] for col in cursor.fetchall()]

                migrations = [
                    ('is_client', 'INTEGER NOT NULL DEFAULT 0'),
                    ('converted_at', 'TEXT'),
                    ('converted_by', 'TEXT'),
                    ('client_status', 'TEXT'),
                    ('subscription_status', 'TEXT'),
                    ('initial_payment_status', 'TEXT'),
                    ('next_payment_due_date', 'TEXT'),
                ]

                for col_name, col_type in migrations:
                    if col_name not in columns:
                        cursor.execute(f"ALTER TABLE leads ADD COLUMN {col_name} {col_type}")
                        logger.info(f"Added {col_name} column to leads table")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS contact_info (
                        id TEXT PRIMARY KEY,
                        lead_id TEXT NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
                        email TEXT,
                        email_source TEXT,
                        email_confidence INTEGER,
                        phone TEXT,
                        facebook_url TEXT,
                        instagram_url TEXT,
                        linkedin_url TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS enrichment_jobs (
                        id TEXT PRIMARY KEY,
                        target_id TEXT NOT NULL,
                        job_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'queued',
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS client_checklist (
                        id TEXT PRIMARY KEY,
                        lead_id TEXT NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
                        action TEXT NOT NULL,
                        notes TEXT,
                        created_by TEXT,
                        created_at TEXT NOT NULL
                    )
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_jobs_status_created
                    ON enrichment_jobs(status, created_at)
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_jobs_target_type
                    ON enrichment_jobs(target_id, job_type)
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_contact_info_lead
                    ON contact_info(lead_id)
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_checklist_lead
                    ON client_checklist(lead_id, created_at)
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_leads_status
                    ON leads(lead_status, website_status)
                """)

                conn.commit()

    # ==================== LEADS ====================

    def add_lead(self, lead: Lead) -> str:
        lead_id = lead.id or new_id()
        now = now_iso()
        data = lead.model_dump(exclude={"id", "created_at", "updated_at"})
        data["discovered_at"] = data.get("discovered_at") or now
        data["is_client"] = 1 if data.get("is_client") else 0

        columns = ["id"] + list(data.keys()) + ["created_at", "updated_at"]
        params = [lead_id] + [_value(v) for v in data.values()] + [now, now]
        placeholders = ", ".join("?" * len(columns))

        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO leads ({', '.join(columns)}) VALUES ({placeholders})",
                    params,
                )
                conn.commit()
        return lead_id

    def get_lead(self, lead_id: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
            return _lead_row(row) if row else None

    def get_leads(self, lead_ids: Iterable[str]) -> List[dict]:
        ids = list(lead_ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM leads WHERE id IN ({placeholders})", ids
            ).fetchall()
            return [_lead_row(row) for row in rows]

    def update_lead(self, lead_id: str, **fields) -> bool:
        return self.update_leads([lead_id], **fields) > 0

    def update_leads(self, lead_ids: Iterable[str], **fields) -> int:
        ids = list(lead_ids)
        unknown = set(fields) - LEAD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown lead columns: {', '.join(sorted(unknown))}")
        if not ids:
            return 0

        updates = [f"{k} = ?" for k in fields]
        params = [_value(v) for v in fields.values()]
        updates.append("updated_at = ?")
        params.append(now_iso())

        placeholders = ",".join("?" * len(ids))
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE leads SET {', '.join(updates)} WHERE id IN ({placeholders})",
                    params + ids,
                )
                conn.commit()
                return cursor.rowcount

    def update_leads_checked(
        self,
        lead_ids: Iterable[str],
        check: Callable[[List[str], Dict[str, dict]], List[dict]],
        **fields,
    ) -> Tuple[int, List[dict]]:
        """
        Read the leads and write fields in one write transaction.

        check(ids, leads_by_id) returns a list of problems; when it is non-empty
        nothing is written and (0, problems) is returned. Holding the sqlite write
        lock across both steps means no other writer can change a lead's status
        between the check and the update.
        """
        ids = list(dict.fromkeys(lead_ids))
        unknown = set(fields) - LEAD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown lead columns: {', '.join(sorted(unknown))}")
        if not ids:
            return 0, []

        updates = [f"{k} = ?" for k in fields] + ["updated_at = ?"]
        params = [_value(v) for v in fields.values()] + [now_iso()]
        placeholders = ",".join("?" * len(ids))

        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    rows = conn.execute(
                        f"SELECT * FROM leads WHERE id IN ({placeholders})", ids
                    ).fetchall()
                    problems = check(ids, {row["id"]: _lead_row(row) for row in rows})
                    if problems:
                        conn.rollback()
                        return 0, problems

                    cursor = conn.execute(
                        f"UPDATE leads SET {', '.join(updates)} WHERE id IN ({placeholders})",
                        params + ids,
                    )
                    conn.commit()
                    return cursor.rowcount, []
                except Exception:
                    conn.rollback()
                    raise

    def find_duplicate_lead(self, name: str, address: str) -> Optional[dict]:
        """Find a lead with the same normalized name AND address."""
        norm_name = normalize_key(name)
        norm_address = normalize_key(address)
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name, address FROM leads").fetchall()
        for row in rows:
            existing = dict(row)
            if (normalize_key(existing["name"]) == norm_name
                    and normalize_key(existing["address"]) == norm_address):
                return existing
        return None

    def list_leads(
        self,
        page: int = 1,
        per_page: int = 50,
        lead_status: Optional[LeadStatus] = LeadStatus.PENDING,
        website_status: Optional[WebsiteStatus] = None,
        sort_by: str = "priority",
        sort_order: str = "asc",
    ) -> Tuple[List[dict], int]:
        where_clauses = []
        params: list = []

        if lead_status:
            where_clauses.append("lead_status = ?")
            params.append(_value(lead_status))

        if website_status:
            where_clauses.append("website_status = ?")
            params.append(_value(website_status))

        where_sql = ""
        if where_clauses:
            where_sql = "WHERE " + " AND ".join(where_clauses)

        direction = "DESC" if sort_order.lower() == "desc" else "ASC"
        if sort_by in LEAD_SORT_COLUMNS:
            order_sql = f"{LEAD_SORT_COLUMNS[sort_by]} {direction}"
        else:
            cases = " ".join(
                f"WHEN '{status.value}' THEN {rank}"
                for rank, status in enumerate(WEBSITE_STATUS_PRIORITY)
            )
            order_sql = f"CASE website_status {cases} ELSE 99 END ASC, discovered_at DESC"

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM leads {where_sql}", params).fetchone()[0]

            offset = (page - 1) * per_page
            rows = conn.execute(f"""
                SELECT * FROM leads {where_sql}
                ORDER BY {order_sql}
                LIMIT ? OFFSET ?
            """, params + [per_page, offset]).fetchall()
            leads = [_lead_row(row) for row in rows]

            if leads:
                placeholders = ",".join("?" * len(leads))
                contact_rows = conn.execute(
                    f"SELECT * FROM contact_info WHERE lead_id IN ({placeholders})",
                    [lead["id"] for lead in leads],
                ).fetchall()
                by_lead: Dict[str, List[dict]] = {}
                for row in contact_rows:
                    by_lead.setdefault(row["lead_id"], []).append(dict(row))
                for lead in leads:
                    lead["contacts"] = by_lead.get(lead["id"], [])

        return leads, total

    # ==================== CLIENTS ====================

    def get_client(self, lead_id: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE id = ? AND is_client = 1", (lead_id,)
            ).fetchone()
            return _lead_row(row) if row else None

    def list_clients(
        self,
        page: int = 1,
        per_page: int = 20,
        subscription_status: Optional[str] = None,
        client_status: Optional[str] = None,
        attention_due_before: Optional[str] = None,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> Tuple[List[dict], int]:
        """
        Paged clients. attention_due_before switches on the needs-attention
        filter: a troubled subscription, a client flagged for review, or a
        payment due on or before that timestamp.
        """
        where_clauses = ["is_client = 1"]
        params: list = []

        if subscription_status:
            where_clauses.append("subscription_status = ?")
            params.append(subscription_status)

        if client_status:
            where_clauses.append("client_status = ?")
            params.append(client_status)

        if attention_due_before:
            troubled = list(ATTENTION_SUBSCRIPTION_STATUSES)
            where_clauses.append(
                f"(subscription_status IN ({','.join('?' * len(troubled))})"
                " OR client_status = ?"
                " OR (next_payment_due_date IS NOT NULL AND next_payment_due_date <= ?))"
            )
            params.extend(troubled + [CLIENT_STATUS_NEEDS_REVIEW, attention_due_before])

        where_sql = "WHERE " + " AND ".join(where_clauses)
        column = CLIENT_SORT_COLUMNS.get(sort_by, "updated_at")
        direction = "ASC" if sort_order.lower() == "asc" else "DESC"

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM leads {where_sql}", params).fetchone()[0]

            offset = (page - 1) * per_page
            rows = conn.execute(f"""
                SELECT leads.*,
                    (SELECT MAX(created_at) FROM client_checklist c WHERE c.lead_id = leads.id) AS last_checklist_at,
                    (SELECT email FROM contact_info ci
                     WHERE ci.lead_id = leads.id AND ci.email IS NOT NULL
                     ORDER BY ci.created_at ASC LIMIT 1) AS email
                FROM leads {where_sql}
                ORDER BY {column} {direction}, rowid ASC
                LIMIT ? OFFSET ?
            """, params + [per_page, offset]).fetchall()

        return [_lead_row(row) for row in rows], total

    def add_checklist_entry(self, lead_id: str, action: str, notes: Optional[str] = None,
                            created_by: Optional[str] = None) -> dict:
        entry = {
            "id": new_id(),
            "lead_id": lead_id,
            "action": _value(action),
            "notes": notes,
            "created_by": created_by,
            "created_at": now_iso(),
        }
        with self._lock:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO client_checklist (id, lead_id, action, notes, created_by, created_at)
                    VALUES (:id, :lead_id, :action, :notes, :created_by, :created_at)
                """, entry)
                conn.commit()
        return entry

    def get_checklist_entries(self, lead_id: str) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM client_checklist WHERE lead_id = ?
                ORDER BY created_at DESC, rowid DESC
            """, (lead_id,)).fetchall()
            return [dict(row) for row in rows]

    # ==================== CONTACT INFO ====================

    def add_contact_info(self, lead_id: str, **fields) -> str:
        unknown = set(fields) - CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact columns: {', '.join(sorted(unknown))}")
        contact_id = new_id()
        now = now_iso()
        columns = ["id", "lead_id"] + list(fields.keys()) + ["created_at", "updated_at"]
        params = [contact_id, lead_id] + [_value(v) for v in fields.values()] + [now, now]
        placeholders = ", ".join("?" * len(columns))

        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO contact_info ({', '.join(columns)}) VALUES ({placeholders})",
                    params,
                )
                conn.commit()
        return contact_id

    def get_contact_info(self, lead_id: str) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM contact_info WHERE lead_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (lead_id,)).fetchall()
            return [dict(row) for row in rows]

    def find_contact_by_email(self, lead_id: str, email: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM contact_info WHERE lead_id = ? AND LOWER(email) = ?",
                (lead_id, normalize_email(email)),
            ).fetchone()
            return dict(row) if row else None

    def update_contact_info(self, contact_id: str, **fields):
        unknown = set(fields) - CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact columns: {', '.join(sorted(unknown))}")
        if not fields:
            return

        updates = [f"{k} = ?" for k in fields] + ["updated_at = ?"]
        params = [_value(v) for v in fields.values()] + [now_iso(), contact_id]

        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE contact_info SET {', '.join(updates)} WHERE id = ?", params
                )
                conn.commit()

    # ==================== ENRICHMENT JOBS ====================

    def create_job_if_absent(self, target_id: str, job_type: JobType) -> Tuple[str, bool]:
        """Return (job_id, created). An active job for the pair is reused."""
        active = [s.value for s in ACTIVE_JOB_STATUSES]
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute("""
                        SELECT id FROM enrichment_jobs
                        WHERE target_id = ? AND job_type = ? AND status IN (?, ?)
                        ORDER BY created_at ASC, rowid ASC
                        LIMIT 1
                    """, (target_id, _value(job_type), *active)).fetchone()

                    if row:
                        conn.commit()
                        return row["id"], False

                    job_id = new_id()
                    conn.execute("""
                        INSERT INTO enrichment_jobs (id, target_id, job_type, status, retry_count, created_at)
                        VALUES (?, ?, ?, ?, 0, ?)
                    """, (job_id, target_id, _value(job_type), JobStatus.QUEUED.value, now_iso()))
                    conn.commit()
                    return job_id, True
                except Exception:
                    conn.rollback()
                    raise

    def get_job(self, job_id: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT j.*, l.name AS lead_name, l.website_status AS website_status
                FROM enrichment_jobs j
                LEFT JOIN leads l ON l.id = j.target_id
                WHERE j.id = ?
            """, (job_id,)).fetchone()
            return dict(row) if row else None

    def get_jobs_for_target(self, target_id: str) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM enrichment_jobs WHERE target_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (target_id,)).fetchall()
            return [dict(row) for row in rows]

    def claim_next_job(self, max_retries: int) -> Optional[dict]:
        """Atomically move the oldest eligible queued job to running."""
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute("""
                        SELECT * FROM enrichment_jobs
                        WHERE status = ? AND retry_count < ?
                        ORDER BY created_at ASC, rowid ASC
                        LIMIT 1
                    """, (JobStatus.QUEUED.value, max_retries)).fetchone()

                    if row is None:
                        conn.commit()
                        return None

                    started_at = now_iso()
                    cursor = conn.execute("""
                        UPDATE enrichment_jobs SET status = ?, started_at = ?
                        WHERE id = ? AND status = ?
                    """, (JobStatus.RUNNING.value, started_at, row["id"], JobStatus.QUEUED.value))

                    if cursor.rowcount != 1:
                        conn.rollback()
                        return None
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

        job = dict(row)
        job["status"] = JobStatus.RUNNING.value
        job["started_at"] = started_at
        return job

    def update_job(self, job_id: str, **fields) -> bool:
        """Write exactly the given columns; None clears a column."""
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job columns: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        updates = [f"{k} = ?" for k in fields]
        params = [_value(v) for v in fields.values()] + [job_id]

        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE enrichment_jobs SET {', '.join(updates)} WHERE id = ?", params
                )
                conn.commit()
                return cursor.rowcount > 0

    def count_jobs(self, statuses: Iterable[JobStatus]) -> int:
        values = [_value(s) for s in statuses]
        if not values:
            return 0
        placeholders = ",".join("?" * len(values))
        with self._connect() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM enrichment_jobs WHERE status IN ({placeholders})", values
            ).fetchone()[0]

    def count_jobs_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT status, COUNT(*) AS count FROM enrichment_jobs GROUP BY status
            """).fetchall()
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    def get_recent_failures(self, limit: int = 5) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT j.*, l.name AS lead_name
                FROM enrichment_jobs j
                LEFT JOIN leads l ON l.id = j.target_id
                WHERE j.status = ?
                ORDER BY j.completed_at DESC
                LIMIT ?
            """, (JobStatus.FAILURE.value, limit)).fetchall()
            return [dict(row) for row in rows]


def _lead_row(row: sqlite3.Row) -> dict:
    lead = dict(row)
    lead["is_client"] = bool(lead.get("is_client"))
    return lead
