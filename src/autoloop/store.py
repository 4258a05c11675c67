"""Job store: SQLite-backed persistence for job records and the event timeline.

The orchestrator is the only writer of job records; everything else reads
through get() / list() or subscribes to job updates.
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from dataclasses import fields
from pathlib import Path
from typing import Any, Protocol

from autoloop.config import AUTOLOOP_DB
from autoloop.models import HistoryEntry, Job, JobStatus, ReviewResult

_JOB_FIELDS = {f.name for f in fields(Job)} - {"id"}


class JobRepository(Protocol):
    """Read/write contract the orchestrator depends on."""

    def get(self, job_id: str) -> Job | None: ...

    def upsert(self, job_id: str, **fields: Any) -> Job: ...

    def list(self) -> list[Job]: ...


def new_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def _coerce_field(name: str, value: Any) -> Any:
    """Accept plain JSON shapes as well as model objects for job fields."""
    if name == "status" and not isinstance(value, JobStatus):
        return JobStatus(value)
    if name == "review_result" and isinstance(value, dict):
        return ReviewResult.from_dict(value)
    if name == "history":
        return [h if isinstance(h, HistoryEntry) else HistoryEntry.from_dict(h) for h in value]
    return value


class JobStore:
    """SQLite-backed job repository."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or AUTOLOOP_DB
        self._init_db()

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                status TEXT,
                workspace TEXT,
                created_at REAL,
                updated_at REAL,
                data_json TEXT
            );

            CREATE TABLE IF NOT EXISTS timeline_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL,
                event_type TEXT,
                summary TEXT,
                session_id TEXT,
                job_id TEXT,
                metadata_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_timeline_ts ON timeline_events(timestamp);
            CREATE INDEX IF NOT EXISTS idx_timeline_job ON timeline_events(job_id);
        """)
        conn.commit()
        conn.close()

    # --- Jobs ---

    def get(self, job_id: str) -> Job | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute("SELECT data_json FROM jobs WHERE id = ?", (job_id,)).fetchone()
        conn.close()
        if not row:
            return None
        return Job.from_dict(json.loads(row[0]))

    def upsert(self, job_id: str, **fields: Any) -> Job:
        """Merge fields into the job record (creating it if absent) and persist."""
        invalid = set(fields) - _JOB_FIELDS
        if invalid:
            raise ValueError(f"Invalid job fields: {sorted(invalid)}")

        job = self.get(job_id) or Job(id=job_id, description="")
        for name, value in fields.items():
            setattr(job, name, _coerce_field(name, value))
        job.updated_at = time.time()
        self._write(job)
        return job

    def list(self, status: JobStatus | None = None) -> list[Job]:
        """All jobs, most recent first."""
        conn = sqlite3.connect(self.db_path)
        query = "SELECT data_json FROM jobs"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC"
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [Job.from_dict(json.loads(r[0])) for r in rows]

    def _write(self, job: Job) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT OR REPLACE INTO jobs (id, status, workspace, created_at, updated_at, data_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                job.id, job.status.value, job.workspace, job.created_at, job.updated_at,
                json.dumps(job.to_dict(), default=str),
            ),
        )
        conn.commit()
        conn.close()

    # --- Timeline events ---

    def record_event(
        self,
        event_type: str,
        summary: str,
        session_id: str | None = None,
        job_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Record a timeline event. Returns the event ID."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(
            "INSERT INTO timeline_events "
            "(timestamp, event_type, summary, session_id, job_id, metadata_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (time.time(), event_type, summary, session_id, job_id,
             json.dumps(metadata, default=str) if metadata else None),
        )
        event_id = cursor.lastrowid
        conn.commit()
        conn.close()
        return event_id

    def get_timeline(
        self,
        limit: int = 50,
        event_type: str | None = None,
        job_id: str | None = None,
    ) -> list[dict]:
        """Query timeline events, newest first."""
        conn = sqlite3.connect(self.db_path)
        query = (
            "SELECT id, timestamp, event_type, summary, session_id, job_id, metadata_json "
            "FROM timeline_events WHERE 1=1"
        )
        params: list = []
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [
            {
                "id": r[0], "timestamp": r[1], "event_type": r[2], "summary": r[3],
                "session_id": r[4], "job_id": r[5],
                "metadata": json.loads(r[6]) if r[6] else None,
            }
            for r in rows
        ]
