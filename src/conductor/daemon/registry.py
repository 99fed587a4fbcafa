"""Job registry: the authoritative record of job state.

The registry is independent of the transient queue entry. Two
implementations share one async interface so the worker pool and service
never depend on where records live:

- ``InMemoryJobRegistry`` keeps records for the lifetime of the process,
  evicting the oldest terminal jobs beyond ``max_job_history``.
- ``SqliteJobRegistry`` persists records with ``aiosqlite`` so job history
  survives restarts. All I/O happens off the event loop thread.

Only the worker slot that owns a job writes its record, so the registry
needs no per-job locking; reads may happen concurrently at any time.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any

import aiosqlite

from conductor.core.logging import get_logger
from conductor.daemon.types import TERMINAL_STATUSES, Job, JobStatus, JobType

_logger = get_logger("daemon.registry")

_ORPHAN_MESSAGE = "Conductor restarted while job was active"


class JobRegistry(ABC):
    """Async interface for job record storage.

    Records handed out are snapshots: mutating a returned Job does not
    change the stored record until it is passed to ``save()``.
    """

    async def open(self) -> None:
        """Prepare the backing store."""

    async def close(self) -> None:
        """Release the backing store."""

    async def __aenter__(self) -> JobRegistry:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @abstractmethod
    async def add(self, job: Job) -> None:
        """Insert a new job record.

        Raises:
            ValueError: If a job with the same id already exists.
        """

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Persist the current state of an existing job."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Return a snapshot of one job, or None if unknown."""

    @abstractmethod
    async def list_jobs(
        self,
        *,
        limit: int | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        """Return jobs ordered most recent first."""


class InMemoryJobRegistry(JobRegistry):
    """Process-local registry backed by an insertion-ordered dict."""

    def __init__(self, *, max_job_history: int = 1000) -> None:
        self._max_job_history = max_job_history
        self._jobs: OrderedDict[str, Job] = OrderedDict()

    async def add(self, job: Job) -> None:
        if job.job_id in self._jobs:
            raise ValueError(f"Job {job.job_id} already registered")
        self._jobs[job.job_id] = copy.deepcopy(job)

    async def save(self, job: Job) -> None:
        if job.job_id not in self._jobs:
            _logger.warning("registry.save_unknown_job", job_id=job.job_id)
            return
        self._jobs[job.job_id] = copy.deepcopy(job)
        if job.status in TERMINAL_STATUSES:
            self._evict_terminal()

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def list_jobs(
        self,
        *,
        limit: int | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        jobs: list[Job] = []
        for job in reversed(self._jobs.values()):
            if status is not None and job.status != status:
                continue
            jobs.append(copy.deepcopy(job))
            if limit is not None and len(jobs) >= limit:
                break
        return jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def _evict_terminal(self) -> None:
        terminal = [
            job_id for job_id, job in self._jobs.items()
            if job.status in TERMINAL_STATUSES
        ]
        excess = len(terminal) - self._max_job_history
        for job_id in terminal[:max(0, excess)]:
            del self._jobs[job_id]
            _logger.debug("registry.evicted", job_id=job_id)


class SqliteJobRegistry(JobRegistry):
    """Async SQLite-backed persistent registry.

    Usage::

        async with SqliteJobRegistry(db_path) as registry:
            await registry.add(job)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection, create tables and recover orphaned jobs."""
        if self._conn is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("registry.opened", path=str(self._db_path))
        recovered = await self.recover_orphans()
        if recovered:
            _logger.info("registry.orphans_recovered", count=recovered)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            _logger.debug("registry.closed", path=str(self._db_path))

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteJobRegistry not opened; call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payload TEXT,
                result TEXT,
                logs TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL,
                started_at REAL,
                completed_at REAL
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)"
        )
        await conn.commit()

    async def add(self, job: Job) -> None:
        try:
            await self._db.execute(
                """
                INSERT INTO jobs (
                    job_id, name, type, status, payload, result, logs,
                    attempts, max_attempts, created_at, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.name,
                    job.job_type.value,
                    job.status.value,
                    json.dumps(job.payload),
                    json.dumps(job.result) if job.result is not None else None,
                    job.logs,
                    job.attempts,
                    job.max_attempts,
                    job.created_at,
                    job.started_at,
                    job.completed_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Job {job.job_id} already registered") from exc
        await self._db.commit()

    async def save(self, job: Job) -> None:
        await self._db.execute(
            """
            UPDATE jobs SET
                status = ?, result = ?, logs = ?, attempts = ?,
                started_at = ?, completed_at = ?
            WHERE job_id = ?
            """,
            (
                job.status.value,
                json.dumps(job.result) if job.result is not None else None,
                job.logs,
                job.attempts,
                job.started_at,
                job.completed_at,
                job.job_id,
            ),
        )
        await self._db.commit()

    async def get(self, job_id: str) -> Job | None:
        async with self._db.execute(
            "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_job(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        limit: int | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        query = "SELECT * FROM jobs"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def recover_orphans(self) -> int:
        """Fail jobs a previous process left queued or running.

        Returns:
            Number of jobs marked failed.
        """
        result = json.dumps({"error": _ORPHAN_MESSAGE, "error_type": "internal"})
        cursor = await self._db.execute(
            """
            UPDATE jobs SET status = 'failed', result = ?, completed_at = ?
            WHERE status IN ('pending', 'queued', 'running')
            """,
            (result, time.time()),
        )
        await self._db.commit()
        return cursor.rowcount

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            name=row["name"],
            job_type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            result=json.loads(row["result"]) if row["result"] else None,
            logs=row["logs"] or "",
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


__all__ = ["InMemoryJobRegistry", "JobRegistry", "SqliteJobRegistry"]
