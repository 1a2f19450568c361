# app/infra/pg_job_store_async.py
"""
Async PostgreSQL job store (asyncpg).

Jobs are stored as a JSONB document next to a few indexed columns:

    dispatch_jobs(
        id                 text PRIMARY KEY,
        status             text NOT NULL,
        urgency            text NOT NULL,
        assigned_vendor_id text,
        created_at         timestamptz NOT NULL,
        version            integer NOT NULL,
        doc                jsonb NOT NULL
    )

Writes are optimistic: ``UPDATE ... WHERE id = $1 AND version = $2``;
``UPDATE 0`` on an existing row means another writer got there first.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, Optional

from app.core.dispatch.domain import Job, JobStatus, job_from_dict, job_to_dict
from app.core.dispatch.errors import JobNotFound, StaleWrite
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job dataclass."""
    doc = row["doc"]
    if isinstance(doc, str):
        doc = json.loads(doc)
    job = job_from_dict(doc)
    job.version = row["version"]
    return job


def _dump(job: Job) -> str:
    data = job_to_dict(job)
    data.pop("version", None)
    return json.dumps(data)


class AsyncPostgresJobStore:
    async def create(self, job: Job) -> Job:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_jobs (id, status, urgency, assigned_vendor_id, created_at, version, doc)
                VALUES ($1, $2, $3, $4, $5, 1, $6::jsonb)
                RETURNING version, doc
                """,
                job.id,
                job.status,
                job.urgency,
                job.assigned_vendor_id,
                job.created_at,
                _dump(job),
            )
            logger.debug("Job stored: id=%s", job.id, extra={"job_id": job.id})
            return _row_to_job(row)

    @retry_on_transient_error(max_retries=2)
    async def get(self, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT version, doc FROM dispatch_jobs WHERE id = $1",
                job_id,
            )
            return _row_to_job(row) if row else None

    @retry_on_transient_error(max_retries=2)
    async def get_by_token(self, value: str) -> Optional[Job]:
        if not value:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT version, doc FROM dispatch_jobs
                WHERE EXISTS (
                    SELECT 1 FROM jsonb_each(doc->'tokens') AS t(scope, token)
                    WHERE t.token->>'value' = $1
                )
                LIMIT 1
                """,
                value,
            )
            return _row_to_job(row) if row else None

    async def save(self, job: Job, *, expected_version: int) -> Job:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE dispatch_jobs
                SET status = $3,
                    assigned_vendor_id = $4,
                    version = version + 1,
                    doc = $5::jsonb
                WHERE id = $1 AND version = $2
                RETURNING version, doc
                """,
                job.id,
                expected_version,
                job.status,
                job.assigned_vendor_id,
                _dump(job),
            )
            if row is not None:
                return _row_to_job(row)

            exists = await conn.fetchval("SELECT 1 FROM dispatch_jobs WHERE id = $1", job.id)
            if not exists:
                raise JobNotFound(f"Job {job.id} not found")
            DispatchMetrics.stale_write("pg_save")
            raise StaleWrite(job.id, expected_version)

    @retry_on_transient_error(max_retries=2)
    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
    ) -> list[Job]:
        status_list = list(statuses) if statuses is not None else None
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT version, doc FROM dispatch_jobs
                WHERE ($1::text[] IS NULL OR status = ANY($1::text[]))
                  AND ($2::timestamptz IS NULL OR created_at >= $2)
                ORDER BY created_at
                """,
                status_list,
                since,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def count_backlog(self) -> dict[str, int]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT assigned_vendor_id, COUNT(*) AS active_jobs
                FROM dispatch_jobs
                WHERE assigned_vendor_id IS NOT NULL AND status <> $1
                GROUP BY assigned_vendor_id
                """,
                JobStatus.COMPLETED.value,
            )
            return {row["assigned_vendor_id"]: row["active_jobs"] for row in rows}
