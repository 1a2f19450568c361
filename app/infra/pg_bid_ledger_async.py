# app/infra/pg_bid_ledger_async.py
"""
Async PostgreSQL bid ledger (asyncpg).

    dispatch_bids(
        id           text PRIMARY KEY,
        job_id       text NOT NULL,
        vendor_phone text NOT NULL,
        vendor_name  text NOT NULL,
        vendor_id    text,
        eta_minutes  integer NOT NULL,
        price        numeric(12, 2) NOT NULL,
        revision     integer NOT NULL DEFAULT 1,
        created_at   timestamptz NOT NULL,
        updated_at   timestamptz,
        UNIQUE (job_id, vendor_phone)
    )

The upsert relies on the unique (job_id, vendor_phone) constraint, so two
submissions racing from the same vendor still end up as one bid.  It only
writes while the job row, held FOR SHARE in the same statement, is still
Unassigned with bidding open and no selected bid; a selection's UPDATE of
that row waits for it, and a bid arriving after the selection commits
writes nothing.
"""
from __future__ import annotations

from typing import Iterable, Optional

from app.core.dispatch.domain import Bid, JobStatus
from app.core.dispatch.errors import BiddingClosed
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.metrics import inc_counter


def _row_to_bid(row) -> Bid:
    """Convert an asyncpg Record to a Bid dataclass."""
    return Bid(
        id=row["id"],
        job_id=row["job_id"],
        vendor_name=row["vendor_name"],
        vendor_phone=row["vendor_phone"],
        eta_minutes=row["eta_minutes"],
        price=float(row["price"]),
        vendor_id=row["vendor_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        revision=row["revision"],
    )


class AsyncPostgresBidLedger:
    async def upsert(self, bid: Bid) -> tuple[Bid, bool]:
        async with safe_db_conn() as conn:
            # xmax = 0 only for freshly inserted rows
            row = await conn.fetchrow(
                """
                WITH open_job AS (
                    SELECT id FROM dispatch_jobs
                    WHERE id = $2
                      AND status = $9
                      AND (doc->>'bidding_open')::boolean
                      AND doc->>'selected_bid_id' IS NULL
                    FOR SHARE
                )
                INSERT INTO dispatch_bids
                    (id, job_id, vendor_phone, vendor_name, vendor_id, eta_minutes, price,
                     revision, created_at)
                SELECT $1::text, open_job.id, $3::text, $4::text, $5::text, $6::integer,
                       $7::numeric, 1, $8::timestamptz
                FROM open_job
                ON CONFLICT (job_id, vendor_phone) DO UPDATE
                SET vendor_name = EXCLUDED.vendor_name,
                    vendor_id = COALESCE(EXCLUDED.vendor_id, dispatch_bids.vendor_id),
                    revision = dispatch_bids.revision + CASE
                        WHEN dispatch_bids.eta_minutes <> EXCLUDED.eta_minutes
                          OR dispatch_bids.price <> EXCLUDED.price THEN 1 ELSE 0 END,
                    eta_minutes = EXCLUDED.eta_minutes,
                    price = EXCLUDED.price,
                    updated_at = now()
                RETURNING dispatch_bids.*, (xmax = 0) AS inserted
                """,
                bid.id,
                bid.job_id,
                bid.vendor_phone,
                bid.vendor_name,
                bid.vendor_id,
                bid.eta_minutes,
                bid.price,
                bid.created_at,
                JobStatus.UNASSIGNED.value,
            )
            if row is None:
                inc_counter("bid_upserts_rejected")
                raise BiddingClosed(f"Bidding is closed for job {bid.job_id}")
            created = bool(row["inserted"])
            inc_counter("bid_upserts", created=str(created).lower())
            return _row_to_bid(row), created

    @retry_on_transient_error(max_retries=2)
    async def get(self, bid_id: str) -> Optional[Bid]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_bids WHERE id = $1", bid_id)
            return _row_to_bid(row) if row else None

    @retry_on_transient_error(max_retries=2)
    async def list_for_job(self, job_id: str) -> list[Bid]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM dispatch_bids WHERE job_id = $1 ORDER BY created_at DESC",
                job_id,
            )
            return [_row_to_bid(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def count_for_jobs(self, job_ids: Iterable[str]) -> dict[str, int]:
        ids = list(job_ids)
        if not ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT job_id, COUNT(*) AS bids
                FROM dispatch_bids
                WHERE job_id = ANY($1::text[])
                GROUP BY job_id
                """,
                ids,
            )
            counts = {job_id: 0 for job_id in ids}
            counts.update({row["job_id"]: row["bids"] for row in rows})
            return counts
