from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from app.core.dispatch.domain import Bid, Job, VendorRecord


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncJobStore(Protocol):
    async def create(self, job: Job) -> Job: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def get_by_token(self, value: str) -> Optional[Job]: ...

    async def save(self, job: Job, *, expected_version: int) -> Job:
        """
        Persist ``job`` only if the stored version still equals
        ``expected_version``; the stored copy gets ``expected_version + 1``.

        Raises StaleWrite when the version has advanced, JobNotFound when
        the job does not exist.
        """
        ...

    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
    ) -> list[Job]: ...

    async def count_backlog(self) -> dict[str, int]:
        """vendor_id -> number of non-terminal jobs assigned to it"""
        ...


class AsyncBidLedger(Protocol):
    async def upsert(self, bid: Bid) -> tuple[Bid, bool]:
        """
        Insert or update the bid keyed by (job_id, vendor_phone).

        Returns (stored_bid, created).  Raises BiddingClosed, writing
        nothing, unless the job is still Unassigned with bidding open and no
        selected bid at the moment of the write.
        """
        ...

    async def get(self, bid_id: str) -> Optional[Bid]: ...

    async def list_for_job(self, job_id: str) -> list[Bid]: ...

    async def count_for_jobs(self, job_ids: Iterable[str]) -> dict[str, int]: ...


class VendorDirectory(Protocol):
    async def list_vendors(self) -> list[VendorRecord]: ...

    async def get_vendor(self, vendor_id: str) -> Optional[VendorRecord]: ...

    async def find_by_phone(self, phone: str) -> Optional[VendorRecord]: ...


class ComplianceSource(Protocol):
    async def list_tasks(self, now: datetime) -> list[dict[str, Any]]: ...


class RatingSource(Protocol):
    async def ratings_since(self, since: datetime) -> dict[str, float]:
        """job_id -> customer rating (1..5)"""
        ...
