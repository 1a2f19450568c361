# app/infra/memory_stores.py
"""
In-process stores (``storage_backend=memory``).

Used for development, tests and single-instance demos.  Stored objects are
deep-copied on the way in and out so callers can never mutate stored state
behind the store's back; a job write is a compare-and-swap on ``version``
under one ``asyncio.Lock``.
"""
from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from app.core.dispatch.domain import Bid, Job, VendorRecord, utcnow
from app.core.dispatch.errors import BiddingClosed, JobNotFound, StaleWrite
from app.core.notifications.models import NotificationState, Recipient, recipient_key
from app.core.notifications.ports import StateMutation


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            stored = copy.deepcopy(job)
            stored.version = 1
            self._jobs[job.id] = stored
            return copy.deepcopy(stored)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_by_token(self, value: str) -> Optional[Job]:
        if not value:
            return None
        for job in self._jobs.values():
            if any(token.value == value for token in job.tokens.values()):
                return copy.deepcopy(job)
        return None

    @asynccontextmanager
    async def locked(self, job_id: str) -> AsyncIterator[Optional[Job]]:
        """Hold the write lock with the stored job in view.  Read only."""
        async with self._lock:
            yield self._jobs.get(job_id)

    async def save(self, job: Job, *, expected_version: int) -> Job:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFound(f"Job {job.id} not found")
            if current.version != expected_version:
                raise StaleWrite(job.id, expected_version)
            stored = copy.deepcopy(job)
            stored.version = expected_version + 1
            self._jobs[job.id] = stored
            return copy.deepcopy(stored)

    async def list_jobs(
        self,
        *,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
    ) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            copy.deepcopy(job)
            for job in self._jobs.values()
            if (wanted is None or job.status in wanted)
            and (since is None or job.created_at >= since)
        ]
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    async def count_backlog(self) -> dict[str, int]:
        backlog: dict[str, int] = {}
        for job in self._jobs.values():
            if job.assigned_vendor_id and not job.is_terminal:
                backlog[job.assigned_vendor_id] = backlog.get(job.assigned_vendor_id, 0) + 1
        return backlog


class InMemoryBidLedger:
    """
    Bids keyed by (job, phone).

    Given the job store, ``upsert`` checks the job still accepts bids while
    holding the job store's write lock, so no selection can commit between
    the check and the write.
    """

    def __init__(self, jobs: Optional[InMemoryJobStore] = None) -> None:
        self._jobs = jobs
        self._bids: dict[str, Bid] = {}
        self._by_vendor: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, bid: Bid) -> tuple[Bid, bool]:
        if self._jobs is None:
            return await self._write(bid)
        async with self._jobs.locked(bid.job_id) as job:
            if job is None or not job.accepting_bids:
                raise BiddingClosed(f"Bidding is closed for job {bid.job_id}")
            return await self._write(bid)

    async def _write(self, bid: Bid) -> tuple[Bid, bool]:
        async with self._lock:
            key = (bid.job_id, bid.vendor_phone)
            existing_id = self._by_vendor.get(key)
            if existing_id is None:
                stored = copy.deepcopy(bid)
                stored.revision = 1
                self._bids[stored.id] = stored
                self._by_vendor[key] = stored.id
                return copy.deepcopy(stored), True

            stored = self._bids[existing_id]
            if stored.eta_minutes != bid.eta_minutes or stored.price != bid.price:
                stored.revision += 1
            stored.vendor_name = bid.vendor_name
            stored.eta_minutes = bid.eta_minutes
            stored.price = bid.price
            stored.vendor_id = bid.vendor_id or stored.vendor_id
            stored.updated_at = utcnow()
            return copy.deepcopy(stored), False

    async def get(self, bid_id: str) -> Optional[Bid]:
        bid = self._bids.get(bid_id)
        return copy.deepcopy(bid) if bid else None

    async def list_for_job(self, job_id: str) -> list[Bid]:
        return [copy.deepcopy(bid) for bid in self._bids.values() if bid.job_id == job_id]

    async def count_for_jobs(self, job_ids: Iterable[str]) -> dict[str, int]:
        wanted = set(job_ids)
        counts: dict[str, int] = {job_id: 0 for job_id in wanted}
        for bid in self._bids.values():
            if bid.job_id in wanted:
                counts[bid.job_id] += 1
        return counts


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._states: dict[str, NotificationState] = {}
        self._lock = asyncio.Lock()

    async def load(self, recipient: Recipient) -> NotificationState:
        state = self._states.get(recipient_key(recipient))
        return state.model_copy(deep=True) if state else NotificationState()

    async def save(self, recipient: Recipient, state: NotificationState) -> None:
        self._states[recipient_key(recipient)] = state.model_copy(deep=True)

    async def update(self, recipient: Recipient, mutate: StateMutation) -> Any:
        async with self._lock:
            state = await self.load(recipient)
            result, dirty = mutate(state)
            if dirty:
                await self.save(recipient, state)
            return result


class StaticVendorDirectory:
    """Vendor read model held in memory (seeded at startup or by tests)."""

    def __init__(self, vendors: Optional[Iterable[VendorRecord]] = None) -> None:
        self._vendors: dict[str, VendorRecord] = {v.id: v for v in vendors or []}

    def put(self, vendor: VendorRecord) -> None:
        self._vendors[vendor.id] = vendor

    async def list_vendors(self) -> list[VendorRecord]:
        return [copy.deepcopy(v) for v in self._vendors.values()]

    async def get_vendor(self, vendor_id: str) -> Optional[VendorRecord]:
        vendor = self._vendors.get(vendor_id)
        return copy.deepcopy(vendor) if vendor else None

    async def find_by_phone(self, phone: str) -> Optional[VendorRecord]:
        for vendor in self._vendors.values():
            if vendor.phone and vendor.phone == phone:
                return copy.deepcopy(vendor)
        return None


class StaticComplianceSource:
    """
    Compliance tasks derived from the vendors' ``compliance_issues``.

    Each issue dict may carry ``type`` (expiry | missing), ``key``,
    ``label``, ``document_id``, ``expires_at`` and ``reason``.
    """

    def __init__(self, directory: StaticVendorDirectory, *, limit: int = 20) -> None:
        self._directory = directory
        self._limit = limit

    async def list_tasks(self, now: datetime) -> list[dict[str, Any]]:
        tasks: list[dict[str, Any]] = []
        for vendor in await self._directory.list_vendors():
            if not vendor.active:
                continue
            for issue in vendor.compliance_issues[:3]:
                expires_at = issue.get("expires_at")
                if isinstance(expires_at, datetime) and expires_at < now:
                    continue
                tasks.append({
                    "type": issue.get("type", "missing"),
                    "vendor_id": vendor.id,
                    "vendor_name": vendor.name,
                    **{k: v for k, v in issue.items() if k != "type"},
                })
        return tasks[: self._limit]


class StaticRatingSource:
    def __init__(self) -> None:
        self._ratings: dict[str, tuple[float, datetime]] = {}

    def record(self, job_id: str, rating: float, at: Optional[datetime] = None) -> None:
        self._ratings[job_id] = (rating, at or utcnow())

    async def ratings_since(self, since: datetime) -> dict[str, float]:
        return {job_id: rating for job_id, (rating, at) in self._ratings.items() if at >= since}
