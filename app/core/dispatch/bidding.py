"""
Bid ledger service: vendor bid submission and customer bid selection.

A vendor's bid is keyed by (job, normalized phone), so re-submitting from
the same link updates the bid instead of adding another one.  The ledger
refuses the write once the job stops accepting bids, checked atomically with
the write itself, so a late resubmission can never rewrite the winning bid.
Selection is serialized per job and committed through the transition engine,
so of two concurrent selections exactly one wins and the other gets
AlreadySelected.
"""
from __future__ import annotations

import asyncio
import math
import re
import uuid
import weakref
from typing import Any, Optional

from app.core.dispatch.domain import (
    Actor,
    Bid,
    BidMode,
    Job,
    JobStatus,
    TokenScope,
)
from app.core.dispatch.errors import (
    AlreadySelected,
    BidNotFound,
    BiddingClosed,
    Forbidden,
    InvalidBid,
)
from app.core.dispatch.events import DispatchNotifier
from app.core.dispatch.ports import AsyncBidLedger, VendorDirectory
from app.core.dispatch.tokens import TokenService
from app.core.dispatch.transitions import StatusTransitionEngine
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

ETA_MIN_MINUTES = 1
ETA_MAX_MINUTES = 720
PRICE_MAX = 1_000_000.0
_NAME_MAX = 120
_PHONE_MAX = 32

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(raw: Any) -> str:
    """Digits only, keeping a leading ``+`` when present."""
    text = str(raw or "").strip()
    if not text:
        return ""
    if text.startswith("+"):
        return "+" + _NON_DIGITS.sub("", text[1:])
    return _NON_DIGITS.sub("", text)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class _SameBidSelected(Exception):
    """The requested bid is already the selected one."""


class BidService:
    def __init__(
        self,
        ledger: AsyncBidLedger,
        engine: StatusTransitionEngine,
        tokens: TokenService,
        vendors: VendorDirectory,
        notifier: Optional[DispatchNotifier] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.tokens = tokens
        self.vendors = vendors
        self.notifier = notifier
        # Entries vanish once no selection holds or waits on the lock
        self._job_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Vendor side
    # ------------------------------------------------------------------

    async def vendor_preview(self, vendor_token: str) -> Job:
        """The job behind a vendor bid link (still shown once bidding closes)."""
        return await self.tokens.resolve(vendor_token, TokenScope.VENDOR_BID)

    async def submit_bid(
        self,
        vendor_token: str,
        *,
        vendor_name: Any,
        vendor_phone: Any,
        eta_minutes: Any,
        price: Any = None,
        actor: Optional[Actor] = None,
    ) -> Bid:
        """
        Create or update the caller's bid on the job behind ``vendor_token``.

        ETA is clamped to 1..720 minutes and price to 0..1,000,000.  On a
        fixed-price job the submitted price is ignored and the quote is used.
        """
        job = await self.tokens.resolve(vendor_token, TokenScope.VENDOR_BID)

        name = str(vendor_name or "").strip()[:_NAME_MAX]
        if not name:
            raise InvalidBid("Vendor name is required")
        phone = normalize_phone(vendor_phone)
        if not phone.lstrip("+") or len(phone) > _PHONE_MAX:
            raise InvalidBid("A valid vendor phone is required")

        eta = _to_number(eta_minutes)
        if not math.isfinite(eta):
            raise InvalidBid("Invalid ETA")
        eta = int(_clamp(math.floor(eta), ETA_MIN_MINUTES, ETA_MAX_MINUTES))

        if job.bid_mode == BidMode.FIXED.value:
            amount = float(job.quoted_price or 0.0)
        else:
            amount = _to_number(price)
            if not math.isfinite(amount):
                raise InvalidBid("Invalid price")
            amount = round(_clamp(amount, 0.0, PRICE_MAX), 2)

        vendor_id: Optional[str] = None
        if actor is not None and actor.role == "vendor":
            vendor_id = actor.id
        else:
            vendor = await self.vendors.find_by_phone(phone)
            vendor_id = vendor.id if vendor else None

        current = await self.engine.store.get(job.id) or job
        try:
            if not current.accepting_bids:
                raise BiddingClosed("Bidding is closed for this job")
            stored, created = await self.ledger.upsert(
                Bid(
                    id=uuid.uuid4().hex[:12],
                    job_id=job.id,
                    vendor_name=name,
                    vendor_phone=phone,
                    eta_minutes=eta,
                    price=amount,
                    vendor_id=vendor_id,
                    created_at=self.engine.now(),
                )
            )
        except BiddingClosed:
            DispatchMetrics.bid_submitted("closed")
            raise

        outcome = "created" if created else "updated"
        DispatchMetrics.bid_submitted(outcome)
        logger.info(
            "Bid %s on job %s: %s %s eta=%sm price=%.2f",
            outcome, job.id, stored.id, mask_phone(phone), eta, amount,
            extra={"job_id": job.id, "bid_id": stored.id},
        )
        audit_event(
            "bid.submit",
            job_id=job.id,
            actor=str(actor) if actor else f"vendor:{mask_phone(phone)}",
            detail=f"{stored.id} rev={stored.revision}",
        )
        if self.notifier is not None:
            await self.notifier.bid_received(current, stored)
        return stored

    # ------------------------------------------------------------------
    # Customer side
    # ------------------------------------------------------------------

    async def list_bids(self, customer_token: str) -> tuple[Job, list[Bid]]:
        """Bids on the job behind a customer link, newest first."""
        job = await self.tokens.resolve(customer_token, TokenScope.CUSTOMER_CHOOSE)
        bids = await self.ledger.list_for_job(job.id)
        bids.sort(key=lambda b: b.created_at, reverse=True)
        return job, bids

    async def select_bid(
        self,
        bid_id: str,
        *,
        actor: Actor,
        customer_token: Optional[str] = None,
    ) -> Job:
        """
        Make ``bid_id`` the winning bid and assign its vendor.

        Selecting the already selected bid again returns the job unchanged.
        Selecting a different bid once one has won raises AlreadySelected.
        """
        bid = await self.ledger.get(bid_id)
        if bid is None:
            raise BidNotFound(f"Bid {bid_id} not found")

        if customer_token:
            job = await self.tokens.resolve(customer_token, TokenScope.CUSTOMER_CHOOSE)
            if job.id != bid.job_id:
                raise BidNotFound(f"Bid {bid_id} not found")
        elif actor.role == "customer":
            job = await self.engine.store.get(bid.job_id)
            if job is None or job.customer_id != actor.id:
                raise Forbidden("This bid belongs to another customer's job")
        elif actor.role != "admin":
            raise Forbidden("A customer link is required to choose a bid")

        vendor_id = bid.vendor_id
        if not vendor_id:
            vendor = await self.vendors.find_by_phone(bid.vendor_phone)
            # Vendors outside the directory are identified by their phone.
            vendor_id = vendor.id if vendor else bid.vendor_phone

        def choose(job: Job) -> None:
            if job.selected_bid_id == bid.id:
                raise _SameBidSelected()
            if job.selected_bid_id:
                raise AlreadySelected(f"Job {job.id} already has a selected bid")
            if not job.bidding_open:
                raise BiddingClosed(f"Bidding is closed for job {job.id}")

            job.selected_bid_id = bid.id
            job.assigned_vendor_id = vendor_id
            job.vendor_name = bid.vendor_name
            job.vendor_phone = bid.vendor_phone
            if job.bid_mode == BidMode.FIXED.value and job.quoted_price:
                job.final_price = float(job.quoted_price)
            else:
                job.final_price = float(bid.price or 0.0)
            job.expected_revenue = max(job.expected_revenue, job.final_price)
            job.bidding_open = False
            self.tokens.mint(job, TokenScope.VENDOR_ACCEPTED)

        async with self._lock_for(bid.job_id):
            try:
                job = await self.engine.advance(
                    bid.job_id, JobStatus.ASSIGNED, actor=actor, mutate=choose,
                )
            except _SameBidSelected:
                DispatchMetrics.bid_selected("repeat")
                return await self.engine.store.get(bid.job_id)
            except (AlreadySelected, BiddingClosed) as exc:
                DispatchMetrics.bid_selected(exc.code)
                raise

        DispatchMetrics.bid_selected("won")
        logger.info(
            "Bid %s selected for job %s (vendor %s, %.2f)",
            bid.id, job.id, vendor_id, job.final_price,
            extra={"job_id": job.id, "bid_id": bid.id, "vendor_id": vendor_id},
        )
        audit_event(
            "bid.select",
            job_id=job.id,
            actor=str(actor),
            detail=bid.id,
            extra={"final_price": job.final_price},
        )
        if self.notifier is not None:
            await self.notifier.bid_selected(job, bid)
        return job
