"""
Job lifecycle service: intake, manual dispatch, escalation, status updates
and completion/payment reconciliation.

All job writes go through ``StatusTransitionEngine`` so every change is
validated and committed with an optimistic version check.
"""
from __future__ import annotations

import uuid
from typing import Optional

from app.core.dispatch.commission import (
    CommissionPolicy,
    compute_commission,
    detect_under_report,
    expected_revenue_for,
    validate_amount,
    validate_payment_method,
)
from app.core.dispatch.domain import (
    Actor,
    BidMode,
    GeoPoint,
    Job,
    JobStatus,
    ReportedPayment,
    TokenScope,
    Urgency,
)
from app.core.dispatch.errors import (
    AlreadySelected,
    BiddingClosed,
    Forbidden,
    InvalidJobRequest,
    InvalidTransition,
    JobNotFound,
    VendorNotFound,
)
from app.core.dispatch.events import DispatchNotifier
from app.core.dispatch.ports import AsyncJobStore, VendorDirectory
from app.core.dispatch.tokens import TokenService
from app.core.dispatch.transitions import StatusTransitionEngine
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_PUBLIC_SOURCES = ("guest", "customer")
_MAX_QUOTE = 1_000_000.0


def _require_participant(job: Job, actor: Actor) -> None:
    """Vendors may only touch jobs assigned to them; customers only their own."""
    if actor.role == "vendor" and job.assigned_vendor_id != actor.id:
        raise Forbidden(f"Job {job.id} is not assigned to this vendor")
    if actor.role == "customer" and job.customer_id != actor.id:
        raise Forbidden(f"Job {job.id} belongs to another customer")


class JobService:
    def __init__(
        self,
        store: AsyncJobStore,
        engine: StatusTransitionEngine,
        tokens: TokenService,
        vendors: VendorDirectory,
        notifier: Optional[DispatchNotifier] = None,
        *,
        commission_policy: Optional[CommissionPolicy] = None,
    ):
        self.store = store
        self.engine = engine
        self.tokens = tokens
        self.vendors = vendors
        self.notifier = notifier
        self.commission_policy = commission_policy or CommissionPolicy.from_settings()

    # ------------------------------------------------------------------
    # Intake / reads
    # ------------------------------------------------------------------

    async def create_job(
        self,
        *,
        pickup_address: str,
        service_type: str = "Service",
        urgency: str = Urgency.STANDARD.value,
        actor: Actor,
        customer_phone: Optional[str] = None,
        pickup: Optional[GeoPoint] = None,
        dropoff_address: Optional[str] = None,
        dropoff: Optional[GeoPoint] = None,
        notes: Optional[str] = None,
        quoted_price: float = 0.0,
        bid_mode: str = BidMode.OPEN.value,
        open_bidding: Optional[bool] = None,
    ) -> Job:
        """
        Create an Unassigned job.

        Guest and customer requests open bidding immediately and get their
        vendor, customer and tracking links.  Admin-created jobs open
        bidding only when asked (they are often dispatched by hand).
        """
        address = (pickup_address or "").strip()
        if not address:
            raise InvalidJobRequest("Pickup address is required")
        try:
            mode = BidMode(bid_mode).value
        except ValueError:
            raise InvalidJobRequest(f"Unknown bid mode: {bid_mode}")
        if not 0 <= quoted_price <= _MAX_QUOTE:
            raise InvalidJobRequest("Quoted price is out of range")
        if mode == BidMode.FIXED.value and quoted_price <= 0:
            raise InvalidJobRequest("Fixed-price jobs need a quoted price")
        try:
            urgency_value = Urgency(urgency).value
        except ValueError:
            urgency_value = Urgency.STANDARD.value

        source = actor.role if actor.role in _PUBLIC_SOURCES else "admin"
        if open_bidding is None:
            open_bidding = source in _PUBLIC_SOURCES

        job = Job(
            id=uuid.uuid4().hex[:12],
            pickup_address=address,
            service_type=(service_type or "Service").strip() or "Service",
            urgency=urgency_value,
            customer_id=actor.id if actor.role == "customer" else None,
            customer_phone=customer_phone,
            pickup=pickup,
            dropoff_address=dropoff_address,
            dropoff=dropoff,
            notes=notes,
            source=source,
            created_at=self.engine.now(),
            bid_mode=mode,
            quoted_price=quoted_price,
            expected_revenue=quoted_price,
            bidding_open=open_bidding,
        )
        self.tokens.mint(job, TokenScope.GUEST_TRACK)
        if open_bidding:
            self.tokens.mint(job, TokenScope.VENDOR_BID)
            self.tokens.mint(job, TokenScope.CUSTOMER_CHOOSE)

        job = await self.store.create(job)

        DispatchMetrics.job_created(source)
        logger.info(
            "Job created: %s (%s, %s) source=%s bidding=%s",
            job.id, job.service_type, job.urgency, source, job.bidding_open,
            extra={"job_id": job.id},
        )
        audit_event("job.create", job_id=job.id, actor=str(actor), detail=job.urgency)
        if self.notifier is not None:
            await self.notifier.job_created(job)
        return job

    async def get(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def get_for(self, job_id: str, actor: Actor) -> Job:
        job = await self.get(job_id)
        _require_participant(job, actor)
        return job

    async def track(self, guest_token: str) -> Job:
        return await self.tokens.resolve(guest_token, TokenScope.GUEST_TRACK)

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    async def advance_status(
        self,
        job_id: str,
        status: str,
        *,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Job:
        """Vendor/admin progress update (Assigned -> OnTheWay -> Arrived)."""

        def check(job: Job) -> None:
            _require_participant(job, actor)

        return await self.engine.advance(
            job_id, status, actor=actor, expected_version=expected_version, mutate=check,
        )

    async def report_completion(
        self,
        job_id: str,
        *,
        amount: float,
        method: str,
        note: Optional[str] = None,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Job:
        """
        Close an Arrived job with the collected payment.

        Payment, commission, the under-report flag and the Completed status
        are recorded in one versioned write.
        """
        policy = self.commission_policy
        value = validate_amount(amount, policy.max_amount)
        payment_method = validate_payment_method(method)
        cleaned_note = (note or "").strip()[:500] or None

        def record(job: Job) -> None:
            _require_participant(job, actor)
            expected = expected_revenue_for(job)
            job.reported_payment = ReportedPayment(
                amount=value,
                method=payment_method,
                note=cleaned_note,
                reported_at=self.engine.now(),
                actor=actor.role,
            )
            job.commission = compute_commission(value, policy)
            job.expected_revenue = expected
            job.flags = detect_under_report(value, expected, policy)
            job.bidding_open = False

        job = await self.engine.advance(
            job_id,
            JobStatus.COMPLETED,
            actor=actor,
            expected_version=expected_version,
            mutate=record,
            via_completion=True,
        )

        DispatchMetrics.job_completed(job.flags.under_report)
        audit_event(
            "job.complete",
            job_id=job.id,
            actor=str(actor),
            detail=f"{value:.2f} via {payment_method}",
            extra={
                "commission": job.commission.amount if job.commission else 0.0,
                "under_report": job.flags.under_report,
            },
        )
        if job.flags.under_report:
            logger.warning(
                "Under-reported completion on job %s: %s",
                job.id, job.flags.reason,
                extra={"job_id": job.id},
            )
        if self.notifier is not None:
            await self.notifier.under_reported(job)
        return job

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def open_bidding(
        self,
        job_id: str,
        *,
        actor: Actor,
        bid_mode: Optional[str] = None,
        quoted_price: Optional[float] = None,
    ) -> Job:
        """Open (or re-open) bidding on an Unassigned job and mint its links."""
        if bid_mode is not None:
            try:
                bid_mode = BidMode(bid_mode).value
            except ValueError:
                raise InvalidJobRequest(f"Unknown bid mode: {bid_mode}")
        if quoted_price is not None and not 0 <= quoted_price <= _MAX_QUOTE:
            raise InvalidJobRequest("Quoted price is out of range")

        def change(job: Job) -> None:
            if job.status != JobStatus.UNASSIGNED.value or job.selected_bid_id:
                raise BiddingClosed(f"Job {job.id} is already {job.status}")
            if bid_mode is not None:
                job.bid_mode = bid_mode
            if quoted_price is not None:
                job.quoted_price = quoted_price
                job.expected_revenue = max(job.expected_revenue, quoted_price)
            if job.bid_mode == BidMode.FIXED.value and job.quoted_price <= 0:
                raise InvalidJobRequest("Fixed-price jobs need a quoted price")

            now = self.engine.now()
            for scope in (TokenScope.VENDOR_BID, TokenScope.CUSTOMER_CHOOSE, TokenScope.GUEST_TRACK):
                token = job.tokens.get(scope.value)
                if token is None or not token.is_usable(now):
                    self.tokens.mint(job, scope)
            job.bidding_open = True

        job = await self.engine.update(job_id, change, operation="open_bidding")
        logger.info("Bidding opened on job %s (%s)", job.id, job.bid_mode, extra={"job_id": job.id})
        audit_event("job.open_bidding", job_id=job.id, actor=str(actor), detail=job.bid_mode)
        return job

    async def assign_vendor(
        self,
        job_id: str,
        vendor_id: str,
        *,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Job:
        """Manual dispatch: give an Unassigned job straight to a vendor."""
        vendor = await self.vendors.get_vendor(vendor_id)
        if vendor is None or not vendor.active:
            raise VendorNotFound(f"Vendor {vendor_id} not found or inactive")

        def assign(job: Job) -> None:
            if job.selected_bid_id:
                raise AlreadySelected(f"Job {job.id} already has a selected bid")
            job.assigned_vendor_id = vendor.id
            job.vendor_name = vendor.name
            job.vendor_phone = vendor.phone
            job.bidding_open = False
            if not job.final_price:
                job.final_price = job.quoted_price
            self.tokens.mint(job, TokenScope.VENDOR_ACCEPTED)

        job = await self.engine.advance(
            job_id,
            JobStatus.ASSIGNED,
            actor=actor,
            expected_version=expected_version,
            mutate=assign,
        )
        audit_event("job.assign", job_id=job.id, actor=str(actor), detail=vendor.id)
        return job

    async def escalate(self, job_id: str, *, actor: Actor) -> Job:
        def mark(job: Job) -> None:
            if job.is_terminal:
                raise InvalidTransition(job.status, job.status, "Completed jobs cannot be escalated")
            job.priority = "urgent"
            if job.escalated_at is None:
                job.escalated_at = self.engine.now()

        job = await self.engine.update(job_id, mark, operation="escalate")
        logger.info("Job %s escalated by %s", job.id, actor, extra={"job_id": job.id})
        audit_event("job.escalate", job_id=job.id, actor=str(actor))
        if self.notifier is not None:
            await self.notifier.escalated(job)
        return job

    async def revoke_token(self, job_id: str, scope: str, *, actor: Actor) -> Job:
        return await self.tokens.revoke(job_id, scope, actor=actor)

    async def list_jobs(self, *, statuses: Optional[list[str]] = None) -> list[Job]:
        return await self.store.list_jobs(statuses=statuses)
