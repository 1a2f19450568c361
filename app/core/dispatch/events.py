"""
Role notifications for accepted dispatch mutations.

Services call the notifier after a write has committed.  Notification
problems never undo or fail the mutation: they are logged and counted.

Dedupe keys match the ones the snapshot watchers derive for the same
condition, so a change seen both here and by a polling diff is shown once.
"""
from __future__ import annotations

from typing import Any, Optional

from app.core.dispatch.domain import Actor, Bid, Job, JobStatus
from app.core.notifications.engine import NotificationEngine
from app.core.notifications.models import (
    BidSelectedMeta,
    JobEventMeta,
    NewBidMeta,
    StatusChangeMeta,
    build_notification,
)
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

# Admins share one operations inbox.
ADMIN_INBOX = Actor(role="admin", id="ops")

_STATUS_LABELS = {
    JobStatus.UNASSIGNED.value: "Waiting for a vendor",
    JobStatus.ASSIGNED.value: "Vendor assigned",
    JobStatus.ON_THE_WAY.value: "Vendor on the way",
    JobStatus.ARRIVED.value: "Vendor arrived",
    JobStatus.COMPLETED.value: "Job completed",
}


def inbox_for(actor: Actor) -> Actor:
    """Notification partition for an authenticated actor."""
    return ADMIN_INBOX if actor.role == "admin" else actor


def customer_of(job: Job) -> Optional[Actor]:
    return Actor(role="customer", id=job.customer_id) if job.customer_id else None


def vendor_of(job: Job) -> Optional[Actor]:
    return Actor(role="vendor", id=job.assigned_vendor_id) if job.assigned_vendor_id else None


def status_label(status: str) -> str:
    return _STATUS_LABELS.get(status, status)


class DispatchNotifier:
    def __init__(self, engine: NotificationEngine):
        self.engine = engine

    async def _publish(self, recipient: Optional[Actor], payload: dict[str, Any]) -> None:
        if recipient is None:
            return
        try:
            await self.engine.publish(recipient, payload)
        except Exception:
            logger.error(
                "Failed to publish %s notification to %s",
                payload.get("type"), recipient,
                exc_info=True,
                extra={"recipient": str(recipient)},
            )
            inc_counter("notifications_publish_failed", type=str(payload.get("type")))

    async def job_created(self, job: Job) -> None:
        await self._publish(ADMIN_INBOX, build_notification(
            title="New job",
            body=f"{job.service_type} at {job.pickup_address} ({job.urgency})",
            severity="warning" if job.urgency == "emergency" else "info",
            meta=JobEventMeta(job_id=job.id, event="created", role="admin",
                              route=f"/admin/jobs/{job.id}"),
            dedupe_key=f"admin:job:new:{job.id}",
        ))

    async def status_changed(self, job: Job, previous: Optional[str]) -> None:
        label = status_label(job.status)
        severity = "success" if job.status == JobStatus.COMPLETED.value else "info"

        customer = customer_of(job)
        await self._publish(customer, build_notification(
            title=label,
            body=f"Your {job.service_type.lower()} request: {label.lower()}.",
            severity=severity,
            meta=StatusChangeMeta(job_id=job.id, status=job.status, previous_status=previous,
                                  role="customer", route=f"/jobs/{job.id}",
                                  contact_phone=job.customer_phone),
            dedupe_key=f"customer:job:{job.id}:status:{job.status}",
        ))

        await self._publish(ADMIN_INBOX, build_notification(
            title=f"Job {job.id}: {label}",
            body=f"{previous or '-'} -> {job.status}",
            severity=severity,
            meta=StatusChangeMeta(job_id=job.id, status=job.status, previous_status=previous,
                                  role="admin", route=f"/admin/jobs/{job.id}"),
            dedupe_key=f"admin:job:{job.id}:status:{job.status}",
        ))

        if job.status == JobStatus.ASSIGNED.value:
            await self._publish(vendor_of(job), build_notification(
                title="You got the job",
                body=f"{job.service_type} at {job.pickup_address}",
                severity="success",
                meta=JobEventMeta(job_id=job.id, event="assigned", vendor_id=job.assigned_vendor_id,
                                  role="vendor", route=f"/vendor/jobs/{job.id}",
                                  contact_phone=job.vendor_phone),
                dedupe_key=f"vendor:assigned:{job.id}",
            ))

    async def bid_received(self, job: Job, bid: Bid) -> None:
        # The revision makes an updated price visible once per update.
        key = f"customer:job:{job.id}:bid:{bid.id}"
        if bid.revision > 1:
            key = f"{key}:{bid.revision}"
        await self._publish(customer_of(job), build_notification(
            title="New bid" if bid.revision == 1 else "Bid updated",
            body=f"{bid.vendor_name}: ${bid.price:,.2f}, ETA {bid.eta_minutes} min",
            meta=NewBidMeta(job_id=job.id, bid_id=bid.id, price=bid.price,
                            eta_minutes=bid.eta_minutes, role="customer",
                            route=f"/jobs/{job.id}/bids", contact_phone=job.customer_phone),
            dedupe_key=key,
        ))

    async def bid_selected(self, job: Job, bid: Bid) -> None:
        await self._publish(ADMIN_INBOX, build_notification(
            title=f"Bid selected for job {job.id}",
            body=f"{bid.vendor_name} at ${job.final_price:,.2f}",
            severity="success",
            meta=BidSelectedMeta(job_id=job.id, bid_id=bid.id, vendor_id=bid.vendor_id,
                                 role="admin", route=f"/admin/jobs/{job.id}"),
            dedupe_key=f"admin:job:{job.id}:bid_selected:{bid.id}",
        ))

    async def under_reported(self, job: Job) -> None:
        if job.flags.under_report:
            await self._publish(ADMIN_INBOX, build_notification(
                title=f"Possible under-report on job {job.id}",
                body=job.flags.reason or "",
                severity="warning",
                meta=JobEventMeta(job_id=job.id, event="under_report",
                                  vendor_id=job.assigned_vendor_id, role="admin",
                                  route=f"/admin/jobs/{job.id}"),
                dedupe_key=f"admin:job:{job.id}:under_report",
            ))

    async def escalated(self, job: Job) -> None:
        await self._publish(ADMIN_INBOX, build_notification(
            title=f"Job {job.id} escalated",
            body=f"{job.service_type} at {job.pickup_address}",
            severity="error",
            meta=JobEventMeta(job_id=job.id, event="escalated", role="admin",
                              route=f"/admin/jobs/{job.id}"),
            dedupe_key=f"admin:job:{job.id}:escalated",
        ))
