"""
Snapshot diffing for polled views.

Each ``diff_*`` function compares the previous and current snapshot of a
list and returns notification payloads for genuinely new conditions.  Keys
are deterministic per (entity, condition, value) so the same change seen on
many polling cycles collapses to one notification in the engine.

The first snapshot (``prev is None``) only establishes a baseline.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from app.core.dispatch.domain import Actor, Bid, Job, VendorRecord
from app.core.dispatch.events import status_label
from app.core.dispatch.sla import UnbidAlert
from app.core.notifications.engine import NotificationEngine
from app.core.notifications.models import (
    ComplianceMeta,
    JobEventMeta,
    NewBidMeta,
    StatusChangeMeta,
    UnbidAlertMeta,
    VendorActivityMeta,
    build_notification,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

Payload = dict[str, Any]


def _by_id(items: Iterable[Any]) -> dict[str, Any]:
    return {item.id: item for item in items}


def diff_jobs(prev: Optional[Iterable[Job]], curr: Iterable[Job], role: str = "admin") -> list[Payload]:
    if prev is None:
        return []
    before = _by_id(prev)
    after = _by_id(curr)
    out: list[Payload] = []

    for job_id, job in after.items():
        old = before.get(job_id)
        if old is None:
            out.append(build_notification(
                title="New job",
                body=f"{job.service_type} at {job.pickup_address}",
                meta=JobEventMeta(job_id=job_id, event="created", role=role),
                dedupe_key=f"{role}:job:new:{job_id}",
            ))
            continue

        if old.status != job.status:
            out.append(build_notification(
                title=f"Job {job_id}: {status_label(job.status)}",
                body=f"{old.status} -> {job.status}",
                severity="success" if job.is_terminal else "info",
                meta=StatusChangeMeta(job_id=job_id, status=job.status,
                                      previous_status=old.status, role=role),
                dedupe_key=f"{role}:job:{job_id}:status:{job.status}",
            ))

        if old.assigned_vendor_id != job.assigned_vendor_id:
            vendor_key = job.assigned_vendor_id or "none"
            out.append(build_notification(
                title=f"Job {job_id}: vendor {'assigned' if job.assigned_vendor_id else 'removed'}",
                body=job.vendor_name or "No vendor",
                meta=JobEventMeta(job_id=job_id, event="vendor", vendor_id=job.assigned_vendor_id,
                                  role=role),
                dedupe_key=f"{role}:job:{job_id}:vendor:{vendor_key}",
            ))

    for job_id in before.keys() - after.keys():
        out.append(build_notification(
            title=f"Job {job_id} removed",
            body="The job is no longer on the board",
            severity="warning",
            meta=JobEventMeta(job_id=job_id, event="removed", role=role),
            dedupe_key=f"{role}:job:{job_id}:removed",
        ))
    return out


def diff_vendors(prev: Optional[Iterable[VendorRecord]], curr: Iterable[VendorRecord]) -> list[Payload]:
    if prev is None:
        return []
    before = _by_id(prev)
    after = _by_id(curr)
    out: list[Payload] = []

    for vendor_id, vendor in after.items():
        old = before.get(vendor_id)
        if old is None:
            out.append(build_notification(
                title="New vendor",
                body=f"{vendor.name} ({vendor.city or 'no city'})",
                meta=VendorActivityMeta(vendor_id=vendor_id, change="new", role="admin"),
                dedupe_key=f"admin:vendor:new:{vendor_id}",
            ))
        elif old.active != vendor.active:
            out.append(build_notification(
                title=f"{vendor.name} is {'active' if vendor.active else 'inactive'}",
                body=vendor.city or "",
                severity="info" if vendor.active else "warning",
                meta=VendorActivityMeta(vendor_id=vendor_id,
                                        change="active" if vendor.active else "inactive",
                                        role="admin"),
                dedupe_key=f"admin:vendor:{vendor_id}:active:{1 if vendor.active else 0}",
            ))

    for vendor_id in before.keys() - after.keys():
        out.append(build_notification(
            title="Vendor removed",
            body=before[vendor_id].name,
            severity="warning",
            meta=VendorActivityMeta(vendor_id=vendor_id, change="removed", role="admin"),
            dedupe_key=f"admin:vendor:{vendor_id}:removed",
        ))
    return out


def bid_dedupe_key(job_id: str, bid: Bid) -> str:
    key = f"customer:job:{job_id}:bid:{bid.id}"
    return key if bid.revision <= 1 else f"{key}:{bid.revision}"


def diff_bids(prev: Optional[Iterable[Bid]], curr: Iterable[Bid], job: Job) -> list[Payload]:
    """New bids and re-priced bids on one job, for the customer choosing."""
    if prev is None:
        return []
    before = _by_id(prev)
    out: list[Payload] = []
    for bid in curr:
        old = before.get(bid.id)
        if old is not None and old.revision == bid.revision:
            continue
        out.append(build_notification(
            title="New bid" if old is None else "Bid updated",
            body=f"{bid.vendor_name}: ${bid.price:,.2f}, ETA {bid.eta_minutes} min",
            meta=NewBidMeta(job_id=job.id, bid_id=bid.id, price=bid.price,
                            eta_minutes=bid.eta_minutes, role="customer"),
            dedupe_key=bid_dedupe_key(job.id, bid),
        ))
    return out


def unbid_notifications(alerts: Iterable[UnbidAlert], alert_minutes: int) -> list[Payload]:
    return [
        build_notification(
            title=f"No bids on job {alert.job_id}",
            body=f"{alert.service_type} at {alert.pickup_address}, open {alert.open_minutes} min",
            severity="warning",
            meta=UnbidAlertMeta(job_id=alert.job_id, alert_minutes=alert_minutes, role="admin"),
            dedupe_key=f"admin:job:{alert.job_id}:unbid",
        )
        for alert in alerts
    ]


def compliance_notifications(tasks: Iterable[Mapping[str, Any]]) -> list[Payload]:
    out: list[Payload] = []
    for task in tasks:
        vendor_id = str(task.get("vendor_id") or "")
        if not vendor_id:
            continue
        task_type = str(task.get("type") or "missing")
        ref = task.get("document_id") or task.get("key") or "general"
        title = task.get("title") or task.get("label") or "Compliance item"
        out.append(build_notification(
            title=f"{task.get('vendor_name') or 'Vendor'}: {title}",
            body=str(task.get("reason") or task_type),
            severity="warning",
            meta=ComplianceMeta(vendor_id=vendor_id, task_type=task_type,
                                document_id=str(task["document_id"]) if task.get("document_id") else None,
                                role="admin"),
            dedupe_key=f"admin:compliance:{vendor_id}:{task_type}:{ref}",
        ))
    return out


class SnapshotWatcher:
    """
    Remembers the last snapshot each recipient saw and publishes the diff.

    Snapshots live in process memory; after a restart the next poll is a
    new baseline, and the engine's seen keys absorb anything re-detected.
    Per-job bid snapshots are kept only while the job accepts bids.
    """

    def __init__(self, engine: NotificationEngine):
        self.engine = engine
        self._snapshots: dict[tuple[str, str], list[Any]] = {}

    def _swap(self, stream: str, recipient: Actor, items: list[Any]) -> Optional[list[Any]]:
        key = (stream, str(recipient))
        previous = self._snapshots.get(key)
        self._snapshots[key] = items
        return previous

    async def _publish(self, recipient: Actor, payloads: list[Payload]) -> int:
        if not payloads:
            return 0
        try:
            accepted = await self.engine.publish_many(recipient, payloads)
        except Exception:
            logger.error("Failed to publish snapshot diff to %s", recipient, exc_info=True)
            return 0
        return len(accepted)

    async def observe_board(
        self,
        recipient: Actor,
        jobs: list[Job],
        vendors: list[VendorRecord],
    ) -> int:
        self.forget_jobs(job.id for job in jobs if not job.accepting_bids)
        payloads = diff_jobs(self._swap("jobs", recipient, jobs), jobs, role=recipient.role)
        payloads += diff_vendors(self._swap("vendors", recipient, vendors), vendors)
        return await self._publish(recipient, payloads)

    async def observe_bids(self, recipient: Actor, job: Job, bids: list[Bid]) -> int:
        if not job.accepting_bids:
            self.forget_jobs([job.id])
            return 0
        previous = self._swap(f"bids:{job.id}", recipient, bids)
        return await self._publish(recipient, diff_bids(previous, bids, job))

    def forget_jobs(self, job_ids: Iterable[str]) -> None:
        """Drop every recipient's bid snapshot for these jobs."""
        streams = {f"bids:{job_id}" for job_id in job_ids}
        if not streams:
            return
        for key in [key for key in self._snapshots if key[0] in streams]:
            del self._snapshots[key]

    async def publish_alerts(
        self,
        recipient: Actor,
        unbid: Iterable[UnbidAlert],
        compliance_tasks: Iterable[Mapping[str, Any]],
        *,
        alert_minutes: int,
    ) -> int:
        payloads = unbid_notifications(unbid, alert_minutes) + compliance_notifications(compliance_tasks)
        return await self._publish(recipient, payloads)
