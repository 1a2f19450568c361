"""
SLA / escalation calculator and the mission-control dashboard.

Everything here is a pure function of (jobs, vendors, now): nothing is
stored or scheduled, the dashboard is rebuilt on every read.  Missing
derived data (no ratings, no arrivals, no coordinates) yields zeros,
empty lists or None, never an exception.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from app.config import settings
from app.core.dispatch.domain import Job, JobStatus, Urgency, VendorRecord
from app.core.dispatch.routing import RouteSuggestion, suggest_vendors


@dataclass(frozen=True)
class SlaPolicy:
    table: Mapping[str, int] = field(default_factory=lambda: {
        Urgency.EMERGENCY.value: 15,
        Urgency.URGENT.value: 45,
        Urgency.STANDARD.value: 120,
    })
    warning_ratio: float = 0.2

    @classmethod
    def from_settings(cls) -> "SlaPolicy":
        return cls(table=settings.sla_table, warning_ratio=settings.sla_warning_ratio)

    def sla_for(self, urgency: Optional[str]) -> int:
        if urgency in self.table:
            return int(self.table[urgency])
        return int(self.table.get(Urgency.STANDARD.value, 120))


@dataclass(frozen=True)
class SlaStatus:
    sla_minutes: int
    open_minutes: int
    minutes_remaining: int
    at_risk: bool
    severe: bool


def _whole_minutes(delta: timedelta) -> int:
    return max(0, math.floor(delta.total_seconds() / 60))


def compute_sla(job: Job, now: datetime, policy: SlaPolicy) -> SlaStatus:
    """SLA position of one job at ``now``; never mutates the job."""
    sla_minutes = policy.sla_for(job.urgency)
    open_minutes = _whole_minutes(now - job.created_at)
    remaining = sla_minutes - open_minutes
    active = job.status != JobStatus.COMPLETED.value
    return SlaStatus(
        sla_minutes=sla_minutes,
        open_minutes=open_minutes,
        minutes_remaining=remaining,
        at_risk=active and 0 < remaining <= policy.warning_ratio * sla_minutes,
        severe=active and remaining <= 0,
    )


# ---------------------------------------------------------------------------
# Dashboard pieces
# ---------------------------------------------------------------------------

@dataclass
class QueueEntry:
    job_id: str
    service_type: str
    urgency: str
    priority: str
    status: str
    created_at: datetime
    pickup_address: str
    vendor_id: Optional[str]
    vendor_name: Optional[str]
    open_minutes: int
    since_assigned_minutes: int
    sla_minutes: int
    minutes_remaining: int
    at_risk: bool
    severe: bool
    escalated: bool


@dataclass
class UnbidAlert:
    job_id: str
    service_type: str
    pickup_address: str
    urgency: str
    open_minutes: int


@dataclass
class VendorScorecard:
    vendor_id: str
    name: str
    city: str = ""
    active: bool = True
    assigned: int = 0
    completed: int = 0
    avg_arrival_minutes: Optional[float] = None
    avg_rating: Optional[float] = None
    gross: float = 0.0
    commission: float = 0.0
    sla_hit_rate: Optional[float] = None  # fraction of completed jobs reached within SLA


@dataclass
class Dashboard:
    queue: list[QueueEntry]
    escalations: list[QueueEntry]
    unbid_alerts: list[UnbidAlert]
    route_suggestions: list[RouteSuggestion]
    compliance_tasks: list[dict[str, Any]]
    vendor_scorecards: list[VendorScorecard]
    vendor_backlog: dict[str, int]
    generated_at: datetime


def queue_entry(job: Job, now: datetime, policy: SlaPolicy) -> QueueEntry:
    sla = compute_sla(job, now, policy)
    return QueueEntry(
        job_id=job.id,
        service_type=job.service_type,
        urgency=job.urgency,
        priority=job.priority,
        status=job.status,
        created_at=job.created_at,
        pickup_address=job.pickup_address,
        vendor_id=job.assigned_vendor_id,
        vendor_name=job.vendor_name,
        open_minutes=sla.open_minutes,
        since_assigned_minutes=_whole_minutes(now - job.assigned_at) if job.assigned_at else 0,
        sla_minutes=sla.sla_minutes,
        minutes_remaining=sla.minutes_remaining,
        at_risk=sla.at_risk,
        severe=sla.severe,
        escalated=job.escalated_at is not None,
    )


def find_unbid_jobs(
    jobs: Iterable[Job],
    bid_counts: Mapping[str, int],
    now: datetime,
    *,
    alert_minutes: int,
) -> list[UnbidAlert]:
    """Open-bidding Unassigned jobs that nobody has bid on for ``alert_minutes``."""
    alerts: list[UnbidAlert] = []
    for job in jobs:
        if job.status != JobStatus.UNASSIGNED.value or not job.bidding_open:
            continue
        if bid_counts.get(job.id, 0) > 0:
            continue
        open_minutes = _whole_minutes(now - job.created_at)
        if open_minutes < alert_minutes:
            continue
        alerts.append(UnbidAlert(
            job_id=job.id,
            service_type=job.service_type,
            pickup_address=job.pickup_address,
            urgency=job.urgency,
            open_minutes=open_minutes,
        ))
    alerts.sort(key=lambda a: a.open_minutes, reverse=True)
    return alerts


def _reached_within_sla(job: Job, policy: SlaPolicy) -> bool:
    reached_at = job.arrived_at or job.completed_at
    if reached_at is None:
        return False
    return _whole_minutes(reached_at - job.created_at) <= policy.sla_for(job.urgency)


def build_scorecards(
    jobs: Iterable[Job],
    vendors: Iterable[VendorRecord],
    ratings: Mapping[str, float],
    policy: SlaPolicy,
) -> list[VendorScorecard]:
    """Per-vendor performance over the jobs given (already windowed by the caller)."""
    vendor_map = {vendor.id: vendor for vendor in vendors}
    by_vendor: dict[str, list[Job]] = {}
    for job in jobs:
        if job.assigned_vendor_id:
            by_vendor.setdefault(job.assigned_vendor_id, []).append(job)

    cards: list[VendorScorecard] = []
    for vendor_id, vendor_jobs in by_vendor.items():
        vendor = vendor_map.get(vendor_id)
        card = VendorScorecard(
            vendor_id=vendor_id,
            name=vendor.name if vendor else "Vendor",
            city=vendor.city if vendor else "",
            active=vendor.active if vendor else False,
        )
        arrivals: list[float] = []
        job_ratings: list[float] = []
        sla_hits = 0

        for job in vendor_jobs:
            card.assigned += 1
            card.gross += float(job.final_price or job.quoted_price or 0.0)
            if job.commission:
                card.commission += float(job.commission.amount or 0.0)
            if job.status == JobStatus.COMPLETED.value:
                card.completed += 1
                if _reached_within_sla(job, policy):
                    sla_hits += 1
            if job.assigned_at and job.arrived_at:
                arrivals.append((job.arrived_at - job.assigned_at).total_seconds() / 60)
            rating = ratings.get(job.id)
            if rating is not None and math.isfinite(rating):
                job_ratings.append(rating)

        card.gross = round(card.gross, 2)
        card.commission = round(card.commission, 2)
        if arrivals:
            card.avg_arrival_minutes = round(sum(arrivals) / len(arrivals), 1)
        if job_ratings:
            card.avg_rating = round(sum(job_ratings) / len(job_ratings), 1)
        if card.completed:
            card.sla_hit_rate = round(sla_hits / card.completed, 4)
        cards.append(card)

    cards.sort(key=lambda c: (-c.completed, c.name))
    return cards


def count_backlog(jobs: Iterable[Job]) -> dict[str, int]:
    backlog: dict[str, int] = {}
    for job in jobs:
        if job.assigned_vendor_id and not job.is_terminal:
            backlog[job.assigned_vendor_id] = backlog.get(job.assigned_vendor_id, 0) + 1
    return backlog


def build_dashboard(
    jobs: Iterable[Job],
    vendors: Iterable[VendorRecord],
    *,
    now: datetime,
    policy: SlaPolicy,
    bid_counts: Optional[Mapping[str, int]] = None,
    compliance_tasks: Optional[list[dict[str, Any]]] = None,
    ratings: Optional[Mapping[str, float]] = None,
    backlog: Optional[Mapping[str, int]] = None,
    scorecard_window_days: int = 45,
    unbid_alert_minutes: int = 10,
    routing_top_n: int = 3,
) -> Dashboard:
    job_list = list(jobs)
    vendor_list = list(vendors)
    open_jobs = sorted(
        (job for job in job_list if not job.is_terminal),
        key=lambda job: job.created_at,
    )
    vendor_backlog = dict(backlog) if backlog is not None else count_backlog(job_list)

    queue = [queue_entry(job, now, policy) for job in open_jobs]
    escalations = sorted(
        (entry for entry in queue if entry.at_risk or entry.severe or entry.escalated),
        key=lambda entry: entry.minutes_remaining,
    )

    window_start = now - timedelta(days=scorecard_window_days)
    recent = [job for job in job_list if job.created_at >= window_start]

    return Dashboard(
        queue=queue,
        escalations=escalations,
        unbid_alerts=find_unbid_jobs(
            open_jobs, bid_counts or {}, now, alert_minutes=unbid_alert_minutes,
        ),
        route_suggestions=suggest_vendors(
            open_jobs, vendor_list, vendor_backlog, top_n=routing_top_n,
        ),
        compliance_tasks=list(compliance_tasks or []),
        vendor_scorecards=build_scorecards(recent, vendor_list, ratings or {}, policy),
        vendor_backlog=vendor_backlog,
        generated_at=now,
    )
