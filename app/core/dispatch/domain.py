"""
Dispatch domain objects: jobs, bids, public tokens and the vendor read model.

Plain dataclasses with no I/O.  Stores persist them through
``job_to_dict`` / ``job_from_dict`` (JSON-safe shapes) so the in-memory
and Postgres backends share one representation.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class JobStatus(str, Enum):
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    ON_THE_WAY = "OnTheWay"
    ARRIVED = "Arrived"
    COMPLETED = "Completed"


class Urgency(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    STANDARD = "standard"


class BidMode(str, Enum):
    OPEN = "open"
    FIXED = "fixed"  # price pre-quoted, vendors compete on ETA only


class TokenScope(str, Enum):
    VENDOR_BID = "vendor_bid"
    CUSTOMER_CHOOSE = "customer_choose"
    GUEST_TRACK = "guest_track"
    VENDOR_ACCEPTED = "vendor_accepted"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    CHARGED = "charged"
    FAILED = "failed"
    SKIPPED = "skipped"


PAYMENT_METHODS = frozenset({"cash", "card", "zelle", "venmo", "bank_transfer", "other"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Authenticated identity handed to the core by the auth collaborator."""
    role: str  # customer | vendor | admin | guest | system
    id: str = "anon"

    def __str__(self) -> str:
        return f"{self.role}:{self.id}"


SYSTEM_ACTOR = Actor(role="system", id="dispatch")


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass
class PublicToken:
    """A revocable, expiring link token bound to one job and one scope."""
    value: str
    scope: str
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or now < self.expires_at


@dataclass
class ReportedPayment:
    amount: float = 0.0
    method: Optional[str] = None
    note: Optional[str] = None
    reported_at: Optional[datetime] = None
    actor: str = "vendor"


@dataclass
class Commission:
    rate: float = 0.0
    amount: float = 0.0
    status: str = CommissionStatus.PENDING.value
    charge_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class JobFlags:
    under_report: bool = False
    reason: Optional[str] = None


@dataclass
class StatusChange:
    from_status: Optional[str]
    to_status: str
    at: datetime
    actor: str = "system"


@dataclass
class Job:
    id: str
    pickup_address: str
    service_type: str = "Service"
    urgency: str = Urgency.STANDARD.value
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    pickup: Optional[GeoPoint] = None
    dropoff_address: Optional[str] = None
    dropoff: Optional[GeoPoint] = None
    notes: Optional[str] = None
    source: str = "admin"  # guest | customer | admin

    status: str = JobStatus.UNASSIGNED.value
    created_at: datetime = field(default_factory=utcnow)

    # Bidding / assignment
    bidding_open: bool = False
    bid_mode: str = BidMode.OPEN.value
    quoted_price: float = 0.0
    final_price: float = 0.0
    selected_bid_id: Optional[str] = None
    assigned_vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    vendor_phone: Optional[str] = None

    # Completion / reconciliation
    reported_payment: Optional[ReportedPayment] = None
    commission: Optional[Commission] = None
    expected_revenue: float = 0.0
    flags: JobFlags = field(default_factory=JobFlags)

    # Escalation
    priority: str = "normal"
    escalated_at: Optional[datetime] = None

    # Status timestamps
    assigned_at: Optional[datetime] = None
    on_the_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status_history: list[StatusChange] = field(default_factory=list)

    tokens: dict[str, PublicToken] = field(default_factory=dict)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.COMPLETED.value

    @property
    def accepting_bids(self) -> bool:
        return bool(self.bidding_open and not self.selected_bid_id and self.status == JobStatus.UNASSIGNED.value)

    def token_value(self, scope: TokenScope | str) -> Optional[str]:
        token = self.tokens.get(TokenScope(scope).value)
        return token.value if token else None


@dataclass
class Bid:
    id: str
    job_id: str
    vendor_name: str
    vendor_phone: str
    eta_minutes: int
    price: float
    vendor_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    revision: int = 1  # bumped on every upsert that changes ETA/price


@dataclass
class VendorRecord:
    """Read model from the vendor directory collaborator."""
    id: str
    name: str
    phone: Optional[str] = None
    city: str = ""
    location: Optional[GeoPoint] = None
    active: bool = True
    updates_paused: bool = False
    services: list[str] = field(default_factory=list)
    compliance_issues: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Serialization (JSON-safe dicts)
# ---------------------------------------------------------------------------

_DATETIME_FIELDS = (
    "created_at", "escalated_at", "assigned_at", "on_the_way_at",
    "arrived_at", "completed_at",
)


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_in(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _point_in(value: Any) -> Optional[GeoPoint]:
    if not value:
        return None
    return GeoPoint(lat=float(value["lat"]), lng=float(value["lng"]))


def job_to_dict(job: Job) -> dict[str, Any]:
    data = asdict(job)
    for name in _DATETIME_FIELDS:
        data[name] = _dt_out(getattr(job, name))
    if job.reported_payment:
        data["reported_payment"]["reported_at"] = _dt_out(job.reported_payment.reported_at)
    data["status_history"] = [
        {
            "from_status": change.from_status,
            "to_status": change.to_status,
            "at": _dt_out(change.at),
            "actor": change.actor,
        }
        for change in job.status_history
    ]
    data["tokens"] = {
        scope: {
            "value": token.value,
            "scope": token.scope,
            "expires_at": _dt_out(token.expires_at),
            "revoked_at": _dt_out(token.revoked_at),
        }
        for scope, token in job.tokens.items()
    }
    return data


def job_from_dict(data: dict[str, Any]) -> Job:
    data = dict(data)
    for name in _DATETIME_FIELDS:
        data[name] = _dt_in(data.get(name))
    if data.get("created_at") is None:
        data["created_at"] = utcnow()
    data["pickup"] = _point_in(data.get("pickup"))
    data["dropoff"] = _point_in(data.get("dropoff"))

    payment = data.get("reported_payment")
    if payment:
        payment = dict(payment)
        payment["reported_at"] = _dt_in(payment.get("reported_at"))
        data["reported_payment"] = ReportedPayment(**payment)

    commission = data.get("commission")
    if commission:
        data["commission"] = Commission(**commission)

    data["flags"] = JobFlags(**(data.get("flags") or {}))
    data["status_history"] = [
        StatusChange(
            from_status=item.get("from_status"),
            to_status=item["to_status"],
            at=_dt_in(item.get("at")) or utcnow(),
            actor=item.get("actor", "system"),
        )
        for item in data.get("status_history") or []
    ]
    data["tokens"] = {
        scope: PublicToken(
            value=item["value"],
            scope=item.get("scope", scope),
            expires_at=_dt_in(item.get("expires_at")),
            revoked_at=_dt_in(item.get("revoked_at")),
        )
        for scope, item in (data.get("tokens") or {}).items()
    }
    return Job(**data)


def bid_to_dict(bid: Bid) -> dict[str, Any]:
    data = asdict(bid)
    data["created_at"] = _dt_out(bid.created_at)
    data["updated_at"] = _dt_out(bid.updated_at)
    return data
