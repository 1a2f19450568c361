# app/transport/schemas.py
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.dispatch.domain import Bid, GeoPoint, Job, bid_to_dict, job_to_dict
from app.core.dispatch.sla import Dashboard
from app.core.notifications.models import Notification


class GeoPointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def to_domain(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class JobCreateRequest(BaseModel):
    pickup_address: str = Field(min_length=1, max_length=500)
    service_type: str = Field(default="Service", max_length=80)
    urgency: str = Field(default="standard", max_length=20)
    customer_phone: str | None = Field(default=None, max_length=32)
    pickup: GeoPointIn | None = None
    dropoff_address: str | None = Field(default=None, max_length=500)
    dropoff: GeoPointIn | None = None
    notes: str | None = Field(default=None, max_length=2000)
    quoted_price: float = Field(default=0.0, ge=0, le=1_000_000)
    bid_mode: str = Field(default="open", max_length=10)
    open_bidding: bool | None = None

    @field_validator("pickup_address")
    @classmethod
    def _strip_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("pickup_address must not be blank")
        return value

    @field_validator("urgency", "bid_mode")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1, max_length=20)
    expected_version: int | None = Field(default=None, ge=0)


class CompletionRequest(BaseModel):
    # Validated by the completion flow so every rejection shares one error code
    amount: Any
    method: str | None = None
    note: str | None = Field(default=None, max_length=2000)
    expected_version: int | None = Field(default=None, ge=0)


class OpenBiddingRequest(BaseModel):
    bid_mode: str | None = Field(default=None, max_length=10)
    quoted_price: float | None = Field(default=None, ge=0, le=1_000_000)


class AssignRequest(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=64)
    expected_version: int | None = Field(default=None, ge=0)


class BidSubmitRequest(BaseModel):
    # Clamped/validated by the bid service
    vendor_name: Any = None
    vendor_phone: Any = None
    eta_minutes: Any = None
    price: Any = None


class SelectBidRequest(BaseModel):
    customer_token: str | None = Field(default=None, max_length=64)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def job_view(job: Job, *, include_tokens: bool = False) -> dict[str, Any]:
    """Participant view of a job; link tokens are shown to admins only."""
    data = job_to_dict(job)
    if not include_tokens:
        data.pop("tokens", None)
    return data


def tracking_view(job: Job) -> dict[str, Any]:
    """What a guest tracking link reveals: progress, never payment or contacts."""
    return {
        "id": job.id,
        "service_type": job.service_type,
        "urgency": job.urgency,
        "status": job.status,
        "pickup_address": job.pickup_address,
        "dropoff_address": job.dropoff_address,
        "vendor_name": job.vendor_name,
        "created_at": job.created_at.isoformat(),
        "assigned_at": job.assigned_at.isoformat() if job.assigned_at else None,
        "on_the_way_at": job.on_the_way_at.isoformat() if job.on_the_way_at else None,
        "arrived_at": job.arrived_at.isoformat() if job.arrived_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def vendor_preview_view(job: Job) -> dict[str, Any]:
    """Job details shown behind a vendor bid link."""
    return {
        "id": job.id,
        "service_type": job.service_type,
        "urgency": job.urgency,
        "pickup_address": job.pickup_address,
        "dropoff_address": job.dropoff_address,
        "notes": job.notes,
        "bid_mode": job.bid_mode,
        "quoted_price": job.quoted_price,
        "bidding_open": job.bidding_open and not job.selected_bid_id,
        "status": job.status,
        "created_at": job.created_at.isoformat(),
    }


def bid_view(bid: Bid, *, selected_bid_id: Optional[str] = None) -> dict[str, Any]:
    data = bid_to_dict(bid)
    data["selected"] = bid.id == selected_bid_id
    return data


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_json_safe(item) for item in value]
    return value


def dashboard_view(dashboard: Dashboard) -> dict[str, Any]:
    return _json_safe(asdict(dashboard))


def notification_view(notification: Notification) -> dict[str, Any]:
    return notification.model_dump(mode="json", by_alias=False)
