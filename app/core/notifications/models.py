"""
Notification models.

``meta`` is a small tagged union keyed on ``kind``.  Known kinds get their
own required fields; anything else (or a known kind with a malformed
payload) degrades to ``OtherMeta`` so newer producers never break older
consumers.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.core.dispatch.domain import Actor

# Recipients are partitioned by authenticated identity (role + id).
Recipient = Actor

SEVERITIES = ("info", "success", "warning", "error")


def recipient_key(recipient: Recipient) -> str:
    return f"{recipient.role}:{recipient.id}"


# ---------------------------------------------------------------------------
# Meta variants
# ---------------------------------------------------------------------------

class _MetaBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    role: Optional[str] = None
    route: Optional[str] = None
    dedupe_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("dedupe_key", "dedupeKey"),
    )
    contact_phone: Optional[str] = None  # used by SMS delivery when present


class StatusChangeMeta(_MetaBase):
    kind: Literal["status_change"] = "status_change"
    job_id: str
    status: str
    previous_status: Optional[str] = None


class NewBidMeta(_MetaBase):
    kind: Literal["new_bid"] = "new_bid"
    job_id: str
    bid_id: str
    price: Optional[float] = None
    eta_minutes: Optional[int] = None


class BidSelectedMeta(_MetaBase):
    kind: Literal["bid_selected"] = "bid_selected"
    job_id: str
    bid_id: str
    vendor_id: Optional[str] = None


class JobEventMeta(_MetaBase):
    """Board-level job changes: created, vendor (un)assigned, removed, completed."""
    kind: Literal["job_event"] = "job_event"
    job_id: str
    event: str
    vendor_id: Optional[str] = None


class VendorActivityMeta(_MetaBase):
    kind: Literal["vendor_activity"] = "vendor_activity"
    vendor_id: str
    change: Literal["new", "active", "inactive", "removed"]


class ComplianceMeta(_MetaBase):
    kind: Literal["compliance"] = "compliance"
    vendor_id: str
    task_type: str  # expiry | missing
    document_id: Optional[str] = None


class UnbidAlertMeta(_MetaBase):
    kind: Literal["unbid_alert"] = "unbid_alert"
    job_id: str
    alert_minutes: int


class OtherMeta(_MetaBase):
    kind: str = "other"


NotificationMeta = Union[
    StatusChangeMeta,
    NewBidMeta,
    BidSelectedMeta,
    JobEventMeta,
    VendorActivityMeta,
    ComplianceMeta,
    UnbidAlertMeta,
    OtherMeta,
]

_META_KINDS: dict[str, type[_MetaBase]] = {
    cls.model_fields["kind"].default: cls
    for cls in (
        StatusChangeMeta,
        NewBidMeta,
        BidSelectedMeta,
        JobEventMeta,
        VendorActivityMeta,
        ComplianceMeta,
        UnbidAlertMeta,
    )
}


def parse_meta(raw: Any) -> NotificationMeta:
    """Coerce a free-form meta payload into the tagged union."""
    if isinstance(raw, _MetaBase):
        return raw
    if not isinstance(raw, Mapping):
        return OtherMeta()

    data = dict(raw)
    model = _META_KINDS.get(str(data.get("kind", "")))
    if model is not None:
        try:
            return model.model_validate(data)
        except ValidationError:
            pass
    data.setdefault("kind", "other")
    return OtherMeta.model_validate(data)


# ---------------------------------------------------------------------------
# Notification + per-recipient state
# ---------------------------------------------------------------------------

class Notification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = "Notification"
    body: str = ""
    type: str = "info"
    severity: str = "info"
    created_at: str
    read: bool = False
    meta: NotificationMeta = Field(default_factory=OtherMeta)
    dedupe_key: Optional[str] = None


class NotificationState(BaseModel):
    """Everything persisted for one recipient."""

    notifications: list[Notification] = Field(default_factory=list)
    # dedupe key -> created_at of the first publish; insertion ordered
    seen_keys: dict[str, str] = Field(default_factory=dict)


def _parse_created_at(value: Any, now: datetime) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return now
    else:
        return now
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_notification(incoming: Any, now: datetime) -> Notification:
    """
    Build a well-formed Notification from a loose payload.

    - ``created_at`` defaults to ``now`` when missing or unparseable
    - ``id`` is generated when absent
    - ``dedupe_key`` is the explicit key, else ``meta.dedupe_key``
    - stored entries always start unread
    """
    if isinstance(incoming, Notification):
        data = incoming.model_dump()
    elif isinstance(incoming, Mapping):
        data = dict(incoming)
    else:
        raise TypeError(f"Cannot build a notification from {type(incoming).__name__}")

    meta = parse_meta(data.get("meta"))
    dedupe_key = data.get("dedupe_key") or data.get("dedupeKey") or meta.dedupe_key
    created_at = _parse_created_at(data.get("created_at") or data.get("createdAt"), now)
    severity = data.get("severity") or "info"

    return Notification(
        id=str(data.get("id") or uuid.uuid4()),
        title=data.get("title") or "Notification",
        body=data.get("body") or "",
        type=data.get("type") or "info",
        severity=severity if severity in SEVERITIES else "info",
        created_at=created_at.isoformat(),
        read=False,
        meta=meta,
        dedupe_key=dedupe_key or None,
    )


def build_notification(
    *,
    title: str,
    body: str,
    meta: _MetaBase,
    dedupe_key: Optional[str] = None,
    severity: str = "info",
    type: Optional[str] = None,
) -> dict[str, Any]:
    """Payload for ``NotificationEngine.publish``; the key lands on meta too."""
    if dedupe_key is not None:
        meta = meta.model_copy(update={"dedupe_key": dedupe_key})
    return {
        "title": title,
        "body": body,
        "type": type or meta.kind,
        "severity": severity,
        "meta": meta,
        "dedupe_key": dedupe_key or meta.dedupe_key,
    }
