# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.bidding import BidService  # noqa: E402
from app.core.dispatch.commission import CommissionPolicy  # noqa: E402
from app.core.dispatch.domain import Actor, GeoPoint, VendorRecord  # noqa: E402
from app.core.dispatch.events import DispatchNotifier  # noqa: E402
from app.core.dispatch.jobs import JobService  # noqa: E402
from app.core.dispatch.ops import OpsService  # noqa: E402
from app.core.dispatch.sla import SlaPolicy  # noqa: E402
from app.core.dispatch.tokens import TokenService  # noqa: E402
from app.core.dispatch.transitions import StatusTransitionEngine  # noqa: E402
from app.core.dispatch.watchers import SnapshotWatcher  # noqa: E402
from app.core.notifications.engine import NotificationEngine  # noqa: E402
from app.infra.delivery_channels import DeliveryChannel  # noqa: E402
from app.infra.memory_stores import (  # noqa: E402
    InMemoryBidLedger,
    InMemoryJobStore,
    InMemoryNotificationStore,
    StaticComplianceSource,
    StaticRatingSource,
    StaticVendorDirectory,
)


class FakeClock:
    """Controllable clock handed to the engines"""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingChannel(DeliveryChannel):
    """Delivery channel that remembers what it was asked to deliver"""

    def __init__(self, result: bool = True, error: Exception | None = None):
        self.result = result
        self.error = error
        self.deliveries = []

    @property
    def name(self) -> str:
        return "recording"

    def is_configured(self) -> bool:
        return True

    async def deliver(self, recipient, notification) -> bool:
        self.deliveries.append((recipient, notification))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def vendors():
    return StaticVendorDirectory([
        VendorRecord(
            id="v-austin",
            name="Austin Tow Pros",
            phone="+15125550101",
            city="Austin",
            location=GeoPoint(lat=30.2672, lng=-97.7431),
            services=["tow", "jump"],
        ),
        VendorRecord(
            id="v-round-rock",
            name="Round Rock Roadside",
            phone="+15125550202",
            city="Round Rock",
            location=GeoPoint(lat=30.5083, lng=-97.6789),
            services=["tow"],
        ),
    ])


@pytest.fixture
def admin():
    return Actor(role="admin", id="dispatcher-1")


@pytest.fixture
def customer():
    return Actor(role="customer", id="cust-1")


@pytest.fixture
def dispatch(clock, channel, vendors):
    """Fully wired dispatch core on in-memory stores"""
    store = InMemoryJobStore()
    ledger = InMemoryBidLedger(store)
    notification_store = InMemoryNotificationStore()
    notifications = NotificationEngine(notification_store, channel, clock=clock)
    notifier = DispatchNotifier(notifications)
    engine = StatusTransitionEngine(store, notifier, clock=clock)
    tokens = TokenService(store, engine, ttl_hours=72)
    ratings = StaticRatingSource()
    watcher = SnapshotWatcher(notifications)
    jobs = JobService(store, engine, tokens, vendors, notifier, commission_policy=CommissionPolicy())
    bids = BidService(ledger, engine, tokens, vendors, notifier)
    ops = OpsService(
        store,
        ledger,
        vendors,
        engine,
        compliance=StaticComplianceSource(vendors),
        ratings=ratings,
        watcher=watcher,
        policy=SlaPolicy(),
    )
    return SimpleNamespace(
        store=store,
        ledger=ledger,
        notification_store=notification_store,
        notifications=notifications,
        notifier=notifier,
        engine=engine,
        tokens=tokens,
        ratings=ratings,
        watcher=watcher,
        jobs=jobs,
        bids=bids,
        ops=ops,
        vendors=vendors,
        clock=clock,
        channel=channel,
    )
