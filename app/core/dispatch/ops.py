"""
Mission-control read side: gathers jobs, bids, vendors, compliance tasks
and ratings, builds the dashboard and feeds new conditions to the admin
inbox through the snapshot watcher.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from app.core.dispatch.domain import Actor
from app.core.dispatch.events import ADMIN_INBOX
from app.core.dispatch.ports import (
    AsyncBidLedger,
    AsyncJobStore,
    ComplianceSource,
    RatingSource,
    VendorDirectory,
)
from app.core.dispatch.sla import Dashboard, SlaPolicy, build_dashboard
from app.core.dispatch.transitions import StatusTransitionEngine
from app.core.dispatch.watchers import SnapshotWatcher
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class OpsService:
    def __init__(
        self,
        store: AsyncJobStore,
        ledger: AsyncBidLedger,
        vendors: VendorDirectory,
        engine: StatusTransitionEngine,
        *,
        compliance: Optional[ComplianceSource] = None,
        ratings: Optional[RatingSource] = None,
        watcher: Optional[SnapshotWatcher] = None,
        policy: Optional[SlaPolicy] = None,
        scorecard_window_days: int = 45,
        unbid_alert_minutes: int = 10,
        routing_top_n: int = 3,
    ):
        self.store = store
        self.ledger = ledger
        self.vendors = vendors
        self.engine = engine
        self.compliance = compliance
        self.ratings = ratings
        self.watcher = watcher
        self.policy = policy or SlaPolicy.from_settings()
        self.scorecard_window_days = scorecard_window_days
        self.unbid_alert_minutes = unbid_alert_minutes
        self.routing_top_n = routing_top_n

    async def dashboard(self, *, recipient: Actor = ADMIN_INBOX) -> Dashboard:
        now = self.engine.now()
        with DispatchMetrics.track_dashboard_build():
            jobs = await self.store.list_jobs()
            vendors = await self.vendors.list_vendors()
            open_ids = [job.id for job in jobs if not job.is_terminal and job.bidding_open]
            bid_counts = await self.ledger.count_for_jobs(open_ids) if open_ids else {}
            backlog = await self.store.count_backlog()

            compliance_tasks = []
            if self.compliance is not None:
                try:
                    compliance_tasks = await self.compliance.list_tasks(now)
                except Exception:
                    logger.error("Compliance source failed; dashboard shows none", exc_info=True)

            ratings = {}
            if self.ratings is not None:
                try:
                    ratings = await self.ratings.ratings_since(
                        now - timedelta(days=self.scorecard_window_days)
                    )
                except Exception:
                    logger.error("Rating source failed; scorecards show no ratings", exc_info=True)

            dashboard = build_dashboard(
                jobs,
                vendors,
                now=now,
                policy=self.policy,
                bid_counts=bid_counts,
                compliance_tasks=compliance_tasks,
                ratings=ratings,
                backlog=backlog,
                scorecard_window_days=self.scorecard_window_days,
                unbid_alert_minutes=self.unbid_alert_minutes,
                routing_top_n=self.routing_top_n,
            )

        if self.watcher is not None:
            await self.watcher.observe_board(recipient, jobs, vendors)
            await self.watcher.publish_alerts(
                recipient,
                dashboard.unbid_alerts,
                dashboard.compliance_tasks,
                alert_minutes=self.unbid_alert_minutes,
            )
        return dashboard
