# tests/test_watchers.py
"""Tests for app/core/dispatch/watchers.py: snapshot diffs and their dedupe keys."""
from __future__ import annotations

import dataclasses
from datetime import datetime, timezone

import pytest

from app.core.dispatch.domain import Actor, Bid, Job, TokenScope, VendorRecord
from app.core.dispatch.events import ADMIN_INBOX
from app.core.dispatch.sla import UnbidAlert
from app.core.dispatch.watchers import (
    compliance_notifications,
    diff_bids,
    diff_jobs,
    diff_vendors,
    unbid_notifications,
)

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _job(job_id, **kwargs):
    return Job(id=job_id, pickup_address="Somewhere", created_at=T0, **kwargs)


def _bid(bid_id, revision=1, **kwargs):
    return Bid(id=bid_id, job_id="j1", vendor_name="Joe", vendor_phone="5125559999",
               eta_minutes=20, price=100.0, revision=revision, **kwargs)


def _keys(payloads):
    return [p["dedupe_key"] for p in payloads]


class TestDiffJobs:
    def test_first_snapshot_is_baseline(self):
        assert diff_jobs(None, [_job("j1")]) == []

    def test_new_job(self):
        assert _keys(diff_jobs([], [_job("j1")])) == ["admin:job:new:j1"]

    def test_status_and_vendor_change(self):
        before = [_job("j1")]
        after = [_job("j1", status="Assigned", assigned_vendor_id="v1", vendor_name="Joe")]
        assert _keys(diff_jobs(before, after)) == [
            "admin:job:j1:status:Assigned",
            "admin:job:j1:vendor:v1",
        ]

    def test_vendor_removed_uses_none(self):
        before = [_job("j1", assigned_vendor_id="v1")]
        after = [_job("j1")]
        assert _keys(diff_jobs(before, after)) == ["admin:job:j1:vendor:none"]

    def test_removed_job(self):
        assert _keys(diff_jobs([_job("j1")], [])) == ["admin:job:j1:removed"]

    def test_unchanged_produces_nothing(self):
        assert diff_jobs([_job("j1")], [_job("j1")]) == []

    def test_role_prefix(self):
        assert _keys(diff_jobs([], [_job("j1")], role="customer")) == ["customer:job:new:j1"]


class TestDiffVendors:
    def test_activity(self):
        before = [VendorRecord(id="v1", name="A"), VendorRecord(id="v2", name="B")]
        after = [VendorRecord(id="v1", name="A", active=False), VendorRecord(id="v3", name="C")]
        assert sorted(_keys(diff_vendors(before, after))) == [
            "admin:vendor:new:v3",
            "admin:vendor:v1:active:0",
            "admin:vendor:v2:removed",
        ]


class TestDiffBids:
    def test_new_and_repriced(self):
        job = _job("j1")
        before = [_bid("b1")]
        after = [_bid("b1", revision=2), _bid("b2")]
        assert _keys(diff_bids(before, after, job)) == [
            "customer:job:j1:bid:b1:2",
            "customer:job:j1:bid:b2",
        ]

    def test_same_revision_silent(self):
        assert diff_bids([_bid("b1")], [_bid("b1")], _job("j1")) == []


class TestAlertPayloads:
    def test_unbid(self):
        alert = UnbidAlert(job_id="j1", service_type="Tow", pickup_address="A", urgency="standard",
                           open_minutes=15)
        payload = unbid_notifications([alert], 10)[0]
        assert payload["dedupe_key"] == "admin:job:j1:unbid"
        assert payload["meta"].alert_minutes == 10

    def test_compliance_keys(self):
        tasks = [
            {"vendor_id": "v1", "type": "expiry", "document_id": "doc-9", "label": "License"},
            {"vendor_id": "v1", "type": "missing", "key": "w9"},
            {"type": "missing"},
        ]
        assert _keys(compliance_notifications(tasks)) == [
            "admin:compliance:v1:expiry:doc-9",
            "admin:compliance:v1:missing:w9",
        ]


class TestSnapshotWatcher:
    @pytest.mark.asyncio
    async def test_polled_change_matches_mutation_notification(self, dispatch, admin):
        # Baseline, then a job created through the service
        await dispatch.ops.dashboard()
        job = await dispatch.jobs.create_job(pickup_address="Congress Bridge", actor=admin)
        await dispatch.ops.dashboard()
        await dispatch.ops.dashboard()

        inbox = await dispatch.notifications.list(ADMIN_INBOX)
        new_job = [n for n in inbox if n.dedupe_key == f"admin:job:new:{job.id}"]
        assert len(new_job) == 1

    @pytest.mark.asyncio
    async def test_vendor_deactivation_noticed(self, dispatch, vendors):
        await dispatch.ops.dashboard()
        austin = await vendors.get_vendor("v-austin")
        vendors.put(dataclasses.replace(austin, active=False))
        await dispatch.ops.dashboard()

        inbox = await dispatch.notifications.list(ADMIN_INBOX)
        assert "admin:vendor:v-austin:active:0" in {n.dedupe_key for n in inbox}

    @pytest.mark.asyncio
    async def test_bid_list_polling_dedupes_with_submit(self, dispatch, customer):
        job = await dispatch.jobs.create_job(pickup_address="Barton Springs", actor=customer)
        vendor_token = job.token_value(TokenScope.VENDOR_BID)

        await dispatch.watcher.observe_bids(customer, job, [])
        bid = await dispatch.bids.submit_bid(vendor_token, vendor_name="Joe", vendor_phone="5125559999",
                                             eta_minutes=20, price=100)
        published = await dispatch.watcher.observe_bids(customer, job, [bid])

        assert published == 0
        inbox = await dispatch.notifications.list(customer)
        assert [n.dedupe_key for n in inbox].count(f"customer:job:{job.id}:bid:{bid.id}") == 1

    @pytest.mark.asyncio
    async def test_snapshots_are_per_recipient(self, dispatch):
        other = Actor(role="customer", id="someone")
        await dispatch.watcher.observe_board(other, [], [])
        published = await dispatch.watcher.observe_board(other, [_job("j1")], [])
        assert published == 1
        assert await dispatch.notifications.list(ADMIN_INBOX) == []

    @pytest.mark.asyncio
    async def test_bid_snapshot_dropped_once_job_taken(self, dispatch, customer):
        job = await dispatch.jobs.create_job(pickup_address="Zilker Park", actor=customer)
        vendor_token = job.token_value(TokenScope.VENDOR_BID)
        bid = await dispatch.bids.submit_bid(vendor_token, vendor_name="Joe", vendor_phone="5125559999",
                                             eta_minutes=20, price=100)
        await dispatch.watcher.observe_bids(customer, job, [bid])
        assert (f"bids:{job.id}", str(customer)) in dispatch.watcher._snapshots

        chosen = await dispatch.bids.select_bid(bid.id, actor=customer)
        published = await dispatch.watcher.observe_bids(customer, chosen, [bid])

        assert published == 0
        assert not any(stream == f"bids:{job.id}" for stream, _ in dispatch.watcher._snapshots)

    @pytest.mark.asyncio
    async def test_board_poll_sweeps_bid_snapshots_of_closed_jobs(self, dispatch, customer):
        other = Actor(role="customer", id="someone")
        open_job = _job("j-open", bidding_open=True)
        await dispatch.watcher.observe_bids(customer, open_job, [])
        await dispatch.watcher.observe_bids(other, open_job, [])
        await dispatch.watcher.observe_bids(customer, _job("j-keep", bidding_open=True), [])

        taken = dataclasses.replace(open_job, status="Assigned", bidding_open=False)
        await dispatch.watcher.observe_board(ADMIN_INBOX, [taken, _job("j-keep", bidding_open=True)], [])

        streams = {stream for stream, _ in dispatch.watcher._snapshots}
        assert "bids:j-open" not in streams
        assert "bids:j-keep" in streams
