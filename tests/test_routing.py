# tests/test_routing.py
"""Tests for app/core/dispatch/routing.py: nearest-vendor suggestions."""
from __future__ import annotations

import pytest

from app.core.dispatch.domain import GeoPoint, Job, VendorRecord
from app.core.dispatch.routing import haversine_km, rank_vendors, suggest_vendors

PICKUP = GeoPoint(lat=30.2672, lng=-97.7431)  # downtown Austin


def _vendor(vendor_id, lat, lng, **kwargs) -> VendorRecord:
    return VendorRecord(id=vendor_id, name=vendor_id.title(), location=GeoPoint(lat, lng), **kwargs)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_km(30.0, -97.0, 30.0, -97.0) == pytest.approx(0.0)

    def test_austin_to_san_antonio(self):
        # ~118 km great-circle
        km = haversine_km(30.2672, -97.7431, 29.4241, -98.4936)
        assert 110 < km < 125


class TestRankVendors:
    def test_sorted_by_distance(self):
        vendors = [
            _vendor("far", 30.5083, -97.6789),
            _vendor("near", 30.2700, -97.7400),
            _vendor("mid", 30.3500, -97.7000),
        ]
        ranked = rank_vendors(PICKUP, vendors, {}, top_n=3)
        assert [s.vendor_id for s in ranked] == ["near", "mid", "far"]
        assert ranked[0].distance_km == round(ranked[0].distance_km, 1)

    def test_backlog_breaks_ties(self):
        vendors = [
            _vendor("busy", 30.2700, -97.7400),
            _vendor("idle", 30.2700, -97.7400),
        ]
        ranked = rank_vendors(PICKUP, vendors, {"busy": 3}, top_n=2)
        assert [s.vendor_id for s in ranked] == ["idle", "busy"]
        assert ranked[1].backlog == 3

    def test_skips_inactive_and_unlocated(self):
        vendors = [
            _vendor("inactive", 30.27, -97.74, active=False),
            VendorRecord(id="nowhere", name="Nowhere"),
            _vendor("ok", 30.30, -97.70),
        ]
        assert [s.vendor_id for s in rank_vendors(PICKUP, vendors, {})] == ["ok"]

    def test_top_n_limits(self):
        vendors = [_vendor(f"v{i}", 30.27 + i / 100, -97.74) for i in range(6)]
        assert len(rank_vendors(PICKUP, vendors, {}, top_n=3)) == 3
        assert rank_vendors(PICKUP, vendors, {}, top_n=0) == []

    def test_paused_vendor_still_suggested_but_marked(self):
        ranked = rank_vendors(PICKUP, [_vendor("paused", 30.27, -97.74, updates_paused=True)], {})
        assert ranked[0].paused is True


class TestSuggestVendors:
    def test_only_unassigned_jobs_with_coordinates(self):
        jobs = [
            Job(id="open", pickup_address="A", pickup=PICKUP),
            Job(id="no-coords", pickup_address="B"),
            Job(id="taken", pickup_address="C", pickup=PICKUP, status="Assigned"),
        ]
        result = suggest_vendors(jobs, [_vendor("near", 30.27, -97.74)], {})
        assert [r.job_id for r in result] == ["open"]
        assert result[0].suggestions[0].vendor_id == "near"

    def test_no_vendors_gives_empty_suggestions(self):
        result = suggest_vendors([Job(id="open", pickup_address="A", pickup=PICKUP)], [], {})
        assert result[0].suggestions == []
