# tests/test_tokens.py
"""Tests for public link tokens: minting, resolving, expiry and revocation."""
import re
from datetime import datetime, timezone

import pytest

from app.core.dispatch.domain import Job, TokenScope
from app.core.dispatch.errors import TokenInvalidOrExpired
from app.core.dispatch.tokens import mint_token, new_token_value


class TestMint:
    def test_token_shape(self):
        value = new_token_value()
        assert re.fullmatch(r"[0-9a-f]{32}", value)
        assert new_token_value() != value

    def test_mint_sets_expiry_and_replaces(self):
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        job = Job(id="j1", pickup_address="A")

        first = mint_token(job, TokenScope.GUEST_TRACK, now=now, ttl_hours=2)
        second = mint_token(job, "guest_track", now=now, ttl_hours=0)

        assert (first.expires_at - now).total_seconds() == 7200
        assert second.expires_at is None
        assert job.token_value(TokenScope.GUEST_TRACK) == second.value

    @pytest.mark.asyncio
    async def test_links_minted_on_create(self, dispatch, customer, admin):
        public = await dispatch.jobs.create_job(pickup_address="Lamar and 5th", actor=customer)
        manual = await dispatch.jobs.create_job(pickup_address="Lamar and 6th", actor=admin)

        assert set(public.tokens) == {"guest_track", "vendor_bid", "customer_choose"}
        assert set(manual.tokens) == {"guest_track"}


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolves_matching_scope(self, dispatch, customer):
        job = await dispatch.jobs.create_job(pickup_address="I-35 exit 234", actor=customer)
        resolved = await dispatch.tokens.resolve(job.token_value(TokenScope.GUEST_TRACK), TokenScope.GUEST_TRACK)
        assert resolved.id == job.id

    @pytest.mark.asyncio
    async def test_wrong_scope_rejected(self, dispatch, customer):
        job = await dispatch.jobs.create_job(pickup_address="I-35 exit 234", actor=customer)
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.tokens.resolve(job.token_value(TokenScope.GUEST_TRACK), TokenScope.VENDOR_BID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, "", "0" * 32])
    async def test_unknown_or_empty_rejected(self, dispatch, value):
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.tokens.resolve(value, TokenScope.GUEST_TRACK)

    @pytest.mark.asyncio
    async def test_expired_rejected(self, dispatch, customer, clock):
        job = await dispatch.jobs.create_job(pickup_address="I-35 exit 234", actor=customer)
        clock.advance(hours=73)
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.jobs.track(job.token_value(TokenScope.GUEST_TRACK))


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoked_link_stops_working(self, dispatch, customer, admin):
        job = await dispatch.jobs.create_job(pickup_address="I-35 exit 234", actor=customer)
        vendor_token = job.token_value(TokenScope.VENDOR_BID)

        saved = await dispatch.tokens.revoke(job.id, TokenScope.VENDOR_BID, actor=admin)

        assert saved.tokens["vendor_bid"].revoked_at == dispatch.clock()
        assert saved.version == job.version + 1
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.bids.vendor_preview(vendor_token)
        # Other scopes are untouched
        assert (await dispatch.jobs.track(job.token_value(TokenScope.GUEST_TRACK))).id == job.id

    @pytest.mark.asyncio
    async def test_revoke_missing_scope(self, dispatch, admin):
        job = await dispatch.jobs.create_job(pickup_address="Hand dispatched", actor=admin)
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.tokens.revoke(job.id, TokenScope.VENDOR_BID, actor=admin)

    @pytest.mark.asyncio
    async def test_revoke_unknown_scope(self, dispatch, admin):
        job = await dispatch.jobs.create_job(pickup_address="Hand dispatched", actor=admin)
        with pytest.raises(TokenInvalidOrExpired):
            await dispatch.tokens.revoke(job.id, "everything", actor=admin)
