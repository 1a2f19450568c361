# tests/test_notification_engine.py
"""Tests for the notification dedupe / delivery engine and its models."""
from __future__ import annotations

import asyncio

import pytest

from app.core.dispatch.domain import Actor
from app.core.notifications.engine import NotificationEngine
from app.core.notifications.models import (
    NewBidMeta,
    OtherMeta,
    StatusChangeMeta,
    build_notification,
    normalize_notification,
    parse_meta,
)
from app.infra.memory_stores import InMemoryNotificationStore
from tests.conftest import RecordingChannel

ALICE = Actor(role="customer", id="alice")
BOB = Actor(role="customer", id="bob")


def _payload(key=None, title="Hello", **kwargs):
    return {"title": title, "body": "", "dedupe_key": key, **kwargs}


@pytest.fixture
def engine(clock, channel):
    return NotificationEngine(InMemoryNotificationStore(), channel, capacity=5, seen_keys_limit=4, clock=clock)


class TestModels:
    def test_known_kind_parsed(self):
        meta = parse_meta({"kind": "new_bid", "job_id": "j1", "bid_id": "b1", "price": 10})
        assert isinstance(meta, NewBidMeta)
        assert meta.price == 10

    def test_unknown_kind_falls_back(self):
        meta = parse_meta({"kind": "mystery", "foo": "bar"})
        assert isinstance(meta, OtherMeta)
        assert meta.kind == "mystery"

    def test_malformed_known_kind_falls_back(self):
        meta = parse_meta({"kind": "status_change"})  # no job_id
        assert isinstance(meta, OtherMeta)

    def test_non_mapping_meta(self):
        assert isinstance(parse_meta("junk"), OtherMeta)

    def test_normalize_defaults(self, clock):
        entry = normalize_notification({"title": "T", "created_at": "not a date", "read": True}, clock())
        assert entry.id
        assert entry.created_at == clock().isoformat()
        assert entry.read is False
        assert entry.severity == "info"

    def test_dedupe_key_from_meta(self, clock):
        entry = normalize_notification({"title": "T", "meta": {"dedupeKey": "k1"}}, clock())
        assert entry.dedupe_key == "k1"

    def test_build_notification_puts_key_on_meta(self):
        payload = build_notification(
            title="T", body="B",
            meta=StatusChangeMeta(job_id="j1", status="Assigned"),
            dedupe_key="customer:job:j1:status:Assigned",
        )
        assert payload["type"] == "status_change"
        assert payload["meta"].dedupe_key == "customer:job:j1:status:Assigned"


class TestPublish:
    @pytest.mark.asyncio
    async def test_same_key_stored_and_delivered_once(self, engine, channel):
        first = await engine.publish(ALICE, _payload("k1"))
        second = await engine.publish(ALICE, _payload("k1", title="Again"))

        assert first is not None
        assert second is None
        assert len(await engine.list(ALICE)) == 1
        assert len(channel.deliveries) == 1

    @pytest.mark.asyncio
    async def test_dedupe_is_per_recipient(self, engine):
        assert await engine.publish(ALICE, _payload("k1")) is not None
        assert await engine.publish(BOB, _payload("k1")) is not None

    @pytest.mark.asyncio
    async def test_keyless_entries_never_deduped(self, engine):
        await engine.publish(ALICE, _payload())
        await engine.publish(ALICE, _payload())
        assert len(await engine.list(ALICE)) == 2

    @pytest.mark.asyncio
    async def test_newest_first_and_capacity(self, engine, clock):
        for i in range(7):
            clock.advance(seconds=1)
            await engine.publish(ALICE, _payload(title=f"n{i}"))

        titles = [n.title for n in await engine.list(ALICE)]
        assert titles == ["n6", "n5", "n4", "n3", "n2"]

    @pytest.mark.asyncio
    async def test_seen_key_survives_eviction(self, engine):
        await engine.publish(ALICE, _payload("old"))
        for i in range(5):
            await engine.publish(ALICE, _payload())

        assert "old" not in {n.dedupe_key for n in await engine.list(ALICE)}
        assert await engine.publish(ALICE, _payload("old")) is None

    @pytest.mark.asyncio
    async def test_matched_key_moves_to_newest(self, engine):
        for key in ("a", "b", "c", "d"):
            await engine.publish(ALICE, _payload(key))
        assert await engine.publish(ALICE, _payload("a")) is None
        await engine.publish(ALICE, _payload("e"))

        state = await engine.store.load(ALICE)
        assert list(state.seen_keys) == ["c", "d", "a", "e"]
        assert await engine.publish(ALICE, _payload("a")) is None
        # "b" was never repeated, so it aged out
        assert await engine.publish(ALICE, _payload("b")) is not None

    @pytest.mark.asyncio
    async def test_recent_match_does_not_rewrite_state(self, engine):
        for key in ("a", "b", "c"):
            await engine.publish(ALICE, _payload(key))
        before = await engine.store.load(ALICE)

        assert await engine.publish(ALICE, _payload("c")) is None
        assert list((await engine.store.load(ALICE)).seen_keys) == list(before.seen_keys)

    @pytest.mark.asyncio
    async def test_standing_alert_survives_interleaved_traffic(self, clock, channel):
        engine = NotificationEngine(InMemoryNotificationStore(), channel, capacity=10, seen_keys_limit=50, clock=clock)
        standing = "admin:compliance:v1:missing:insurance"
        ops = Actor(role="admin", id="ops")

        await engine.publish(ops, _payload(standing))
        for i in range(200):
            await engine.publish(ops, _payload(f"admin:job:j{i}:created"))
            await engine.publish(ops, _payload(standing))

        delivered = [n for _, n in channel.deliveries if n.dedupe_key == standing]
        assert len(delivered) == 1

    @pytest.mark.asyncio
    async def test_same_id_replaces_entry(self, engine):
        await engine.publish(ALICE, _payload(id="n1", title="v1"))
        await engine.publish(ALICE, _payload(id="n1", title="v2"))
        entries = await engine.list(ALICE)
        assert [(n.id, n.title) for n in entries] == [("n1", "v2")]

    @pytest.mark.asyncio
    async def test_publish_many_one_pass(self, engine, channel):
        accepted = await engine.publish_many(ALICE, [_payload("x"), _payload("x"), _payload("y")])
        assert [n.dedupe_key for n in accepted] == ["x", "y"]
        assert [n.dedupe_key for _, n in channel.deliveries] == ["x", "y"]

    @pytest.mark.asyncio
    async def test_concurrent_publish_same_key(self, engine, channel):
        results = await asyncio.gather(*(engine.publish(ALICE, _payload("race")) for _ in range(5)))
        assert sum(1 for r in results if r is not None) == 1
        assert len(channel.deliveries) == 1

    @pytest.mark.asyncio
    async def test_engines_sharing_a_store_deliver_once(self, clock):
        class SlowLoadStore(InMemoryNotificationStore):
            async def load(self, recipient):
                await asyncio.sleep(0)
                return await super().load(recipient)

        store = SlowLoadStore()
        first, second = RecordingChannel(), RecordingChannel()
        engines = [NotificationEngine(store, ch, clock=clock) for ch in (first, second)]

        results = await asyncio.gather(*(engine.publish(ALICE, _payload("k")) for engine in engines))

        assert sum(1 for r in results if r is not None) == 1
        assert len(first.deliveries) + len(second.deliveries) == 1
        assert len((await store.load(ALICE)).notifications) == 1


class TestDeliveryFailures:
    @pytest.mark.asyncio
    async def test_raising_channel_does_not_lose_entry(self, clock):
        channel = RecordingChannel(error=RuntimeError("gateway down"))
        engine = NotificationEngine(InMemoryNotificationStore(), channel, clock=clock)

        entry = await engine.publish(ALICE, _payload("k1"))

        assert entry is not None
        assert len(await engine.list(ALICE)) == 1
        # Still deduped afterwards: no retry storm
        assert await engine.publish(ALICE, _payload("k1")) is None

    @pytest.mark.asyncio
    async def test_false_result_keeps_entry(self, clock):
        engine = NotificationEngine(InMemoryNotificationStore(), RecordingChannel(result=False), clock=clock)
        assert await engine.publish(ALICE, _payload("k1")) is not None

    @pytest.mark.asyncio
    async def test_no_channel_store_only(self, clock):
        engine = NotificationEngine(InMemoryNotificationStore(), None, clock=clock)
        assert await engine.publish(ALICE, _payload("k1")) is not None


class TestReadState:
    @pytest.mark.asyncio
    async def test_mark_read_and_counts(self, engine):
        a = await engine.publish(ALICE, _payload("a"))
        await engine.publish(ALICE, _payload("b"))

        assert await engine.unread_count(ALICE) == 2
        assert await engine.mark_read(ALICE, a.id) is True
        assert await engine.unread_count(ALICE) == 1
        assert await engine.mark_read(ALICE, "missing") is False

        assert await engine.mark_all_read(ALICE) == 1
        assert await engine.unread_count(ALICE) == 0

    @pytest.mark.asyncio
    async def test_clear_forgets_keys(self, engine):
        await engine.publish(ALICE, _payload("a"))
        await engine.clear_all(ALICE)

        assert await engine.list(ALICE) == []
        assert await engine.publish(ALICE, _payload("a")) is not None
