# tests/test_pg_stores.py
"""
Tests for the asyncpg-backed stores.

No database: ``safe_db_conn`` is patched to hand out an AsyncMock connection,
so these cover row mapping and the optimistic-write branches.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.dispatch.domain import Actor, Bid, Job, job_to_dict
from app.core.dispatch.errors import BiddingClosed, JobNotFound, StaleWrite
from app.core.notifications.models import Notification, NotificationState
from app.infra.pg_bid_ledger_async import AsyncPostgresBidLedger
from app.infra.pg_job_store_async import AsyncPostgresJobStore
from app.infra.pg_notification_store_async import AsyncPostgresNotificationStore

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _conn_factory(conn):
    @asynccontextmanager
    async def _safe_db_conn(*args, **kwargs):
        yield conn

    return _safe_db_conn


def _job_row(job: Job, version: int):
    doc = job_to_dict(job)
    doc.pop("version")
    return {"version": version, "doc": json.dumps(doc)}


class TestJobStore:
    @pytest.mark.asyncio
    async def test_create_returns_version_one(self):
        job = Job(id="j1", pickup_address="A", created_at=T0)
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=_job_row(job, 1))

        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            created = await AsyncPostgresJobStore().create(job)

        assert created.version == 1
        assert created.created_at == T0
        assert "INSERT INTO dispatch_jobs" in conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_save_bumps_version(self):
        job = Job(id="j1", pickup_address="A", created_at=T0, status="Assigned", version=3)
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=_job_row(job, 4))

        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            saved = await AsyncPostgresJobStore().save(job, expected_version=3)

        assert saved.version == 4
        assert saved.status == "Assigned"
        assert conn.fetchrow.call_args.args[2] == 3

    @pytest.mark.asyncio
    async def test_save_version_mismatch_is_stale(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=1)

        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            with pytest.raises(StaleWrite):
                await AsyncPostgresJobStore().save(Job(id="j1", pickup_address="A"), expected_version=2)

    @pytest.mark.asyncio
    async def test_save_missing_row(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=None)

        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            with pytest.raises(JobNotFound):
                await AsyncPostgresJobStore().save(Job(id="gone", pickup_address="A"), expected_version=1)

    @pytest.mark.asyncio
    async def test_count_backlog(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[
            {"assigned_vendor_id": "v1", "active_jobs": 2},
            {"assigned_vendor_id": "v2", "active_jobs": 1},
        ])

        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            assert await AsyncPostgresJobStore().count_backlog() == {"v1": 2, "v2": 1}

    @pytest.mark.asyncio
    async def test_get_by_empty_token_skips_query(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock()
        with patch("app.infra.pg_job_store_async.safe_db_conn", _conn_factory(conn)):
            assert await AsyncPostgresJobStore().get_by_token("") is None
        conn.fetchrow.assert_not_called()


class TestBidLedger:
    def _row(self, inserted, revision=1):
        return {
            "id": "b1", "job_id": "j1", "vendor_name": "Joe", "vendor_phone": "5125559999",
            "vendor_id": None, "eta_minutes": 20, "price": 95.5, "created_at": T0,
            "updated_at": None, "revision": revision, "inserted": inserted,
        }

    @pytest.mark.asyncio
    async def test_upsert_reports_creation(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=self._row(inserted=True))
        bid = Bid(id="b1", job_id="j1", vendor_name="Joe", vendor_phone="5125559999",
                  eta_minutes=20, price=95.5, created_at=T0)

        with patch("app.infra.pg_bid_ledger_async.safe_db_conn", _conn_factory(conn)):
            stored, created = await AsyncPostgresBidLedger().upsert(bid)

        assert created is True
        assert stored.price == 95.5
        assert "ON CONFLICT (job_id, vendor_phone)" in conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_upsert_existing(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=self._row(inserted=False, revision=2))
        bid = Bid(id="b-new", job_id="j1", vendor_name="Joe", vendor_phone="5125559999",
                  eta_minutes=15, price=95.5)

        with patch("app.infra.pg_bid_ledger_async.safe_db_conn", _conn_factory(conn)):
            stored, created = await AsyncPostgresBidLedger().upsert(bid)

        assert created is False
        assert stored.id == "b1"
        assert stored.revision == 2

    @pytest.mark.asyncio
    async def test_upsert_on_closed_job_writes_nothing(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        bid = Bid(id="b2", job_id="j1", vendor_name="Joe", vendor_phone="5125559999",
                  eta_minutes=5, price=999.0, created_at=T0)

        with patch("app.infra.pg_bid_ledger_async.safe_db_conn", _conn_factory(conn)):
            with pytest.raises(BiddingClosed):
                await AsyncPostgresBidLedger().upsert(bid)

        sql, *params = conn.fetchrow.call_args.args
        assert "FOR SHARE" in sql
        assert "selected_bid_id' IS NULL" in sql
        assert params[-1] == "Unassigned"

    @pytest.mark.asyncio
    async def test_count_fills_zeroes(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[{"job_id": "j1", "bids": 3}])

        with patch("app.infra.pg_bid_ledger_async.safe_db_conn", _conn_factory(conn)):
            counts = await AsyncPostgresBidLedger().count_for_jobs(["j1", "j2"])

        assert counts == {"j1": 3, "j2": 0}


class TestNotificationStore:
    @pytest.mark.asyncio
    async def test_missing_row_is_empty_state(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=None)
        with patch("app.infra.pg_notification_store_async.safe_db_conn", _conn_factory(conn)):
            state = await AsyncPostgresNotificationStore().load(Actor("customer", "c1"))
        assert state.notifications == []

    @pytest.mark.asyncio
    async def test_corrupt_row_discarded(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=json.dumps({"notifications": "nope"}))
        with patch("app.infra.pg_notification_store_async.safe_db_conn", _conn_factory(conn)):
            state = await AsyncPostgresNotificationStore().load(Actor("customer", "c1"))
        assert state == NotificationState()

    @pytest.mark.asyncio
    async def test_save_keys_by_recipient(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        state = NotificationState(
            notifications=[Notification(id="n1", created_at=T0.isoformat())],
            seen_keys={"k": T0.isoformat()},
        )
        with patch("app.infra.pg_notification_store_async.safe_db_conn", _conn_factory(conn)):
            await AsyncPostgresNotificationStore().save(Actor("vendor", "v1"), state)

        args = conn.execute.call_args.args
        assert args[1] == "vendor:v1"
        assert json.loads(args[2])["seen_keys"] == {"k": T0.isoformat()}

    @pytest.mark.asyncio
    async def test_update_locks_row_inside_transaction(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.fetchval = AsyncMock(return_value=json.dumps({"notifications": [], "seen_keys": {}}))
        opened = []

        @asynccontextmanager
        async def _safe_db_conn(*args, **kwargs):
            opened.append(kwargs)
            yield conn

        def mutate(state):
            state.seen_keys["k"] = T0.isoformat()
            return "accepted", True

        with patch("app.infra.pg_notification_store_async.safe_db_conn", _safe_db_conn):
            result = await AsyncPostgresNotificationStore().update(Actor("admin", "ops"), mutate)

        assert result == "accepted"
        assert opened == [{"autocommit": False}]
        insert_sql = conn.execute.call_args_list[0].args[0]
        assert "ON CONFLICT (recipient) DO NOTHING" in insert_sql
        assert "FOR UPDATE" in conn.fetchval.call_args.args[0]
        update_args = conn.execute.call_args_list[1].args
        assert update_args[0].lstrip().startswith("UPDATE dispatch_notifications")
        assert json.loads(update_args[2])["seen_keys"] == {"k": T0.isoformat()}

    @pytest.mark.asyncio
    async def test_update_without_change_skips_write(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)

        with patch("app.infra.pg_notification_store_async.safe_db_conn", _conn_factory(conn)):
            result = await AsyncPostgresNotificationStore().update(
                Actor("customer", "c1"), lambda state: (len(state.notifications), False)
            )

        assert result == 0
        # only the row-creating insert
        assert conn.execute.await_count == 1


class TestSchemaBootstrap:
    @pytest.mark.asyncio
    async def test_ensure_schema_runs_every_statement_in_one_transaction(self):
        from app.infra import db_async

        conn = MagicMock()
        conn.execute = AsyncMock()
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        conn.transaction.return_value.__aenter__ = AsyncMock()
        conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch.object(db_async, "_pool", pool):
            count = await db_async.ensure_schema()

        assert count == len(db_async.SCHEMA_STATEMENTS)
        assert conn.execute.await_count == count
        conn.transaction.assert_called_once()
        executed = " ".join(call.args[0] for call in conn.execute.call_args_list)
        for table in ("dispatch_jobs", "dispatch_bids", "dispatch_notifications"):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in executed

    @pytest.mark.asyncio
    async def test_db_conn_without_pool_raises(self):
        from app.infra import db_async

        with patch.object(db_async, "_pool", None):
            with pytest.raises(RuntimeError):
                async with db_async.db_conn():
                    pass
