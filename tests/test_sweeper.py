"""
Tests for LifecycleSweeper.

Covers:
- run_once deletes expired dashboards and their channel / artifact
- dashboards with live viewers are excluded
- store errors are logged and the loop keeps running
- start / stop lifecycle
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from vidi_server.core.audit_log import EventType
from vidi_server.errors import StorageError
from vidi_server.lifecycle.sweeper import LifecycleSweeper
from vidi_server.models.dashboard import utcnow


def _expired(make_record, **kwargs):
    return make_record(ttl=1, last_accessed_at=utcnow() - timedelta(seconds=2), **kwargs)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_expired_dashboard_deleted(self, store, hub, make_record, _isolate_audit_logs):
        record = store.create(_expired(make_record))
        fresh = store.create(make_record(ttl=3600))
        sweeper = LifecycleSweeper(store, hub)

        deleted = await sweeper.run_once()

        assert deleted == [record.id]
        assert store.get(record.id) is None
        assert store.get(fresh.id) is not None
        assert sweeper.run_count == 1
        assert sweeper.total_deleted == 1
        assert sweeper.last_run is not None
        events = _isolate_audit_logs.query_events(event_types=[EventType.DASHBOARD_EXPIRED])
        assert [e["dashboard_id"] for e in events] == [record.id]

    @pytest.mark.asyncio
    async def test_active_viewer_keeps_dashboard(self, store, hub, make_record):
        record = store.create(_expired(make_record))
        hub.subscribe(record.id)

        deleted = await LifecycleSweeper(store, hub).run_once()

        assert deleted == []
        assert store.get(record.id) is not None

    @pytest.mark.asyncio
    async def test_viewer_left_then_swept(self, store, hub, make_record):
        record = store.create(_expired(make_record))
        sub = hub.subscribe(record.id)
        sweeper = LifecycleSweeper(store, hub)

        assert await sweeper.run_once() == []
        hub.unsubscribe(record.id, sub)
        assert await sweeper.run_once() == [record.id]

    @pytest.mark.asyncio
    async def test_channel_and_artifact_removed(self, store, hub, make_record):
        record = store.create(_expired(make_record))
        hub.broadcast(record.id, MagicMock())
        pipeline = MagicMock()

        await LifecycleSweeper(store, hub, pipeline).run_once()

        assert hub.current_seq(record.id) == 0
        pipeline.delete_artifact.assert_called_once_with(record.id)

    @pytest.mark.asyncio
    async def test_permanent_never_swept(self, store, hub, make_record):
        record = store.create(make_record(permanent=True,
                                          last_accessed_at=utcnow() - timedelta(days=30)))
        assert await LifecycleSweeper(store, hub).run_once() == []
        assert store.get(record.id) is not None


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_stop(self, store, hub):
        sweeper = LifecycleSweeper(store, hub, interval=60)
        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        assert sweeper.run_count == 1

        await sweeper.stop()
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_periodic_passes(self, store, hub, make_record):
        sweeper = LifecycleSweeper(store, hub, interval=0.05)
        await sweeper.start()
        await asyncio.sleep(0.02)
        record = store.create(_expired(make_record))

        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert sweeper.run_count >= 2
        assert store.get(record.id) is None

    @pytest.mark.asyncio
    async def test_store_errors_do_not_stop_loop(self, hub, caplog):
        store = MagicMock()
        store.purge_expired.side_effect = StorageError("database is locked")
        sweeper = LifecycleSweeper(store, hub, interval=0.02)

        await sweeper.start()
        await asyncio.sleep(0.15)
        assert sweeper.running
        await sweeper.stop()

        assert store.purge_expired.call_count >= 2
        assert "cleanup pass failed" in caplog.text

    @pytest.mark.asyncio
    async def test_initial_delay(self, store, hub):
        sweeper = LifecycleSweeper(store, hub, interval=60, initial_delay=60)
        await sweeper.start()
        await asyncio.sleep(0.05)
        assert sweeper.run_count == 0
        await sweeper.stop()
