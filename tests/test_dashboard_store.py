"""
Tests for DashboardStore (SQLite persistence).

Covers:
- create / get / get_document / exists / count
- list filters, sorting, pagination; summaries carry no document
- replace keeps created_at, resets build status
- update_meta enforces the permanent/ttl invariant, never touches build status
- delete idempotence; ids are never reused
- touch, build status transitions
- expiry cleanup: expired, excluded, touched-before-sweep, permanent
- schema migration from a table without build columns
"""

import sqlite3
import threading
from datetime import timedelta

import pytest

from vidi_server.errors import ConflictError, NotFoundError, StorageError
from vidi_server.models.dashboard import (
    BuildStatus,
    ListQuery,
    MetaUpdate,
    utcnow,
)
from vidi_server.storage.dashboard_store import DashboardStore


def _stale(seconds: int):
    return utcnow() - timedelta(seconds=seconds)


class TestCreateAndGet:
    def test_create_then_get(self, store, make_record):
        record = store.create(make_record(xp_name="exp", user="ana", tags=["a", "b"]))
        fetched = store.get(record.id)
        assert fetched.id == record.id
        assert fetched.meta.xp_name == "exp"
        assert fetched.meta.tags == ["a", "b"]
        assert fetched.meta.created_at == record.meta.created_at
        assert fetched.document == record.document

    def test_get_missing(self, store):
        assert store.get("nope") is None
        assert store.get_document("nope") is None
        assert store.exists("nope") is False

    def test_get_does_not_touch(self, store, make_record):
        record = store.create(make_record(last_accessed_at=_stale(100)))
        store.get(record.id)
        assert store.get(record.id).meta.last_accessed_at == record.meta.last_accessed_at

    def test_get_document(self, store, make_record, sample_document):
        record = store.create(make_record())
        assert store.get_document(record.id) == sample_document

    def test_duplicate_id_conflicts(self, store, make_record):
        record = store.create(make_record())
        with pytest.raises(ConflictError):
            store.create(make_record(id=record.id))

    def test_permanent_round_trip(self, store, make_record):
        record = store.create(make_record(permanent=True))
        meta = store.get(record.id).meta
        assert meta.permanent is True
        assert meta.ttl is None

    def test_count(self, store, make_record):
        assert store.count() == 0
        store.create(make_record())
        store.create(make_record())
        assert store.count() == 2

    def test_unopenable_database(self, tmp_path):
        (tmp_path / "dir.db").mkdir()
        with pytest.raises(StorageError):
            DashboardStore(tmp_path / "dir.db")


class TestList:
    @pytest.fixture
    def populated(self, store, make_record):
        base = utcnow() - timedelta(hours=1)
        store.create(make_record(id="a", xp_name="x1", user="ana", tags=["gpu"],
                                 created_at=base, updated_at=base + timedelta(minutes=3)))
        store.create(make_record(id="b", xp_name="x1", user="bo", tags=["cpu", "gpu"],
                                 permanent=True, created_at=base + timedelta(minutes=1),
                                 updated_at=base + timedelta(minutes=1)))
        store.create(make_record(id="c", xp_name="x2", user="ana", tags=[],
                                 created_at=base + timedelta(minutes=2),
                                 updated_at=base + timedelta(minutes=2)))
        return store

    def test_default_order_updated_desc(self, populated):
        assert [s.id for s in populated.list()] == ["a", "c", "b"]

    def test_sort_created_asc(self, populated):
        ids = [s.id for s in populated.list(ListQuery(sort="created_at", order="asc"))]
        assert ids == ["a", "b", "c"]

    def test_filters_are_anded(self, populated):
        assert [s.id for s in populated.list(ListQuery(xp_name="x1", user="ana"))] == ["a"]

    def test_tag_filter(self, populated):
        assert {s.id for s in populated.list(ListQuery(tag="gpu"))} == {"a", "b"}
        assert populated.list(ListQuery(tag="gp")) == []

    def test_permanent_filter(self, populated):
        assert [s.id for s in populated.list(ListQuery(permanent=True))] == ["b"]
        assert {s.id for s in populated.list(ListQuery(permanent=False))} == {"a", "c"}

    def test_pagination(self, populated):
        ids = [s.id for s in populated.list(ListQuery(sort="created_at", order="asc", limit=2, offset=1))]
        assert ids == ["b", "c"]

    def test_summary_fields(self, populated):
        summary = populated.list(ListQuery(xp_name="x2"))[0]
        assert summary.plot_count == 2
        assert summary.build_status == BuildStatus.PENDING
        assert "document" not in summary.to_dict()


class TestReplace:
    def test_replace_keeps_created_at_and_resets_status(self, store, make_record):
        record = store.create(make_record(xp_name="old", created_at=_stale(600)))
        store.update_build_status(record.id, BuildStatus.BUILDING)
        store.update_build_status(record.id, BuildStatus.FAILED, "boom")

        new = make_record(id=record.id, document={"plots": []}, xp_name="new",
                          created_at=utcnow())
        replaced = store.replace(record.id, new)

        assert replaced.meta.xp_name == "new"
        assert replaced.document == {"plots": []}
        assert replaced.meta.created_at == record.meta.created_at
        assert replaced.meta.updated_at > record.meta.updated_at
        assert replaced.meta.build_status == BuildStatus.PENDING
        assert replaced.meta.build_error is None
        assert store.list()[0].plot_count == 0

    def test_replace_missing(self, store, make_record):
        with pytest.raises(NotFoundError):
            store.replace("nope", make_record())

    def test_concurrent_reads_see_whole_records(self, store, make_record):
        record = store.create(make_record(document={"v": 0, "plots": []}))
        seen = []

        def reader():
            for _ in range(50):
                r = store.get(record.id)
                seen.append((r.meta.xp_name, r.document["v"]))

        thread = threading.Thread(target=reader)
        thread.start()
        for i in range(1, 20):
            store.replace(record.id, make_record(id=record.id, xp_name=f"v{i}",
                                                 document={"v": i, "plots": []}))
        thread.join()

        for xp_name, version in seen:
            assert xp_name is None if version == 0 else xp_name == f"v{version}"


class TestUpdateMeta:
    def test_partial_update(self, store, make_record):
        record = store.create(make_record(xp_name="a", user="u"))
        updated = store.update_meta(record.id, MetaUpdate(tags=["t"]))
        assert updated.meta.xp_name == "a"
        assert updated.meta.tags == ["t"]
        assert updated.meta.updated_at > record.meta.updated_at

    def test_make_permanent_then_temporary(self, store, make_record):
        record = store.create(make_record(ttl=100))
        assert store.update_meta(record.id, MetaUpdate(permanent=True)).meta.ttl is None
        updated = store.update_meta(record.id, MetaUpdate(ttl=50))
        assert updated.meta.permanent is False
        assert updated.meta.ttl == 50

    def test_invalid_combination_leaves_record_unchanged(self, store, make_record):
        record = store.create(make_record(permanent=True))
        with pytest.raises(ConflictError):
            store.update_meta(record.id, MetaUpdate(permanent=False))
        assert store.get(record.id).meta.permanent is True

    def test_never_changes_build_status(self, store, make_record):
        record = store.create(make_record())
        store.update_build_status(record.id, BuildStatus.BUILDING)
        store.update_build_status(record.id, BuildStatus.READY)
        updated = store.update_meta(record.id, MetaUpdate(xp_name="z"))
        assert updated.meta.build_status == BuildStatus.READY

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_meta("nope", MetaUpdate(xp_name="z"))


class TestDelete:
    def test_delete_twice(self, store, make_record):
        record = store.create(make_record())
        assert store.delete(record.id) is True
        assert store.delete(record.id) is False
        assert store.get(record.id) is None

    def test_deleted_id_not_reused(self, store, make_record):
        record = store.create(make_record())
        store.delete(record.id)
        with pytest.raises(ConflictError):
            store.create(make_record(id=record.id))


class TestTouch:
    def test_touch_updates_last_accessed_only(self, store, make_record):
        record = store.create(make_record(last_accessed_at=_stale(100)))
        store.touch(record.id)
        meta = store.get(record.id).meta
        assert meta.last_accessed_at > record.meta.last_accessed_at
        assert meta.updated_at == record.meta.updated_at

    def test_touch_missing(self, store):
        with pytest.raises(NotFoundError):
            store.touch("nope")


class TestBuildStatus:
    def test_full_cycle(self, store, make_record):
        record = store.create(make_record())
        store.update_build_status(record.id, BuildStatus.BUILDING)
        store.update_build_status(record.id, BuildStatus.FAILED, "linker error")
        meta = store.get(record.id).meta
        assert meta.build_status == BuildStatus.FAILED
        assert meta.build_error == "linker error"

        store.update_build_status(record.id, BuildStatus.PENDING)
        meta = store.get(record.id).meta
        assert meta.build_status == BuildStatus.PENDING
        assert meta.build_error is None

    def test_does_not_bump_updated_at(self, store, make_record):
        record = store.create(make_record())
        store.update_build_status(record.id, BuildStatus.BUILDING)
        assert store.get(record.id).meta.updated_at == record.meta.updated_at

    def test_illegal_transition(self, store, make_record):
        record = store.create(make_record())
        with pytest.raises(ConflictError):
            store.update_build_status(record.id, BuildStatus.READY)

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_build_status("nope", BuildStatus.BUILDING)

    def test_interrupted_builds_marked_failed(self, store, make_record):
        building = store.create(make_record())
        idle = store.create(make_record())
        store.update_build_status(building.id, BuildStatus.BUILDING)

        assert store.fail_interrupted_builds() == 1
        assert store.get(building.id).meta.build_status == BuildStatus.FAILED
        assert "restart" in store.get(building.id).meta.build_error
        assert store.get(idle.id).meta.build_status == BuildStatus.PENDING


class TestCleanupExpired:
    def test_expired_dashboard_removed(self, store, make_record):
        record = store.create(make_record(ttl=1, last_accessed_at=_stale(2)))
        assert store.cleanup_expired([]) == 1
        assert store.get(record.id) is None

    def test_fresh_dashboard_kept(self, store, make_record):
        record = store.create(make_record(ttl=60))
        assert store.cleanup_expired([]) == 0
        assert store.get(record.id) is not None

    def test_excluded_ids_kept(self, store, make_record):
        record = store.create(make_record(ttl=1, last_accessed_at=_stale(2)))
        assert store.cleanup_expired([record.id]) == 0
        assert store.get(record.id) is not None

    def test_permanent_kept(self, store, make_record):
        record = store.create(make_record(permanent=True, last_accessed_at=_stale(10 ** 6)))
        assert store.cleanup_expired([]) == 0
        assert store.get(record.id) is not None

    def test_touch_before_sweep_survives(self, store, make_record):
        record = store.create(make_record(ttl=1, last_accessed_at=_stale(5)))
        store.touch(record.id)
        assert store.cleanup_expired([]) == 0
        assert store.get(record.id) is not None

    def test_purge_returns_ids_and_uses_now(self, store, make_record):
        a = store.create(make_record(ttl=10))
        b = store.create(make_record(ttl=1000))
        later = utcnow() + timedelta(seconds=100)
        assert store.purge_expired([], now=later) == [a.id]
        assert store.get(b.id) is not None

    def test_expired_ids_not_reused(self, store, make_record):
        record = store.create(make_record(ttl=1, last_accessed_at=_stale(2)))
        store.cleanup_expired([])
        with pytest.raises(ConflictError):
            store.create(make_record(id=record.id))


class TestMigration:
    def test_adds_build_columns_and_plot_count(self, tmp_path):
        db = tmp_path / "old.db"
        conn = sqlite3.connect(str(db))
        conn.execute("""
            CREATE TABLE dashboards (
                id TEXT PRIMARY KEY, xp_name TEXT, user TEXT,
                tags TEXT NOT NULL DEFAULT '[]', permanent INTEGER NOT NULL DEFAULT 0,
                ttl INTEGER, created_at TEXT NOT NULL, updated_at TEXT NOT NULL,
                last_accessed_at TEXT NOT NULL, dashboard_json TEXT NOT NULL
            )
        """)
        now = utcnow().isoformat()
        conn.execute(
            "INSERT INTO dashboards VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            ("old-1", "exp", None, '["t"]', 0, 3600, now, now, now, '{"plots": [{}, {}, {}]}'),
        )
        conn.commit()
        conn.close()

        store = DashboardStore(db)
        record = store.get("old-1")
        assert record.meta.build_status == BuildStatus.PENDING
        assert record.meta.tags == ["t"]
        assert store.list()[0].plot_count == 3

        # Opening again is a no-op
        DashboardStore(db)
        assert store.count() == 1
