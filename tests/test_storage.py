"""Tests for the record stores."""

import pytest

from matter_crawler.adapters.base import RecordDetail
from matter_crawler.storage import MemoryRecordStore, SQLiteRecordStore


def _detail(page_id, index, **kw):
    return RecordDetail(url=f"https://catalog.test/{page_id}-{index}", page_id=page_id, index_in_page=index, **kw)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        store = MemoryRecordStore()
    else:
        store = SQLiteRecordStore(str(tmp_path / "nested" / "products.sqlite"))
    yield store
    store.close()


class TestRecordStores:
    """Behaviour shared by every RecordStore."""

    def test_empty_summary(self, any_store):
        summary = any_store.summary()
        assert summary.count == 0
        assert summary.last_updated is None

    def test_save_counts_new_keys(self, any_store):
        assert any_store.save_details([_detail(0, 0), _detail(0, 1)]) == 2
        assert any_store.save_details([_detail(0, 1, model="v2"), _detail(1, 0)]) == 1

        summary = any_store.summary()
        assert summary.count == 3
        assert summary.last_updated is not None
        assert any_store.page_indices() == {0: {0, 1}, 1: {0}}

    def test_upsert_keeps_latest(self, any_store):
        any_store.save_details([_detail(2, 0, model="old")])
        any_store.save_details([_detail(2, 0, model="new")])
        assert [r.model for r in any_store.records()] == ["new"]


class TestSQLiteRecordStore:
    """SQLite-specific round trips."""

    def test_records_round_trip(self, tmp_path):
        store = SQLiteRecordStore(str(tmp_path / "db.sqlite"))
        detail = _detail(
            3, 1, id="csa-matter-3-1", vid=0x1387, pid=0x6011,
            application_categories=["Lighting", "Smart Home"],
        )
        store.save_details([detail])

        [loaded] = store.records()
        assert loaded == detail
        store.close()

    def test_in_memory_database(self):
        store = SQLiteRecordStore(":memory:")
        store.save_details([_detail(0, 0)])
        assert store.summary().count == 1
        store.close()
