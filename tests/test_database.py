"""Tests for the SQLite persistence store."""

import pytest

from jma_watch.errors import PersistenceError


class TestFeedCursor:
    def test_missing_cursor_is_none(self, db):
        assert db.get_cursor("https://example/extra.xml#region") is None

    def test_set_cursor_creates_then_advances(self, db):
        db.set_cursor("feed#a", "Fri, 10 Jan 2025 00:00:00 GMT", "2025-01-10T00:00:00+00:00")
        db.set_cursor("feed#a", "Fri, 10 Jan 2025 00:10:00 GMT", "2025-01-10T00:10:00+00:00")

        cursor = db.get_cursor("feed#a")
        assert cursor["token"] == "Fri, 10 Jan 2025 00:10:00 GMT"
        assert len(db.get_cursors()) == 1


class TestReportArchive:
    def _insert(self, db, filename, retrieved_at, content=b"<Report/>", region="r"):
        return db.insert_archive(region, filename, None, content, f"hash-{filename}", retrieved_at)

    def test_latest_archive_by_retrieval_time(self, db):
        self._insert(db, "a.xml", "2025-01-10T00:00:00+00:00")
        self._insert(db, "b.xml", "2025-01-10T01:00:00+00:00")

        assert db.get_latest_archive("r")["filename"] == "b.xml"
        assert db.get_archive_by_filename("r", "a.xml")["filename"] == "a.xml"
        assert db.get_archive_by_filename("r", "c.xml") is None

    def test_touch_only_changes_freshness(self, db):
        archive_id = self._insert(db, "a.xml", "2025-01-10T00:00:00+00:00")

        db.touch_archive(archive_id, "2025-01-10T05:00:00+00:00")

        entry = db.get_latest_archive("r")
        assert entry["retrieved_at"] == "2025-01-10T00:00:00+00:00"
        assert entry["checked_at"] == "2025-01-10T05:00:00+00:00"

    def test_entries_listing_omits_content(self, db):
        self._insert(db, "a.xml", "2025-01-10T00:00:00+00:00")

        entries = db.get_archive_entries("r")

        assert "content" not in entries[0]
        assert entries[0]["parse_ok"] == 1

    def test_purge_keeps_newest_entry_per_region(self, db):
        self._insert(db, "old.xml", "2024-11-01T00:00:00+00:00")
        self._insert(db, "newer.xml", "2024-11-02T00:00:00+00:00")
        self._insert(db, "other.xml", "2024-11-01T00:00:00+00:00", region="s")

        purged = db.purge_archive("2025-01-01T00:00:00+00:00")

        assert purged == 1
        assert db.get_latest_archive("r")["filename"] == "newer.xml"
        assert db.get_latest_archive("s")["filename"] == "other.xml"


class TestCityWarning:
    def _insert(self, db, city="裾野市", kind="大雪注意報", status="issued"):
        return db.insert_warning("r", city, kind, "12", status, "発表", "a.xml", "2025-01-10T00:00:00+00:00")

    def test_only_one_live_row_per_tuple(self, db):
        self._insert(db)

        with pytest.raises(PersistenceError):
            self._insert(db)

    def test_soft_deleted_row_allows_new_live_row(self, db):
        first = self._insert(db)
        db.soft_delete_warning(first, "2025-01-10T01:00:00+00:00")

        self._insert(db)

        history = db.get_warning_history("r", "裾野市", "大雪注意報")
        assert [row["is_deleted"] for row in history] == [1, 0]

    def test_update_and_active_listing(self, db):
        warned = self._insert(db)
        cleared = self._insert(db, kind="雷注意報")
        db.update_warning(cleared, "cleared", "解除", "b.xml", "2025-01-10T01:00:00+00:00")
        db.touch_warning(warned, "b.xml", "2025-01-10T01:00:00+00:00")

        active = db.get_active_warnings("r")

        assert [row["kind"] for row in active] == ["大雪注意報"]
        assert active[0]["report_file"] == "b.xml"
        assert len(db.get_live_warnings("r")) == 2

    def test_cleared_history_only_lists_tuples_ending_in_clearance(self, db):
        snow = self._insert(db, status="cleared")
        db.soft_delete_warning(snow, "2025-01-10T01:00:00+00:00")
        thunder = self._insert(db, kind="雷注意報", status="cleared")
        db.soft_delete_warning(thunder, "2025-01-10T01:00:00+00:00")
        self._insert(db, kind="雷注意報")

        assert db.get_cleared_history("r") == [("裾野市", "大雪注意報")]

    def test_status_is_constrained(self, db):
        with pytest.raises(PersistenceError):
            self._insert(db, status="unknown")

    def test_purge_deleted_rows_before_cutoff(self, db):
        row = self._insert(db)
        db.soft_delete_warning(row, "2024-11-01T00:00:00+00:00")
        self._insert(db, kind="雷注意報")

        assert db.purge_deleted_warnings("2025-01-01T00:00:00+00:00") == 1
        assert len(db.get_live_warnings("r")) == 1


class TestTransaction:
    def test_commit(self, db):
        with db.transaction():
            db.set_cursor("feed#a", "t1", "2025-01-10T00:00:00+00:00")

        assert db.get_cursor("feed#a")["token"] == "t1"

    def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.set_cursor("feed#a", "t1", "2025-01-10T00:00:00+00:00")
                db.insert_warning("r", "裾野市", "大雪注意報", "12", "issued", "発表", None, "2025-01-10")
                raise RuntimeError("boom")

        assert db.get_cursor("feed#a") is None
        assert db.get_live_warnings("r") == []
        assert not db.in_transaction

    def test_error_after_sqlite_rolled_back_keeps_original_exception(self, db):
        with pytest.raises(PersistenceError, match="disk full"):
            with db.transaction():
                db.set_cursor("feed#a", "t1", "2025-01-10T00:00:00+00:00")
                # SQLite aborts the transaction itself on I/O and full-disk errors
                db._conn.execute("ROLLBACK")
                raise PersistenceError("disk full")

        assert db.get_cursor("feed#a") is None
        assert not db.in_transaction

        with db.transaction():
            db.set_cursor("feed#a", "t2", "2025-01-10T00:10:00+00:00")
        assert db.get_cursor("feed#a")["token"] == "t2"

    def test_nested_transaction_rejected(self, db):
        with db.transaction():
            with pytest.raises(PersistenceError):
                with db.transaction():
                    pass

    def test_summary_counts(self, db):
        db.insert_archive("r", "a.xml", None, b"x", "h", "2025-01-10", parse_ok=False, error="bad")

        summary = db.get_data_summary()

        assert summary["archived_reports"] == 1
        assert summary["failed_reports"] == 1
        assert summary["active_warnings"] == 0
