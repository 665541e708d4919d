"""Tests for the SQLite library store."""

import sqlite3

import pytest

from shelf.library_store import LibraryStore


class TestItems:

    def test_add_is_idempotent(self, store):
        assert store.add_item("/lib/a.epub", title="A", metadata_scanned=True)
        assert not store.add_item("/lib/a.epub", title="Again")
        assert store.count() == 1
        assert store.get("/lib/a.epub").title == "A"

    def test_get_unknown(self, store):
        assert store.get("/nowhere.epub") is None

    def test_update_content_marks_scanned(self, store, add_items):
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="Robots", summary="About robots.")
        item = store.get("/lib/a.epub")
        assert (item.tags, item.summary, item.content_scanned) == ("Robots", "About robots.", True)

    def test_locked_fields_survive_metadata_update(self, store, add_items):
        add_items(store, "/lib/a.epub")
        store.update_manual_field("/lib/a.epub", "title", "My Title")
        store.update_metadata("/lib/a.epub", title="Scanned Title", author="Someone", publication_year=1999)

        item = store.get("/lib/a.epub")
        assert item.title == "My Title"
        assert item.author == "Someone"
        assert item.locked_fields == {"title"}

    def test_manual_field_whitelist(self, store, add_items):
        add_items(store, "/lib/a.epub")
        with pytest.raises(ValueError):
            store.update_manual_field("/lib/a.epub", "tags", "x")


class TestQueues:

    def test_find_unprocessed_requires_metadata(self, store, add_items):
        add_items(store, "/lib/a.epub")
        add_items(store, "/lib/b.epub", scanned=False)
        assert [i.filepath for i in store.find_unprocessed()] == ["/lib/a.epub"]
        assert store.count_unprocessed() == 1

    def test_sentinels_excluded_from_default_queue(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub", "/lib/c.epub")
        store.update_content("/lib/a.epub", tags="Error: Scan Failed", summary="boom")
        store.update_content("/lib/b.epub", tags="Skipped: No Content", summary="empty")
        assert [i.filepath for i in store.find_unprocessed()] == ["/lib/c.epub"]

    def test_find_unprocessed_limit_and_order(self, store, add_items):
        add_items(store, *[f"/lib/{n}.epub" for n in range(5)])
        assert [i.filepath for i in store.find_unprocessed(limit=2)] == ["/lib/0.epub", "/lib/1.epub"]

    def test_find_by_keys(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub", "/lib/c.epub", "/lib/d.epub")
        store.update_content("/lib/b.epub", tags="Robots", summary="done")
        store.update_content("/lib/c.epub", tags="Error: Parsing timed out (15s)", summary="x")

        found = store.find_by_keys(["/lib/d.epub", "/lib/c.epub", "/lib/b.epub", "/lib/a.epub", "/lib/zz.epub"])

        # processed item dropped, failed item retried, key order kept
        assert [i.filepath for i in found] == ["/lib/d.epub", "/lib/c.epub", "/lib/a.epub"]

    def test_find_by_keys_chunks(self, tmp_path):
        store = LibraryStore(tmp_path / "lib.db", key_chunk_size=3)
        keys = [f"/lib/{n:02d}.epub" for n in range(10)]
        for key in keys:
            store.add_item(key)
        assert [i.filepath for i in store.find_by_keys(keys)] == keys
        store.close()

    def test_items_with_tags_excludes_sentinels_and_empty(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub", "/lib/c.epub")
        store.update_content("/lib/a.epub", tags="Robots", summary="s")
        store.update_content("/lib/b.epub", tags="Skipped: No Content", summary="s")
        assert [i.filepath for i in store.items_with_tags()] == ["/lib/a.epub"]


class TestTransactions:

    def test_commit(self, store, add_items):
        add_items(store, "/lib/a.epub")
        store.run_in_transaction(lambda s: s.update_master_tags("/lib/a.epub", "Fiction"))
        assert store.get("/lib/a.epub").master_tags == "Fiction"

    def test_rollback_on_error(self, store, add_items):
        add_items(store, "/lib/a.epub")

        def fail(s):
            s.update_master_tags("/lib/a.epub", "Fiction")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            store.run_in_transaction(fail)
        assert store.get("/lib/a.epub").master_tags is None

    def test_nested_joins_outer(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")

        def outer(s):
            s.run_in_transaction(lambda inner: inner.update_master_tags("/lib/a.epub", "Fiction"))
            s.update_master_tags("/lib/b.epub", "Non-Fiction")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            store.run_in_transaction(outer)
        assert store.get("/lib/a.epub").master_tags is None
        assert store.get("/lib/b.epub").master_tags is None


class TestMaintenance:

    def test_reset_failed(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub", "/lib/c.epub")
        store.update_content("/lib/a.epub", tags="Error: Scan Failed", summary="boom")
        store.update_content("/lib/b.epub", tags="Skipped: No Content", summary="empty")
        store.update_content("/lib/c.epub", tags="Robots", summary="fine")

        assert store.reset_failed() == 2
        assert [i.filepath for i in store.find_unprocessed()] == ["/lib/a.epub", "/lib/b.epub"]
        assert store.get("/lib/a.epub").content_scanned is False

    def test_reset_tag_matches_normalized(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="Space-Opera, Robots", summary="s")
        store.update_content("/lib/b.epub", tags="Robots", summary="s")

        assert store.reset_tag("space opera") == 1
        assert store.get("/lib/a.epub").tags is None
        assert store.get("/lib/b.epub").tags == "Robots"

    def test_add_tag_where_missing(self, store, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="Dragons", summary="s")
        store.update_content("/lib/b.epub", tags="Dragons, fantasy", summary="s")

        assert store.add_tag_where_missing("dragons", "Fantasy") == 1
        assert store.get("/lib/a.epub").tags == "Dragons, Fantasy"
        assert store.get("/lib/b.epub").tags == "Dragons, fantasy"

    def test_export_errors(self, store, add_items, tmp_path):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="Error: Parsing timed out (15s)", summary="AI connection or processing failed.")
        store.update_content("/lib/b.epub", tags="Robots", summary="fine")

        count, path = store.export_errors(tmp_path / "logs")

        assert count == 1
        assert path.name.startswith("scan_errors_")
        report = path.read_text()
        assert report.startswith("SHELF - SCAN ERROR REPORT")
        assert "Total Issues: 1" in report
        assert "[Error: Parsing timed out (15s)] a.epub" in report
        assert "b.epub" not in report

    def test_export_errors_nothing_to_report(self, store, tmp_path):
        assert store.export_errors(tmp_path / "logs") == (0, None)
        assert not (tmp_path / "logs").exists()


def test_migrates_old_schema(tmp_path):
    db = tmp_path / "old.db"
    conn = sqlite3.connect(db)
    conn.execute("""
        CREATE TABLE books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filepath TEXT UNIQUE NOT NULL,
            title TEXT, author TEXT, publication_year INTEGER,
            tags TEXT, summary TEXT, created_at TEXT,
            metadata_scanned INTEGER DEFAULT 0, content_scanned INTEGER DEFAULT 0
        )
    """)
    conn.execute("INSERT INTO books (filepath, tags, metadata_scanned, content_scanned) VALUES ('/lib/a.epub', 'Robots', 1, 1)")
    conn.commit()
    conn.close()

    store = LibraryStore(db)
    item = store.get("/lib/a.epub")
    assert item.master_tags is None
    assert item.locked_fields == set()
    store.update_master_tags("/lib/a.epub", "Non-Fiction")
    assert store.get("/lib/a.epub").master_tags == "Non-Fiction"
    store.close()
