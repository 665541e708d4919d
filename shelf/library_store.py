"""
Library store using SQLite.

One row per catalogued file, keyed by file path. The job engine and the
taxonomy engine only touch items through the update operations here:
content (tags + summary), master tags, raw tags.

Writes run in autocommit mode unless wrapped in ``run_in_transaction``,
in which case they join the enclosing transaction.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .tags import has_tag, split_tags
from .types import ERROR_PREFIX, SKIPPED_PREFIX, LibraryItem, epoch_ms, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields a user may edit by hand; editing one locks it against rescans
MANUAL_FIELDS = ("title", "author")

# Matches items still waiting for content processing
_NEEDS_CONTENT_SQL = "(content_scanned = 0 OR tags IS NULL OR tags = '')"

# Matches items carrying an error/skip sentinel or no tags at all
_FAILED_SQL = f"""(tags IS NULL OR tags = ''
    OR tags LIKE '{ERROR_PREFIX}%' OR tags LIKE '{SKIPPED_PREFIX}%')"""


class LibraryStore:
    """
    SQLite-backed store for library items.

    Safe to share between the HTTP request threads and the job worker
    thread: all access is serialized through one re-entrant lock.
    """

    def __init__(self, db_path: Path, key_chunk_size: int = 900):
        """
        Args:
            db_path: Path to SQLite database file
            key_chunk_size: Max keys per IN (...) query, below SQLite's parameter limit
        """
        self._db_path = db_path
        self._key_chunk_size = key_chunk_size
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        # WAL survives a crash mid-write without corrupting the file
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                filepath TEXT UNIQUE NOT NULL,
                title TEXT,
                author TEXT,
                publication_year INTEGER,
                tags TEXT,
                summary TEXT,
                created_at TEXT,
                metadata_scanned INTEGER DEFAULT 0,
                content_scanned INTEGER DEFAULT 0
            )
        """)
        self._migrate()

    def _migrate(self) -> None:
        """Add columns introduced after the first schema."""
        cursor = self._conn.execute("PRAGMA table_info(books)")
        columns = {row[1] for row in cursor.fetchall()}

        if "master_tags" not in columns:
            self._conn.execute("ALTER TABLE books ADD COLUMN master_tags TEXT")
            logger.info("Migration: added master_tags column")
        if "locked_fields" not in columns:
            self._conn.execute("ALTER TABLE books ADD COLUMN locked_fields TEXT DEFAULT '[]'")
            logger.info("Migration: added locked_fields column")

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def run_in_transaction(self, fn: Callable[["LibraryStore"], T]) -> T:
        """
        Run ``fn(store)`` atomically.

        Nested calls join the outermost transaction. Any exception rolls
        the whole transaction back and is re-raised.
        """
        with self._lock:
            outermost = self._tx_depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                result = fn(self)
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            self._tx_depth -= 1
            if outermost:
                self._conn.execute("COMMIT")
            return result

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add_item(self, filepath: str, *, title: Optional[str] = None,
                 author: Optional[str] = None, publication_year: Optional[int] = None,
                 metadata_scanned: bool = False) -> bool:
        """
        Insert an item if its path is new.

        Returns:
            True if inserted, False if the path was already catalogued
        """
        cursor = self._execute("""
            INSERT OR IGNORE INTO books
            (filepath, title, author, publication_year, created_at, metadata_scanned)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (filepath, title, author, publication_year, utc_now(), int(metadata_scanned)))
        return cursor.rowcount > 0

    def update_metadata(self, filepath: str, *, title: Optional[str] = None,
                        author: Optional[str] = None,
                        publication_year: Optional[int] = None) -> bool:
        """Set bibliographic metadata, skipping locked fields. Always marks metadata scanned."""
        with self._lock:
            item = self.get(filepath)
            if item is None:
                return False
            updates = ["publication_year = ?", "metadata_scanned = 1"]
            params: list = [publication_year]
            if "title" not in item.locked_fields:
                updates.append("title = ?")
                params.append(title)
            if "author" not in item.locked_fields:
                updates.append("author = ?")
                params.append(author)
            cursor = self._execute(
                f"UPDATE books SET {', '.join(updates)} WHERE filepath = ?",
                (*params, filepath),
            )
            return cursor.rowcount > 0

    def update_manual_field(self, filepath: str, field: str, value: str) -> bool:
        """
        Hand-edit a metadata field and lock it against automatic overwrite.

        Raises:
            ValueError: If ``field`` is not user-editable
        """
        if field not in MANUAL_FIELDS:
            raise ValueError(f"Invalid field: {field}")
        with self._lock:
            item = self.get(filepath)
            if item is None:
                return False
            locked = sorted(item.locked_fields | {field})
            self._execute(
                f"UPDATE books SET {field} = ?, locked_fields = ? WHERE filepath = ?",
                (value, json.dumps(locked), filepath),
            )
            return True

    def update_content(self, filepath: str, *, tags: Optional[str], summary: Optional[str]) -> None:
        """Write the tagging result (or a sentinel pair) and mark content scanned."""
        self._execute("""
            UPDATE books SET tags = ?, summary = ?, content_scanned = 1
            WHERE filepath = ?
        """, (tags, summary, filepath))

    def update_master_tags(self, filepath: str, master_tags: str) -> None:
        self._execute("UPDATE books SET master_tags = ? WHERE filepath = ?", (master_tags, filepath))

    def update_raw_tags(self, filepath: str, tags: str) -> None:
        self._execute("UPDATE books SET tags = ? WHERE filepath = ?", (tags, filepath))

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, filepath: str) -> Optional[LibraryItem]:
        row = self._execute("SELECT * FROM books WHERE filepath = ?", (filepath,)).fetchone()
        return LibraryItem.from_row(row) if row else None

    def list_items(self) -> list[LibraryItem]:
        rows = self._execute("SELECT * FROM books ORDER BY id").fetchall()
        return [LibraryItem.from_row(r) for r in rows]

    def find_unprocessed(self, limit: int = 50) -> list[LibraryItem]:
        """Next items needing content processing: metadata done, content not."""
        rows = self._execute(f"""
            SELECT * FROM books
            WHERE metadata_scanned = 1 AND {_NEEDS_CONTENT_SQL}
            ORDER BY id
            LIMIT ?
        """, (limit,)).fetchall()
        return [LibraryItem.from_row(r) for r in rows]

    def count_unprocessed(self) -> int:
        row = self._execute(f"""
            SELECT COUNT(*) FROM books
            WHERE metadata_scanned = 1 AND {_NEEDS_CONTENT_SQL}
        """).fetchone()
        return row[0]

    def find_by_keys(self, keys: list[str]) -> list[LibraryItem]:
        """
        Filter explicit keys down to items that still need processing.

        Unlike ``find_unprocessed``, items carrying an error/skip sentinel
        qualify, so a targeted scan retries them. Keys are queried in
        chunks to stay under SQLite's host-parameter limit. Result order
        follows ``keys``; unknown keys are dropped.
        """
        found: dict[str, LibraryItem] = {}
        size = self._key_chunk_size
        for start in range(0, len(keys), size):
            chunk = keys[start:start + size]
            placeholders = ",".join("?" * len(chunk))
            rows = self._execute(f"""
                SELECT * FROM books
                WHERE filepath IN ({placeholders})
                AND ({_NEEDS_CONTENT_SQL} OR {_FAILED_SQL})
            """, chunk).fetchall()
            for row in rows:
                found[row["filepath"]] = LibraryItem.from_row(row)
        return [found[k] for k in dict.fromkeys(keys) if k in found]

    def items_with_tags(self) -> list[LibraryItem]:
        """Items with real tags (sentinel-tagged items excluded)."""
        rows = self._execute(f"""
            SELECT * FROM books
            WHERE NOT {_FAILED_SQL}
            ORDER BY id
        """).fetchall()
        return [LibraryItem.from_row(r) for r in rows]

    def list_errors(self) -> list[LibraryItem]:
        """Items whose last content scan ended in an error or skip sentinel."""
        rows = self._execute(f"""
            SELECT * FROM books
            WHERE tags LIKE '{ERROR_PREFIX}%' OR tags LIKE '{SKIPPED_PREFIX}%'
            ORDER BY id
        """).fetchall()
        return [LibraryItem.from_row(r) for r in rows]

    def count(self) -> int:
        return self._execute("SELECT COUNT(*) FROM books").fetchone()[0]

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def reset_tag(self, tag: str) -> int:
        """
        Send every item carrying ``tag`` back to the unprocessed queue.

        Matching is on normalized tag form, so "sci fi" finds "Sci-Fi".

        Returns:
            Number of items reset
        """
        def reset(store: "LibraryStore") -> int:
            targets = [item.filepath for item in store.items_with_tags() if has_tag(item.tags, tag)]
            for filepath in targets:
                store._execute("""
                    UPDATE books SET content_scanned = 0, tags = NULL, summary = NULL
                    WHERE filepath = ?
                """, (filepath,))
            return len(targets)

        return self.run_in_transaction(reset)

    def reset_failed(self) -> int:
        """Clear content_scanned on failed/skipped/empty items so the default scan retries them."""
        cursor = self._execute(f"""
            UPDATE books SET content_scanned = 0
            WHERE content_scanned = 1 AND {_FAILED_SQL}
        """)
        return cursor.rowcount

    def add_tag_where_missing(self, child: str, parent: str) -> int:
        """
        Append ``parent`` to every item that has ``child`` but not ``parent``.

        Returns:
            Number of items changed
        """
        def apply(store: "LibraryStore") -> int:
            changed = 0
            for item in store.items_with_tags():
                if has_tag(item.tags, child) and not has_tag(item.tags, parent):
                    store.update_raw_tags(item.filepath, ", ".join([*split_tags(item.tags), parent]))
                    changed += 1
            return changed

        return self.run_in_transaction(apply)

    def export_errors(self, logs_dir: Path) -> tuple[int, Optional[Path]]:
        """
        Write a plain-text report of every failed or skipped item.

        Returns:
            (count, report path); the path is None when there is nothing to report
        """
        errors = self.list_errors()
        if not errors:
            return 0, None

        logs_dir.mkdir(parents=True, exist_ok=True)
        generated = datetime.now()
        report_path = logs_dir / f"scan_errors_{epoch_ms()}.txt"
        entries = [
            f"[{item.tags}] {Path(item.filepath).name}\n"
            f"Reason: {item.summary}\n"
            f"Path: {item.filepath}\n"
            f"{'-' * 40}"
            for item in errors
        ]
        header = (
            "SHELF - SCAN ERROR REPORT\n"
            f"Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"Total Issues: {len(errors)}\n\n"
        )
        report_path.write_text(header + "\n\n".join(entries), encoding="utf-8")
        logger.info("Exported %d errors to %s", len(errors), report_path)
        return len(errors), report_path

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
