"""Unit tests for the client database.

Tests transactions, the sync_state key-value table and maintenance helpers.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from fieldsync.database import CLIENT_TABLES, Database


class TestSchema:
    def test_creates_tables(self, client_db: Database) -> None:
        assert set(client_db.count_rows()) == set(CLIENT_TABLES)

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "nested" / "dir" / "client.db")
        try:
            assert (tmp_path / "nested" / "dir" / "client.db").exists()
        finally:
            db.close()

    def test_in_memory(self) -> None:
        db = Database(":memory:")
        try:
            assert db.count_rows()["queue_items"] == 0
        finally:
            db.close()


class TestTransaction:
    def test_commits(self, client_db: Database) -> None:
        with client_db.transaction() as conn:
            conn.execute("INSERT INTO sync_state (key, value) VALUES ('a', '1')")
        assert client_db.get_state("a") == "1"

    def test_rolls_back_on_error(self, client_db: Database) -> None:
        """Nothing from a failed block is kept."""
        with pytest.raises(RuntimeError):
            with client_db.transaction() as conn:
                conn.execute("INSERT INTO sync_state (key, value) VALUES ('a', '1')")
                raise RuntimeError("crash mid-write")
        assert client_db.get_state("a") is None

    def test_usable_after_rollback(self, client_db: Database) -> None:
        with pytest.raises(RuntimeError):
            with client_db.transaction():
                raise RuntimeError("boom")
        client_db.set_state("b", "2")
        assert client_db.get_state("b") == "2"


class TestSyncState:
    def test_set_get_overwrite_delete(self, client_db: Database) -> None:
        assert client_db.get_state("feed.cursor") is None
        assert client_db.get_state("feed.cursor", "none") == "none"
        client_db.set_state("feed.cursor", "e1")
        client_db.set_state("feed.cursor", "e2")
        assert client_db.get_state("feed.cursor") == "e2"
        client_db.set_state("feed.cursor", None)
        assert client_db.get_state("feed.cursor") is None

    def test_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "client.db"
        db = Database(path)
        db.set_state("feed.cursor", "e9")
        db.close()

        reopened = Database(path)
        try:
            assert reopened.get_state("feed.cursor") == "e9"
        finally:
            reopened.close()


class TestMaintenance:
    def test_file_size(self, client_db: Database) -> None:
        assert client_db.file_size_bytes() > 0

    def test_wipe(self, client_db: Database) -> None:
        client_db.set_state("feed.cursor", "e1")
        client_db.wipe()
        assert client_db.count_rows() == {table: 0 for table in CLIENT_TABLES}
