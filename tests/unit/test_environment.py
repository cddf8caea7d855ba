"""
Unit tests for the SQLite-backed transactional store.

Tests cover:
- Table creation and the table limit
- Commit and rollback
- No-overwrite writes
- Scalar encodings
- Cursor iteration, seek and delete-at-cursor
"""

import tempfile
from pathlib import Path

import pytest

from dataman.errors import KeyExistsError, StorageUnavailableError
from dataman.storage import Environment


class TestEnvironment:
    """Tests for Environment and Transaction."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def env(self, data_dir):
        return Environment(data_dir / "test.db", max_size_bytes=10**8, max_tables=4)

    def test_creates_file_and_parent_dirs(self, data_dir):
        """Opening creates the file, including missing parents."""
        env = Environment(data_dir / "nested" / "dir" / "x.db", max_size_bytes=10**8)

        assert env.path.exists()

    def test_open_table_creates_once(self, env):
        """Opening a table twice does not duplicate it."""
        with env.transaction(write=True) as txn:
            txn.open_table("names")
            txn.open_table("names")

        assert env.table_names() == ["names"]

    def test_missing_table_without_create(self, env):
        """create=False on a missing table raises."""
        with pytest.raises(StorageUnavailableError, match="does not exist"):
            with env.transaction() as txn:
                txn.open_table("missing", create=False)

    def test_table_limit(self, env):
        """Creating more than max_tables tables fails."""
        with env.transaction(write=True) as txn:
            for name in ("a", "b", "c", "d"):
                txn.open_table(name)

        with pytest.raises(StorageUnavailableError, match="max 4"):
            with env.transaction(write=True) as txn:
                txn.open_table("e")

    def test_invalid_table_name(self, env):
        with pytest.raises(ValueError):
            with env.transaction(write=True) as txn:
                txn.open_table("bad name; DROP")

    def test_commit_persists(self, env):
        """Values written in a committed transaction are visible later."""
        with env.transaction(write=True) as txn:
            txn.open_table("kv").put("k", b"v")

        with env.transaction() as txn:
            assert txn.open_table("kv").get("k") == b"v"

    def test_exception_rolls_back(self, env):
        """An exception inside the block discards every write."""
        with env.transaction(write=True) as txn:
            txn.open_table("kv").put("keep", b"1")

        with pytest.raises(RuntimeError):
            with env.transaction(write=True) as txn:
                table = txn.open_table("kv")
                table.put("lost", b"2")
                table.delete("keep")
                txn.open_table("new_table")
                raise RuntimeError("boom")

        with env.transaction() as txn:
            table = txn.open_table("kv")
            assert table.get("keep") == b"1"
            assert table.get("lost") is None
        assert env.table_names() == ["kv"]

    def test_write_in_read_transaction_fails(self, env):
        with env.transaction(write=True) as txn:
            txn.open_table("kv")

        with pytest.raises(StorageUnavailableError, match="read-only"):
            with env.transaction() as txn:
                txn.open_table("kv").put("k", b"v")

    def test_transaction_unusable_after_block(self, env):
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")

        with pytest.raises(StorageUnavailableError, match="no longer active"):
            table.get("k")

    def test_destroy_removes_file(self, env):
        env.destroy()
        env.destroy()

        assert not env.path.exists()


class TestTable:
    """Tests for Table operations."""

    @pytest.fixture
    def env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Environment(Path(tmpdir) / "t.db", max_size_bytes=10**8)

    def test_no_overwrite(self, env):
        """no_overwrite refuses to replace an existing value."""
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            table.put("k", b"first", no_overwrite=True)

            with pytest.raises(KeyExistsError) as exc_info:
                table.put("k", b"second", no_overwrite=True)

            assert exc_info.value.table == "kv"
            assert exc_info.value.key == b"k"
            assert table.get("k") == b"first"

    def test_overwrite_by_default(self, env):
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            table.put("k", b"first")
            table.put("k", b"second")

            assert table.get("k") == b"second"
            assert len(table) == 1

    def test_delete_reports_removal(self, env):
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            table.put("k", b"v")

            assert table.delete("k") is True
            assert table.delete("k") is False
            assert "k" not in table

    def test_str_and_bytes_keys_are_equivalent(self, env):
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            table.put("tank/data", b"v")

            assert b"tank/data" in table
            assert table.get(b"tank/data") == b"v"

    def test_scalar_helpers(self, env):
        """uint, float and str values round-trip with fixed encodings."""
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            table.put_uint("u", 2**40)
            table.put_float("f", 1.5)
            table.put_str("s", "tank/ü")

            assert table.get("u") == (2**40).to_bytes(8, "big")
            assert table.get_uint("u") == 2**40
            assert table.get_float("f") == 1.5
            assert table.get_str("s") == "tank/ü"
            assert table.get_uint("missing") is None

    def test_items_ordered_by_bytes(self, env):
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            for key in ("b", "a", "c"):
                table.put(key, key.encode())

            assert table.keys() == [b"a", b"b", b"c"]
            assert table.items()[0] == (b"a", b"a")


class TestCursor:
    """Tests for Cursor."""

    @pytest.fixture
    def env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            env = Environment(Path(tmpdir) / "c.db", max_size_bytes=10**8)
            with env.transaction(write=True) as txn:
                table = txn.open_table("kv")
                for key in ("a", "b", "c", "d"):
                    table.put(key, key.upper().encode())
            yield env

    def test_iterates_in_order(self, env):
        with env.transaction() as txn:
            rows = list(txn.open_table("kv").cursor())

        assert rows == [(b"a", b"A"), (b"b", b"B"), (b"c", b"C"), (b"d", b"D")]

    def test_seek(self, env):
        """seek positions on the first key >= target."""
        with env.transaction() as txn:
            cursor = txn.open_table("kv").cursor()

            assert cursor.seek("bb") is True
            assert cursor.key == b"c"
            assert cursor.next() is True
            assert cursor.key == b"d"
            assert cursor.next() is False
            assert cursor.seek("z") is False

    def test_contains_positions_cursor(self, env):
        with env.transaction() as txn:
            cursor = txn.open_table("kv").cursor()

            assert cursor.contains("b") is True
            assert cursor.value == b"B"
            assert cursor.contains("x") is False
            assert cursor.key == b"b"

    def test_delete_during_iteration(self, env):
        """Deleting at the cursor keeps iteration going."""
        with env.transaction(write=True) as txn:
            table = txn.open_table("kv")
            cursor = table.cursor()
            visited = []
            for key, _ in cursor:
                visited.append(key)
                if key in (b"a", b"c"):
                    cursor.delete_current()

            assert visited == [b"a", b"b", b"c", b"d"]
            assert table.keys() == [b"b", b"d"]

    def test_delete_unpositioned_raises(self, env):
        with env.transaction(write=True) as txn:
            cursor = txn.open_table("kv").cursor()

            with pytest.raises(StorageUnavailableError, match="not positioned"):
                cursor.delete_current()
