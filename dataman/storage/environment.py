"""
Embedded transactional key-value store on SQLite.

An Environment is one SQLite file holding a set of named tables. Each table is
an ordered byte-key to byte-value map. All access goes through transactions:

    >>> env = Environment("/var/lib/dataman/application.db", max_size_bytes=10**9)
    >>> with env.transaction(write=True) as txn:
    ...     names = txn.open_table("name_to_id")
    ...     names.put_str("tank/data", "6f1c...")

Invariants:
    - One SQLite file per environment
    - A transaction never spans two environments
    - A transaction either fully commits or fully rolls back
    - Keys are ordered by raw bytes (memcmp), like the cursor walks them
    - Table names are registered in the _tables catalog, bounded by max_tables

How to change safely:
    - Physical table layout is (key BLOB PRIMARY KEY, value BLOB) - do not add
      columns, add tables instead
    - Scalar encodings are fixed-width big-endian; changing them breaks every
      existing file
"""

from __future__ import annotations

import logging
import re
import sqlite3
import struct
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import KeyExistsError, StorageUnavailableError

logger = logging.getLogger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UINT = struct.Struct(">Q")
_FLOAT = struct.Struct(">d")

Key = str | bytes


def _key_bytes(key: Key) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    return bytes(key)


class Environment:
    """One file-backed transactional store with its own table set.

    Thread safety:
        Every transaction opens its own connection. Write transactions take
        the SQLite reserved lock on BEGIN, so two writers on the same file
        serialize; readers proceed concurrently in WAL mode.

    Attributes:
        path: Database file path
        max_size_bytes: Size ceiling enforced through max_page_count
        max_tables: Maximum number of named tables
    """

    CATALOG_TABLE = "_tables"

    def __init__(
        self,
        path: str | Path,
        max_size_bytes: int,
        max_tables: int = 25,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Open or create the environment file.

        Args:
            path: Database file path (parent directories are created)
            max_size_bytes: Size ceiling for the file
            max_tables: Maximum number of named tables
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode

        Raises:
            StorageUnavailableError: If the file cannot be created or opened
        """
        self.path = Path(path)
        self.max_size_bytes = max_size_bytes
        self.max_tables = max_tables
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(
                f"Cannot create directory for {self.path}: {e}", path=str(self.path)
            ) from e

        with self._connect() as conn:
            self._execute(
                conn,
                f"CREATE TABLE IF NOT EXISTS {self.CATALOG_TABLE} "
                "(name TEXT PRIMARY KEY) WITHOUT ROWID",
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the environment file."""
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # explicit transactions only
            )
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"Cannot open store {self.path}: {e}", path=str(self.path)
            ) from e

        try:
            self._execute(conn, f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                self._execute(conn, "PRAGMA journal_mode = WAL")
            self._execute(conn, "PRAGMA synchronous = FULL")
            page_size = self._execute(conn, "PRAGMA page_size").fetchone()[0]
            max_pages = max(1, self.max_size_bytes // page_size)
            self._execute(conn, f"PRAGMA max_page_count = {max_pages}")
            yield conn
        finally:
            conn.close()

    def _execute(
        self, conn: sqlite3.Connection, sql: str, params: tuple = ()
    ) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"Store {self.path} failed executing '{sql.split()[0]}': {e}",
                path=str(self.path),
            ) from e

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Transaction]:
        """Run a block inside one transaction.

        Leaving the block normally commits; any exception rolls back and
        propagates.

        Args:
            write: Whether the transaction may modify tables

        Yields:
            Transaction bound to this environment

        Raises:
            StorageUnavailableError: If the transaction cannot begin or commit
        """
        with self._connect() as conn:
            self._execute(conn, "BEGIN IMMEDIATE" if write else "BEGIN")
            txn = Transaction(self, conn, write)
            try:
                yield txn
            except BaseException:
                txn._close()
                self._rollback(conn)
                raise
            txn._close()
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageUnavailableError(
                    f"Commit failed for store {self.path}: {e}", path=str(self.path)
                ) from e

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # No transaction left open means SQLite already rolled back.
            logger.debug(f"Rollback on {self.path} was a no-op: {e}")

    def table_names(self) -> list[str]:
        """List the named tables of this environment."""
        with self.transaction() as txn:
            rows = txn._execute(f"SELECT name FROM {self.CATALOG_TABLE} ORDER BY name")
            return [row[0] for row in rows.fetchall()]

    def destroy(self) -> None:
        """Delete the environment file and its WAL sidecars.

        Missing files are ignored, so destroying twice is safe.
        """
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)
        logger.info(f"Destroyed store {self.path}")


class Transaction:
    """A single open transaction on one environment.

    Only valid inside the ``with env.transaction()`` block that created it.
    """

    def __init__(self, env: Environment, conn: sqlite3.Connection, writable: bool) -> None:
        self.env = env
        self.writable = writable
        self._conn = conn
        self._active = True

    def _close(self) -> None:
        self._active = False

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if not self._active:
            raise StorageUnavailableError(
                f"Transaction on {self.env.path} is no longer active", path=str(self.env.path)
            )
        return self.env._execute(self._conn, sql, params)

    def _require_writable(self) -> None:
        if not self.writable:
            raise StorageUnavailableError(
                f"Write attempted in read-only transaction on {self.env.path}",
                path=str(self.env.path),
            )

    def open_table(self, name: str, create: bool = True) -> Table:
        """Open a named table, creating it if allowed.

        Args:
            name: Table name (letters, digits, underscore)
            create: Create the table when it does not exist

        Returns:
            Table bound to this transaction

        Raises:
            StorageUnavailableError: If the table is missing and cannot be
                created, or the table limit is reached
        """
        if not _TABLE_NAME_RE.match(name) or name == Environment.CATALOG_TABLE:
            raise ValueError(f"Invalid table name: {name!r}")

        found = self._execute(
            f"SELECT 1 FROM {Environment.CATALOG_TABLE} WHERE name = ?", (name,)
        ).fetchone()
        if found is not None:
            return Table(self, name)

        if not create:
            raise StorageUnavailableError(
                f"Table '{name}' does not exist in {self.env.path}", path=str(self.env.path)
            )
        self._require_writable()

        count = self._execute(f"SELECT COUNT(*) FROM {Environment.CATALOG_TABLE}").fetchone()[0]
        if count >= self.env.max_tables:
            raise StorageUnavailableError(
                f"Store {self.env.path} already has {count} tables (max {self.env.max_tables})",
                path=str(self.env.path),
            )

        self._execute(
            f'CREATE TABLE IF NOT EXISTS "kv_{name}" '
            "(key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
        )
        self._execute(f"INSERT INTO {Environment.CATALOG_TABLE} (name) VALUES (?)", (name,))
        logger.debug(f"Created table {name} in {self.env.path}")
        return Table(self, name)


class Table:
    """Ordered byte-key to byte-value map inside one transaction."""

    def __init__(self, txn: Transaction, name: str) -> None:
        self.name = name
        self._txn = txn
        self._sql_name = f'"kv_{name}"'

    def get(self, key: Key) -> bytes | None:
        """Return the raw value for key, or None if absent."""
        row = self._txn._execute(
            f"SELECT value FROM {self._sql_name} WHERE key = ?", (_key_bytes(key),)
        ).fetchone()
        return None if row is None else bytes(row[0])

    def put(self, key: Key, value: bytes, no_overwrite: bool = False) -> None:
        """Store value under key.

        Args:
            key: Key to write
            value: Raw value bytes
            no_overwrite: Fail instead of replacing an existing value

        Raises:
            KeyExistsError: If no_overwrite is set and the key exists
        """
        self._txn._require_writable()
        raw_key = _key_bytes(key)
        if no_overwrite and raw_key in self:
            raise KeyExistsError(self.name, raw_key)
        self._txn._execute(
            f"INSERT OR REPLACE INTO {self._sql_name} (key, value) VALUES (?, ?)",
            (raw_key, bytes(value)),
        )

    def delete(self, key: Key) -> bool:
        """Delete key; returns whether a row was removed."""
        self._txn._require_writable()
        cursor = self._txn._execute(
            f"DELETE FROM {self._sql_name} WHERE key = ?", (_key_bytes(key),)
        )
        return cursor.rowcount > 0

    def __contains__(self, key: Key) -> bool:
        row = self._txn._execute(
            f"SELECT 1 FROM {self._sql_name} WHERE key = ?", (_key_bytes(key),)
        ).fetchone()
        return row is not None

    def __len__(self) -> int:
        return self._txn._execute(f"SELECT COUNT(*) FROM {self._sql_name}").fetchone()[0]

    def items(self) -> list[tuple[bytes, bytes]]:
        """All (key, value) pairs in key order."""
        rows = self._txn._execute(
            f"SELECT key, value FROM {self._sql_name} ORDER BY key"
        ).fetchall()
        return [(bytes(k), bytes(v)) for k, v in rows]

    def keys(self) -> list[bytes]:
        """All keys in order."""
        rows = self._txn._execute(f"SELECT key FROM {self._sql_name} ORDER BY key").fetchall()
        return [bytes(row[0]) for row in rows]

    def cursor(self) -> Cursor:
        """Create an unpositioned forward cursor over this table."""
        return Cursor(self)

    # Fixed-width scalar helpers

    def get_uint(self, key: Key) -> int | None:
        raw = self.get(key)
        return None if raw is None else _UINT.unpack(raw)[0]

    def put_uint(self, key: Key, value: int, no_overwrite: bool = False) -> None:
        self.put(key, _UINT.pack(value), no_overwrite=no_overwrite)

    def get_float(self, key: Key) -> float | None:
        raw = self.get(key)
        return None if raw is None else _FLOAT.unpack(raw)[0]

    def put_float(self, key: Key, value: float, no_overwrite: bool = False) -> None:
        self.put(key, _FLOAT.pack(value), no_overwrite=no_overwrite)

    def get_str(self, key: Key) -> str | None:
        raw = self.get(key)
        return None if raw is None else raw.decode("utf-8")

    def put_str(self, key: Key, value: str, no_overwrite: bool = False) -> None:
        self.put(key, value.encode("utf-8"), no_overwrite=no_overwrite)


class Cursor:
    """Forward cursor over a table, positioned by key.

    Each step re-queries for the next key after the last one visited, so
    deleting through the cursor never invalidates iteration.

    Example:
        >>> cursor = table.cursor()
        >>> for key, value in cursor:
        ...     if stale(key):
        ...         cursor.delete_current()
    """

    def __init__(self, table: Table) -> None:
        self._table = table
        self._key: bytes | None = None
        self._value: bytes | None = None
        self._anchor: bytes | None = None
        self._started = False

    @property
    def key(self) -> bytes | None:
        """Key at the current position (None when unpositioned)."""
        return self._key

    @property
    def value(self) -> bytes | None:
        """Value at the current position (None when unpositioned)."""
        return self._value

    def _load(self, where: str, params: tuple) -> bool:
        row = self._table._txn._execute(
            f"SELECT key, value FROM {self._table._sql_name} {where} ORDER BY key LIMIT 1",
            params,
        ).fetchone()
        self._started = True
        if row is None:
            self._key = None
            self._value = None
            return False
        self._key = bytes(row[0])
        self._value = bytes(row[1])
        self._anchor = self._key
        return True

    def first(self) -> bool:
        """Position on the smallest key; False when the table is empty."""
        return self._load("", ())

    def seek(self, key: Key) -> bool:
        """Position on the first key >= key; False when none exists."""
        return self._load("WHERE key >= ?", (_key_bytes(key),))

    def contains(self, key: Key) -> bool:
        """Position on key if present and report membership.

        The position is left unchanged when the key is absent.
        """
        raw_key = _key_bytes(key)
        value = self._table.get(raw_key)
        if value is None:
            return False
        self._key = raw_key
        self._value = value
        self._anchor = raw_key
        self._started = True
        return True

    def next(self) -> bool:
        """Advance to the next key; False at the end."""
        if self._anchor is None:
            if self._started:
                return False
            return self.first()
        return self._load("WHERE key > ?", (self._anchor,))

    def delete_current(self) -> None:
        """Delete the row under the cursor; iteration continues after it.

        Raises:
            StorageUnavailableError: If the cursor is not positioned
        """
        if self._key is None:
            raise StorageUnavailableError(
                f"Cursor on table '{self._table.name}' is not positioned",
                path=str(self._table._txn.env.path),
            )
        self._table.delete(self._key)
        self._key = None
        self._value = None

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        found = self._key is not None or self.next()
        while found:
            if self._key is not None and self._value is not None:
                yield self._key, self._value
            found = self.next()
