"""SQLite-backed key/value store with hash, set and list values."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence

import aiosqlite

_TABLES = ("kv_strings", "kv_hashes", "kv_sets", "kv_lists")


class KeyValueStore:
    """Persist strings, hashes, sets and lists addressed by string keys.

    Every mutating call commits before returning so that a caller that
    awaited a write can rely on it being durable.
    """

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv_strings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv_hashes (
                key TEXT NOT NULL,
                field TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (key, field)
            );

            CREATE TABLE IF NOT EXISTS kv_sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            );

            CREATE TABLE IF NOT EXISTS kv_lists (
                key TEXT NOT NULL,
                position INTEGER NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (key, position)
            );
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("KeyValueStore is not initialized")
        return self._connection

    async def _fetchall(
        self, sql: str, params: Sequence[object] = ()
    ) -> list[aiosqlite.Row]:
        cursor = await self._conn().execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _fetchone(
        self, sql: str, params: Sequence[object] = ()
    ) -> aiosqlite.Row | None:
        cursor = await self._conn().execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        row = await self._fetchone(
            "SELECT value FROM kv_strings WHERE key = ?", (key,)
        )
        return None if row is None else row["value"]

    async def set(self, key: str, value: str) -> None:
        connection = self._conn()
        await connection.execute(
            """
            INSERT INTO kv_strings(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        await connection.commit()

    async def set_many(self, items: Iterable[tuple[str, str]]) -> None:
        """Write several string keys in one transaction."""

        connection = self._conn()
        await connection.executemany(
            """
            INSERT INTO kv_strings(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            list(items),
        )
        await connection.commit()

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        """Return values for ``keys`` in the order requested."""

        if not keys:
            return []
        placeholders = ", ".join("?" for _ in keys)
        rows = await self._fetchall(
            f"SELECT key, value FROM kv_strings WHERE key IN ({placeholders})",
            tuple(keys),
        )
        found = {row["key"]: row["value"] for row in rows}
        return [found.get(key) for key in keys]

    async def exists(self, key: str) -> bool:
        for table in _TABLES:
            row = await self._fetchone(
                f"SELECT 1 FROM {table} WHERE key = ? LIMIT 1", (key,)
            )
            if row is not None:
                return True
        return False

    async def delete(self, *keys: str) -> int:
        """Delete keys of any type; return how many existed."""

        if not keys:
            return 0
        removed = 0
        for key in keys:
            if await self.exists(key):
                removed += 1
        connection = self._conn()
        placeholders = ", ".join("?" for _ in keys)
        for table in _TABLES:
            await connection.execute(
                f"DELETE FROM {table} WHERE key IN ({placeholders})", tuple(keys)
            )
        await connection.commit()
        return removed

    async def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix`` across every value type."""

        union = " UNION ".join(
            f"SELECT DISTINCT key FROM {table} WHERE substr(key, 1, ?) = ?"
            for table in _TABLES
        )
        params: list[object] = []
        for _ in _TABLES:
            params.extend([len(prefix), prefix])
        rows = await self._fetchall(f"{union} ORDER BY key", params)
        return [row["key"] for row in rows]

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hset(self, key: str, mapping: dict[str, object]) -> None:
        if not mapping:
            return
        connection = self._conn()
        await connection.executemany(
            """
            INSERT INTO kv_hashes(key, field, value) VALUES (?, ?, ?)
            ON CONFLICT(key, field) DO UPDATE SET value = excluded.value
            """,
            [(key, field, str(value)) for field, value in mapping.items()],
        )
        await connection.commit()

    async def hget(self, key: str, field: str) -> str | None:
        row = await self._fetchone(
            "SELECT value FROM kv_hashes WHERE key = ? AND field = ?",
            (key, field),
        )
        return None if row is None else row["value"]

    async def hgetall(self, key: str) -> dict[str, str]:
        rows = await self._fetchall(
            "SELECT field, value FROM kv_hashes WHERE key = ?", (key,)
        )
        return {row["field"]: row["value"] for row in rows}

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Increment an integer hash field in a single statement."""

        connection = self._conn()
        await connection.execute(
            """
            INSERT INTO kv_hashes(key, field, value) VALUES (?, ?, ?)
            ON CONFLICT(key, field) DO UPDATE
            SET value = CAST(CAST(kv_hashes.value AS INTEGER) + ? AS TEXT)
            """,
            (key, field, str(amount), amount),
        )
        await connection.commit()
        value = await self.hget(key, field)
        return int(value or 0)

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        connection = self._conn()
        cursor = await connection.executemany(
            "INSERT OR IGNORE INTO kv_sets(key, member) VALUES (?, ?)",
            [(key, member) for member in members],
        )
        added = cursor.rowcount
        await cursor.close()
        await connection.commit()
        return added

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        connection = self._conn()
        placeholders = ", ".join("?" for _ in members)
        cursor = await connection.execute(
            f"DELETE FROM kv_sets WHERE key = ? AND member IN ({placeholders})",
            (key, *members),
        )
        removed = cursor.rowcount
        await cursor.close()
        await connection.commit()
        return removed

    async def smembers(self, key: str) -> set[str]:
        rows = await self._fetchall(
            "SELECT member FROM kv_sets WHERE key = ?", (key,)
        )
        return {row["member"] for row in rows}

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def rpush(self, key: str, *values: str) -> int:
        """Append values to the list; return the new length."""

        connection = self._conn()
        row = await self._fetchone(
            "SELECT COALESCE(MAX(position), -1) AS last FROM kv_lists WHERE key = ?",
            (key,),
        )
        start = (row["last"] if row is not None else -1) + 1
        await connection.executemany(
            "INSERT INTO kv_lists(key, position, value) VALUES (?, ?, ?)",
            [(key, start + offset, value) for offset, value in enumerate(values)],
        )
        await connection.commit()
        return await self.llen(key)

    async def llen(self, key: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS size FROM kv_lists WHERE key = ?", (key,)
        )
        return int(row["size"]) if row is not None else 0

    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        """Return list values between ``start`` and ``stop`` inclusive.

        Negative indexes count from the end, as in Redis.
        """

        rows = await self._fetchall(
            "SELECT value FROM kv_lists WHERE key = ? ORDER BY position", (key,)
        )
        values = [row["value"] for row in rows]
        size = len(values)
        if start < 0:
            start = max(0, size + start)
        if stop < 0:
            stop = size + stop
        return values[start : stop + 1]

    async def lset(self, key: str, index: int, value: str) -> None:
        """Replace the element at ``index``; raise IndexError when absent."""

        size = await self.llen(key)
        if index < 0:
            index += size
        if index < 0 or index >= size:
            raise IndexError(f"list index {index} out of range for {key!r}")
        row = await self._fetchone(
            "SELECT position FROM kv_lists WHERE key = ? ORDER BY position LIMIT 1 OFFSET ?",
            (key, index),
        )
        assert row is not None
        connection = self._conn()
        await connection.execute(
            "UPDATE kv_lists SET value = ? WHERE key = ? AND position = ?",
            (value, key, row["position"]),
        )
        await connection.commit()

    async def lrem(self, key: str, value: str) -> int:
        """Remove every element equal to ``value``; return the count removed."""

        connection = self._conn()
        cursor = await connection.execute(
            "DELETE FROM kv_lists WHERE key = ? AND value = ?", (key, value)
        )
        removed = cursor.rowcount
        await cursor.close()
        await connection.commit()
        return removed


__all__ = ["KeyValueStore"]
