"""
DHT Storage - Local key-value store of the Kademlia engine
==========================================================

[KADEMLIA] Key-value pairs held by this node:
- SQLite (aiosqlite) for persistence, ":memory:" for in-memory nodes
- TTL for automatic expiry
- republish bookkeeping to keep values alive in the network

[STORAGE] Rules:
- key = 160-bit SHA-1 of the user key
- value = any JSON value, serialized size up to MAX_VALUE_SIZE
- TTL = 24 hours by default
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiosqlite

from ..errors import StorageUnavailable

logger = logging.getLogger(__name__)


DEFAULT_TTL = 86400  # 24 hours
REPUBLISH_INTERVAL = 3600  # 60 minutes
MAX_VALUE_SIZE = 4096  # serialized JSON, must fit in one datagram
CLEANUP_INTERVAL = 300  # 5 minutes

KEY_SIZE = 20


@dataclass
class StoredValue:
    """
    One stored pair.

    [KADEMLIA]
    - key: 160-bit id
    - value: JSON value
    - publisher_id: node that published it
    - timestamp/ttl: expiry
    """

    key: bytes
    value: Any
    publisher_id: bytes
    timestamp: float = field(default_factory=time.time)
    ttl: int = DEFAULT_TTL

    @property
    def expires_at(self) -> float:
        return self.timestamp + self.ttl

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at

    @property
    def remaining_ttl(self) -> int:
        return max(0, int(self.expires_at - time.time()))


def encode_value(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


class DHTStorage:
    """
    Local DHT store backed by SQLite.

    [PERSISTENCE] Table dht_store:
    - key: BLOB PRIMARY KEY (20 bytes)
    - value: TEXT (JSON)
    - publisher_id: BLOB (20 bytes)
    - timestamp: REAL
    - ttl: INTEGER
    - last_republish: REAL
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        if self._db is not None:
            return

        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS dht_store (
                    key BLOB PRIMARY KEY,
                    value TEXT NOT NULL,
                    publisher_id BLOB NOT NULL,
                    timestamp REAL NOT NULL,
                    ttl INTEGER NOT NULL,
                    last_republish REAL
                )
            """)
            await self._db.execute("""
                CREATE INDEX IF NOT EXISTS idx_dht_expires
                ON dht_store(timestamp, ttl)
            """)
            await self._db.commit()
        except (aiosqlite.Error, OSError) as e:
            await self.close()
            raise StorageUnavailable(f"Cannot open DHT store {self.db_path}: {e}") from e

        logger.info(f"[DHT_STORAGE] Initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def store(
        self,
        key: bytes,
        value: Any,
        publisher_id: bytes,
        ttl: int = DEFAULT_TTL,
    ) -> bool:
        """
        Store or overwrite a pair.

        Returns:
            False when the key, publisher or value is rejected
        """
        if len(key) != KEY_SIZE or len(publisher_id) != KEY_SIZE:
            logger.warning(f"[DHT_STORAGE] Invalid key/publisher length: {len(key)}/{len(publisher_id)}")
            return False

        try:
            encoded = encode_value(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"[DHT_STORAGE] Value is not JSON serializable: {e}")
            return False

        if len(encoded) > MAX_VALUE_SIZE:
            logger.warning(f"[DHT_STORAGE] Value too large: {len(encoded)} > {MAX_VALUE_SIZE}")
            return False

        now = time.time()
        async with self._lock:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO dht_store
                (key, value, publisher_id, timestamp, ttl, last_republish)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (key, encoded, publisher_id, now, int(ttl), now),
            )
            await self._db.commit()

        logger.debug(f"[DHT_STORAGE] Stored: {key.hex()[:16]}... ({len(encoded)} bytes)")
        return True

    async def get(self, key: bytes) -> Optional[StoredValue]:
        """Live value for key, or None when missing/expired."""
        if len(key) != KEY_SIZE:
            return None

        async with self._lock:
            cursor = await self._db.execute("SELECT * FROM dht_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
            if not row:
                return None

            stored = self._row_to_value(row)
            if stored.is_expired:
                await self._db.execute("DELETE FROM dht_store WHERE key = ?", (key,))
                await self._db.commit()
                return None
            return stored

    async def delete(self, key: bytes) -> bool:
        async with self._lock:
            cursor = await self._db.execute("DELETE FROM dht_store WHERE key = ?", (key,))
            await self._db.commit()
            return cursor.rowcount > 0

    async def get_republish_values(self, interval: float = REPUBLISH_INTERVAL) -> List[StoredValue]:
        """
        Live values not republished within `interval` seconds.

        [KADEMLIA] Republishing keeps values on the k closest nodes as the
        network changes.
        """
        now = time.time()
        async with self._lock:
            cursor = await self._db.execute(
                """
                SELECT * FROM dht_store
                WHERE last_republish < ? AND timestamp + ttl > ?
                """,
                (now - interval, now),
            )
            rows = await cursor.fetchall()
        return [self._row_to_value(row) for row in rows]

    async def mark_republished(self, key: bytes) -> None:
        async with self._lock:
            await self._db.execute(
                "UPDATE dht_store SET last_republish = ? WHERE key = ?",
                (time.time(), key),
            )
            await self._db.commit()

    async def cleanup(self) -> int:
        """
        Delete expired pairs.

        Returns:
            number of removed rows
        """
        async with self._lock:
            cursor = await self._db.execute(
                "DELETE FROM dht_store WHERE timestamp + ttl <= ?",
                (time.time(),),
            )
            await self._db.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"[DHT_STORAGE] Cleanup: removed {deleted} expired entries")
        return deleted

    async def get_stats(self) -> Dict:
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT COUNT(*) AS count, SUM(LENGTH(value)) AS size FROM dht_store"
            )
            row = await cursor.fetchone()
        return {
            "total_entries": row["count"],
            "total_size_bytes": row["size"] or 0,
            "db_path": self.db_path,
        }

    @staticmethod
    def _row_to_value(row) -> StoredValue:
        return StoredValue(
            key=row["key"],
            value=json.loads(row["value"]),
            publisher_id=row["publisher_id"],
            timestamp=row["timestamp"],
            ttl=row["ttl"],
        )
