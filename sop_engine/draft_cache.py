"""
SOP Engine — Draft Cache

Local, synchronous persistence for in-flight execution state so an
operator can resume after a restart or while offline. One entry per
task, keyed task-exec-draft-{task_id}.

Entries are stored with a schema version. An entry whose version is
unknown or whose payload cannot be parsed is logged and treated as
absent; loading never raises.

Usage:
    from sop_engine.draft_cache import SQLiteDraftCache

    cache = SQLiteDraftCache(".sop_drafts.db")
    cache.save("task-1", DraftCacheEntry(evidence=[...], current_step_index=2))
    entry = cache.load("task-1")
    cache.clear("task-1")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path

from sop_engine.errors import DraftCacheError
from sop_engine.types import DraftCacheEntry

logger = logging.getLogger("sop_engine.draft_cache")

DRAFT_KEY_PREFIX = "task-exec-draft-"
SCHEMA_VERSION = 1


def draft_key(task_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}{task_id}"


def _decode(key: str, schema_version: int, payload: str) -> DraftCacheEntry | None:
    if schema_version != SCHEMA_VERSION:
        logger.warning("Ignoring draft %s with unknown schema version %s", key, schema_version)
        return None
    try:
        return DraftCacheEntry.from_json(payload)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning("Ignoring unreadable draft %s: %s", key, e)
        return None


# ═══════════════════════════════════════════════════════════════════
# Interface
# ═══════════════════════════════════════════════════════════════════

class DraftCache:
    """Abstract draft cache."""

    def save(self, task_id: str, entry: DraftCacheEntry) -> None:
        raise NotImplementedError

    def load(self, task_id: str) -> DraftCacheEntry | None:
        raise NotImplementedError

    def clear(self, task_id: str) -> None:
        raise NotImplementedError

    def list_keys(self) -> list[str]:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════

class MemoryDraftCache(DraftCache):
    """
    Process-local cache. Stores the serialized form so loads go through
    the same decode path as the SQLite backend.
    """

    def __init__(self):
        self._rows: dict[str, tuple[int, str]] = {}

    def save(self, task_id: str, entry: DraftCacheEntry) -> None:
        self._rows[draft_key(task_id)] = (SCHEMA_VERSION, entry.to_json())

    def put_raw(self, task_id: str, payload: str, schema_version: int = SCHEMA_VERSION) -> None:
        """Store a raw payload as-is (imports, recovery tooling)."""
        self._rows[draft_key(task_id)] = (schema_version, payload)

    def load(self, task_id: str) -> DraftCacheEntry | None:
        key = draft_key(task_id)
        row = self._rows.get(key)
        if row is None:
            return None
        return _decode(key, *row)

    def clear(self, task_id: str) -> None:
        self._rows.pop(draft_key(task_id), None)

    def list_keys(self) -> list[str]:
        return sorted(self._rows)


# ═══════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════

class SQLiteDraftCache(DraftCache):
    """Single-file SQLite cache. One row per draft key."""

    def __init__(self, path: str | Path = ".sop_drafts.db", busy_timeout: int = 5000):
        self.path = str(path)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={busy_timeout}")
        self._lock = threading.RLock()
        self._create_tables()
        logger.debug("Draft cache opened: %s", self.path)

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS drafts (
                key TEXT PRIMARY KEY,
                schema_version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
        """)
        self._conn.commit()

    def _write(self, sql: str, params: tuple) -> None:
        with self._lock:
            try:
                self._conn.execute(sql, params)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise DraftCacheError(f"Draft cache write failed: {e}") from e

    def save(self, task_id: str, entry: DraftCacheEntry) -> None:
        self.put_raw(task_id, entry.to_json())

    def put_raw(self, task_id: str, payload: str, schema_version: int = SCHEMA_VERSION) -> None:
        self._write(
            """INSERT INTO drafts (key, schema_version, payload, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   schema_version = excluded.schema_version,
                   payload = excluded.payload,
                   updated_at = excluded.updated_at""",
            (draft_key(task_id), schema_version, payload, time.time()),
        )

    def load(self, task_id: str) -> DraftCacheEntry | None:
        key = draft_key(task_id)
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT schema_version, payload FROM drafts WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning("Draft cache read failed for %s: %s", key, e)
            return None
        if row is None:
            return None
        return _decode(key, row["schema_version"], row["payload"])

    def load_raw(self, task_id: str) -> dict | None:
        """Row metadata and parsed payload, for inspection tooling."""
        with self._lock:
            row = self._conn.execute(
                "SELECT key, schema_version, payload, updated_at FROM drafts WHERE key = ?",
                (draft_key(task_id),),
            ).fetchone()
        if row is None:
            return None
        result = dict(row)
        try:
            result["payload"] = json.loads(result["payload"])
        except ValueError:
            pass
        return result

    def clear(self, task_id: str) -> None:
        self._write("DELETE FROM drafts WHERE key = ?", (draft_key(task_id),))

    def list_keys(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT key FROM drafts ORDER BY key").fetchall()
        return [r["key"] for r in rows]

    def close(self) -> None:
        self._conn.close()
