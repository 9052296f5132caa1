"""
Local cache store.

Persistent key-value store for the content manifest, level metadata,
per-level question payloads, user progress, subscription status and sync
timestamps. Every write is committed to SQLite before returning and is
mirrored in memory, so reads are immediately consistent within the process
and never touch the disk except for question payloads.

Reads of absent keys return an empty sentinel (empty manifest, empty list,
inactive subscription, zero timestamp) instead of None.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import LevelMeta, LevelProgress, Manifest, SubscriptionSnapshot
from .storage import SQLiteStore

logger = logging.getLogger(__name__)

# Entry keys
KEY_MANIFEST = "manifest"
KEY_LEVELS_META = "levels_meta"
KEY_PROGRESS = "progress"
KEY_SUBSCRIPTION = "subscription"

# Metadata keys
META_LAST_SYNC = "last_sync_time"
META_LAST_CONTENT_SYNC = "last_content_sync_time"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalCache(SQLiteStore):
    """SQLite-backed content and progress cache with an in-memory mirror."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS level_questions (
        level_id TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        cached_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path):
        super().__init__(db_path)
        self._entries: dict[str, str] = {}
        self._metadata: dict[str, str] = {}
        self._question_ids: set[str] = set()
        self._levels_meta_count = 0
        self._load()

    def _load(self) -> None:
        """Populate the in-memory mirror from disk."""
        with self._get_connection() as conn:
            for row in conn.execute("SELECT key, data FROM cache_entries"):
                self._entries[row["key"]] = row["data"]
            for row in conn.execute("SELECT key, value FROM sync_metadata"):
                self._metadata[row["key"]] = row["value"]
            for row in conn.execute("SELECT level_id FROM level_questions"):
                self._question_ids.add(row["level_id"])

        self._levels_meta_count = len(self._read_list(KEY_LEVELS_META))
        logger.debug(
            f"Loaded cache from {self.db_path}: {len(self._entries)} entries, "
            f"{len(self._question_ids)} question payloads"
        )

    # === Raw entry helpers ===

    def _put_entry(self, key: str, data: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, data, updated_at) VALUES (?, ?, ?)",
                (key, data, _utcnow()),
            )
            conn.commit()
        self._entries[key] = data

    def _read_list(self, key: str) -> list:
        raw = self._entries.get(key)
        return json.loads(raw) if raw else []

    def _set_metadata(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_metadata (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, _utcnow()),
            )
            conn.commit()
        self._metadata[key] = value

    def _get_float_metadata(self, key: str) -> float:
        value = self._metadata.get(key)
        if value is None:
            return 0.0
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Ignoring corrupt metadata value for {key}: {value!r}")
            return 0.0

    # === Manifest ===

    def get_manifest(self) -> Manifest:
        raw = self._entries.get(KEY_MANIFEST)
        if not raw:
            return Manifest.empty()
        return Manifest.model_validate_json(raw)

    def has_manifest(self) -> bool:
        return KEY_MANIFEST in self._entries

    def set_manifest(self, manifest: Manifest) -> None:
        self._put_entry(KEY_MANIFEST, manifest.to_json())
        logger.debug(f"Cached manifest published at {manifest.published_at}")

    # === Levels meta ===

    def get_levels_meta(self) -> list[LevelMeta]:
        return [LevelMeta.model_validate(item) for item in self._read_list(KEY_LEVELS_META)]

    def set_levels_meta(self, levels: list[LevelMeta]) -> None:
        self._put_entry(KEY_LEVELS_META, json.dumps([level.to_wire() for level in levels]))
        self._levels_meta_count = len(levels)
        logger.debug(f"Cached metadata for {len(levels)} levels")

    def levels_meta_count(self) -> int:
        return self._levels_meta_count

    # === Questions ===

    def get_questions(self, level_id: str) -> Any:
        """Get the cached payload for a level, or an empty dict."""
        if level_id not in self._question_ids:
            return {}
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM level_questions WHERE level_id = ?",
                (level_id,),
            ).fetchone()
        return json.loads(row["data"]) if row else {}

    def get_questions_for(self, level_id: str, difficulty: str) -> list:
        """Get the cached question list for one difficulty of a level."""
        payload = self.get_questions(level_id)
        if not isinstance(payload, dict):
            return []
        questions = payload.get("questions") or {}
        if not isinstance(questions, dict):
            return []
        return list(questions.get(difficulty) or [])

    def set_questions(self, level_id: str, payload: Any) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO level_questions (level_id, data, cached_at) VALUES (?, ?, ?)",
                (level_id, json.dumps(payload), _utcnow()),
            )
            conn.commit()
        self._question_ids.add(level_id)

    def has_questions(self, level_id: str) -> bool:
        """Whether a payload is cached for the level, regardless of version."""
        return level_id in self._question_ids

    def cached_level_ids(self) -> set[str]:
        return set(self._question_ids)

    # === Progress ===

    def get_progress(self) -> list[LevelProgress]:
        return [LevelProgress.model_validate(item) for item in self._read_list(KEY_PROGRESS)]

    def set_progress(self, progress: list[LevelProgress]) -> None:
        self._put_entry(KEY_PROGRESS, json.dumps([p.to_wire() for p in progress]))

    # === Subscription ===

    def get_subscription(self) -> SubscriptionSnapshot:
        raw = self._entries.get(KEY_SUBSCRIPTION)
        if not raw:
            return SubscriptionSnapshot.inactive()
        return SubscriptionSnapshot.model_validate_json(raw)

    def set_subscription(self, subscription: SubscriptionSnapshot) -> None:
        self._put_entry(KEY_SUBSCRIPTION, subscription.to_json())

    # === Sync timestamps ===

    def get_last_sync_time(self) -> float:
        return self._get_float_metadata(META_LAST_SYNC)

    def set_last_sync_time(self, timestamp: float) -> None:
        self._set_metadata(META_LAST_SYNC, repr(float(timestamp)))

    def get_last_content_sync_time(self) -> float:
        return self._get_float_metadata(META_LAST_CONTENT_SYNC)

    def set_last_content_sync_time(self, timestamp: float) -> None:
        self._set_metadata(META_LAST_CONTENT_SYNC, repr(float(timestamp)))

    # === Maintenance ===

    def clear_all(self) -> None:
        """Wipe every cached entity and sync timestamp."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM cache_entries")
            conn.execute("DELETE FROM level_questions")
            conn.execute("DELETE FROM sync_metadata")
            conn.commit()
        self._entries.clear()
        self._metadata.clear()
        self._question_ids.clear()
        self._levels_meta_count = 0
        logger.info("Local cache cleared")
