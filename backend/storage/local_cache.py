import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.aliases import canonical_key, namespace_keys
from core.errors import StoreUnavailable
from models import Collection, StoreScope
from storage import ALL, Store, belongs_to

logger = logging.getLogger("serial.storage.local")

# collection -> (namespace suffix, extra legacy suffixes, blob shape)
NAMESPACES: Dict[Collection, Tuple[str, Tuple[str, ...], str]] = {
    Collection.STORY_BIBLE: ("story-bible", (), "single"),
    Collection.EPISODES: ("episodes", (), "map"),
    Collection.PREPRODUCTION: ("preproduction-content", ("preproduction",), "map"),
    Collection.USER_CHOICES: ("user-choices", (), "list"),
    Collection.COMPLETED_ARCS: ("completed-arcs", (), "map"),
    Collection.GENERATION_JOBS: ("generation-jobs", (), "map"),
}


def _parse(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


class LocalCacheStore(Store):
    """
    Durable local cache laid out like a browser key/value cache.

    Each collection lives in one JSON blob under a fixed namespace key
    (``greenlit-episodes`` ...). Reads try the canonical key first and then the legacy
    ``scorched-``/``reeled-`` keys; writes always land on the canonical key. Blobs are
    read-modify-written without coordination, so concurrent writers race and the last
    write wins.
    """

    backend_name = "local"

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_items (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    # raw key/value primitives

    def get_item(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM cache_items WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_items (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, datetime.now().isoformat()),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> List[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT key FROM cache_items ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    # blob helpers

    def _namespace(self, collection: Collection) -> Tuple[List[str], str]:
        suffix, extras, shape = NAMESPACES[collection]
        return namespace_keys(suffix, extras), shape

    def _read_blob(self, collection: Collection) -> Tuple[Optional[str], Any]:
        keys, shape = self._namespace(collection)
        expected = list if shape == "list" else dict
        for key in keys:
            raw = self.get_item(key)
            if raw is None:
                continue
            blob = _parse(raw)
            if not isinstance(blob, expected):
                logger.warning("local cache key unreadable key=%s reason=malformed", key)
                continue
            return key, blob
        return None, None

    def _write_blob(self, collection: Collection, blob: Any) -> None:
        suffix, _, _ = NAMESPACES[collection]
        self.set_item(canonical_key(suffix), json.dumps(blob, ensure_ascii=False))

    # Store contract (sync halves)

    def _items_sync(self, scope: StoreScope) -> Dict[str, Any]:
        _, shape = self._namespace(scope.collection)
        _, blob = self._read_blob(scope.collection)
        if blob is None:
            return {}

        if shape == "single":
            bible = blob.get("storyBible") if isinstance(blob.get("storyBible"), dict) else blob
            bible_id = bible.get("id")
            if bible_id and bible_id != scope.story_bible_id:
                return {}
            payload = dict(bible)
            if blob.get("creativeMode") and "creativeMode" not in payload:
                payload["creativeMode"] = blob["creativeMode"]
            return {scope.story_bible_id: payload}

        if shape == "list":
            entries = {}
            for entry in blob:
                if not isinstance(entry, dict) or not belongs_to(entry, scope.story_bible_id):
                    continue
                number = entry.get("episodeNumber")
                if number is None:
                    continue
                entries[str(number)] = self._attribute(entry, scope.story_bible_id)
            return entries

        return {
            str(key): self._attribute(value, scope.story_bible_id)
            for key, value in blob.items()
            if belongs_to(value, scope.story_bible_id)
        }

    @staticmethod
    def _attribute(value: Any, story_bible_id: str) -> Any:
        if isinstance(value, dict) and not value.get("storyBibleId"):
            return {**value, "storyBibleId": story_bible_id}
        return value

    def _get_sync(self, scope: StoreScope, key: str) -> Optional[Any]:
        return self._items_sync(scope).get(str(key))

    def _set_sync(self, scope: StoreScope, key: str, value: Any) -> None:
        _, shape = self._namespace(scope.collection)
        _, blob = self._read_blob(scope.collection)

        if shape == "single":
            wrapper: Dict[str, Any] = {"storyBible": value}
            creative_mode = None
            if isinstance(value, dict):
                creative_mode = value.get("creativeMode")
            if not creative_mode and isinstance(blob, dict):
                creative_mode = blob.get("creativeMode")
            if creative_mode:
                wrapper["creativeMode"] = creative_mode
            self._write_blob(scope.collection, wrapper)
            return

        if shape == "list":
            entries = [
                entry
                for entry in (blob or [])
                if not (
                    isinstance(entry, dict)
                    and str(entry.get("episodeNumber")) == str(key)
                    and belongs_to(entry, scope.story_bible_id)
                )
            ]
            entries.append(value)
            self._write_blob(scope.collection, entries)
            return

        merged = dict(blob or {})
        merged[str(key)] = value
        self._write_blob(scope.collection, merged)

    def _delete_sync(self, scope: StoreScope, key: str) -> int:
        keys, shape = self._namespace(scope.collection)
        removed = 0
        for namespace_key in keys:
            raw = self.get_item(namespace_key)
            if raw is None:
                continue
            blob = _parse(raw)

            if shape == "single":
                if not isinstance(blob, dict):
                    continue
                bible = blob.get("storyBible") if isinstance(blob.get("storyBible"), dict) else blob
                if belongs_to({"storyBibleId": bible.get("id")}, scope.story_bible_id):
                    self.remove_item(namespace_key)
                    removed += 1
                continue

            if shape == "list" and isinstance(blob, list):
                kept = []
                for entry in blob:
                    doomed = belongs_to(entry, scope.story_bible_id) and (
                        key == ALL or (isinstance(entry, dict) and str(entry.get("episodeNumber")) == str(key))
                    )
                    if doomed:
                        removed += 1
                    else:
                        kept.append(entry)
                if len(kept) != len(blob):
                    self.set_item(namespace_key, json.dumps(kept, ensure_ascii=False))
                continue

            if shape == "map" and isinstance(blob, dict):
                kept_map = {}
                for entry_key, entry in blob.items():
                    doomed = belongs_to(entry, scope.story_bible_id) and (key == ALL or str(entry_key) == str(key))
                    if doomed:
                        removed += 1
                    else:
                        kept_map[entry_key] = entry
                if len(kept_map) != len(blob):
                    self.set_item(namespace_key, json.dumps(kept_map, ensure_ascii=False))
        return removed

    # Store contract

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(self.backend_name, exc) from exc

    async def get(self, scope: StoreScope, key: str) -> Optional[Any]:
        return await self._run(self._get_sync, scope, key)

    async def set(self, scope: StoreScope, key: str, value: Any) -> None:
        await self._run(self._set_sync, scope, key, value)

    async def items(self, scope: StoreScope) -> Dict[str, Any]:
        return await self._run(self._items_sync, scope)

    async def delete(self, scope: StoreScope, key: str = ALL) -> int:
        return await self._run(self._delete_sync, scope, key)

    def has_entries(self, collection: Collection, story_bible_id: Optional[str] = None) -> bool:
        keys, shape = self._namespace(collection)
        for namespace_key in keys:
            blob = _parse(self.get_item(namespace_key))
            if shape == "map" and isinstance(blob, dict):
                values = list(blob.values())
            elif shape == "list" and isinstance(blob, list):
                values = blob
            else:
                continue
            if story_bible_id is None and values:
                return True
            if any(belongs_to(value, story_bible_id) for value in values):
                return True
        return False
