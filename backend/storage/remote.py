import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from core.errors import StoreUnavailable
from models import Collection, StoreScope
from storage import ALL, Store, key_matches

logger = logging.getLogger("serial.storage.remote")

DOC_ID_PREFIXES: Dict[Collection, str] = {
    Collection.EPISODES: "episode-",
    Collection.USER_CHOICES: "choice-",
    Collection.COMPLETED_ARCS: "arc-",
    Collection.PREPRODUCTION: "",
    Collection.GENERATION_JOBS: "",
}


def user_root(user_id: str) -> str:
    return f"users/{user_id}"


def story_bible_path(user_id: str, story_bible_id: str) -> str:
    return f"{user_root(user_id)}/storyBibles/{story_bible_id}"


def collection_path(scope: StoreScope) -> str:
    return f"{story_bible_path(scope.user_id, scope.story_bible_id)}/{scope.collection.value}"


def document_id(collection: Collection, key: str) -> str:
    return f"{DOC_ID_PREFIXES.get(collection, '')}{key}"


class DocumentStore:
    """Path-addressed JSON documents (``a/b/c/docId``) grouped by parent collection."""

    backend_name = "remote"

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def set_document(self, path: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def list_documents(self, parent: str) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    async def delete_document(self, path: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SqliteDocumentStore(DocumentStore):
    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
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
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    parent TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent)")
            conn.commit()

    def _get_sync(self, path: str) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute("SELECT data FROM documents WHERE path = ?", (path,)).fetchone()
        if not row:
            return None
        try:
            data = json.loads(row["data"])
        except ValueError:
            logger.warning("remote document unreadable path=%s", path)
            return None
        return data if isinstance(data, dict) else None

    def _set_sync(self, path: str, data: Dict[str, Any]) -> None:
        parent, _, doc_id = path.rpartition("/")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO documents (path, parent, doc_id, data, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (path, parent, doc_id, json.dumps(data, ensure_ascii=False), datetime.now().isoformat()),
            )
            conn.commit()

    def _list_sync(self, parent: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT doc_id, data FROM documents WHERE parent = ? ORDER BY doc_id",
                (parent,),
            ).fetchall()
        documents = []
        for row in rows:
            try:
                data = json.loads(row["data"])
            except ValueError:
                continue
            if isinstance(data, dict):
                documents.append((row["doc_id"], data))
        return documents

    def _delete_sync(self, path: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE path = ?", (path,))
            conn.commit()
            return cursor.rowcount > 0

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(self.backend_name, exc) from exc

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_sync, path)

    async def set_document(self, path: str, data: Dict[str, Any]) -> None:
        await self._run(self._set_sync, path, data)

    async def list_documents(self, parent: str) -> List[Tuple[str, Dict[str, Any]]]:
        return await self._run(self._list_sync, parent)

    async def delete_document(self, path: str) -> bool:
        return await self._run(self._delete_sync, path)


class HttpDocumentStore(DocumentStore):
    """
    REST document service client.

    ``GET/PUT/DELETE {base}/documents/{path}`` address single documents and
    ``GET {base}/collections/{path}`` returns ``{"documents": [{"id": ..., "data": {...}}]}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    @staticmethod
    def _quote(path: str) -> str:
        return quote(path, safe="/")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreUnavailable(self.backend_name, exc) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise StoreUnavailable(self.backend_name, f"HTTP {response.status_code}")

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/documents/{self._quote(path)}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError:
            logger.warning("remote document unreadable path=%s", path)
            return None
        return data if isinstance(data, dict) else None

    async def set_document(self, path: str, data: Dict[str, Any]) -> None:
        response = await self._request("PUT", f"/documents/{self._quote(path)}", json=data)
        self._raise_for_status(response)

    async def list_documents(self, parent: str) -> List[Tuple[str, Dict[str, Any]]]:
        response = await self._request("GET", f"/collections/{self._quote(parent)}")
        if response.status_code == 404:
            return []
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreUnavailable(self.backend_name, "collection payload is not JSON") from exc
        if not isinstance(payload, dict):
            raise StoreUnavailable(self.backend_name, f"unexpected collection payload: {type(payload).__name__}")
        documents = []
        for item in payload.get("documents") or []:
            if isinstance(item, dict) and isinstance(item.get("data"), dict):
                documents.append((str(item.get("id") or ""), item["data"]))
        return documents

    async def delete_document(self, path: str) -> bool:
        response = await self._request("DELETE", f"/documents/{self._quote(path)}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        return True

    async def close(self) -> None:
        await self._client.aclose()


class RemoteStore(Store):
    """
    Authoritative per-user store on top of a ``DocumentStore``.

    Documents live under ``users/{id}/storyBibles/{storyBibleId}/{collection}/{docId}``;
    the story bible itself is the ``storyBibles/{storyBibleId}`` document. Documents
    written by earlier clients under other ids are still found by field matching.
    """

    backend_name = "remote"

    def __init__(self, documents: DocumentStore):
        self.documents = documents

    @staticmethod
    def _require_user(scope: StoreScope) -> str:
        if not scope.user_id:
            raise ValueError("remote store requires an authenticated identity")
        return scope.user_id

    async def get(self, scope: StoreScope, key: str) -> Optional[Any]:
        user_id = self._require_user(scope)
        if scope.collection == Collection.STORY_BIBLE:
            return await self.documents.get_document(story_bible_path(user_id, scope.story_bible_id))

        parent = collection_path(scope)
        document = await self.documents.get_document(f"{parent}/{document_id(scope.collection, key)}")
        if document is not None:
            return document

        matches = [data for _, data in await self.documents.list_documents(parent) if key_matches(scope.collection, key, data)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "remote duplicate documents collection=%s key=%s count=%d using=latest",
                scope.collection.value,
                key,
                len(matches),
            )
        return max(matches, key=lambda data: str(data.get("lastModified") or data.get("lastUpdated") or ""))

    async def set(self, scope: StoreScope, key: str, value: Any) -> None:
        user_id = self._require_user(scope)
        if scope.collection == Collection.STORY_BIBLE:
            await self.documents.set_document(story_bible_path(user_id, scope.story_bible_id), value)
            return
        await self.documents.set_document(f"{collection_path(scope)}/{document_id(scope.collection, key)}", value)

    async def items(self, scope: StoreScope) -> Dict[str, Any]:
        user_id = self._require_user(scope)
        if scope.collection == Collection.STORY_BIBLE:
            document = await self.documents.get_document(story_bible_path(user_id, scope.story_bible_id))
            return {scope.story_bible_id: document} if document is not None else {}

        prefix = DOC_ID_PREFIXES.get(scope.collection, "")
        entries: Dict[str, Any] = {}
        for doc_id, data in await self.documents.list_documents(collection_path(scope)):
            key = self._key_for(scope.collection, doc_id, data, prefix)
            if key is None:
                continue
            owner = data.get("storyBibleId")
            if owner and owner != scope.story_bible_id:
                continue
            canonical = doc_id == document_id(scope.collection, key)
            if key in entries and not canonical:
                continue
            entries[key] = data
        return entries

    @staticmethod
    def _key_for(collection: Collection, doc_id: str, data: Dict[str, Any], prefix: str) -> Optional[str]:
        if prefix and doc_id.startswith(prefix):
            return doc_id[len(prefix):]
        if collection in (Collection.EPISODES, Collection.USER_CHOICES):
            number = data.get("episodeNumber")
            return str(number) if number is not None else None
        if collection == Collection.COMPLETED_ARCS:
            number = data.get("arcNumber")
            return str(number) if number is not None else None
        if collection == Collection.PREPRODUCTION:
            if data.get("type") == "arc" and data.get("arcIndex") is not None:
                return f"arc-{data['arcIndex']}"
            if data.get("episodeNumber") is not None:
                return f"episode-{data['episodeNumber']}"
            return doc_id or None
        return doc_id or None

    async def delete(self, scope: StoreScope, key: str = ALL) -> int:
        user_id = self._require_user(scope)
        if scope.collection == Collection.STORY_BIBLE:
            deleted = await self.documents.delete_document(story_bible_path(user_id, scope.story_bible_id))
            return 1 if deleted else 0

        parent = collection_path(scope)
        removed = 0
        for doc_id, data in await self.documents.list_documents(parent):
            if key != ALL and doc_id != document_id(scope.collection, key) and not key_matches(scope.collection, key, data):
                continue
            if await self.documents.delete_document(f"{parent}/{doc_id}"):
                removed += 1
        return removed
