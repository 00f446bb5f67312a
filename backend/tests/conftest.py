import sys
from pathlib import Path

import pytest

_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from core.errors import StoreUnavailable  # noqa: E402
from storage.local_cache import LocalCacheStore  # noqa: E402
from storage.remote import DocumentStore, RemoteStore, SqliteDocumentStore  # noqa: E402
from storage.repository import DualStoreRepository  # noqa: E402


class DownDocumentStore(DocumentStore):
    """Remote backend that is unreachable for every call."""

    def __init__(self):
        self.calls = 0

    async def _fail(self):
        self.calls += 1
        raise StoreUnavailable("remote", "connection refused")

    async def get_document(self, path):
        await self._fail()

    async def set_document(self, path, data):
        await self._fail()

    async def list_documents(self, parent):
        await self._fail()

    async def delete_document(self, path):
        await self._fail()


class BrokenLocalCache(LocalCacheStore):
    """Local cache whose writes always fail."""

    async def set(self, scope, key, value):
        raise StoreUnavailable("local", "quota exceeded")


@pytest.fixture
def local_cache(tmp_path):
    return LocalCacheStore(str(tmp_path / "local_cache.db"))


@pytest.fixture
def documents(tmp_path):
    return SqliteDocumentStore(str(tmp_path / "remote_store.db"))


@pytest.fixture
def remote(documents):
    return RemoteStore(documents)


@pytest.fixture
def guest_repo(local_cache, remote):
    return DualStoreRepository(local_cache, remote, user_id=None)


@pytest.fixture
def user_repo(local_cache, remote):
    return DualStoreRepository(local_cache, remote, user_id="user-1")
