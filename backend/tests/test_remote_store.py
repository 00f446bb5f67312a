import json

import httpx
import pytest

from core.errors import StoreUnavailable
from models import Collection, Episode, StoreScope
from storage import ALL
from storage.remote import HttpDocumentStore, RemoteStore
from storage.repository import DualStoreRepository


def _scope(collection: Collection, user_id="user-1", story_bible_id="sb-1") -> StoreScope:
    return StoreScope(collection=collection, story_bible_id=story_bible_id, user_id=user_id)


@pytest.mark.asyncio
async def test_documents_live_under_user_and_story_bible(remote, documents):
    await remote.set(_scope(Collection.EPISODES), "2", {"episodeNumber": 2})
    stored = await documents.get_document("users/user-1/storyBibles/sb-1/episodes/episode-2")
    assert stored == {"episodeNumber": 2}

    await remote.set(_scope(Collection.STORY_BIBLE), "sb-1", {"id": "sb-1"})
    assert await documents.get_document("users/user-1/storyBibles/sb-1") == {"id": "sb-1"}


@pytest.mark.asyncio
async def test_users_are_isolated(remote):
    await remote.set(_scope(Collection.EPISODES, user_id="a"), "1", {"episodeNumber": 1})
    assert await remote.get(_scope(Collection.EPISODES, user_id="b"), "1") is None


@pytest.mark.asyncio
async def test_legacy_document_id_found_by_fields(remote, documents):
    parent = "users/user-1/storyBibles/sb-1/preproduction"
    await documents.set_document(f"{parent}/auto-id-1", {"type": "episode", "episodeNumber": 4, "status": "complete"})
    found = await remote.get(_scope(Collection.PREPRODUCTION), "episode-4")
    assert found["episodeNumber"] == 4

    items = await remote.items(_scope(Collection.PREPRODUCTION))
    assert list(items) == ["episode-4"]


@pytest.mark.asyncio
async def test_canonical_document_preferred_over_legacy(remote, documents):
    parent = "users/user-1/storyBibles/sb-1/episodes"
    await documents.set_document(f"{parent}/legacy", {"episodeNumber": 1, "title": "legacy"})
    await documents.set_document(f"{parent}/episode-1", {"episodeNumber": 1, "title": "canonical"})
    assert (await remote.get(_scope(Collection.EPISODES), "1"))["title"] == "canonical"
    assert (await remote.items(_scope(Collection.EPISODES)))["1"]["title"] == "canonical"


@pytest.mark.asyncio
async def test_delete_removes_canonical_and_legacy(remote, documents):
    parent = "users/user-1/storyBibles/sb-1/episodes"
    await documents.set_document(f"{parent}/legacy", {"episodeNumber": 1})
    await remote.set(_scope(Collection.EPISODES), "1", {"episodeNumber": 1})
    await remote.set(_scope(Collection.EPISODES), "2", {"episodeNumber": 2})

    assert await remote.delete(_scope(Collection.EPISODES), "1") == 2
    assert list(await remote.items(_scope(Collection.EPISODES))) == ["2"]
    assert await remote.delete(_scope(Collection.EPISODES), ALL) == 1


@pytest.mark.asyncio
async def test_identity_required(remote):
    with pytest.raises(ValueError):
        await remote.get(_scope(Collection.EPISODES, user_id=None), "1")


def _http_store(handler) -> HttpDocumentStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://docs.test")
    return HttpDocumentStore("http://docs.test", client=client)


@pytest.mark.asyncio
async def test_http_store_round_trip():
    saved = {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "PUT":
            saved[path.removeprefix("/documents/")] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})
        if request.method == "GET" and path.startswith("/documents/"):
            key = path.removeprefix("/documents/")
            if key not in saved:
                return httpx.Response(404)
            return httpx.Response(200, json=saved[key])
        if request.method == "GET" and path.startswith("/collections/"):
            parent = path.removeprefix("/collections/")
            docs = [
                {"id": key.rsplit("/", 1)[1], "data": value}
                for key, value in saved.items()
                if key.rsplit("/", 1)[0] == parent
            ]
            return httpx.Response(200, json={"documents": docs})
        return httpx.Response(405)

    remote = RemoteStore(_http_store(handler))
    await remote.set(_scope(Collection.EPISODES), "1", {"episodeNumber": 1, "title": "Pilot"})
    assert (await remote.get(_scope(Collection.EPISODES), "1"))["title"] == "Pilot"
    assert list(await remote.items(_scope(Collection.EPISODES))) == ["1"]
    assert await remote.get(_scope(Collection.EPISODES), "9") is None


@pytest.mark.asyncio
async def test_http_store_errors_become_store_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    store = _http_store(handler)
    with pytest.raises(StoreUnavailable):
        await store.get_document("users/u/storyBibles/sb")

    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    with pytest.raises(StoreUnavailable):
        await _http_store(failing).set_document("users/u/storyBibles/sb", {"id": "sb"})


@pytest.mark.asyncio
async def test_http_store_rejects_non_object_collection_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "episode-1", "data": {"episodeNumber": 1}}])

    with pytest.raises(StoreUnavailable):
        await _http_store(handler).list_documents("users/u/storyBibles/sb/episodes")

    def garbled(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>gateway</html>")

    with pytest.raises(StoreUnavailable):
        await _http_store(garbled).list_documents("users/u/storyBibles/sb/episodes")


@pytest.mark.asyncio
async def test_malformed_collection_falls_back_to_local(local_cache):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path.startswith("/collections/"):
            return httpx.Response(200, json=["not", "an", "object"])
        return httpx.Response(200, json={"ok": True})

    repository = DualStoreRepository(local_cache, RemoteStore(_http_store(handler)), "user-1")
    await repository.save_episode(Episode(episode_number=1, story_bible_id="sb-1", generation_complete=True))

    assert sorted(await repository.list_episodes("sb-1")) == [1]
