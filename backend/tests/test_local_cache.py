import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from core.errors import StoreUnavailable
from models import Collection, Episode, StoreScope
from storage import ALL
from storage.local_cache import LocalCacheStore
from storage.remote import RemoteStore, SqliteDocumentStore
from storage.repository import DualStoreRepository


def _make_cache() -> LocalCacheStore:
    tmp = tempfile.mkdtemp()
    return LocalCacheStore(str(Path(tmp) / "cache.db"))


def _scope(collection: Collection, story_bible_id: str = "sb-1") -> StoreScope:
    return StoreScope(collection=collection, story_bible_id=story_bible_id)


class TestLegacyKeys(unittest.TestCase):
    def setUp(self):
        self.cache = _make_cache()

    def test_reads_legacy_prefix_when_canonical_missing(self):
        self.cache.set_item("scorched-episodes", json.dumps({"1": {"episodeNumber": 1, "title": "Old"}}))
        episode = asyncio.run(self.cache.get(_scope(Collection.EPISODES), "1"))
        self.assertEqual(episode["title"], "Old")
        self.assertEqual(episode["storyBibleId"], "sb-1")

    def test_canonical_takes_precedence(self):
        self.cache.set_item("reeled-episodes", json.dumps({"1": {"episodeNumber": 1, "title": "Reeled"}}))
        self.cache.set_item("greenlit-episodes", json.dumps({"1": {"episodeNumber": 1, "title": "Greenlit"}}))
        episode = asyncio.run(self.cache.get(_scope(Collection.EPISODES), "1"))
        self.assertEqual(episode["title"], "Greenlit")

    def test_writes_land_on_canonical_key(self):
        self.cache.set_item("scorched-episodes", json.dumps({"1": {"episodeNumber": 1}}))
        asyncio.run(self.cache.set(_scope(Collection.EPISODES), "2", {"episodeNumber": 2, "storyBibleId": "sb-1"}))
        canonical = json.loads(self.cache.get_item("greenlit-episodes"))
        self.assertEqual(set(canonical), {"1", "2"})

    def test_preproduction_variant_key(self):
        self.cache.set_item("greenlit-preproduction", json.dumps({"episode-1": {"type": "episode", "episodeNumber": 1}}))
        artifact = asyncio.run(self.cache.get(_scope(Collection.PREPRODUCTION), "episode-1"))
        self.assertEqual(artifact["episodeNumber"], 1)


class TestMalformedJson(unittest.TestCase):
    def test_malformed_blob_is_not_found(self):
        cache = _make_cache()
        cache.set_item("greenlit-episodes", "{not json")
        self.assertIsNone(asyncio.run(cache.get(_scope(Collection.EPISODES), "1")))
        self.assertEqual(asyncio.run(cache.items(_scope(Collection.EPISODES))), {})

    def test_malformed_canonical_falls_through_to_legacy(self):
        cache = _make_cache()
        cache.set_item("greenlit-episodes", "[]")
        cache.set_item("reeled-episodes", json.dumps({"3": {"episodeNumber": 3}}))
        self.assertIsNotNone(asyncio.run(cache.get(_scope(Collection.EPISODES), "3")))


class TestShapes(unittest.TestCase):
    def setUp(self):
        self.cache = _make_cache()

    def test_story_bible_wrapper(self):
        scope = _scope(Collection.STORY_BIBLE)
        asyncio.run(self.cache.set(scope, "sb-1", {"id": "sb-1", "title": "Neon", "creativeMode": "studio"}))
        raw = json.loads(self.cache.get_item("greenlit-story-bible"))
        self.assertEqual(raw["storyBible"]["title"], "Neon")
        self.assertEqual(raw["creativeMode"], "studio")
        self.assertEqual(asyncio.run(self.cache.get(scope, "sb-1"))["title"], "Neon")
        self.assertIsNone(asyncio.run(self.cache.get(_scope(Collection.STORY_BIBLE, "other"), "other")))

    def test_user_choices_list_overwrites_per_episode(self):
        scope = _scope(Collection.USER_CHOICES)
        asyncio.run(self.cache.set(scope, "1", {"episodeNumber": 1, "choiceId": "a", "storyBibleId": "sb-1"}))
        asyncio.run(self.cache.set(scope, "1", {"episodeNumber": 1, "choiceId": "b", "storyBibleId": "sb-1"}))
        raw = json.loads(self.cache.get_item("greenlit-user-choices"))
        self.assertEqual(len(raw), 1)
        self.assertEqual(asyncio.run(self.cache.get(scope, "1"))["choiceId"], "b")

    def test_entries_scoped_by_story_bible(self):
        asyncio.run(self.cache.set(_scope(Collection.PREPRODUCTION, "a"), "episode-1", {"storyBibleId": "a"}))
        asyncio.run(self.cache.set(_scope(Collection.PREPRODUCTION, "b"), "episode-2", {"storyBibleId": "b"}))
        entries = asyncio.run(self.cache.items(_scope(Collection.PREPRODUCTION, "a")))
        self.assertEqual(list(entries), ["episode-1"])

    def test_delete_all_only_touches_scope(self):
        asyncio.run(self.cache.set(_scope(Collection.EPISODES, "a"), "1", {"episodeNumber": 1, "storyBibleId": "a"}))
        asyncio.run(self.cache.set(_scope(Collection.EPISODES, "b"), "2", {"episodeNumber": 2, "storyBibleId": "b"}))
        removed = asyncio.run(self.cache.delete(_scope(Collection.EPISODES, "a"), ALL))
        self.assertEqual(removed, 1)
        self.assertTrue(self.cache.has_entries(Collection.EPISODES, "b"))
        self.assertFalse(self.cache.has_entries(Collection.EPISODES, "a"))

    def test_delete_single_key(self):
        scope = _scope(Collection.EPISODES)
        asyncio.run(self.cache.set(scope, "1", {"episodeNumber": 1, "storyBibleId": "sb-1"}))
        asyncio.run(self.cache.set(scope, "2", {"episodeNumber": 2, "storyBibleId": "sb-1"}))
        asyncio.run(self.cache.delete(scope, "1"))
        self.assertEqual(list(asyncio.run(self.cache.items(scope))), ["2"])

    def test_last_write_wins(self):
        scope = _scope(Collection.EPISODES)
        asyncio.run(self.cache.set(scope, "3", {"episodeNumber": 3, "title": "first"}))
        asyncio.run(self.cache.set(scope, "3", {"episodeNumber": 3, "title": "second"}))
        self.assertEqual(asyncio.run(self.cache.get(scope, "3")), {"episodeNumber": 3, "title": "second", "storyBibleId": "sb-1"})


class TestFilesystemErrors(unittest.TestCase):
    def test_os_errors_become_store_unavailable(self):
        cache = _make_cache()
        scope = _scope(Collection.EPISODES)
        with mock.patch.object(cache, "_connect", side_effect=PermissionError("read-only file system")):
            with self.assertRaises(StoreUnavailable):
                asyncio.run(cache.set(scope, "1", {"episodeNumber": 1}))
            with self.assertRaises(StoreUnavailable):
                asyncio.run(cache.items(scope))

    def test_authenticated_write_survives_local_disk_failure(self):
        cache = _make_cache()
        remote = RemoteStore(SqliteDocumentStore(str(cache.db_path.parent / "remote.db")))
        repository = DualStoreRepository(cache, remote, "user-1")
        episode = Episode(episode_number=1, story_bible_id="sb-1", generation_complete=True)
        with mock.patch.object(cache, "_connect", side_effect=OSError(28, "No space left on device")):
            result = asyncio.run(repository.save_episode(episode))
        self.assertTrue(result.remote_written)
        self.assertFalse(result.local_written)


if __name__ == "__main__":
    unittest.main()
