import asyncio
import json

import pytest

from core.errors import ResourceNotFound, StoreUnavailable
from models import (
    Collection,
    Episode,
    PreProductionArtifact,
    Scene,
    StoryBible,
    UserChoice,
)
from storage.remote import RemoteStore
from storage.repository import DualStoreRepository

from conftest import BrokenLocalCache, DownDocumentStore


def _episode(number: int, story_bible_id: str = "sb-1", **kwargs) -> Episode:
    fields = {
        "title": f"Episode {number}",
        "scenes": [Scene(scene_number=1, content=f"scene for {number}")],
        "generation_complete": True,
        "generation_type": "standard",
    }
    fields.update(kwargs)
    return Episode(episode_number=number, story_bible_id=story_bible_id, **fields)


@pytest.mark.asyncio
async def test_guest_writes_only_local(guest_repo, documents, local_cache):
    result = await guest_repo.save_episode(_episode(1))
    assert result.local_written and not result.remote_written
    assert await documents.list_documents("users") == []
    assert json.loads(local_cache.get_item("greenlit-episodes"))["1"]["title"] == "Episode 1"


@pytest.mark.asyncio
async def test_authenticated_write_is_mirrored(user_repo, local_cache, documents):
    result = await user_repo.save_episode(_episode(1))
    assert result.remote_written and result.local_written
    assert await documents.get_document("users/user-1/storyBibles/sb-1/episodes/episode-1") is not None
    assert local_cache.get_item("greenlit-episodes") is not None


@pytest.mark.asyncio
async def test_mirror_failure_is_not_fatal(tmp_path, remote):
    repo = DualStoreRepository(BrokenLocalCache(str(tmp_path / "broken.db")), remote, user_id="user-1")
    result = await repo.save_episode(_episode(1))
    assert result.ok
    assert result.remote_written and not result.local_written
    assert (await repo.read_remote_episodes("sb-1")).keys() == {1}


@pytest.mark.asyncio
async def test_guest_local_failure_raises(tmp_path, remote):
    repo = DualStoreRepository(BrokenLocalCache(str(tmp_path / "broken.db")), remote)
    with pytest.raises(StoreUnavailable):
        await repo.save_episode(_episode(1))


@pytest.mark.asyncio
async def test_remote_down_falls_back_to_local(local_cache):
    guest = DualStoreRepository(local_cache, None)
    await guest.save_episode(_episode(1))

    repo = DualStoreRepository(local_cache, RemoteStore(DownDocumentStore()), user_id="user-1")
    episodes = await repo.list_episodes("sb-1")
    assert list(episodes) == [1]
    assert (await repo.get_episode("sb-1", 1)).title == "Episode 1"

    result = await repo.save_episode(_episode(2))
    assert result.local_written and not result.remote_written


@pytest.mark.asyncio
async def test_remote_down_and_local_empty_surfaces(local_cache):
    repo = DualStoreRepository(local_cache, RemoteStore(DownDocumentStore()), user_id="user-1")
    with pytest.raises(StoreUnavailable):
        await repo.list_episodes("sb-1")
    with pytest.raises(StoreUnavailable):
        await repo.get_episode("sb-1", 1)


@pytest.mark.asyncio
async def test_episode_list_uses_backend_selection(user_repo, guest_repo):
    await guest_repo.save_episode(_episode(1))
    # signed in: remote is authoritative, the guest copy is not merged in
    assert await user_repo.list_episodes("sb-1") == {}


@pytest.mark.asyncio
async def test_story_bible_falls_back_to_local_on_remote_miss(user_repo, guest_repo):
    await guest_repo.save_story_bible(StoryBible(id="sb-1", title="Local only"))
    bible = await user_repo.get_story_bible("sb-1")
    assert bible.title == "Local only"

    await user_repo.save_story_bible(StoryBible(id="sb-1", title="Remote"))
    assert (await user_repo.get_story_bible("sb-1")).title == "Remote"


@pytest.mark.asyncio
async def test_round_trip_is_identical(user_repo):
    episode = _episode(3, synopsis="twist", extra_notes={"tone": "noir"})
    await user_repo.save_episode(episode)
    loaded = await user_repo.get_episode("sb-1", 3)
    assert loaded.to_document() == episode.to_document()


@pytest.mark.asyncio
async def test_concurrent_guest_writes_last_write_wins(guest_repo):
    first = _episode(3, title="first tab")
    second = _episode(3, title="second tab")
    await asyncio.gather(guest_repo.save_episode(first), guest_repo.save_episode(second))
    stored = await guest_repo.get_episode("sb-1", 3)
    assert stored.title in ("first tab", "second tab")
    assert stored.to_document() in (first.to_document(), second.to_document())


@pytest.mark.asyncio
async def test_drafts_hidden_from_list(guest_repo):
    await guest_repo.save_episode(_episode(1))
    await guest_repo.save_episode(_episode(2, generation_complete=False, generation_type=None))
    assert list(await guest_repo.list_episodes("sb-1")) == [1]
    assert list(await guest_repo.list_episodes("sb-1", include_drafts=True)) == [1, 2]
    assert not await guest_repo.episode_exists("sb-1", 2)


@pytest.mark.asyncio
async def test_legacy_episode_without_markers_counts(guest_repo, local_cache):
    local_cache.set_item(
        "scorched-episodes",
        json.dumps({"1": {"episodeNumber": 1, "_generationComplete": True, "scenes": [{"content": "x", "_edited": True}]}}),
    )
    episode = await guest_repo.get_episode("sb-1", 1)
    assert episode.generation_complete is True
    assert episode.scenes[0].edited is True
    assert await guest_repo.episode_exists("sb-1", 1)


@pytest.mark.asyncio
async def test_edit_scene(guest_repo):
    await guest_repo.save_episode(_episode(1))
    edited = await guest_repo.edit_scene("sb-1", 1, 1, "rewritten")
    assert edited.scenes[0].content == "rewritten"
    assert edited.scenes[0].edited
    assert edited.edit_count == 1
    context = await guest_repo.edited_scenes_before("sb-1", 2)
    assert context == [{"episodeNumber": 1, "sceneNumber": 1, "content": "rewritten"}]

    with pytest.raises(ResourceNotFound):
        await guest_repo.edit_scene("sb-1", 1, 9, "nope")


@pytest.mark.asyncio
async def test_update_preproduction_shallow_merges(user_repo):
    await user_repo.save_preproduction(
        PreProductionArtifact(
            story_bible_id="sb-1",
            episode_number=1,
            storyboards=[{"frame": 1}],
            script="draft",
            generation_status="completed",
        )
    )
    updated = await user_repo.update_preproduction("sb-1", "episode-1", {"storyboards": [{"frame": 1, "imageUrl": "u"}]})
    document = updated.to_document()
    assert document["script"] == "draft"
    assert document["storyboards"] == [{"frame": 1, "imageUrl": "u"}]
    assert document["updatedBy"] == "user-1"
    assert isinstance(document["lastUpdated"], int)
    assert await user_repo.has_episode_preproduction("sb-1", 1)


@pytest.mark.asyncio
async def test_preproduction_in_progress_is_not_complete(guest_repo):
    await guest_repo.update_preproduction("sb-1", "episode-2", {"generationStatus": "generating"})
    status = await guest_repo.preproduction_status("sb-1", [1, 2])
    assert status == {1: False, 2: False}


@pytest.mark.asyncio
async def test_choices_and_completed_arcs(guest_repo):
    await guest_repo.record_choice(UserChoice(episode_number=1, choice_id="a", story_bible_id="sb-1"))
    await guest_repo.record_choice(UserChoice(episode_number=1, choice_id="b", story_bible_id="sb-1"))
    choices = await guest_repo.list_choices("sb-1")
    assert [choice.choice_id for choice in choices] == ["b"]

    await guest_repo.mark_arc_completed("sb-1", 1)
    assert await guest_repo.completed_arcs("sb-1") == [1]


@pytest.mark.asyncio
async def test_clear_episodes_also_clears_completed_arcs(guest_repo):
    await guest_repo.save_episode(_episode(1))
    await guest_repo.mark_arc_completed("sb-1", 1)
    assert await guest_repo.clear_episodes("sb-1") == 1
    assert await guest_repo.list_episodes("sb-1") == {}
    assert await guest_repo.completed_arcs("sb-1") == []


@pytest.mark.asyncio
async def test_migrate_local_to_remote(guest_repo, user_repo):
    for number in (1, 2, 3):
        await guest_repo.save_episode(_episode(number))
    await user_repo.save_episode(_episode(2, title="already remote"))

    result = await user_repo.migrate_local_to_remote("sb-1", clear_after_migration=True)
    assert (result.migrated, result.skipped, result.errors) == (2, 1, 0)
    remote = await user_repo.read_remote_episodes("sb-1")
    assert sorted(remote) == [1, 2, 3]
    assert remote[2]["title"] == "already remote"
    assert not user_repo.has_local_episodes("sb-1")


@pytest.mark.asyncio
async def test_migrate_requires_identity(guest_repo):
    with pytest.raises(StoreUnavailable):
        await guest_repo.migrate_local_to_remote("sb-1")
