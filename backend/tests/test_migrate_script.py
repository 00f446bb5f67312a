import argparse

import pytest

from models import Episode
from scripts.migrate_local_cache import build_repository, run


def _args(data_dir, **overrides):
    values = {
        "story_bible_id": "sb-1",
        "user_id": "user-1",
        "data_dir": str(data_dir),
        "remote_url": None,
        "no_skip_duplicates": False,
        "clear_after_migration": False,
        "dry_run": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


async def _seed_local(data_dir, numbers, drafts=()):
    guest = build_repository(data_dir, "user-1").for_user(None)
    for number in numbers:
        await guest.save_episode(Episode(episode_number=number, story_bible_id="sb-1", generation_complete=True))
    for number in drafts:
        await guest.save_episode(Episode(episode_number=number, story_bible_id="sb-1", generation_complete=False))


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(tmp_path, capsys):
    await _seed_local(tmp_path, [1, 2])
    assert await run(_args(tmp_path, dry_run=True)) == 0

    assert "Would migrate: [1, 2]" in capsys.readouterr().out
    repository = build_repository(tmp_path, "user-1")
    assert await repository.read_remote_episodes("sb-1") == {}


@pytest.mark.asyncio
async def test_migrates_and_clears(tmp_path, capsys):
    await _seed_local(tmp_path, [1, 2])
    assert await run(_args(tmp_path, clear_after_migration=True)) == 0

    assert "Migrated 2, skipped 0, errors 0." in capsys.readouterr().out
    repository = build_repository(tmp_path, "user-1")
    assert sorted(await repository.read_remote_episodes("sb-1")) == [1, 2]
    assert not repository.has_local_episodes("sb-1")


@pytest.mark.asyncio
async def test_drafts_are_left_in_the_local_cache(tmp_path, capsys):
    await _seed_local(tmp_path, [1, 2], drafts=[3])
    assert await run(_args(tmp_path, dry_run=True)) == 0

    out = capsys.readouterr().out
    assert "Would migrate: [1, 2]" in out
    assert "Skipping drafts: [3]" in out

    assert await run(_args(tmp_path)) == 0
    assert "Migrated 2, skipped 0, errors 0." in capsys.readouterr().out
    repository = build_repository(tmp_path, "user-1")
    assert sorted(await repository.read_remote_episodes("sb-1")) == [1, 2]
