import asyncio
import time

import pytest

from core.errors import GenerationTimeout
from models import Episode
from services.poller import (
    GenerationPoller,
    episode_poller,
    is_generation_complete,
    is_preproduction_complete,
    written_since,
)


class ScriptedFetch:
    """Returns the scripted values in order, repeating the last one."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        index = min(self.calls, len(self.values) - 1)
        self.calls += 1
        value = self.values[index]
        if isinstance(value, Exception):
            raise value
        return value


DRAFT = {"episodeNumber": 2, "generationComplete": False}
FINAL = {"episodeNumber": 2, "generationComplete": True}


def test_completion_predicates():
    assert is_generation_complete(FINAL)
    assert is_generation_complete({"generationType": "yolo-intelligent"})
    assert is_generation_complete({"_generationComplete": True})
    assert not is_generation_complete(DRAFT)
    assert not is_generation_complete({"generationType": "experimental"})
    assert not is_generation_complete(None)
    assert is_generation_complete(Episode(episode_number=1, generation_type="premium-enhanced"))

    assert is_preproduction_complete({"generationStatus": "completed"})
    assert is_preproduction_complete({"storyboards": []})
    assert not is_preproduction_complete({"generationStatus": "generating"})


@pytest.mark.asyncio
async def test_draft_never_surfaced():
    fetch = ScriptedFetch(DRAFT, DRAFT, DRAFT, FINAL)
    poller = GenerationPoller("job", fetch, interval=0.01, timeout=2.0)
    events = [event async for event in poller.stream()]
    assert len(events) == 1
    assert events[0].found == FINAL
    assert fetch.calls == 4


@pytest.mark.asyncio
async def test_existing_result_found_at_start():
    fetch = ScriptedFetch(FINAL)
    poller = GenerationPoller("job", fetch, interval=5.0, timeout=10.0)
    started = time.monotonic()
    assert await poller.wait() == FINAL
    assert time.monotonic() - started < 1.0
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_timeout_is_bounded():
    fetch = ScriptedFetch(DRAFT)
    poller = GenerationPoller("job", fetch, interval=0.05, timeout=0.2)
    started = time.monotonic()
    events = [event async for event in poller.stream()]
    elapsed = time.monotonic() - started
    assert [event.timed_out for event in events] == [True]
    assert elapsed < 0.2 + 0.05 + 0.2


@pytest.mark.asyncio
async def test_wait_raises_generation_timeout():
    poller = GenerationPoller("episode-2", ScriptedFetch(None), interval=0.01, timeout=0.05)
    with pytest.raises(GenerationTimeout) as excinfo:
        await poller.wait()
    assert excinfo.value.job_key == "episode-2"


@pytest.mark.asyncio
async def test_final_recheck_after_timeout():
    ticks = {"now": 0.0}
    seen = {"at_timeout": 0}

    async def fetch():
        # the write lands just after the last tick inside the wait budget
        if ticks["now"] >= 3.0:
            seen["at_timeout"] += 1
            if seen["at_timeout"] > 1:
                return FINAL
        return None

    class FakeClockPoller(GenerationPoller):
        async def _sleep(self, seconds):
            ticks["now"] += seconds

    poller = FakeClockPoller("job", fetch, interval=1.0, timeout=3.0, clock=lambda: ticks["now"])
    events = [event async for event in poller.stream()]
    assert len(events) == 1
    assert events[0].found == FINAL
    assert not events[0].timed_out
    assert seen["at_timeout"] == 2


@pytest.mark.asyncio
async def test_cancel_stops_without_event():
    poller = GenerationPoller("job", ScriptedFetch(DRAFT), interval=0.05, timeout=5.0)

    async def collect():
        return [event async for event in poller.stream()]

    task = asyncio.create_task(collect())
    await asyncio.sleep(0.08)
    poller.cancel()
    events = await asyncio.wait_for(task, timeout=1.0)
    assert events == []
    assert await poller.wait() is None


@pytest.mark.asyncio
async def test_fetch_errors_count_as_not_yet():
    fetch = ScriptedFetch(RuntimeError("network"), DRAFT, FINAL)
    poller = GenerationPoller("job", fetch, interval=0.01, timeout=1.0)
    assert await poller.wait() == FINAL


@pytest.mark.asyncio
async def test_custom_predicate():
    fetch = ScriptedFetch({"frames": 1}, {"frames": 3})
    poller = GenerationPoller("job", fetch, interval=0.01, timeout=1.0, predicate=lambda doc: doc["frames"] >= 3)
    assert (await poller.wait())["frames"] == 3


@pytest.mark.asyncio
async def test_episode_poller_reads_repository(guest_repo):
    await guest_repo.save_episode(Episode(episode_number=1, story_bible_id="sb-1", generation_complete=False))
    poller = episode_poller(guest_repo, "sb-1", 1, interval=0.01, timeout=0.5)

    async def finish_later():
        await asyncio.sleep(0.05)
        await guest_repo.save_episode(
            Episode(episode_number=1, story_bible_id="sb-1", generation_complete=True, title="done")
        )

    writer = asyncio.create_task(finish_later())
    episode = await poller.wait()
    await writer
    assert episode.title == "done"


def test_written_since_compares_first_available_stamp():
    since = "2026-03-01T10:00:00+00:00"
    fields = ("generatedAt", "lastModified")
    assert written_since({"generatedAt": "2026-03-01T10:00:01+00:00"}, since, fields)
    assert not written_since({"generatedAt": "2026-03-01T09:59:59+00:00"}, since, fields)
    assert written_since({"lastModified": "2026-03-01T10:00:00+00:00"}, since, fields)
    assert not written_since({"title": "no stamps"}, since, fields)
    # epoch milliseconds in the same millisecond still count
    assert written_since({"lastUpdated": 1772359200000}, since, ("lastUpdated",))
    assert not written_since({"lastUpdated": 1772359199999}, since, ("lastUpdated",))
    assert written_since({"title": "anything"}, None, fields)


@pytest.mark.asyncio
async def test_episode_poller_since_ignores_older_result(guest_repo):
    await guest_repo.save_episode(
        Episode(
            episode_number=1,
            story_bible_id="sb-1",
            generation_complete=True,
            title="old",
            generated_at="2026-01-01T00:00:00+00:00",
        )
    )
    poller = episode_poller(guest_repo, "sb-1", 1, interval=0.01, timeout=0.5, since="2026-02-01T00:00:00+00:00")

    async def finish_later():
        await asyncio.sleep(0.05)
        await guest_repo.save_episode(
            Episode(
                episode_number=1,
                story_bible_id="sb-1",
                generation_complete=True,
                title="new",
                generated_at="2026-02-01T00:00:05+00:00",
            )
        )

    writer = asyncio.create_task(finish_later())
    episode = await poller.wait()
    await writer
    assert episode.title == "new"
