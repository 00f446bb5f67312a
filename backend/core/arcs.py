"""Episode/arc range arithmetic over a story bible's narrative arcs."""

from typing import Iterable, List, Optional

from models import ArcInfo, EpisodeStub, NarrativeArc, StoryBible

# Arcs without episode metadata count as this many episodes. Already-generated
# content was numbered with this default, so it must not change.
DEFAULT_EPISODES_PER_ARC = 10
DEFAULT_TOTAL_EPISODES = 60


def arc_episode_count(arc: Optional[NarrativeArc]) -> int:
    if arc is None or not arc.episodes:
        return DEFAULT_EPISODES_PER_ARC
    return len(arc.episodes)


def arc_start_offset(story_bible: StoryBible, arc_index: int) -> int:
    return sum(arc_episode_count(arc) for arc in story_bible.narrative_arcs[:arc_index])


def episode_range_for_arc(story_bible: Optional[StoryBible], arc_index: int) -> List[int]:
    if story_bible is None or not story_bible.narrative_arcs:
        return []
    if arc_index < 0 or arc_index >= len(story_bible.narrative_arcs):
        return []
    offset = arc_start_offset(story_bible, arc_index)
    count = arc_episode_count(story_bible.narrative_arcs[arc_index])
    return list(range(offset + 1, offset + count + 1))


def total_episodes(story_bible: Optional[StoryBible]) -> int:
    if story_bible is None or not story_bible.narrative_arcs:
        return DEFAULT_TOTAL_EPISODES
    return sum(arc_episode_count(arc) for arc in story_bible.narrative_arcs)


def arc_info_for_episode(story_bible: Optional[StoryBible], episode_number: int) -> ArcInfo:
    arcs = story_bible.narrative_arcs if story_bible else []
    running = 0
    for index, arc in enumerate(arcs):
        count = arc_episode_count(arc)
        if episode_number <= running + count:
            return ArcInfo(
                arc_index=index,
                arc_title=arc.title or f"Arc {index + 1}",
                episode_in_arc=episode_number - running,
                total_in_arc=count,
            )
        running += count
    return ArcInfo(
        arc_index=0,
        arc_title="Arc 1",
        episode_in_arc=episode_number,
        total_in_arc=DEFAULT_EPISODES_PER_ARC,
    )


def completed_arc_number(story_bible: Optional[StoryBible], episode_number: int) -> Optional[int]:
    """1-based number of the arc that ends with ``episode_number``, else None."""
    if story_bible is None or not story_bible.narrative_arcs:
        if episode_number % DEFAULT_EPISODES_PER_ARC == 0:
            return episode_number // DEFAULT_EPISODES_PER_ARC
        return None

    running = 0
    for index, arc in enumerate(story_bible.narrative_arcs):
        count = arc_episode_count(arc)
        if running < episode_number <= running + count:
            return index + 1 if episode_number == running + count else None
        running += count
    return None


def episode_stub(story_bible: Optional[StoryBible], episode_number: int) -> Optional[EpisodeStub]:
    if story_bible is None:
        return None
    info = arc_info_for_episode(story_bible, episode_number)
    if info.arc_index >= len(story_bible.narrative_arcs):
        return None
    stubs = story_bible.narrative_arcs[info.arc_index].episodes or []
    position = info.episode_in_arc - 1
    if 0 <= position < len(stubs):
        return stubs[position]
    return None


def episode_title(story_bible: Optional[StoryBible], episode_number: int) -> str:
    stub = episode_stub(story_bible, episode_number)
    return (stub.title if stub else "") or f"Episode {episode_number}"


def next_episode_number(existing: Iterable[int], story_bible: Optional[StoryBible]) -> int:
    numbers = sorted(set(existing))
    if not numbers:
        return 1
    highest = numbers[-1]
    return highest + 1 if highest < total_episodes(story_bible) else highest
