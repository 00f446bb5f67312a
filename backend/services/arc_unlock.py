import logging
from typing import Any, Dict, Mapping, Optional

from core.arcs import episode_range_for_arc
from core.errors import ArcLocked, StoreUnavailable
from models import ArcUnlockStatus, Episode, StoryBible, is_draft_document
from storage.repository import DualStoreRepository

logger = logging.getLogger("serial.arcs")


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, Episode):
        return not value.is_draft
    if isinstance(value, dict):
        return not is_draft_document(value)
    return bool(value)


def _present_numbers(episodes_map: Mapping[Any, Any]) -> set:
    numbers = set()
    for key, value in episodes_map.items():
        try:
            number = int(key)
        except (TypeError, ValueError):
            continue
        if _is_present(value):
            numbers.add(number)
    return numbers


class ArcCompletionAggregator:
    """
    Decides whether an arc-level workflow may start.

    An arc unlocks when every episode in its range is generated and has an
    episode-level pre-production artifact. Arcs are evaluated independently.
    """

    def __init__(self, repository: DualStoreRepository):
        self.repository = repository

    async def can_unlock_arc(
        self,
        user_id: Optional[str],
        story_bible_id: str,
        arc_index: int,
        episodes_map: Mapping[Any, Any],
        story_bible: Optional[StoryBible] = None,
    ) -> ArcUnlockStatus:
        repository = self.repository.for_user(user_id)
        if story_bible is None:
            try:
                story_bible = await repository.get_story_bible(story_bible_id)
            except StoreUnavailable as exc:
                logger.warning("arc unlock story bible unavailable story_bible_id=%s error=%s", story_bible_id, exc)
                return ArcUnlockStatus(can_unlock=False)

        episode_range = episode_range_for_arc(story_bible, arc_index)
        if not episode_range:
            return ArcUnlockStatus(can_unlock=False)

        present = _present_numbers(episodes_map)
        missing_episodes = [number for number in episode_range if number not in present]
        generated = [number for number in episode_range if number in present]

        try:
            status = await repository.preproduction_status(story_bible_id, generated)
            missing_pre_prod = [number for number in generated if not status.get(number)]
        except StoreUnavailable as exc:
            logger.warning(
                "arc unlock pre-production unavailable story_bible_id=%s arc=%d error=%s",
                story_bible_id,
                arc_index,
                exc,
            )
            missing_pre_prod = generated

        return ArcUnlockStatus(
            can_unlock=not missing_episodes and not missing_pre_prod,
            missing_episodes=missing_episodes,
            missing_episode_pre_prod=missing_pre_prod,
        )

    async def unlock_statuses(
        self,
        user_id: Optional[str],
        story_bible_id: str,
        episodes_map: Optional[Mapping[Any, Any]] = None,
    ) -> Dict[int, ArcUnlockStatus]:
        repository = self.repository.for_user(user_id)
        story_bible = await repository.get_story_bible(story_bible_id)
        if story_bible is None:
            return {}
        if episodes_map is None:
            episodes_map = await repository.list_episodes(story_bible_id)
        return {
            arc_index: await self.can_unlock_arc(user_id, story_bible_id, arc_index, episodes_map, story_bible)
            for arc_index in range(len(story_bible.narrative_arcs))
        }

    async def require_unlocked(
        self,
        user_id: Optional[str],
        story_bible_id: str,
        arc_index: int,
        story_bible: Optional[StoryBible] = None,
    ) -> ArcUnlockStatus:
        repository = self.repository.for_user(user_id)
        episodes_map = await repository.list_episodes(story_bible_id)
        status = await self.can_unlock_arc(user_id, story_bible_id, arc_index, episodes_map, story_bible)
        if not status.can_unlock:
            raise ArcLocked(arc_index, status.missing_episodes, status.missing_episode_pre_prod)
        return status
