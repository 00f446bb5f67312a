import logging
from typing import Iterable, Optional

from core.arcs import next_episode_number
from core.errors import SequenceViolation
from models import StoryBible
from storage.repository import DualStoreRepository

logger = logging.getLogger("serial.sequencing")


class SequenceValidator:
    """Episode N is reachable only once episode N-1 exists for the same story bible."""

    def __init__(self, repository: DualStoreRepository):
        self.repository = repository

    async def is_accessible(self, story_bible_id: str, episode_number: int) -> bool:
        if episode_number < 1:
            return False
        if episode_number == 1:
            return True
        return await self.repository.episode_exists(story_bible_id, episode_number - 1)

    async def require_accessible(self, story_bible_id: str, episode_number: int) -> None:
        if episode_number < 1:
            raise ValueError(f"episode numbers start at 1, got {episode_number}")
        if await self.is_accessible(story_bible_id, episode_number):
            return
        logger.info(
            "sequence violation story_bible_id=%s episode=%d required=%d",
            story_bible_id,
            episode_number,
            episode_number - 1,
        )
        raise SequenceViolation(episode_number, episode_number - 1)

    @staticmethod
    def next_episode(existing: Iterable[int], story_bible: Optional[StoryBible]) -> int:
        return next_episode_number(existing, story_bible)
