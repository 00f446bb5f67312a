import logging
from typing import Iterable, List, Optional, Set, Tuple

from core.errors import StoreUnavailable
from models import MigrationResult, is_draft_document
from storage.repository import DualStoreRepository

logger = logging.getLogger("serial.recovery")


class RecoveryScanner:
    """
    Finds episodes kept in the local cache that never reached the remote store.

    A scanner is bound to one session: each (user, story bible) pair is scanned once
    and later calls report nothing until ``reset``. Scanning never writes; copying is
    the separate, confirmed ``recover`` step.
    """

    def __init__(self, repository: DualStoreRepository):
        self.repository = repository
        self._scanned: Set[Tuple[str, str]] = set()

    async def find_recoverable(self, story_bible_id: str, user_id: Optional[str]) -> List[int]:
        if not user_id:
            return []
        marker = (user_id, story_bible_id)
        if marker in self._scanned:
            return []

        repository = self.repository.for_user(user_id)
        if not repository.is_authenticated:
            return []
        try:
            local_episodes = await repository.read_local_episodes(story_bible_id)
            remote_episodes = await repository.read_remote_episodes(story_bible_id)
        except StoreUnavailable as exc:
            logger.warning("recovery scan failed story_bible_id=%s error=%s", story_bible_id, exc)
            return []
        self._scanned.add(marker)

        local_numbers = {number for number, payload in local_episodes.items() if not is_draft_document(payload)}
        recoverable = sorted(local_numbers - set(remote_episodes))
        if recoverable:
            logger.info(
                "recoverable episodes story_bible_id=%s user_id=%s episodes=%s",
                story_bible_id,
                user_id,
                recoverable,
            )
        return recoverable

    async def recover(
        self,
        story_bible_id: str,
        user_id: Optional[str],
        episode_numbers: Optional[Iterable[int]] = None,
    ) -> MigrationResult:
        repository = self.repository.for_user(user_id)
        return await repository.migrate_local_to_remote(
            story_bible_id,
            episode_numbers=episode_numbers,
            skip_duplicates=True,
        )

    def reset(self, story_bible_id: Optional[str] = None) -> None:
        if story_bible_id is None:
            self._scanned.clear()
            return
        self._scanned = {marker for marker in self._scanned if marker[1] != story_bible_id}
