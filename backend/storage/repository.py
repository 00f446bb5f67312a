import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from core.errors import ResourceNotFound, StoreUnavailable
from models import (
    Collection,
    CompletedArc,
    Episode,
    GenerationJob,
    MigrationResult,
    PreProductionArtifact,
    PreProductionType,
    StoreScope,
    StoryBible,
    UserChoice,
    WriteResult,
    epoch_ms,
    is_draft_document,
    utc_now_iso,
)
from storage import (
    ALL,
    Store,
    arc_preproduction_key,
    choice_key,
    completed_arc_key,
    episode_key,
    episode_preproduction_key,
    normalize_value,
)
from storage.local_cache import LocalCacheStore

logger = logging.getLogger("serial.storage")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DualStoreRepository:
    """
    Read/write facade over the remote store and the local cache.

    With an identity, reads and writes target the remote store and every write is
    mirrored to the local cache; without one, the local cache is the only store. A
    remote failure degrades to the local cache and only surfaces as
    ``StoreUnavailable`` when the local cache has nothing to offer either. Values are
    normalised to canonical field names on the way out.
    """

    def __init__(self, local: LocalCacheStore, remote: Optional[Store] = None, user_id: Optional[str] = None):
        self.local = local
        self.remote = remote
        self.user_id = user_id or None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id) and self.remote is not None

    def for_user(self, user_id: Optional[str]) -> "DualStoreRepository":
        return DualStoreRepository(self.local, self.remote, user_id)

    def scope(self, collection: Collection, story_bible_id: str) -> StoreScope:
        return StoreScope(collection=collection, story_bible_id=story_bible_id, user_id=self.user_id)

    # generic contract

    async def get(self, collection: Collection, story_bible_id: str, key: str) -> Optional[Any]:
        scope = self.scope(collection, story_bible_id)
        remote_error: Optional[StoreUnavailable] = None
        if self.is_authenticated:
            try:
                value = await self.remote.get(scope, key)
            except StoreUnavailable as exc:
                remote_error = exc
                logger.warning(
                    "remote read failed collection=%s key=%s fallback=local error=%s",
                    collection.value,
                    key,
                    exc,
                )
            else:
                # only the story bible falls through to the local cache on a remote miss
                if value is not None or collection != Collection.STORY_BIBLE:
                    return normalize_value(collection, value)

        value = await self.local.get(scope, key)
        if value is None and remote_error is not None:
            raise remote_error
        return normalize_value(collection, value)

    async def set(self, collection: Collection, story_bible_id: str, key: str, value: Any) -> WriteResult:
        scope = self.scope(collection, story_bible_id)
        result = WriteResult()
        remote_error: Optional[StoreUnavailable] = None

        if self.is_authenticated:
            try:
                await self.remote.set(scope, key, value)
                result.remote_written = True
            except StoreUnavailable as exc:
                remote_error = exc
                logger.warning(
                    "remote write failed collection=%s key=%s fallback=local error=%s",
                    collection.value,
                    key,
                    exc,
                )

        try:
            await self.local.set(scope, key, value)
            result.local_written = True
        except StoreUnavailable as exc:
            if not self.is_authenticated:
                raise
            logger.warning("local mirror write failed collection=%s key=%s error=%s", collection.value, key, exc)

        if not result.ok:
            raise remote_error or StoreUnavailable("local", "write failed")
        return result

    async def items(self, collection: Collection, story_bible_id: str) -> Dict[str, Any]:
        scope = self.scope(collection, story_bible_id)
        remote_error: Optional[StoreUnavailable] = None
        if self.is_authenticated:
            try:
                entries = await self.remote.items(scope)
            except StoreUnavailable as exc:
                remote_error = exc
                logger.warning("remote list failed collection=%s fallback=local error=%s", collection.value, exc)
            else:
                return {key: normalize_value(collection, value) for key, value in entries.items()}

        entries = await self.local.items(scope)
        if not entries and remote_error is not None:
            raise remote_error
        return {key: normalize_value(collection, value) for key, value in entries.items()}

    async def list(self, collection: Collection, story_bible_id: str) -> List[Any]:
        return list((await self.items(collection, story_bible_id)).values())

    async def delete(self, collection: Collection, story_bible_id: str, key: str = ALL) -> int:
        scope = self.scope(collection, story_bible_id)
        removed = 0
        if self.is_authenticated:
            try:
                removed += await self.remote.delete(scope, key)
            except StoreUnavailable as exc:
                logger.warning("remote delete failed collection=%s key=%s error=%s", collection.value, key, exc)
        try:
            removed += await self.local.delete(scope, key)
        except StoreUnavailable as exc:
            if not self.is_authenticated:
                raise
            logger.warning("local mirror delete failed collection=%s key=%s error=%s", collection.value, key, exc)
        return removed

    # story bible

    async def get_story_bible(self, story_bible_id: str) -> Optional[StoryBible]:
        payload = await self.get(Collection.STORY_BIBLE, story_bible_id, story_bible_id)
        if not isinstance(payload, dict):
            return None
        payload.setdefault("id", story_bible_id)
        try:
            return StoryBible.model_validate(payload)
        except ValidationError as exc:
            logger.warning("story bible unreadable story_bible_id=%s error=%s", story_bible_id, exc)
            return None

    async def save_story_bible(self, story_bible: StoryBible) -> WriteResult:
        return await self.set(Collection.STORY_BIBLE, story_bible.id, story_bible.id, story_bible.to_document())

    # episodes

    def _episode(self, payload: Any, story_bible_id: str) -> Optional[Episode]:
        if not isinstance(payload, dict):
            return None
        try:
            return Episode.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "episode unreadable story_bible_id=%s episode=%s error=%s",
                story_bible_id,
                payload.get("episodeNumber"),
                exc.error_count(),
            )
            return None

    async def list_episodes(self, story_bible_id: str, include_drafts: bool = False) -> Dict[int, Episode]:
        episodes: Dict[int, Episode] = {}
        for payload in await self.list(Collection.EPISODES, story_bible_id):
            episode = self._episode(payload, story_bible_id)
            if episode is None or (episode.is_draft and not include_drafts):
                continue
            episodes[episode.episode_number] = episode
        return dict(sorted(episodes.items()))

    async def get_episode(self, story_bible_id: str, episode_number: int) -> Optional[Episode]:
        payload = await self.get(Collection.EPISODES, story_bible_id, episode_key(episode_number))
        return self._episode(payload, story_bible_id)

    async def episode_exists(self, story_bible_id: str, episode_number: int) -> bool:
        episode = await self.get_episode(story_bible_id, episode_number)
        return episode is not None and not episode.is_draft

    async def save_episode(self, episode: Episode) -> WriteResult:
        episode.last_modified = utc_now_iso()
        if self.user_id and not episode.owner_id:
            episode.owner_id = self.user_id
        return await self.set(
            Collection.EPISODES,
            episode.story_bible_id,
            episode_key(episode.episode_number),
            episode.to_document(),
        )

    async def delete_episode(self, story_bible_id: str, episode_number: int) -> int:
        return await self.delete(Collection.EPISODES, story_bible_id, episode_key(episode_number))

    async def clear_episodes(self, story_bible_id: str) -> int:
        removed = await self.delete(Collection.EPISODES, story_bible_id)
        await self.delete(Collection.COMPLETED_ARCS, story_bible_id)
        logger.info("episodes cleared story_bible_id=%s removed=%d", story_bible_id, removed)
        return removed

    async def edit_scene(self, story_bible_id: str, episode_number: int, scene_number: int, content: str) -> Episode:
        episode = await self.get_episode(story_bible_id, episode_number)
        if episode is None:
            raise ResourceNotFound(f"episode {episode_number} not found")
        scene = next((item for item in episode.scenes if item.scene_number == scene_number), None)
        if scene is None:
            raise ResourceNotFound(f"scene {scene_number} not found in episode {episode_number}")
        scene.content = content
        scene.edited = True
        episode.edit_count += 1
        episode.story_bible_id = episode.story_bible_id or story_bible_id
        await self.save_episode(episode)
        return episode

    async def edited_scenes_before(self, story_bible_id: str, episode_number: int) -> List[Dict[str, Any]]:
        edited = []
        for number, episode in (await self.list_episodes(story_bible_id)).items():
            if number >= episode_number:
                continue
            for scene in episode.scenes:
                if scene.edited:
                    edited.append({"episodeNumber": number, "sceneNumber": scene.scene_number, "content": scene.content})
        return edited

    # pre-production

    def _artifact(self, payload: Any) -> Optional[PreProductionArtifact]:
        if not isinstance(payload, dict):
            return None
        try:
            return PreProductionArtifact.model_validate(payload)
        except ValidationError as exc:
            logger.warning("pre-production unreadable errors=%d", exc.error_count())
            return None

    async def get_episode_preproduction(self, story_bible_id: str, episode_number: int) -> Optional[PreProductionArtifact]:
        payload = await self.get(Collection.PREPRODUCTION, story_bible_id, episode_preproduction_key(episode_number))
        return self._artifact(payload)

    async def has_episode_preproduction(self, story_bible_id: str, episode_number: int) -> bool:
        artifact = await self.get_episode_preproduction(story_bible_id, episode_number)
        return artifact is not None and artifact.is_complete

    async def get_arc_preproduction(self, story_bible_id: str, arc_index: int) -> Optional[PreProductionArtifact]:
        payload = await self.get(Collection.PREPRODUCTION, story_bible_id, arc_preproduction_key(arc_index))
        return self._artifact(payload)

    @staticmethod
    def preproduction_key(artifact: PreProductionArtifact) -> str:
        if artifact.type == PreProductionType.ARC:
            return arc_preproduction_key(artifact.arc_index)
        return episode_preproduction_key(artifact.episode_number)

    async def save_preproduction(self, artifact: PreProductionArtifact) -> WriteResult:
        artifact.last_updated = epoch_ms()
        artifact.updated_by = artifact.updated_by or self.user_id or "guest"
        return await self.set(
            Collection.PREPRODUCTION,
            artifact.story_bible_id,
            self.preproduction_key(artifact),
            artifact.to_document(),
        )

    async def update_preproduction(
        self,
        story_bible_id: str,
        key: str,
        fields: Dict[str, Any],
    ) -> PreProductionArtifact:
        """Shallow-merge ``fields`` into the stored artifact (creating it if absent)."""
        current = await self.get(Collection.PREPRODUCTION, story_bible_id, key)
        merged: Dict[str, Any] = dict(current) if isinstance(current, dict) else {}
        if not merged:
            kind, _, raw_number = key.partition("-")
            if kind == PreProductionType.ARC.value:
                merged.update({"type": "arc", "arcIndex": _as_int(raw_number)})
            else:
                merged.update({"type": "episode", "episodeNumber": _as_int(raw_number)})
        merged.update(normalize_value(Collection.PREPRODUCTION, fields))
        merged["storyBibleId"] = story_bible_id
        merged["lastUpdated"] = epoch_ms()
        merged["updatedBy"] = self.user_id or "guest"
        await self.set(Collection.PREPRODUCTION, story_bible_id, key, merged)
        artifact = self._artifact(merged)
        if artifact is None:
            raise ValueError(f"pre-production update for {key} produced an invalid artifact")
        return artifact

    async def preproduction_status(self, story_bible_id: str, episode_numbers: Iterable[int]) -> Dict[int, bool]:
        entries = await self.items(Collection.PREPRODUCTION, story_bible_id)
        status = {}
        for number in episode_numbers:
            artifact = self._artifact(entries.get(episode_preproduction_key(number)))
            status[number] = artifact is not None and artifact.is_complete
        return status

    async def clear_preproduction(self, story_bible_id: str) -> int:
        removed = await self.delete(Collection.PREPRODUCTION, story_bible_id)
        logger.info("pre-production cleared story_bible_id=%s removed=%d", story_bible_id, removed)
        return removed

    # user choices and completed arcs

    async def record_choice(self, choice: UserChoice) -> WriteResult:
        return await self.set(
            Collection.USER_CHOICES,
            choice.story_bible_id,
            choice_key(choice.episode_number),
            choice.to_document(),
        )

    async def get_choice(self, story_bible_id: str, episode_number: int) -> Optional[UserChoice]:
        payload = await self.get(Collection.USER_CHOICES, story_bible_id, choice_key(episode_number))
        if not isinstance(payload, dict):
            return None
        try:
            return UserChoice.model_validate(payload)
        except ValidationError:
            return None

    async def list_choices(self, story_bible_id: str) -> List[UserChoice]:
        choices = []
        for payload in await self.list(Collection.USER_CHOICES, story_bible_id):
            try:
                choices.append(UserChoice.model_validate(payload))
            except ValidationError:
                continue
        return sorted(choices, key=lambda choice: choice.episode_number)

    async def mark_arc_completed(self, story_bible_id: str, arc_number: int) -> WriteResult:
        record = CompletedArc(arc_number=arc_number, story_bible_id=story_bible_id, completed_at=utc_now_iso())
        return await self.set(Collection.COMPLETED_ARCS, story_bible_id, completed_arc_key(arc_number), record.to_document())

    async def completed_arcs(self, story_bible_id: str) -> List[int]:
        numbers = set()
        for key, payload in (await self.items(Collection.COMPLETED_ARCS, story_bible_id)).items():
            if payload is True or isinstance(payload, dict):
                number = _as_int(payload.get("arcNumber") if isinstance(payload, dict) else key)
                if number is not None:
                    numbers.add(number)
        return sorted(numbers)

    # job markers

    async def save_job_marker(self, job: GenerationJob) -> WriteResult:
        document = job.to_document()
        document["storeKey"] = job.job_key
        return await self.set(Collection.GENERATION_JOBS, job.story_bible_id, job.job_key, document)

    async def get_job_marker(self, story_bible_id: str, job_key: str) -> Optional[GenerationJob]:
        payload = await self.get(Collection.GENERATION_JOBS, story_bible_id, job_key)
        if not isinstance(payload, dict):
            return None
        try:
            return GenerationJob.model_validate(payload)
        except ValidationError:
            return None

    # cross-backend access for recovery and migration

    async def read_local_episodes(self, story_bible_id: str) -> Dict[int, Dict[str, Any]]:
        entries = await self.local.items(self.scope(Collection.EPISODES, story_bible_id))
        return self._by_number(entries)

    async def read_remote_episodes(self, story_bible_id: str) -> Dict[int, Dict[str, Any]]:
        if not self.is_authenticated:
            return {}
        entries = await self.remote.items(self.scope(Collection.EPISODES, story_bible_id))
        return self._by_number(entries)

    @staticmethod
    def _by_number(entries: Dict[str, Any]) -> Dict[int, Dict[str, Any]]:
        episodes = {}
        for key, value in entries.items():
            payload = normalize_value(Collection.EPISODES, value)
            if not isinstance(payload, dict):
                continue
            number = _as_int(payload.get("episodeNumber", key))
            if number is not None:
                episodes[number] = payload
        return episodes

    def has_local_episodes(self, story_bible_id: Optional[str] = None) -> bool:
        return self.local.has_entries(Collection.EPISODES, story_bible_id)

    async def migrate_local_to_remote(
        self,
        story_bible_id: str,
        episode_numbers: Optional[Iterable[int]] = None,
        skip_duplicates: bool = True,
        clear_after_migration: bool = False,
    ) -> MigrationResult:
        if not self.is_authenticated:
            raise StoreUnavailable("remote", "migration requires an authenticated identity")

        local_episodes = await self.read_local_episodes(story_bible_id)
        remote_numbers = set(await self.read_remote_episodes(story_bible_id)) if skip_duplicates else set()
        if episode_numbers is not None:
            wanted = set(episode_numbers)
        else:
            # drafts belong to a generation still in flight
            wanted = {number for number, payload in local_episodes.items() if not is_draft_document(payload)}
        scope = self.scope(Collection.EPISODES, story_bible_id)
        result = MigrationResult()

        for number in sorted(wanted):
            payload = local_episodes.get(number)
            if payload is None:
                continue
            if number in remote_numbers:
                result.skipped += 1
                continue
            document = {**payload, "storyBibleId": story_bible_id}
            document.setdefault("ownerId", self.user_id)
            try:
                await self.remote.set(scope, episode_key(number), document)
                result.migrated += 1
            except StoreUnavailable as exc:
                result.errors += 1
                logger.warning(
                    "episode migration failed story_bible_id=%s episode=%d error=%s",
                    story_bible_id,
                    number,
                    exc,
                )

        if clear_after_migration and result.errors == 0 and result.migrated:
            await self.local.delete(scope)
        logger.info(
            "episodes migrated story_bible_id=%s migrated=%d skipped=%d errors=%d",
            story_bible_id,
            result.migrated,
            result.skipped,
            result.errors,
        )
        return result
