from typing import Any, Dict, List, Optional

from core.aliases import normalize_artifact, normalize_episode, normalize_story_bible
from models import Collection, StoreScope

# Passed as ``key`` to ``Store.delete`` to remove every entry in a scope.
ALL = "*"


class Store:
    """Key/value contract shared by the local cache and the remote store."""

    backend_name = "store"

    async def get(self, scope: StoreScope, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, scope: StoreScope, key: str, value: Any) -> None:
        raise NotImplementedError

    async def items(self, scope: StoreScope) -> Dict[str, Any]:
        raise NotImplementedError

    async def list(self, scope: StoreScope) -> List[Any]:
        return list((await self.items(scope)).values())

    async def delete(self, scope: StoreScope, key: str = ALL) -> int:
        raise NotImplementedError


def episode_key(episode_number: int) -> str:
    return str(int(episode_number))


def episode_preproduction_key(episode_number: int) -> str:
    return f"episode-{int(episode_number)}"


def arc_preproduction_key(arc_index: int) -> str:
    return f"arc-{int(arc_index)}"


def choice_key(episode_number: int) -> str:
    return str(int(episode_number))


def completed_arc_key(arc_number: int) -> str:
    return str(int(arc_number))


def episode_job_key(episode_number: int) -> str:
    return f"episode-{int(episode_number)}"


def preproduction_job_key(episode_number: int) -> str:
    return f"preproduction-{episode_preproduction_key(episode_number)}"


def arc_job_key(arc_index: int, stage: str) -> str:
    return f"arc-{int(arc_index)}-{stage}"


def normalize_value(collection: Collection, value: Any) -> Any:
    if collection in (Collection.EPISODES, Collection.USER_CHOICES):
        return normalize_episode(value)
    if collection == Collection.PREPRODUCTION:
        return normalize_artifact(value)
    if collection == Collection.STORY_BIBLE:
        return normalize_story_bible(value)
    return value


def belongs_to(value: Any, story_bible_id: str) -> bool:
    if not isinstance(value, dict):
        return True
    owner = value.get("storyBibleId") or value.get("projectId")
    return not owner or owner == story_bible_id


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def key_matches(collection: Collection, key: str, value: Any) -> bool:
    """Whether a document stored under an arbitrary id represents ``key``."""
    if not isinstance(value, dict):
        return False
    payload = normalize_value(collection, value)
    if collection in (Collection.EPISODES, Collection.USER_CHOICES):
        return _as_int(payload.get("episodeNumber")) == _as_int(key)
    if collection == Collection.COMPLETED_ARCS:
        return _as_int(payload.get("arcNumber")) == _as_int(key)
    if collection == Collection.PREPRODUCTION:
        kind, _, raw_number = key.partition("-")
        if kind == "episode":
            return (
                payload.get("type", "episode") == "episode"
                and _as_int(payload.get("episodeNumber")) == _as_int(raw_number)
            )
        if kind == "arc":
            return payload.get("type") == "arc" and _as_int(payload.get("arcIndex")) == _as_int(raw_number)
    if collection == Collection.GENERATION_JOBS:
        return payload.get("storeKey") == key
    return False
