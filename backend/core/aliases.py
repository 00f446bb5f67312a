import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

CANONICAL_PREFIX = "greenlit"
LEGACY_PREFIXES: Tuple[str, ...] = ("scorched", "reeled")
ALL_PREFIXES: Tuple[str, ...] = (CANONICAL_PREFIX,) + LEGACY_PREFIXES

STORY_BIBLE_ID_PARAMS: Tuple[str, ...] = ("storyBibleId", "story_bible_id", "id", "projectId")
EPISODE_NUMBER_PARAMS: Tuple[str, ...] = ("episodeNumber", "episode_number", "episode", "ep")
ARC_INDEX_PARAMS: Tuple[str, ...] = ("arcIndex", "arc_index", "arc")

# legacy field name -> canonical field name
EPISODE_FIELD_ALIASES: Dict[str, str] = {
    "_generationComplete": "generationComplete",
    "episode_number": "episodeNumber",
    "story_bible_id": "storyBibleId",
    "projectId": "storyBibleId",
}
SCENE_FIELD_ALIASES: Dict[str, str] = {
    "_edited": "edited",
    "scene_number": "sceneNumber",
    "number": "sceneNumber",
}
ARTIFACT_FIELD_ALIASES: Dict[str, str] = {
    "projectId": "storyBibleId",
    "story_bible_id": "storyBibleId",
    "episode_number": "episodeNumber",
    "arc_index": "arcIndex",
}
LEGACY_ARTIFACT_STATUS = {
    "complete": "completed",
    "completed": "completed",
    "generating": "generating",
    "error": "error",
}


def namespace_keys(suffix: str, extra_suffixes: Iterable[str] = ()) -> List[str]:
    """Read order for a local-cache namespace: canonical first, then legacy prefixes."""
    keys = [f"{prefix}-{suffix}" for prefix in ALL_PREFIXES]
    for extra in extra_suffixes:
        keys.extend(f"{prefix}-{extra}" for prefix in ALL_PREFIXES)
    return keys


def canonical_key(suffix: str) -> str:
    return f"{CANONICAL_PREFIX}-{suffix}"


def _rename(payload: Dict[str, Any], aliases: Mapping[str, str]) -> Dict[str, Any]:
    for legacy, canonical in aliases.items():
        if legacy not in payload:
            continue
        value = payload.pop(legacy)
        payload.setdefault(canonical, value)
    return payload


def normalize_scene(scene: Any, index: int) -> Any:
    if not isinstance(scene, dict):
        return scene
    payload = _rename(dict(scene), SCENE_FIELD_ALIASES)
    payload.setdefault("sceneNumber", index + 1)
    return payload


def normalize_episode(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    payload = _rename(copy.deepcopy(value), EPISODE_FIELD_ALIASES)
    scenes = payload.get("scenes")
    if isinstance(scenes, list):
        payload["scenes"] = [normalize_scene(scene, idx) for idx, scene in enumerate(scenes)]
    return payload


def normalize_artifact(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    payload = _rename(copy.deepcopy(value), ARTIFACT_FIELD_ALIASES)
    if "generationStatus" not in payload:
        legacy_status = LEGACY_ARTIFACT_STATUS.get(str(payload.get("status") or "").lower())
        if legacy_status:
            payload["generationStatus"] = legacy_status
    return payload


def normalize_story_bible(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    payload = copy.deepcopy(value)
    # local cache wraps the bible as {"storyBible": {...}, "creativeMode": "..."}
    if isinstance(payload.get("storyBible"), dict):
        wrapper = payload
        payload = dict(wrapper["storyBible"])
        if wrapper.get("creativeMode") and "creativeMode" not in payload:
            payload["creativeMode"] = wrapper["creativeMode"]
    if not payload.get("title") and payload.get("seriesTitle"):
        payload["title"] = payload["seriesTitle"]
    return payload


def first_param(params: Mapping[str, Any], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = params.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def resolve_story_bible_id(params: Mapping[str, Any]) -> Optional[str]:
    return first_param(params, STORY_BIBLE_ID_PARAMS)


def resolve_episode_number(params: Mapping[str, Any]) -> Optional[int]:
    raw = first_param(params, EPISODE_NUMBER_PARAMS)
    if raw is None:
        return None
    try:
        number = int(raw)
    except ValueError:
        return None
    return number if number >= 1 else None


def resolve_arc_index(params: Mapping[str, Any]) -> Optional[int]:
    raw = first_param(params, ARC_INDEX_PARAMS)
    if raw is None:
        return None
    try:
        index = int(raw)
    except ValueError:
        return None
    return index if index >= 0 else None
