from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RECOGNISED_GENERATION_TYPES = frozenset(
    {
        "standard",
        "premium-enhanced",
        "yolo-intelligent",
        "intelligent-orchestrator",
        "engine-enhanced-professional",
        "legacy-comprehensive",
        "legacy-basic",
    }
)


def is_draft_document(document: Dict[str, Any]) -> bool:
    # legacy episodes carry neither marker and count as final
    return document.get("generationComplete") is False and document.get("generationType") not in RECOGNISED_GENERATION_TYPES


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class Collection(str, Enum):
    STORY_BIBLE = "storyBible"
    EPISODES = "episodes"
    PREPRODUCTION = "preproduction"
    USER_CHOICES = "userChoices"
    COMPLETED_ARCS = "completedArcs"
    GENERATION_JOBS = "generationJobs"


class EpisodeStatus(str, Enum):
    DRAFT = "draft"
    COMPLETED = "completed"
    PRE_PRODUCTION_READY = "pre-production-ready"
    PRE_PRODUCTION_DONE = "pre-production-done"


class PreProductionType(str, Enum):
    EPISODE = "episode"
    ARC = "arc"


class GenerationStatus(str, Enum):
    NOT_STARTED = "not-started"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class JobKind(str, Enum):
    EPISODE = "episode"
    PREPRODUCTION = "preproduction"


class JobState(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ERROR = "error"


class StoredModel(BaseModel):
    """Documents persisted in either backend; camelCase on disk, unknown keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StoreScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: Collection
    story_bible_id: str
    user_id: Optional[str] = None


class EpisodeStub(StoredModel):
    number: Optional[int] = None
    title: str = ""
    summary: str = ""
    characters: List[str] = Field(default_factory=list)


class NarrativeArc(StoredModel):
    title: str = ""
    episodes: Optional[List[EpisodeStub]] = None


class StoryBible(StoredModel):
    id: str
    title: str = ""
    series_title: Optional[str] = None
    narrative_arcs: List[NarrativeArc] = Field(default_factory=list)
    main_characters: List[Dict[str, Any]] = Field(default_factory=list)
    creative_mode: str = "beast"


class Scene(StoredModel):
    scene_number: int
    content: str = ""
    edited: bool = False


class Episode(StoredModel):
    episode_number: int = Field(ge=1)
    story_bible_id: Optional[str] = None
    id: Optional[str] = None
    title: str = ""
    synopsis: Optional[str] = None
    scenes: List[Scene] = Field(default_factory=list)
    generation_type: Optional[str] = None
    generation_complete: Optional[bool] = None
    status: EpisodeStatus = EpisodeStatus.DRAFT
    version: int = 1
    edit_count: int = 0
    generated_at: Optional[str] = None
    last_modified: Optional[str] = None
    owner_id: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return is_draft_document({"generationComplete": self.generation_complete, "generationType": self.generation_type})


class PreProductionArtifact(StoredModel):
    type: PreProductionType = PreProductionType.EPISODE
    story_bible_id: Optional[str] = None
    id: Optional[str] = None
    episode_number: Optional[int] = None
    arc_index: Optional[int] = None
    generation_status: Optional[GenerationStatus] = None
    generation_progress: Optional[int] = None
    last_updated: Optional[int] = None
    updated_by: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.generation_status in (None, GenerationStatus.COMPLETED)


class UserChoice(StoredModel):
    episode_number: int = Field(ge=1)
    choice_id: str
    choice_text: str = ""
    story_bible_id: Optional[str] = None


class CompletedArc(StoredModel):
    arc_number: int = Field(ge=1)
    story_bible_id: Optional[str] = None
    completed_at: Optional[str] = None


class GenerationJob(StoredModel):
    job_key: str
    kind: JobKind
    story_bible_id: str
    episode_number: Optional[int] = None
    arc_index: Optional[int] = None
    stage: Optional[str] = None
    state: JobState = JobState.STARTED
    error: Optional[str] = None
    started_at: str = Field(default_factory=utc_now_iso)
    finished_at: Optional[str] = None


class ArcUnlockStatus(StoredModel):
    can_unlock: bool
    missing_episodes: List[int] = Field(default_factory=list)
    missing_episode_pre_prod: List[int] = Field(default_factory=list)


class ArcInfo(StoredModel):
    arc_index: int
    arc_title: str
    episode_in_arc: int
    total_in_arc: int


class ProgressStatus(StoredModel):
    progress: float = 0
    step: str = ""
    logs: List[str] = Field(default_factory=list)
    is_active: bool = False
    start_time: Optional[float] = None


class WriteResult(StoredModel):
    remote_written: bool = False
    local_written: bool = False

    @property
    def ok(self) -> bool:
        return self.remote_written or self.local_written


class MigrationResult(StoredModel):
    migrated: int = 0
    skipped: int = 0
    errors: int = 0


class PollEvent(BaseModel):
    job_key: str
    found: Optional[Any] = None
    timed_out: bool = False
    elapsed: float = 0.0
