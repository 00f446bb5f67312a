import json
import logging
import time
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.aliases import normalize_artifact, normalize_story_bible, resolve_story_bible_id
from core.arcs import arc_info_for_episode, completed_arc_number
from core.errors import (
    ArcLocked,
    GenerationTimeout,
    InvalidGenerationResponse,
    MalformedResult,
    ResourceNotFound,
    SequenceViolation,
    StoreUnavailable,
)
from models import StoryBible, UserChoice
from services.arc_unlock import ArcCompletionAggregator
from services.generation import GenerationClient, GenerationJobRunner
from services.poller import episode_poller, preproduction_poller
from services.progress import ACTIONS, ProgressRegistry
from services.recovery import RecoveryScanner
from services.sequencing import SequenceValidator
from storage import episode_job_key, episode_preproduction_key, preproduction_job_key
from storage.local_cache import LocalCacheStore
from storage.remote import DocumentStore, HttpDocumentStore, RemoteStore, SqliteDocumentStore
from storage.repository import DualStoreRepository

BACKEND_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    data_dir: str = "../data"

    remote_store_url: Optional[str] = None
    remote_store_api_key: Optional[str] = None
    remote_store_timeout: float = 10.0
    generation_api_url: Optional[str] = None
    generation_api_key: Optional[str] = None
    generation_timeout: float = 300.0

    poll_interval_seconds: float = 2.0
    forced_reload_timeout_seconds: float = 120.0
    generation_timeout_seconds: float = 300.0

    log_level: str = "INFO"
    enable_http_logging: bool = True
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )


settings = Settings()
app = FastAPI(title="Serial Studio API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("serial.api")
if settings.log_file:
    log_path = Path(settings.log_file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root_logger = logging.getLogger("serial")
    if not any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in root_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        root_logger.addHandler(file_handler)
        logger.info("file logging enabled path=%s", log_path)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
USER_HEADER = "X-User-Id"
SESSION_HEADER = "X-Session-Id"


def data_root() -> Path:
    configured = Path(settings.data_dir)
    if configured.is_absolute():
        root = configured.resolve()
    else:
        root = (BACKEND_ROOT / configured).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def build_document_store() -> DocumentStore:
    if settings.remote_store_url:
        logger.info("remote store backend=http url=%s", settings.remote_store_url)
        return HttpDocumentStore(
            settings.remote_store_url,
            api_key=settings.remote_store_api_key,
            timeout=settings.remote_store_timeout,
        )
    db_path = data_root() / "remote_store.db"
    logger.info("remote store backend=sqlite path=%s", db_path)
    return SqliteDocumentStore(str(db_path))


local_store = LocalCacheStore(str(data_root() / "local_cache.db"))
remote_store = RemoteStore(build_document_store())
generation_client = GenerationClient(
    base_url=settings.generation_api_url,
    api_key=settings.generation_api_key,
    timeout=settings.generation_timeout,
)
progress_registry = ProgressRegistry()
job_runner = GenerationJobRunner(generation_client, progress_registry)
arc_aggregator = ArcCompletionAggregator(DualStoreRepository(local_store, remote_store))
recovery_scanners: "OrderedDict[str, RecoveryScanner]" = OrderedDict()
MAX_RECOVERY_SCANNERS = 1024

if generation_client.offline:
    logger.warning("generation api url not configured; episodes will use offline drafts")


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s user=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
        request.headers.get(USER_HEADER) or "guest",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


@app.exception_handler(SequenceViolation)
async def sequence_violation_handler(request: Request, exc: SequenceViolation):
    return JSONResponse(status_code=409, content={"detail": exc.to_detail()})


@app.exception_handler(ArcLocked)
async def arc_locked_handler(request: Request, exc: ArcLocked):
    return JSONResponse(
        status_code=409,
        content={
            "detail": {
                "error": "ArcLocked",
                "message": str(exc),
                "arcIndex": exc.arc_index,
                "missingEpisodes": exc.missing_episodes,
                "missingEpisodePreProd": exc.missing_episode_pre_prod,
            }
        },
    )


@app.exception_handler(GenerationTimeout)
async def generation_timeout_handler(request: Request, exc: GenerationTimeout):
    return JSONResponse(
        status_code=504,
        content={"detail": {"error": "GenerationTimeout", "message": str(exc), "jobKey": exc.job_key}},
    )


@app.exception_handler(InvalidGenerationResponse)
async def invalid_generation_handler(request: Request, exc: InvalidGenerationResponse):
    return JSONResponse(
        status_code=502,
        content={"detail": {"error": "InvalidGenerationResponse", "message": str(exc), "retryable": True}},
    )


@app.exception_handler(MalformedResult)
async def malformed_result_handler(request: Request, exc: MalformedResult):
    return JSONResponse(status_code=502, content={"detail": {"error": "MalformedResult", "message": exc.reason}})


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error("store unavailable path=%s backend=%s reason=%s", request.url.path, exc.backend, exc.reason)
    return JSONResponse(status_code=503, content={"detail": {"error": "StoreUnavailable", "message": str(exc)}})


@app.exception_handler(ResourceNotFound)
async def resource_not_found_handler(request: Request, exc: ResourceNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def user_id_from(request: Request) -> Optional[str]:
    value = (request.headers.get(USER_HEADER) or "").strip()
    return value or None


def session_key_from(request: Request) -> str:
    return (
        request.query_params.get("session")
        or request.headers.get(SESSION_HEADER)
        or user_id_from(request)
        or "guest"
    )


def story_bible_id_from(request: Request, body: Optional[Dict[str, Any]] = None) -> str:
    story_bible_id = resolve_story_bible_id(request.query_params)
    if not story_bible_id and body:
        story_bible_id = resolve_story_bible_id(body)
    if not story_bible_id:
        raise HTTPException(status_code=400, detail="storyBibleId is required")
    return story_bible_id


def repository_for(request: Request) -> DualStoreRepository:
    return DualStoreRepository(local_store, remote_store, user_id_from(request))


def scanner_for(request: Request) -> RecoveryScanner:
    key = session_key_from(request)
    scanner = recovery_scanners.get(key)
    if scanner is None:
        scanner = RecoveryScanner(DualStoreRepository(local_store, remote_store))
        recovery_scanners[key] = scanner
        while len(recovery_scanners) > MAX_RECOVERY_SCANNERS:
            recovery_scanners.popitem(last=False)
    else:
        recovery_scanners.move_to_end(key)
    return scanner


async def job_started_at(repository: DualStoreRepository, story_bible_id: str, job_key: str) -> Optional[str]:
    job = await job_runner.active_job(repository, story_bible_id, job_key)
    return job.started_at if job is not None else None


def require_episode_number(episode_number: int) -> int:
    if episode_number < 1:
        raise HTTPException(status_code=400, detail="episode number must be >= 1")
    return episode_number


async def require_story_bible(repository: DualStoreRepository, story_bible_id: str) -> StoryBible:
    story_bible = await repository.get_story_bible(story_bible_id)
    if story_bible is None:
        raise HTTPException(status_code=404, detail="Story bible not found")
    return story_bible


class GenerateEpisodeRequest(BaseModel):
    premium: bool = False
    force: bool = False
    mode_flags: Dict[str, Any] = Field(default_factory=dict)


class EditSceneRequest(BaseModel):
    content: str


class UserChoiceRequest(BaseModel):
    choice_id: str
    choice_text: str = ""


class GeneratePreProductionRequest(BaseModel):
    force: bool = False


class GenerateArcPreProductionRequest(BaseModel):
    stage: str = "synthesis"


class RecoverRequest(BaseModel):
    episode_numbers: Optional[List[int]] = None


class MigrateRequest(BaseModel):
    skip_duplicates: bool = True
    clear_after_migration: bool = False


class ProgressRequest(BaseModel):
    action: str
    progress: Optional[float] = None
    step: Optional[str] = None
    log: Optional[str] = None


# story bible


@app.get("/api/story-bible")
async def get_story_bible(request: Request):
    story_bible_id = story_bible_id_from(request)
    story_bible = await require_story_bible(repository_for(request), story_bible_id)
    return story_bible.to_document()


@app.put("/api/story-bible")
async def save_story_bible(request: Request, body: Dict[str, Any]):
    payload = normalize_story_bible(body)
    story_bible_id = resolve_story_bible_id(request.query_params) or payload.get("id")
    if not story_bible_id:
        raise HTTPException(status_code=400, detail="storyBibleId is required")
    payload["id"] = story_bible_id
    try:
        story_bible = StoryBible.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
    result = await repository_for(request).save_story_bible(story_bible)
    logger.info("story bible saved story_bible_id=%s arcs=%d", story_bible_id, len(story_bible.narrative_arcs))
    return {"storyBible": story_bible.to_document(), "write": result.to_document()}


# episodes


@app.get("/api/episodes")
async def list_episodes(request: Request, include_drafts: bool = False):
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    story_bible = await repository.get_story_bible(story_bible_id)
    episodes = await repository.list_episodes(story_bible_id, include_drafts=include_drafts)
    finished = [number for number, episode in episodes.items() if not episode.is_draft]
    pre_production = await repository.preproduction_status(story_bible_id, finished)
    return {
        "storyBibleId": story_bible_id,
        "episodes": {str(number): episode.to_document() for number, episode in episodes.items()},
        "nextEpisode": SequenceValidator.next_episode(finished, story_bible),
        "preProduction": {str(number): ready for number, ready in pre_production.items()},
        "completedArcs": await repository.completed_arcs(story_bible_id),
    }


@app.delete("/api/episodes")
async def clear_episodes(request: Request):
    story_bible_id = story_bible_id_from(request)
    removed = await repository_for(request).clear_episodes(story_bible_id)
    return {"storyBibleId": story_bible_id, "removed": removed}


@app.get("/api/episodes/{episode_number}")
async def get_episode(episode_number: int, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    await SequenceValidator(repository).require_accessible(story_bible_id, episode_number)
    episode = await repository.get_episode(story_bible_id, episode_number)
    if episode is None or episode.is_draft:
        raise HTTPException(status_code=404, detail=f"Episode {episode_number} not found")
    story_bible = await repository.get_story_bible(story_bible_id)
    return {
        "episode": episode.to_document(),
        "arc": arc_info_for_episode(story_bible, episode_number).to_document(),
    }


@app.post("/api/episodes/{episode_number}/generate", status_code=202)
async def generate_episode(episode_number: int, req: GenerateEpisodeRequest, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    job = await job_runner.start_episode(
        repository_for(request),
        story_bible_id,
        episode_number,
        premium=req.premium,
        force=req.force,
        mode_flags=req.mode_flags,
        session_key=session_key_from(request),
    )
    return job.to_document()


@app.get("/api/episodes/{episode_number}/wait")
async def wait_for_episode(
    episode_number: int,
    request: Request,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    since = await job_started_at(repository, story_bible_id, episode_job_key(episode_number))
    poller = episode_poller(
        repository,
        story_bible_id,
        episode_number,
        interval=interval or settings.poll_interval_seconds,
        timeout=settings.generation_timeout_seconds if timeout is None else timeout,
        since=since,
    )
    episode = await poller.wait()
    return {"episode": episode.to_document() if episode is not None else None}


@app.get("/api/episodes/{episode_number}/poll")
async def poll_episode(
    episode_number: int,
    request: Request,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    since = await job_started_at(repository, story_bible_id, episode_job_key(episode_number))
    poller = episode_poller(
        repository,
        story_bible_id,
        episode_number,
        interval=interval or settings.poll_interval_seconds,
        timeout=settings.forced_reload_timeout_seconds if timeout is None else timeout,
        since=since,
    )

    async def event_stream():
        try:
            async for event in poller.stream():
                if event.timed_out:
                    payload = {"jobKey": event.job_key, "elapsed": event.elapsed}
                    yield f"event: timed_out\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
                else:
                    payload = {"episode": event.found.to_document(), "elapsed": event.elapsed}
                    yield f"event: found\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
        finally:
            poller.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.put("/api/episodes/{episode_number}/scenes/{scene_number}")
async def edit_scene(episode_number: int, scene_number: int, req: EditSceneRequest, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    episode = await repository_for(request).edit_scene(story_bible_id, episode_number, scene_number, req.content)
    return episode.to_document()


@app.post("/api/episodes/{episode_number}/choice")
async def record_choice(episode_number: int, req: UserChoiceRequest, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    if not await repository.episode_exists(story_bible_id, episode_number):
        raise HTTPException(status_code=404, detail=f"Episode {episode_number} not found")

    choice = UserChoice(
        episode_number=episode_number,
        choice_id=req.choice_id,
        choice_text=req.choice_text,
        story_bible_id=story_bible_id,
    )
    await repository.record_choice(choice)

    story_bible = await repository.get_story_bible(story_bible_id)
    arc_number = completed_arc_number(story_bible, episode_number)
    if arc_number is not None:
        await repository.mark_arc_completed(story_bible_id, arc_number)
        logger.info("arc completed story_bible_id=%s arc=%d episode=%d", story_bible_id, arc_number, episode_number)
    return {"choice": choice.to_document(), "completedArc": arc_number}


# arcs


@app.get("/api/arcs/unlock")
async def arc_unlock_statuses(request: Request):
    story_bible_id = story_bible_id_from(request)
    statuses = await arc_aggregator.unlock_statuses(user_id_from(request), story_bible_id)
    return {str(index): status.to_document() for index, status in statuses.items()}


@app.get("/api/arcs/{arc_index}/unlock")
async def arc_unlock_status(arc_index: int, request: Request):
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    episodes = await repository.list_episodes(story_bible_id)
    status = await arc_aggregator.can_unlock_arc(user_id_from(request), story_bible_id, arc_index, episodes)
    return status.to_document()


# pre-production


@app.post("/api/preproduction/episodes/{episode_number}/generate", status_code=202)
async def generate_episode_preproduction(episode_number: int, req: GeneratePreProductionRequest, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    job = await job_runner.start_episode_preproduction(
        repository_for(request),
        story_bible_id,
        episode_number,
        force=req.force,
        session_key=session_key_from(request),
    )
    return job.to_document()


@app.post("/api/preproduction/arcs/{arc_index}/generate", status_code=202)
async def generate_arc_preproduction(arc_index: int, req: GenerateArcPreProductionRequest, request: Request):
    story_bible_id = story_bible_id_from(request)
    job = await job_runner.start_arc_preproduction(
        repository_for(request),
        arc_aggregator,
        story_bible_id,
        arc_index,
        stage=req.stage,
        session_key=session_key_from(request),
    )
    return job.to_document()


@app.get("/api/preproduction/episodes/{episode_number}")
async def get_episode_preproduction(episode_number: int, request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    artifact = await repository_for(request).get_episode_preproduction(story_bible_id, episode_number)
    if artifact is None:
        raise HTTPException(status_code=404, detail=f"Pre-production for episode {episode_number} not found")
    return artifact.to_document()


@app.get("/api/preproduction/episodes/{episode_number}/wait")
async def wait_for_episode_preproduction(
    episode_number: int,
    request: Request,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    since = await job_started_at(repository, story_bible_id, preproduction_job_key(episode_number))
    poller = preproduction_poller(
        repository,
        story_bible_id,
        episode_number,
        interval=interval or settings.poll_interval_seconds,
        timeout=settings.generation_timeout_seconds if timeout is None else timeout,
        since=since,
    )
    artifact = await poller.wait()
    return {"preProduction": artifact.to_document() if artifact is not None else None}


@app.patch("/api/preproduction/episodes/{episode_number}")
async def update_episode_preproduction(episode_number: int, body: Dict[str, Any], request: Request):
    require_episode_number(episode_number)
    story_bible_id = story_bible_id_from(request)
    fields = normalize_artifact(body)
    for reserved in ("storyBibleId", "type", "episodeNumber", "arcIndex"):
        fields.pop(reserved, None)
    artifact = await repository_for(request).update_preproduction(
        story_bible_id,
        episode_preproduction_key(episode_number),
        fields,
    )
    return artifact.to_document()


@app.get("/api/preproduction/arcs/{arc_index}")
async def get_arc_preproduction(arc_index: int, request: Request):
    story_bible_id = story_bible_id_from(request)
    artifact = await repository_for(request).get_arc_preproduction(story_bible_id, arc_index)
    if artifact is None:
        raise HTTPException(status_code=404, detail=f"Pre-production for arc {arc_index} not found")
    return artifact.to_document()


@app.delete("/api/preproduction")
async def clear_preproduction(request: Request):
    story_bible_id = story_bible_id_from(request)
    removed = await repository_for(request).clear_preproduction(story_bible_id)
    return {"storyBibleId": story_bible_id, "removed": removed}


# jobs


@app.get("/api/jobs/{job_key}")
async def get_job(job_key: str, request: Request):
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    running = job_runner.running_job(repository, story_bible_id, job_key)
    if running is not None:
        return running.to_document()
    marker = await repository.get_job_marker(story_bible_id, job_key)
    if marker is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return marker.to_document()


# recovery


@app.get("/api/recovery")
async def find_recoverable(request: Request):
    story_bible_id = story_bible_id_from(request)
    recoverable = await scanner_for(request).find_recoverable(story_bible_id, user_id_from(request))
    return {"storyBibleId": story_bible_id, "recoverable": recoverable}


@app.post("/api/recovery")
async def recover_episodes(req: RecoverRequest, request: Request):
    story_bible_id = story_bible_id_from(request)
    user_id = user_id_from(request)
    if not user_id:
        raise HTTPException(status_code=400, detail="Recovery requires a signed-in user")
    result = await scanner_for(request).recover(story_bible_id, user_id, req.episode_numbers)
    return result.to_document()


@app.delete("/api/recovery")
async def reset_recovery(request: Request):
    story_bible_id = resolve_story_bible_id(request.query_params)
    scanner_for(request).reset(story_bible_id)
    return {"reset": True}


@app.post("/api/recovery/migrate")
async def migrate_local_episodes(req: MigrateRequest, request: Request):
    story_bible_id = story_bible_id_from(request)
    repository = repository_for(request)
    if not repository.is_authenticated:
        raise HTTPException(status_code=400, detail="Migration requires a signed-in user")
    result = await repository.migrate_local_to_remote(
        story_bible_id,
        skip_duplicates=req.skip_duplicates,
        clear_after_migration=req.clear_after_migration,
    )
    return result.to_document()


# progress


@app.get("/api/progress")
async def get_progress(request: Request):
    return progress_registry.channel(session_key_from(request)).snapshot().to_document()


@app.post("/api/progress")
async def post_progress(req: ProgressRequest, request: Request):
    if req.action not in ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {req.action}")
    channel = progress_registry.channel(session_key_from(request))
    status = channel.apply(req.action, progress=req.progress, step=req.step, log=req.log)
    return status.to_document()


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "remoteStore": type(remote_store.documents).__name__,
        "generationOffline": generation_client.offline,
        "timestamp": datetime.now().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
