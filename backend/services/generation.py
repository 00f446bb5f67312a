"""
Generation requests and the background jobs that persist their results.

``GenerationClient`` talks to the external generation service (or produces compact
offline placeholders when none is configured). ``GenerationJobRunner`` runs one
asyncio task per (story bible, episode) or (story bible, arc, stage), writes the
"started" marker, and saves the finished result with its completion marker.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from core.arcs import episode_range_for_arc, episode_title
from core.errors import InvalidGenerationResponse, MalformedResult, ResourceNotFound, StoreUnavailable
from models import (
    Episode,
    EpisodeStatus,
    GenerationJob,
    GenerationStatus,
    JobKind,
    JobState,
    Scene,
    StoryBible,
    utc_now_iso,
)
from services.arc_unlock import ArcCompletionAggregator
from services.progress import ProgressRegistry
from services.sequencing import SequenceValidator
from storage import (
    arc_job_key,
    arc_preproduction_key,
    episode_job_key,
    episode_preproduction_key,
    preproduction_job_key,
)
from storage.repository import DualStoreRepository

logger = logging.getLogger("serial.generation")

PLACEHOLDER_SCENE = "This scene could not be generated. Regenerate the episode to try again."


class GenerationClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/") or None
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._offline_warnings: set[str] = set()

    @property
    def offline(self) -> bool:
        return self.base_url is None and self._client is None

    def _warn_offline_once(self, reason: str):
        if reason in self._offline_warnings:
            return
        self._offline_warnings.add(reason)
        logger.warning("generation offline fallback reason=%s", reason)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            response = await self._get_client().post(path, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("generation request failed path=%s error=%s", path, exc)
            raise InvalidGenerationResponse(f"generation service unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise InvalidGenerationResponse(
                str(message or f"generation service returned HTTP {response.status_code}"),
                status_code=response.status_code,
            )
        if isinstance(body, dict) and body.get("error"):
            raise InvalidGenerationResponse(str(body["error"]), status_code=response.status_code)
        if not isinstance(body, dict):
            logger.warning("generation response not an object path=%s", path)
            return {}

        logger.info(
            "generation request ok path=%s elapsed_ms=%.0f",
            path,
            (time.perf_counter() - started) * 1000,
        )
        return body

    async def generate_episode(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.offline:
            self._warn_offline_once("missing_generation_api_url")
            return self._offline_episode(request)
        return await self._post("/generate/episode", request)

    async def enhance_episode(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.offline:
            self._warn_offline_once("missing_generation_api_url")
            return {"episode": request.get("episode") or {}}
        return await self._post("/generate/episode/enhance", request)

    async def generate_preproduction(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.offline:
            self._warn_offline_once("missing_generation_api_url")
            return self._offline_preproduction(request)
        return await self._post("/generate/preproduction", request)

    def _offline_episode(self, request: Dict[str, Any]) -> Dict[str, Any]:
        number = request.get("episodeNumber")
        title = request.get("title") or f"Episode {number}"
        choice = (request.get("previousChoice") or {}).get("choiceText")
        opening = f"[offline draft] {title}."
        if choice:
            opening += f" Picks up after: {choice}."
        return {
            "episode": {
                "title": title,
                "scenes": [
                    {"sceneNumber": 1, "content": opening},
                    {"sceneNumber": 2, "content": "[offline draft] The story continues."},
                ],
            }
        }

    def _offline_preproduction(self, request: Dict[str, Any]) -> Dict[str, Any]:
        target = request.get("episodeNumber")
        label = f"episode {target}" if target is not None else f"arc {request.get('arcIndex')}"
        return {
            "preproduction": {
                "script": f"[offline draft] script for {label}",
                "storyboards": [],
            }
        }


def _scene(raw: Any, index: int) -> Optional[Scene]:
    if isinstance(raw, str):
        return Scene(scene_number=index + 1, content=raw) if raw.strip() else None
    if not isinstance(raw, dict):
        return None
    content = raw.get("content") or raw.get("text") or ""
    if not str(content).strip():
        return None
    number = raw.get("sceneNumber") or raw.get("number")
    try:
        number = int(number) if number is not None else index + 1
    except (TypeError, ValueError):
        number = index + 1
    return Scene(scene_number=number, content=str(content))


def parse_episode_payload(
    payload: Any,
    episode_number: int,
    story_bible_id: str,
    default_title: str = "",
) -> Episode:
    """Build an ``Episode`` from a generation response; ``MalformedResult`` if it has no scenes."""
    if not isinstance(payload, dict):
        raise MalformedResult("generation response is not an object", payload)
    body = payload.get("episode") if isinstance(payload.get("episode"), dict) else payload
    raw_scenes = body.get("scenes")
    if not isinstance(raw_scenes, list) or not raw_scenes:
        raise MalformedResult("generation response has no scenes", payload)

    scenes = [scene for scene in (_scene(raw, idx) for idx, raw in enumerate(raw_scenes)) if scene is not None]
    if not scenes:
        raise MalformedResult("generation response scenes are empty", payload)

    return Episode(
        episode_number=episode_number,
        story_bible_id=story_bible_id,
        title=str(body.get("title") or default_title or f"Episode {episode_number}"),
        synopsis=body.get("synopsis"),
        scenes=scenes,
    )


def placeholder_episode(episode_number: int, story_bible_id: str, title: str = "") -> Episode:
    return Episode(
        episode_number=episode_number,
        story_bible_id=story_bible_id,
        title=title or f"Episode {episode_number}",
        scenes=[Scene(scene_number=1, content=PLACEHOLDER_SCENE)],
        placeholder=True,
    )


def parse_preproduction_payload(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedResult("pre-production response is not an object", payload)
    body = payload.get("preproduction") if isinstance(payload.get("preproduction"), dict) else payload
    materials = {key: value for key, value in body.items() if key not in ("error", "generationStatus", "status")}
    if not materials:
        raise MalformedResult("pre-production response has no materials", payload)
    return materials


class GenerationJobRunner:
    """
    Starts generation flows as background tasks and tracks them per job key.

    A request for a job that is already running gets the running job back. Once a
    request is dispatched it cannot be recalled; observers may stop polling, but the
    task still writes its result when it finishes.
    """

    def __init__(self, client: GenerationClient, progress: ProgressRegistry):
        self.client = client
        self.progress = progress
        self._tasks: Dict[str, asyncio.Task] = {}
        # claimed or running jobs; an entry is added before the first await of a start
        self._jobs: Dict[str, GenerationJob] = {}

    @staticmethod
    def _run_key(repository: DualStoreRepository, story_bible_id: str, job_key: str) -> str:
        return f"{repository.user_id or 'guest'}:{story_bible_id}:{job_key}"

    def running_job(self, repository: DualStoreRepository, story_bible_id: str, job_key: str) -> Optional[GenerationJob]:
        return self._jobs.get(self._run_key(repository, story_bible_id, job_key))

    async def active_job(self, repository: DualStoreRepository, story_bible_id: str, job_key: str) -> Optional[GenerationJob]:
        """The in-process job for ``job_key``, else a persisted marker still in the started state."""
        running = self.running_job(repository, story_bible_id, job_key)
        if running is not None:
            return running
        try:
            marker = await repository.get_job_marker(story_bible_id, job_key)
        except StoreUnavailable as exc:
            logger.warning("job marker read failed job=%s error=%s", job_key, exc)
            return None
        if marker is not None and marker.state == JobState.STARTED:
            return marker
        return None

    def task_for(self, repository: DualStoreRepository, story_bible_id: str, job_key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(self._run_key(repository, story_bible_id, job_key))

    def _claim(self, run_key: str, job: GenerationJob) -> Optional[GenerationJob]:
        """Reserve ``run_key`` for ``job``; returns the job already holding it, if any."""
        current = self._jobs.get(run_key)
        if current is not None:
            return current
        self._jobs[run_key] = job
        return None

    def _release(self, run_key: str, job: GenerationJob) -> None:
        if self._jobs.get(run_key) is job:
            self._jobs.pop(run_key, None)

    def _launch(self, run_key: str, job: GenerationJob, coro) -> GenerationJob:
        task = asyncio.create_task(coro)
        self._tasks[run_key] = task
        self._jobs[run_key] = job

        def _forget(done: asyncio.Task):
            if self._tasks.get(run_key) is done:
                self._tasks.pop(run_key, None)
            self._release(run_key, job)

        task.add_done_callback(_forget)
        return job

    async def _record(self, repository: DualStoreRepository, job: GenerationJob) -> None:
        try:
            await repository.save_job_marker(job)
        except StoreUnavailable as exc:
            logger.warning("job marker write failed job=%s state=%s error=%s", job.job_key, job.state.value, exc)

    async def shutdown(self):
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._jobs.clear()

    # episodes

    async def start_episode(
        self,
        repository: DualStoreRepository,
        story_bible_id: str,
        episode_number: int,
        premium: bool = False,
        force: bool = False,
        mode_flags: Optional[Dict[str, Any]] = None,
        session_key: Optional[str] = None,
    ) -> GenerationJob:
        await SequenceValidator(repository).require_accessible(story_bible_id, episode_number)

        story_bible = await repository.get_story_bible(story_bible_id)
        if story_bible is None:
            raise ResourceNotFound(f"story bible {story_bible_id} not found")

        job_key = episode_job_key(episode_number)
        run_key = self._run_key(repository, story_bible_id, job_key)
        job = GenerationJob(
            job_key=job_key,
            kind=JobKind.EPISODE,
            story_bible_id=story_bible_id,
            episode_number=episode_number,
            stage="premium" if premium else "standard",
        )
        running = self._claim(run_key, job)
        if running is not None:
            logger.info("episode job already running story_bible_id=%s episode=%d", story_bible_id, episode_number)
            return running

        try:
            existing = await repository.get_episode(story_bible_id, episode_number)
            replacing = existing is not None and not existing.is_draft
            if replacing and not force:
                self._release(run_key, job)
                return GenerationJob(
                    job_key=job_key,
                    kind=JobKind.EPISODE,
                    story_bible_id=story_bible_id,
                    episode_number=episode_number,
                    state=JobState.COMPLETED,
                    finished_at=existing.last_modified or existing.generated_at,
                )

            await self._record(repository, job)
            if existing is None:
                draft = Episode(
                    episode_number=episode_number,
                    story_bible_id=story_bible_id,
                    title=episode_title(story_bible, episode_number),
                    generation_complete=False,
                    status=EpisodeStatus.DRAFT,
                )
                await repository.save_episode(draft)
        except BaseException:
            self._release(run_key, job)
            raise

        logger.info(
            "episode job start story_bible_id=%s episode=%d premium=%s force=%s user=%s",
            story_bible_id,
            episode_number,
            premium,
            force,
            repository.user_id or "guest",
        )
        return self._launch(
            run_key,
            job,
            self._run_episode(repository, story_bible, job, premium, mode_flags or {}, session_key, replacing),
        )

    async def _episode_request(
        self,
        repository: DualStoreRepository,
        story_bible: StoryBible,
        episode_number: int,
        mode_flags: Dict[str, Any],
    ) -> Dict[str, Any]:
        previous_choice = None
        if episode_number > 1:
            choice = await repository.get_choice(story_bible.id, episode_number - 1)
            previous_choice = choice.to_document() if choice else None
        return {
            "storyBible": story_bible.to_document(),
            "episodeNumber": episode_number,
            "title": episode_title(story_bible, episode_number),
            "previousChoice": previous_choice,
            "editedScenes": await repository.edited_scenes_before(story_bible.id, episode_number),
            "creativeMode": story_bible.creative_mode,
            **mode_flags,
        }

    async def _run_episode(
        self,
        repository: DualStoreRepository,
        story_bible: StoryBible,
        job: GenerationJob,
        premium: bool,
        mode_flags: Dict[str, Any],
        session_key: Optional[str],
        replacing: bool = False,
    ):
        number = job.episode_number
        channel = self.progress.channel(session_key)
        channel.start(step=f"Preparing episode {number}")
        try:
            request = await self._episode_request(repository, story_bible, number, mode_flags)
            channel.update(progress=15, step="Generating episode", log=f"Requesting episode {number}")
            payload = await self.client.generate_episode(request)
            episode = self._episode_from(payload, story_bible, number)

            if premium:
                if replacing:
                    # the completed episode stays published until the enhanced one replaces it
                    channel.update(progress=60, step="Enhancing episode", log="Enhancing")
                else:
                    episode.generation_complete = False
                    await repository.save_episode(episode)
                    channel.update(progress=60, step="Enhancing episode", log="Draft saved, enhancing")
                enhanced = await self.client.enhance_episode({**request, "episode": episode.to_document()})
                episode = self._episode_from(enhanced, story_bible, number)
                episode.generation_type = "premium-enhanced"
            else:
                episode.generation_type = "standard"

            episode.generation_complete = True
            episode.status = EpisodeStatus.COMPLETED
            episode.generated_at = utc_now_iso()
            if repository.user_id:
                episode.owner_id = repository.user_id
            result = await repository.save_episode(episode)

            job.state = JobState.COMPLETED
            job.finished_at = utc_now_iso()
            await self._record(repository, job)
            channel.update(progress=100, step="Complete", log=f"Episode {number} saved")
            logger.info(
                "episode job done story_bible_id=%s episode=%d remote=%s local=%s",
                story_bible.id,
                number,
                result.remote_written,
                result.local_written,
            )
        except InvalidGenerationResponse as exc:
            await self._fail(repository, job, channel, exc)
        except StoreUnavailable as exc:
            await self._fail(repository, job, channel, exc)
        except Exception as exc:
            logger.exception("episode job crashed story_bible_id=%s episode=%s", story_bible.id, number)
            await self._fail(repository, job, channel, exc)
        finally:
            channel.stop()

    def _episode_from(self, payload: Any, story_bible: StoryBible, number: int) -> Episode:
        title = episode_title(story_bible, number)
        try:
            return parse_episode_payload(payload, number, story_bible.id, title)
        except MalformedResult as exc:
            logger.warning(
                "episode response malformed story_bible_id=%s episode=%d reason=%s fallback=placeholder",
                story_bible.id,
                number,
                exc.reason,
            )
            return placeholder_episode(number, story_bible.id, title)

    async def _fail(self, repository: DualStoreRepository, job: GenerationJob, channel, exc: Exception):
        logger.warning("generation job failed job=%s story_bible_id=%s error=%s", job.job_key, job.story_bible_id, exc)
        job.state = JobState.ERROR
        job.error = str(exc)
        job.finished_at = utc_now_iso()
        await self._record(repository, job)
        channel.update(step="Failed", log=f"Error: {exc}")

    # pre-production

    async def start_episode_preproduction(
        self,
        repository: DualStoreRepository,
        story_bible_id: str,
        episode_number: int,
        force: bool = False,
        session_key: Optional[str] = None,
    ) -> GenerationJob:
        episode = await repository.get_episode(story_bible_id, episode_number)
        if episode is None or episode.is_draft:
            raise ResourceNotFound(f"episode {episode_number} not found")
        story_bible = await repository.get_story_bible(story_bible_id)
        if story_bible is None:
            raise ResourceNotFound(f"story bible {story_bible_id} not found")

        job_key = preproduction_job_key(episode_number)
        run_key = self._run_key(repository, story_bible_id, job_key)
        job = GenerationJob(
            job_key=job_key,
            kind=JobKind.PREPRODUCTION,
            story_bible_id=story_bible_id,
            episode_number=episode_number,
        )
        running = self._claim(run_key, job)
        if running is not None:
            return running

        try:
            if not force and await repository.has_episode_preproduction(story_bible_id, episode_number):
                self._release(run_key, job)
                return GenerationJob(
                    job_key=job_key,
                    kind=JobKind.PREPRODUCTION,
                    story_bible_id=story_bible_id,
                    episode_number=episode_number,
                    state=JobState.COMPLETED,
                )
            await self._record(repository, job)
        except BaseException:
            self._release(run_key, job)
            raise

        request = {
            "type": "episode",
            "storyBible": story_bible.to_document(),
            "episodeNumber": episode_number,
            "episode": episode.to_document(),
        }
        return self._launch(
            run_key,
            job,
            self._run_preproduction(repository, job, episode_preproduction_key(episode_number), request, session_key),
        )

    async def start_arc_preproduction(
        self,
        repository: DualStoreRepository,
        aggregator: ArcCompletionAggregator,
        story_bible_id: str,
        arc_index: int,
        stage: str = "synthesis",
        session_key: Optional[str] = None,
    ) -> GenerationJob:
        story_bible = await repository.get_story_bible(story_bible_id)
        if story_bible is None:
            raise ResourceNotFound(f"story bible {story_bible_id} not found")
        await aggregator.require_unlocked(repository.user_id, story_bible_id, arc_index, story_bible)

        job_key = arc_job_key(arc_index, stage)
        run_key = self._run_key(repository, story_bible_id, job_key)
        job = GenerationJob(
            job_key=job_key,
            kind=JobKind.PREPRODUCTION,
            story_bible_id=story_bible_id,
            arc_index=arc_index,
            stage=stage,
        )
        running = self._claim(run_key, job)
        if running is not None:
            return running

        try:
            await self._record(repository, job)
            episodes: List[Dict[str, Any]] = []
            for number in episode_range_for_arc(story_bible, arc_index):
                artifact = await repository.get_episode_preproduction(story_bible_id, number)
                if artifact is not None:
                    episodes.append(artifact.to_document())
        except BaseException:
            self._release(run_key, job)
            raise

        request = {
            "type": "arc",
            "stage": stage,
            "storyBible": story_bible.to_document(),
            "arcIndex": arc_index,
            "episodePreProduction": episodes,
        }
        return self._launch(
            run_key,
            job,
            self._run_preproduction(repository, job, arc_preproduction_key(arc_index), request, session_key),
        )

    async def _run_preproduction(
        self,
        repository: DualStoreRepository,
        job: GenerationJob,
        artifact_key: str,
        request: Dict[str, Any],
        session_key: Optional[str],
    ):
        story_bible_id = job.story_bible_id
        channel = self.progress.channel(session_key)
        channel.start(step=f"Pre-production {artifact_key}")
        try:
            await repository.update_preproduction(
                story_bible_id,
                artifact_key,
                {"generationStatus": GenerationStatus.GENERATING.value, "generationProgress": 0},
            )
            channel.update(progress=20, step="Generating pre-production", log=f"Requesting {artifact_key}")
            payload = await self.client.generate_preproduction(request)
            materials = parse_preproduction_payload(payload)
            fields = {
                **materials,
                "generationStatus": GenerationStatus.COMPLETED.value,
                "generationProgress": 100,
            }
            if job.stage:
                fields["stage"] = job.stage
            await repository.update_preproduction(story_bible_id, artifact_key, fields)

            job.state = JobState.COMPLETED
            job.finished_at = utc_now_iso()
            await self._record(repository, job)
            channel.update(progress=100, step="Complete", log=f"{artifact_key} saved")
            logger.info("pre-production job done story_bible_id=%s key=%s", story_bible_id, artifact_key)
        except (InvalidGenerationResponse, MalformedResult, StoreUnavailable) as exc:
            await self._fail_preproduction(repository, job, artifact_key, channel, exc)
        except Exception as exc:
            logger.exception("pre-production job crashed story_bible_id=%s key=%s", story_bible_id, artifact_key)
            await self._fail_preproduction(repository, job, artifact_key, channel, exc)
        finally:
            channel.stop()

    async def _fail_preproduction(self, repository, job, artifact_key, channel, exc):
        await self._fail(repository, job, channel, exc)
        try:
            await repository.update_preproduction(
                job.story_bible_id,
                artifact_key,
                {"generationStatus": GenerationStatus.ERROR.value, "error": str(exc)},
            )
        except StoreUnavailable as store_exc:
            logger.warning("pre-production status write failed key=%s error=%s", artifact_key, store_exc)
