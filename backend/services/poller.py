"""
Completion polling for generation jobs.

Generation runs outside the request that observes it, so observers sample the
repository on a fixed interval until a value passes the completion predicate, the
wait budget runs out, or the observer cancels. Draft writes made by intermediate
steps never pass the default predicates.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple

from pydantic import BaseModel

from core.errors import GenerationTimeout
from models import GenerationStatus, PollEvent, RECOGNISED_GENERATION_TYPES
from storage.repository import DualStoreRepository

logger = logging.getLogger("serial.poller")

DEFAULT_POLL_INTERVAL = 2.0
FORCED_RELOAD_TIMEOUT = 120.0
GENERATION_TIMEOUT = 300.0

Fetch = Callable[[], Awaitable[Any]]
CompletionPredicate = Callable[[Any], bool]


def _as_document(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    return value


def is_generation_complete(value: Any) -> bool:
    document = _as_document(value)
    if not isinstance(document, dict):
        return False
    if document.get("generationComplete") is True or document.get("_generationComplete") is True:
        return True
    return document.get("generationType") in RECOGNISED_GENERATION_TYPES


def is_preproduction_complete(value: Any) -> bool:
    document = _as_document(value)
    if not isinstance(document, dict):
        return False
    status = document.get("generationStatus") or document.get("status")
    return status in (None, GenerationStatus.COMPLETED.value, "complete")


class GenerationPoller:
    def __init__(
        self,
        job_key: str,
        fetch: Fetch,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = FORCED_RELOAD_TIMEOUT,
        predicate: CompletionPredicate = is_generation_complete,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.job_key = job_key
        self.fetch = fetch
        self.interval = interval
        self.timeout = max(0.0, timeout)
        self.predicate = predicate
        self.clock = clock
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.info("poll cancelled job=%s", self.job_key)
        self._cancelled.set()

    async def check_once(self) -> Optional[Any]:
        """One sample; returns the value only if it qualifies as complete."""
        try:
            value = await self.fetch()
        except Exception as exc:
            logger.warning("poll tick failed job=%s error=%s", self.job_key, exc)
            return None
        if value is None or not self.predicate(value):
            return None
        return value

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def stream(self) -> AsyncIterator[PollEvent]:
        """Yield exactly one ``found`` or ``timed_out`` event, or nothing once cancelled."""
        started = self.clock()

        found = await self.check_once()
        if found is not None:
            logger.info("poll satisfied at start job=%s", self.job_key)
            yield PollEvent(job_key=self.job_key, found=found, elapsed=0.0)
            return

        while not self.cancelled:
            remaining = self.timeout - (self.clock() - started)
            if remaining <= 0:
                break
            await self._sleep(min(self.interval, remaining))
            if self.cancelled:
                return
            found = await self.check_once()
            if found is not None:
                elapsed = self.clock() - started
                logger.info("poll found job=%s elapsed=%.2fs", self.job_key, elapsed)
                yield PollEvent(job_key=self.job_key, found=found, elapsed=elapsed)
                return

        if self.cancelled:
            return

        # the write may have landed right as the timer fired
        found = await self.check_once()
        elapsed = self.clock() - started
        if found is not None:
            logger.info("poll found on final check job=%s elapsed=%.2fs", self.job_key, elapsed)
            yield PollEvent(job_key=self.job_key, found=found, elapsed=elapsed)
            return
        logger.warning("poll timed out job=%s timeout=%.0fs", self.job_key, self.timeout)
        yield PollEvent(job_key=self.job_key, timed_out=True, elapsed=elapsed)

    async def wait(self) -> Optional[Any]:
        """Found value, ``None`` if cancelled, ``GenerationTimeout`` on timeout."""
        async for event in self.stream():
            if event.timed_out:
                raise GenerationTimeout(self.job_key, self.timeout)
            return event.found
        return None


def _epoch_ms(value: Any) -> Optional[int]:
    # numeric stamps are stored as epoch milliseconds, string stamps as ISO-8601
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def written_since(value: Any, since: Optional[str], fields: Tuple[str, ...]) -> bool:
    """True when the first timestamp found in ``fields`` is not older than ``since``."""
    if since is None:
        return True
    threshold = _epoch_ms(since)
    if threshold is None:
        return True
    document = _as_document(value)
    if not isinstance(document, dict):
        return False
    for field in fields:
        stamp = _epoch_ms(document.get(field))
        if stamp is not None:
            return stamp >= threshold
    return False


def episode_poller(
    repository: DualStoreRepository,
    story_bible_id: str,
    episode_number: int,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = GENERATION_TIMEOUT,
    since: Optional[str] = None,
) -> GenerationPoller:
    """Poll episode N; with ``since``, results written before that instant do not count."""

    async def fetch():
        return await repository.get_episode(story_bible_id, episode_number)

    def predicate(value: Any) -> bool:
        return is_generation_complete(value) and written_since(value, since, ("generatedAt", "lastModified"))

    return GenerationPoller(
        job_key=f"{story_bible_id}:episode-{episode_number}",
        fetch=fetch,
        interval=interval,
        timeout=timeout,
        predicate=predicate,
    )


def preproduction_poller(
    repository: DualStoreRepository,
    story_bible_id: str,
    episode_number: int,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = GENERATION_TIMEOUT,
    since: Optional[str] = None,
) -> GenerationPoller:
    async def fetch():
        return await repository.get_episode_preproduction(story_bible_id, episode_number)

    def predicate(value: Any) -> bool:
        return is_preproduction_complete(value) and written_since(value, since, ("lastUpdated",))

    return GenerationPoller(
        job_key=f"{story_bible_id}:preproduction-episode-{episode_number}",
        fetch=fetch,
        interval=interval,
        timeout=timeout,
        predicate=predicate,
    )
