"""
Domain errors shared by the storage layer, the services and the API.

Storage failures are absorbed close to where a fallback exists; the validator and
generation errors travel up to the API, which maps them onto HTTP status codes.
"""

from typing import Any, Dict, List, Optional


class SequenceViolation(Exception):
    """An episode was requested before the episode it depends on exists."""

    def __init__(self, episode_number: int, required_episode: int):
        self.episode_number = episode_number
        self.required_episode = required_episode
        super().__init__(
            f"Episode {required_episode} not found; generate it before episode {episode_number}"
        )

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": "SequenceViolation",
            "message": str(self),
            "episodeNumber": self.episode_number,
            "requiredEpisode": self.required_episode,
        }


class GenerationTimeout(Exception):
    """A poller exhausted its wait budget without observing a completed result."""

    def __init__(self, job_key: str, timeout: float):
        self.job_key = job_key
        self.timeout = timeout
        super().__init__(f"generation for {job_key} did not complete within {timeout:.0f}s")


class StoreUnavailable(Exception):
    """A storage backend could not be reached or rejected the operation."""

    def __init__(self, backend: str, reason: Any = None):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} store unavailable: {reason}")


class MalformedResult(Exception):
    """A generation response lacked the structure needed to build content."""

    def __init__(self, reason: str, payload: Optional[Any] = None):
        self.reason = reason
        self.payload = payload
        super().__init__(reason)


class InvalidGenerationResponse(Exception):
    """The generation API answered with an explicit error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ResourceNotFound(LookupError):
    pass


class ArcLocked(Exception):
    """An arc-level workflow was requested while episodes in the arc are incomplete."""

    def __init__(self, arc_index: int, missing_episodes: List[int], missing_episode_pre_prod: List[int]):
        self.arc_index = arc_index
        self.missing_episodes = missing_episodes
        self.missing_episode_pre_prod = missing_episode_pre_prod
        super().__init__(
            f"arc {arc_index} locked missing_episodes={missing_episodes} "
            f"missing_episode_pre_prod={missing_episode_pre_prod}"
        )
