import logging
import time
from collections import OrderedDict
from typing import Any, Optional

from models import ProgressStatus

logger = logging.getLogger("serial.progress")

MAX_LOG_LINES = 200
MAX_CHANNELS = 256
ACTIONS = ("start", "stop", "update", "reset")


class ProgressChannel:
    """In-process status record for one session; observers poll ``snapshot``."""

    def __init__(self, scope_key: str = "default"):
        self.scope_key = scope_key
        self._status = ProgressStatus()

    def snapshot(self) -> ProgressStatus:
        return self._status.model_copy(deep=True)

    def start(self, step: str = "") -> ProgressStatus:
        self._status = ProgressStatus(step=step, is_active=True, start_time=time.time())
        logger.info("progress start scope=%s step=%s", self.scope_key, step)
        return self.snapshot()

    def update(self, log: Optional[str] = None, **fields: Any) -> ProgressStatus:
        data = self._status.model_dump()
        for name, value in fields.items():
            if value is None or name not in ProgressStatus.model_fields:
                continue
            data[name] = value
        if "progress" in fields and fields["progress"] is not None:
            data["progress"] = max(0.0, min(100.0, float(fields["progress"])))
        if log:
            data["logs"] = (list(data.get("logs") or []) + [log])[-MAX_LOG_LINES:]
        self._status = ProgressStatus.model_validate(data)
        return self.snapshot()

    def stop(self) -> ProgressStatus:
        self._status.is_active = False
        logger.info("progress stop scope=%s progress=%.0f", self.scope_key, self._status.progress)
        return self.snapshot()

    def reset(self) -> ProgressStatus:
        self._status = ProgressStatus()
        return self.snapshot()

    def apply(self, action: str, **fields: Any) -> ProgressStatus:
        if action == "start":
            self.start(step=fields.get("step") or "")
            if fields.get("progress") is not None or fields.get("log"):
                self.update(progress=fields.get("progress"), log=fields.get("log"))
            return self.snapshot()
        if action == "stop":
            return self.stop()
        if action == "update":
            return self.update(**fields)
        if action == "reset":
            return self.reset()
        raise ValueError(f"unknown progress action: {action}")


class ProgressRegistry:
    """Hands out one ``ProgressChannel`` per session key.

    At most ``max_channels`` channels are kept; the least recently used idle channel is
    dropped first. Active channels are never evicted.
    """

    def __init__(self, max_channels: int = MAX_CHANNELS):
        self.max_channels = max_channels
        self._channels: "OrderedDict[str, ProgressChannel]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._channels)

    def channel(self, scope_key: Optional[str]) -> ProgressChannel:
        key = scope_key or "default"
        channel = self._channels.get(key)
        if channel is not None:
            self._channels.move_to_end(key)
            return channel
        channel = ProgressChannel(key)
        self._channels[key] = channel
        self._evict(keep=key)
        return channel

    def _evict(self, keep: str) -> None:
        overflow = len(self._channels) - self.max_channels
        if overflow <= 0:
            return
        for key in list(self._channels):
            if overflow <= 0:
                break
            if key == keep or self._channels[key].snapshot().is_active:
                continue
            del self._channels[key]
            overflow -= 1
            logger.debug("progress channel evicted scope=%s", key)

    def discard(self, scope_key: str) -> None:
        self._channels.pop(scope_key, None)

    def clear(self) -> None:
        self._channels.clear()
