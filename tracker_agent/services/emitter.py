"""Ordered notification channel between the agent and the UI layer.

Producers push ``log-event``, ``tracking-update`` and ``status`` messages
from several threads; the UI drains them in the order they were produced.
"""

import threading
import time
from collections import deque
from typing import Any

from tracker_agent.logger import logger
from tracker_agent.model.models import LogEventModel, StatusModel, TrackingUpdateModel

LOG_EVENT = "log-event"
TRACKING_UPDATE = "tracking-update"
STATUS = "status"

LOG_LEVELS = ("info", "success", "warning", "error")

_LOGGER_LEVELS = {
    "info": logger.info,
    "success": logger.info,
    "warning": logger.warning,
    "error": logger.error,
}


class EventEmitter:
    """UI向け通知のキュー. 直近のログはモニタリング画面用に保持する."""

    def __init__(self, history_size: int = 100, max_pending: int = 1000) -> None:
        # 満杯なら古いものから捨てる. UIが読んでいなくても送り手は止まらない
        self._pending: deque[dict[str, Any]] = deque(maxlen=max_pending)
        self._lock = threading.Lock()
        self.logs: deque[dict[str, Any]] = deque(maxlen=history_size)
        self.last_tracking_update: TrackingUpdateModel | None = None
        self.last_status: StatusModel | None = None

    def _publish(
        self, kind: str, payload: LogEventModel | TrackingUpdateModel | StatusModel
    ) -> None:
        message = {"type": kind, "payload": payload, "timestamp": time.time()}
        with self._lock:
            self._pending.append(message)

    def emit_log(self, level: str, message: str) -> None:
        if level not in LOG_LEVELS:
            msg = f"Unknown log level: {level}"
            raise ValueError(msg)
        _LOGGER_LEVELS[level]("%s: %s", level.upper(), message)
        payload: LogEventModel = {"level": level, "message": message}
        with self._lock:
            self.logs.append({**payload, "timestamp": time.time()})
        self._publish(LOG_EVENT, payload)

    def emit_tracking_update(
        self, application: str, activity: str, task: str | None, since: str
    ) -> None:
        payload: TrackingUpdateModel = {
            "application": application,
            "activity": activity,
            "task": task or "None",
            "since": since,
        }
        self.last_tracking_update = payload
        self._publish(TRACKING_UPDATE, payload)

    def emit_status(self, state: str) -> None:
        payload: StatusModel = {"state": state}
        self.last_status = payload
        self._publish(STATUS, payload)

    def recent_logs(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self.logs)

    def drain(self, max_items: int | None = None) -> list[dict[str, Any]]:
        """溜まっている通知を古い順に取り出す."""
        messages: list[dict[str, Any]] = []
        with self._lock:
            while self._pending and (max_items is None or len(messages) < max_items):
                messages.append(self._pending.popleft())
        return messages
