"""Stable "what am I doing right now" segment shown in the UI.

OCR-derived application names flicker between ticks, so an application
change is only accepted after it has been seen on ``stability_ticks``
consecutive ticks.  A different matched task starts a new segment at once.
Each segment is one remote timer: opening a segment starts it and closing
the segment stops it.
"""

from dataclasses import dataclass
from datetime import datetime

from tracker_agent.model.models import ActivityEvent

STABILITY_TICKS = 2


@dataclass
class ActivitySegment:
    application: str
    activity: str
    task: str | None
    started_at: float
    event_id: str = ""  # セグメントを開いたイベント

    @property
    def since(self) -> str:
        return datetime.fromtimestamp(self.started_at).strftime("%H:%M:%S")


class SegmentTracker:
    def __init__(self, stability_ticks: int = STABILITY_TICKS) -> None:
        self.stability_ticks = stability_ticks
        self.current: ActivitySegment | None = None
        self._pending_application: str | None = None
        self._unstable_count = 0

    def reset(self) -> None:
        self.current = None
        self._pending_application = None
        self._unstable_count = 0

    def close(self) -> ActivitySegment | None:
        """現在のセグメントを終えて返す. 次のイベントは新しいセグメントになる."""
        current = self.current
        self.reset()
        return current

    def update(self, event: ActivityEvent) -> ActivitySegment:
        """イベントを反映し、現在のセグメントを返す."""
        task = event.matched_task.title if event.matched_task else None
        current = self.current

        if current is None or task != current.task:
            return self._start(event, task)

        if event.application_hint == current.application:
            self._pending_application = None
            self._unstable_count = 0
            current.activity = event.activity_label
            return current

        if event.application_hint == self._pending_application:
            self._unstable_count += 1
        else:
            self._pending_application = event.application_hint
            self._unstable_count = 1

        if self._unstable_count >= self.stability_ticks:
            return self._start(event, task)
        return current

    def _start(self, event: ActivityEvent, task: str | None) -> ActivitySegment:
        self._pending_application = None
        self._unstable_count = 0
        self.current = ActivitySegment(
            application=event.application_hint,
            activity=event.activity_label,
            task=task,
            started_at=event.timestamp,
            event_id=event.id,
        )
        return self.current
