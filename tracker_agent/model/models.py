__all__ = [
    "UNKNOWN_LABEL",
    "ActivityEvent",
    "CaptureSample",
    "ClassificationResult",
    "LogEventModel",
    "OcrResult",
    "StatusModel",
    "SyncKind",
    "SyncQueueItem",
    "TaskRecord",
    "TaskRef",
    "TrackingSession",
    "TrackingState",
    "TrackingUpdateModel",
]


import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict

from PIL import Image

from tracker_agent.config import Settings

UNKNOWN_LABEL = "Unknown"


class TrackingState(Enum):
    """トラッキングのライフサイクル状態."""

    IDLE = "idle"
    TRACKING = "tracking"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class TrackingSession:
    """1回のトラッキングセッション. Schedulerだけが保持する."""

    settings: Settings
    started_at: float
    started_mono: float
    state: TrackingState = TrackingState.TRACKING
    last_tick_at: float | None = None
    last_tick_mono: float | None = None
    consecutive_failures: int = 0

    def wall_time(self, mono: float) -> float:
        """モノトニック時刻をセッション基準の壁時計時刻に変換."""
        return self.started_at + (mono - self.started_mono)


@dataclass
class CaptureSample:
    """キャプチャ1枚分. 永続化も送信もしない."""

    image: Image.Image
    captured_at: float


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: float

    def is_low_confidence(self, floor: float) -> bool:
        return not self.text.strip() or self.confidence < floor


@dataclass(frozen=True)
class ClassificationResult:
    activity_label: str
    confidence: float
    uncertain: bool = False

    @classmethod
    def unknown(cls, *, uncertain: bool = False) -> "ClassificationResult":
        return cls(activity_label=UNKNOWN_LABEL, confidence=0.0, uncertain=uncertain)


@dataclass(frozen=True)
class TaskRecord:
    """タスクサービスから取得したタスクのキャッシュ."""

    id: str
    title: str
    description: str = ""
    project_name: str = ""
    updated_at: float = 0.0

    def ref(self) -> "TaskRef":
        return TaskRef(id=self.id, title=self.title)


@dataclass(frozen=True)
class TaskRef:
    id: str
    title: str


@dataclass(frozen=True)
class ActivityEvent:
    """パイプライン1回分の結果. Event Logと同期の単位."""

    timestamp: float
    application_hint: str
    activity_label: str
    confidence: float
    matched_task: TaskRef | None = None
    text_excerpt: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def sync_payload(self) -> dict[str, Any]:
        """タスクサービスへ送る内容. 画面テキストは含めない."""
        return {
            "event_id": self.id,
            "timestamp": self.timestamp,
            "application": self.application_hint,
            "activity": self.activity_label,
            "confidence": round(self.confidence, 3),
            "task_id": self.matched_task.id if self.matched_task else None,
        }


class SyncKind(Enum):
    """同期キューに積む操作の種類."""

    ACTIVITY = "activity"
    TIMER_START = "timer_start"  # セグメント開始でリモートのタイマーを開始
    TIMER_STOP = "timer_stop"  # セグメント終了でタイマーを停止


@dataclass(frozen=True)
class SyncQueueItem:
    seq: int
    event_id: str
    kind: SyncKind = SyncKind.ACTIVITY
    attempt_count: int = 0
    next_retry_at: float = 0.0


class LogEventModel(TypedDict):
    """UIへの log-event 通知."""

    level: str  # "info", "success", "warning", "error"
    message: str


class TrackingUpdateModel(TypedDict):
    """UIへの tracking-update 通知."""

    application: str
    activity: str
    task: str
    since: str


class StatusModel(TypedDict):
    state: str
