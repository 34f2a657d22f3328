"""テスト用の代役（キャプチャ、OCR、分類器、タスクサービス、時計）."""

import threading
import time

from PIL import Image

from tracker_agent.model.errors import CaptureFailure, SyncFailure
from tracker_agent.model.models import (
    ActivityEvent,
    CaptureSample,
    ClassificationResult,
    OcrResult,
    TaskRecord,
)


class FakeClock:
    """手動で進める時計."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCapture:
    """白い画像を返すキャプチャ."""

    def __init__(self) -> None:
        self.calls = 0

    def capture(self) -> CaptureSample:
        self.calls += 1
        return CaptureSample(
            image=Image.new("RGB", (64, 32), "white"), captured_at=time.time()
        )


class FailingCapture:
    def __init__(self) -> None:
        self.calls = 0

    def capture(self) -> CaptureSample:
        self.calls += 1
        raise CaptureFailure("display not available")


class StubOcr:
    """決まったテキストを返すOCR. gate を渡すと解放されるまで待つ."""

    def __init__(
        self,
        text: str = "main.py - Visual Studio Code\nexport invoices to pdf",
        confidence: float = 0.9,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.text = text
        self.confidence = confidence
        self.error = error
        self.gate = gate
        self.started = threading.Event()
        self.images: list[Image.Image] = []

    def recognize(self, image: Image.Image, timeout: float) -> OcrResult:
        self.images.append(image)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return OcrResult(text=self.text, confidence=self.confidence)


class StubClassifier:
    def __init__(
        self, label: str = "Editing Python code", error: Exception | None = None
    ) -> None:
        self.label = label
        self.error = error
        self.calls: list[tuple[str, bool]] = []

    def classify(self, text: str, *, uncertain: bool = False) -> ClassificationResult:
        self.calls.append((text, uncertain))
        if uncertain:
            return ClassificationResult.unknown(uncertain=True)
        if self.error is not None:
            raise self.error
        return ClassificationResult(activity_label=self.label, confidence=0.9)


class FakeTaskService:
    """タスク取得と配信を記録するタスクサービスの代役."""

    def __init__(self, tasks: list[TaskRecord] | None = None) -> None:
        self.tasks = tasks if tasks is not None else []
        self.down = False
        self.attempts: list[str] = []
        self.delivered: list[str] = []
        # ("start", イベントID, タスクID) または ("stop", リモートID)
        self.timer_calls: list[tuple[str | None, ...]] = []
        self.running_timers: dict[str, str] = {}

    def fetch_tasks(self) -> list[TaskRecord]:
        return list(self.tasks)

    def record_activity(self, event: ActivityEvent) -> None:
        self.attempts.append(event.id)
        if self.down:
            raise SyncFailure("service unreachable")
        self.delivered.append(event.id)

    def start_time_tracking(self, event: ActivityEvent) -> str:
        if self.down:
            raise SyncFailure("service unreachable")
        task_id = event.matched_task.id if event.matched_task else None
        self.timer_calls.append(("start", event.id, task_id))
        remote_id = f"timer-{len(self.timer_calls)}"
        self.running_timers[remote_id] = event.id
        return remote_id

    def stop_time_tracking(self, remote_id: str) -> None:
        if self.down:
            raise SyncFailure("service unreachable")
        self.timer_calls.append(("stop", remote_id))
        self.running_timers.pop(remote_id, None)

