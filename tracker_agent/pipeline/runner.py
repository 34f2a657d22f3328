"""One pipeline run: capture → preprocess → OCR → classify → correlate → append.

Stage failures that can be recovered from downgrade the event instead of
aborting the run.  The returned ``RunOutcome`` tells the scheduler whether the
run counts toward the consecutive-failure threshold.  When a run opens a new
activity segment the remote timer stop and start are queued for delivery.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from tracker_agent.logger import logger
from tracker_agent.model.errors import (
    CaptureFailure,
    ClassificationFailure,
    OcrFailure,
    OcrFailureKind,
    TaskServiceError,
)
from tracker_agent.model.models import (
    UNKNOWN_LABEL,
    ActivityEvent,
    CaptureSample,
    ClassificationResult,
    SyncKind,
)
from tracker_agent.pipeline.correlator import TaskCorrelator
from tracker_agent.pipeline.ocr import OcrEngine
from tracker_agent.pipeline.preprocess import Preprocessor
from tracker_agent.pipeline.segments import ActivitySegment, SegmentTracker
from tracker_agent.pipeline.text_matching import detect_application
from tracker_agent.services.classifier import ActivityClassifier
from tracker_agent.services.emitter import EventEmitter
from tracker_agent.services.task_service import TaskSource
from tracker_agent.storage.event_store import EventLog, SyncQueue

TEXT_EXCERPT_CHARS = 200


class Capture(Protocol):
    def capture(self) -> CaptureSample: ...


@dataclass(frozen=True)
class RunOutcome:
    """パイプライン1回の結末."""

    event: ActivityEvent | None = None
    counted_failure: bool = False
    fatal: bool = False
    reason: str = ""

    @property
    def dropped(self) -> bool:
        return self.event is None


class Pipeline:
    def __init__(
        self,
        capture: Capture,
        ocr_engine: OcrEngine,
        classifier: ActivityClassifier,
        correlator: TaskCorrelator,
        event_log: EventLog,
        emitter: EventEmitter,
        *,
        preprocessor: Preprocessor | None = None,
        task_source: TaskSource | None = None,
        segments: SegmentTracker | None = None,
        application_hint: Callable[[], str | None] | None = None,
        on_event: Callable[[ActivityEvent], None] | None = None,
        timer_queue: SyncQueue | None = None,
        ocr_timeout: float = 30.0,
        ocr_confidence_floor: float = 0.4,
    ) -> None:
        self.capture = capture
        self.ocr_engine = ocr_engine
        self.classifier = classifier
        self.correlator = correlator
        self.event_log = event_log
        self.emitter = emitter
        self.preprocessor = preprocessor or Preprocessor()
        self.task_source = task_source
        self.segments = segments or SegmentTracker()
        self.application_hint = application_hint
        self.on_event = on_event
        self.timer_queue = timer_queue
        self.ocr_timeout = ocr_timeout
        self.ocr_confidence_floor = ocr_confidence_floor

    def _application(self, text: str) -> str:
        hint = self.application_hint() if self.application_hint else None
        return hint or detect_application(text)

    def _classify(self, text: str, uncertain: bool) -> tuple[ClassificationResult, bool]:
        """分類結果と、失敗回数に数えるかどうかを返す."""
        try:
            return self.classifier.classify(text, uncertain=uncertain), False
        except ClassificationFailure as e:
            if e.is_fatal:
                self.emitter.emit_log("error", f"AI classification rejected: {e}")
            else:
                self.emitter.emit_log(
                    "warning", f"AI classification unavailable, using Unknown: {e}"
                )
            return ClassificationResult.unknown(), e.is_fatal

    def _refresh_tasks(self, source: TaskSource) -> None:
        try:
            refreshed = self.correlator.refresh_if_stale(source)
        except TaskServiceError as e:
            # タスクなしで続行する. イベントは unmatched になる
            self.emitter.emit_log(
                "warning", f"Task list could not be loaded, tasks stay unmatched: {e}"
            )
            return
        if refreshed:
            self.emitter.emit_log(
                "success", f"Loaded {len(self.correlator.tasks)} active tasks"
            )

    def _switch_timer(
        self, previous: ActivitySegment | None, segment: ActivitySegment
    ) -> None:
        """前のセグメントのタイマーを止め、新しいセグメントのタイマーを開始する."""
        actions = [(SyncKind.TIMER_START, segment.event_id)]
        if previous is not None:
            actions.insert(0, (SyncKind.TIMER_STOP, previous.event_id))
            self.emitter.emit_log(
                "info",
                f"Now on {segment.task or 'general work'} in {segment.application}, "
                "restarting time tracking",
            )
        self.timer_queue.enqueue(*actions)

    def run(self, captured_at: float | None = None) -> RunOutcome:
        """パイプラインを1回実行する.

        Args:
            captured_at: イベントに記録する撮影時刻. 省略時はキャプチャ時刻

        """
        if self.task_source is not None:
            self._refresh_tasks(self.task_source)

        try:
            sample = self.capture.capture()
        except CaptureFailure as e:
            self.emitter.emit_log("error", f"Screenshot failed: {e}")
            return RunOutcome(counted_failure=True, reason="capture_failure")

        timestamp = captured_at if captured_at is not None else sample.captured_at
        started = time.monotonic()
        image = self.preprocessor.process(sample.image)
        del sample

        try:
            ocr = self.ocr_engine.recognize(image, self.ocr_timeout)
        except OcrFailure as e:
            if e.kind is OcrFailureKind.TIMEOUT:
                self.emitter.emit_log("warning", f"OCR timed out, sample dropped: {e}")
                return RunOutcome(reason="ocr_timeout")
            self.emitter.emit_log("error", f"OCR engine unavailable: {e}")
            return RunOutcome(counted_failure=True, fatal=True, reason=e.kind.value)
        finally:
            del image

        logger.info(
            "OCR: %s chars, confidence %.0f%% (%.1fs)",
            len(ocr.text),
            ocr.confidence * 100,
            time.monotonic() - started,
        )
        uncertain = ocr.is_low_confidence(self.ocr_confidence_floor)
        if uncertain:
            self.emitter.emit_log(
                "warning",
                f"OCR confidence {ocr.confidence:.0%} below floor, activity unknown",
            )

        classification, counted = self._classify(ocr.text, uncertain)
        matched = (
            None
            if uncertain
            else self.correlator.correlate(classification.activity_label, ocr.text)
        )

        event = self.event_log.append(
            ActivityEvent(
                timestamp=timestamp,
                application_hint=self._application(ocr.text),
                activity_label=classification.activity_label,
                confidence=classification.confidence,
                matched_task=matched,
                text_excerpt=ocr.text[:TEXT_EXCERPT_CHARS],
            )
        )
        previous = self.segments.current
        segment = self.segments.update(event)
        if segment is not previous and self.timer_queue is not None:
            self._switch_timer(previous, segment)
        if self.on_event is not None:
            self.on_event(event)

        self.emitter.emit_tracking_update(
            application=segment.application,
            activity=segment.activity,
            task=segment.task,
            since=segment.since,
        )
        self.emitter.emit_log(
            "success" if event.activity_label != UNKNOWN_LABEL else "info",
            f"Activity: {event.activity_label} | {event.application_hint} | "
            f"task: {matched.title if matched else 'unmatched'} | "
            f"confidence: {event.confidence:.0%}",
        )
        return RunOutcome(
            event=event,
            counted_failure=counted,
            reason="unauthorized" if counted else "",
        )
